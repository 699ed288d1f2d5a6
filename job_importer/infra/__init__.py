"""Infra layer utilities (storage connections)."""

from .storage import SQLiteManager

__all__ = ["SQLiteManager"]
