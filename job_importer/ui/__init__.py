"""User interaction helpers."""

from .progress import RunProgressDisplay

__all__ = ["RunProgressDisplay"]
