"""State registry package."""
from __future__ import annotations

from .registry import (
    Collection,
    RecordNotFoundError,
    StateRegistry,
    StateRegistryError,
    utcnow,
)

__all__ = [
    "Collection",
    "RecordNotFoundError",
    "StateRegistry",
    "StateRegistryError",
    "utcnow",
]
