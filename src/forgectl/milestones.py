"""Milestone tables: per-operation progress checkpoints."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class MilestoneEntry:
    """One checkpoint: its key, display label and 1-based position."""

    key: str
    label: str
    ordinal: int


class MilestoneTable:
    """Ordered key → label mapping for a single operation type."""

    def __init__(self, name: str, pairs: Iterable[tuple[str, str]]) -> None:
        """Build the table, rejecting duplicate keys and blank labels."""
        self.name = name
        entries: list[MilestoneEntry] = []
        seen: set[str] = set()
        for position, (key, label) in enumerate(pairs, start=1):
            if not key or key in seen:
                raise ConfigurationError(f"Milestone table '{name}' has a duplicate or empty key {key!r}.")
            if not label.strip():
                raise ConfigurationError(f"Milestone '{key}' in '{name}' needs a label.")
            seen.add(key)
            entries.append(MilestoneEntry(key=key, label=label, ordinal=position))
        if not entries:
            raise ConfigurationError(f"Milestone table '{name}' is empty.")
        self._entries = tuple(entries)
        self._by_key = {entry.key: entry for entry in entries}

    def __repr__(self) -> str:
        """Return a short debugging representation."""
        return f"MilestoneTable({self.name!r}, {len(self._entries)} milestones)"

    def __contains__(self, key: object) -> bool:
        """Return True when *key* is a milestone of this table."""
        return key in self._by_key

    def keys(self) -> list[str]:
        """Return the milestone keys in order."""
        return [entry.key for entry in self._entries]

    def labels(self) -> dict[str, str]:
        """Return the key → label mapping in order."""
        return {entry.key: entry.label for entry in self._entries}

    def label(self, key: str) -> str | None:
        """Return the label for *key*, or ``None`` when unknown."""
        entry = self._by_key.get(key)
        return entry.label if entry else None

    def entry(self, key: str) -> MilestoneEntry | None:
        """Return the full entry for *key*."""
        return self._by_key.get(key)

    def ordinal(self, key: str) -> int:
        """Return the 1-based position of *key*, raising for unknown keys."""
        entry = self._by_key.get(key)
        if entry is None:
            raise ConfigurationError(f"Unknown milestone '{key}' for '{self.name}'.")
        return entry.ordinal

    def count_labels(self) -> int:
        """Return the total number of milestones (the progress denominator)."""
        return len(self._entries)


__all__ = ["MilestoneEntry", "MilestoneTable"]
