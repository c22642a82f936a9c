"""Helpers for interacting with the forgectl state registry.

The registry directory (``/var/lib/forgectl/registry`` by default) stores one
YAML file per record collection (``servers.yml``, ``sites.yml``,
``databases.yml`` and so on) plus the job queue. Every read-modify-write runs
under a per-collection file lock and lands through an atomic rename, so
concurrent workers never observe a half-written file or lose each other's
updates.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from ..locking import LockTimeoutError, acquire_file_lock


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


class RecordNotFoundError(StateRegistryError):
    """Raised when a record id is not present in its collection."""


def utcnow() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class Collection:
    """In-memory view of a collection file, mutated inside :meth:`StateRegistry.mutate`."""

    name: str
    next_id: int
    records: list[dict[str, Any]]

    def find(self, record_id: int) -> dict[str, Any] | None:
        """Return the live record with *record_id* (mutations persist)."""
        for record in self.records:
            if record.get("id") == record_id:
                return record
        return None

    def require(self, record_id: int) -> dict[str, Any]:
        """Return the live record with *record_id* or raise."""
        record = self.find(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record #{record_id} not found in '{self.name}'.")
        return record

    def insert(self, data: Mapping[str, object]) -> dict[str, Any]:
        """Append a record, assigning the next id and timestamps."""
        now = utcnow()
        record: dict[str, Any] = {"id": self.next_id, **dict(data)}
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        self.next_id += 1
        self.records.append(record)
        return record

    def remove(self, record_id: int) -> dict[str, Any]:
        """Remove and return the record with *record_id*."""
        record = self.require(record_id)
        self.records.remove(record)
        return record


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    lock_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Raw file helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Record collections
    # ------------------------------------------------------------------
    def load(self, collection: str) -> Collection:
        """Return a snapshot of *collection* (changes are not persisted)."""
        raw = self.read(f"{collection}.yml", default={})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"Registry file {collection}.yml must contain a mapping.")
        raw_records = raw.get("records", [])
        if not isinstance(raw_records, list):
            raise StateRegistryError(f"Registry file {collection}.yml has invalid 'records'.")
        records = [dict(entry) for entry in raw_records if isinstance(entry, Mapping)]
        next_id_raw = raw.get("next_id")
        highest = max((int(entry.get("id", 0)) for entry in records), default=0)
        next_id = int(next_id_raw) if isinstance(next_id_raw, int) else highest + 1
        return Collection(name=collection, next_id=max(next_id, highest + 1), records=records)

    @contextmanager
    def mutate(self, collection: str) -> Iterator[Collection]:
        """Hold the collection lock, yield a live view and persist it on exit."""
        self.ensure_root()
        try:
            handle = acquire_file_lock(
                self.path_for(f".{collection}.lock"),
                key=f"registry:{collection}",
                timeout=self.lock_timeout,
            )
        except LockTimeoutError as exc:
            raise StateRegistryError(str(exc)) from exc
        try:
            view = self.load(collection)
            yield view
            self.write(
                f"{collection}.yml",
                {"next_id": view.next_id, "records": view.records},
            )
        finally:
            handle.release()

    def list_records(
        self,
        collection: str,
        *,
        where: Callable[[Mapping[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        """Return copies of the records in *collection*, optionally filtered."""
        records = self.load(collection).records
        if where is not None:
            records = [record for record in records if where(record)]
        return deepcopy(records)

    def get_record(self, collection: str, record_id: int) -> dict[str, Any] | None:
        """Return a fresh copy of the record with *record_id* if present."""
        record = self.load(collection).find(record_id)
        return deepcopy(record) if record is not None else None

    def insert_record(self, collection: str, data: Mapping[str, object]) -> dict[str, Any]:
        """Insert *data* as a new record and return the stored copy."""
        with self.mutate(collection) as view:
            record = view.insert(data)
            return deepcopy(record)

    def update_record(
        self,
        collection: str,
        record_id: int,
        updates: Mapping[str, object],
    ) -> dict[str, Any]:
        """Apply *updates* to the record and return the stored copy."""
        with self.mutate(collection) as view:
            record = view.require(record_id)
            record.update(deepcopy(dict(updates)))
            record["updated_at"] = utcnow()
            return deepcopy(record)

    def delete_record(self, collection: str, record_id: int) -> dict[str, Any]:
        """Delete the record and return its last stored state."""
        with self.mutate(collection) as view:
            return view.remove(record_id)


__all__ = [
    "Collection",
    "RecordNotFoundError",
    "StateRegistry",
    "StateRegistryError",
    "utcnow",
]
