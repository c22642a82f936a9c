"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from forgectl.locking import LockManager, LockTimeoutError, lock_file_name


def test_named_lock_writes_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "locks" / "package-action-7.lock"
    with manager.named_lock("package:action:7", expire_after=900) as handle:
        assert handle.wait_ms >= 0
        assert handle.held
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["key"] == "package:action:7"
        assert data["expires_at"] is not None

    assert not handle.held
    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.named_lock("package:action:7", timeout=0.2):
        pass


def test_named_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.named_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.named_lock("alpha", timeout=0.1):
                pass


def test_try_named_lock_returns_none_when_busy(tmp_path: Path) -> None:
    """Non-blocking acquisition reports contention instead of waiting."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    first = manager.try_named_lock("site:default:3")
    assert first is not None
    try:
        assert manager.try_named_lock("site:default:3") is None
        other = manager.try_named_lock("site:default:4")
        assert other is not None
        other.release()
    finally:
        first.release()

    again = manager.try_named_lock("site:default:3")
    assert again is not None
    again.release()
    again.release()


def test_lock_file_name_strips_unsafe_characters() -> None:
    """Keys map to flat, filesystem-safe names."""
    assert lock_file_name("package:action:12") == "package-action-12.lock"
    assert lock_file_name("../etc/passwd") == "etc-passwd.lock"
    with pytest.raises(ValueError):
        lock_file_name("::")
