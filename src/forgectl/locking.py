"""File-based locking primitives.

Locks are ``fcntl.flock`` advisory locks on files under the runtime directory.
Each lock file carries JSON metadata (pid, path, key and the acquisition and
expiry timestamps) so operators can see who holds a lock. The kernel drops a
lock when its holder dies, which covers worker crashes; ``expire_after``
records the hold budget the holder has agreed to honour.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

_POLL_INTERVAL = 0.05
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


def lock_file_name(key: str) -> str:
    """Return a filesystem-safe lock file name for *key*."""
    cleaned = _UNSAFE_KEY_CHARS.sub("-", key.strip()).strip("-.")
    if not cleaned:
        raise ValueError("Lock key must contain at least one safe character.")
    return f"{cleaned}.lock"


@dataclass(slots=True)
class LockHandle:
    """A held lock; call :meth:`release` (or exit the context) to drop it."""

    path: Path
    key: str
    wait_ms: int
    expires_at: datetime | None = None
    _fd: int | None = field(default=None, repr=False)

    @property
    def held(self) -> bool:
        """Return True while the lock is held."""
        return self._fd is not None

    def expired(self, now: datetime | None = None) -> bool:
        """Return True when the holder has run past its expiry budget."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(tz=UTC)) >= self.expires_at

    def release(self) -> None:
        """Release the lock. Safe to call more than once."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


def _try_flock(path: Path) -> int | None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        return None
    except OSError:
        os.close(fd)
        raise
    return fd


def _write_metadata(fd: int, payload: dict[str, object]) -> None:
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


def acquire_file_lock(
    path: Path,
    *,
    key: str,
    timeout: float | None,
    expire_after: float | None = None,
) -> LockHandle:
    """Acquire an exclusive lock on *path*.

    ``timeout=None`` blocks until the lock becomes free, ``0`` tries once.
    """
    start = time.perf_counter()
    deadline = None if timeout is None else start + max(timeout, 0.0)
    while True:
        fd = _try_flock(path)
        if fd is not None:
            break
        if deadline is not None and time.perf_counter() >= deadline:
            raise LockTimeoutError(f"Timed out waiting for lock '{key}' ({path}).")
        time.sleep(_POLL_INTERVAL)

    wait_ms = int((time.perf_counter() - start) * 1000)
    acquired_at = datetime.now(tz=UTC)
    expires_at = acquired_at + timedelta(seconds=expire_after) if expire_after else None
    _write_metadata(
        fd,
        {
            "pid": os.getpid(),
            "path": str(path),
            "key": key,
            "acquired_at": acquired_at.isoformat(),
            "expires_at": expires_at.isoformat() if expires_at else None,
        },
    )
    return LockHandle(path=path, key=key, wait_ms=wait_ms, expires_at=expires_at, _fd=fd)


class LockManager:
    """Hand out named locks rooted at the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def path_for(self, key: str) -> Path:
        """Return the lock file backing *key*."""
        return self.runtime_dir / "locks" / lock_file_name(key)

    @contextmanager
    def named_lock(
        self,
        key: str,
        *,
        timeout: float | None = None,
        expire_after: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock named *key* for the duration of the block."""
        handle = acquire_file_lock(
            self.path_for(key),
            key=key,
            timeout=self.default_timeout if timeout is None else timeout,
            expire_after=expire_after,
        )
        try:
            yield handle
        finally:
            handle.release()

    def try_named_lock(self, key: str, *, expire_after: float | None = None) -> LockHandle | None:
        """Acquire *key* without waiting; return ``None`` when it is busy."""
        try:
            return acquire_file_lock(
                self.path_for(key), key=key, timeout=0, expire_after=expire_after
            )
        except LockTimeoutError:
            return None


__all__ = [
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "acquire_file_lock",
    "lock_file_name",
]
