"""Structured operation logging for forgectl.

Every CLI operation and every queued job writes one JSON record to
``operations.jsonl`` under the configured logs directory. Records carry the
operation name, arguments, target identifiers (server and entity ids for
audit), recorded steps, lock wait time and the final result. Logging failures
never break the operation being logged: the logger disables itself instead.

Library modules keep using :mod:`logging` loggers for line-oriented
diagnostics; :func:`configure_console_logging` routes them through rich.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.logging import RichHandler

OPERATIONS_LOG = "operations.jsonl"


def _utcnow() -> str:
    return datetime.now(tz=UTC).isoformat()


def _sanitize(value: object) -> object:
    """Coerce *value* into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Sequence[str] | None) -> list[str]:
    return [str(value) for value in values] if values else []


class OperationScope:
    """Collects steps and the final outcome of a single operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope with identifying metadata."""
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _utcnow()
        self._start = time.perf_counter()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _utcnow()}
        if detail:
            entry["detail"] = detail
        self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 2,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            rc=rc,
            changed=changed,
            warnings=warnings,
            errors=errors or [message],
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        result = self.result or {
            "status": "unknown",
            "message": "Operation ended without a recorded result.",
            "rc": None,
        }
        return {
            "op": self.name,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "pid": os.getpid(),
            "started_at": self.started_at,
            "finished_at": _utcnow(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": result,
        }


class StructuredLogger:
    """Append-only JSON operation log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *name* and persist it when the block exits."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, rc=1)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False) + "\n"
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
            except OSError:
                self._enabled = False


def configure_console_logging(verbosity: int = 0) -> None:
    """Route ``forgectl.*`` library loggers to the console via rich."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    package_logger = logging.getLogger("forgectl")
    package_logger.setLevel(level)
    if not any(isinstance(handler, RichHandler) for handler in package_logger.handlers):
        package_logger.addHandler(RichHandler(show_path=False, rich_tracebacks=False))


__all__ = ["OperationScope", "StructuredLogger", "configure_console_logging"]
