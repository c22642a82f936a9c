"""Provisioning jobs: one orchestration run bound to a record and a server.

A job loads its record fresh, drives the operation's status field through
``installing``/``removing`` into ``active`` (or deletes the record for
removals). A failure on the final attempt persists ``failed`` with the error
text; an attempt the queue will repeat puts the field back to ``pending``.
Either way the error is re-raised for the queue.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import AppConfig
from .errors import CommandFailedError, ConfigurationError, ForgeError
from .locking import LockHandle, LockManager
from .logging import StructuredLogger
from .models import SERVERS_COLLECTION, Server, TaskStatus
from .orchestrator import CommandExecutor, OrchestrationResult, Orchestrator
from .packages import BuildContext, Operation, failure_hint, get_operation
from .progress import RecordProgressSink
from .ssh import CredentialResolver
from .state import StateRegistry
from .steps import render_plan
from .templates import TemplateEngine, TemplateError

if TYPE_CHECKING:
    from .cli import RuntimeContext

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobContext:
    """Collaborators a job needs while it runs."""

    config: AppConfig
    store: StateRegistry
    locks: LockManager
    templates: TemplateEngine
    executor: CommandExecutor
    logger: StructuredLogger
    resolver: CredentialResolver = field(default_factory=CredentialResolver)


def create_job_context(runtime: RuntimeContext) -> JobContext:
    """Build a :class:`JobContext` from the CLI runtime context."""
    return JobContext(
        config=runtime.config,
        store=runtime.registry,
        locks=runtime.locks,
        templates=runtime.templates,
        executor=runtime.executor,
        logger=runtime.logger,
    )


@dataclass(frozen=True, slots=True)
class WithoutOverlapping:
    """Per-key mutual exclusion for jobs touching the same server."""

    key: str
    release_after: int = 15
    expire_after: int = 900

    def acquire(self, locks: LockManager) -> LockHandle | None:
        """Take the lock without waiting; ``None`` means another job holds it."""
        return locks.try_named_lock(self.key, expire_after=self.expire_after)


class ProvisioningJob:
    """A queued request to run one operation against one record."""

    def __init__(
        self,
        operation: Operation,
        *,
        server_id: int,
        record_id: int,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        """Bind the operation to its server and record."""
        self.operation = operation
        self.server_id = int(server_id)
        self.record_id = int(record_id)
        self.payload = dict(payload or {})

    def __repr__(self) -> str:
        """Return a short debugging representation."""
        return f"ProvisioningJob({self.operation.name!r}, server={self.server_id}, record={self.record_id})"

    @classmethod
    def from_queue(cls, entry: Mapping[str, Any]) -> ProvisioningJob:
        """Rebuild a job from its queue entry."""
        return cls(
            get_operation(str(entry.get("job"))),
            server_id=int(entry["server_id"]),
            record_id=int(entry["record_id"]),
            payload=entry.get("payload") or {},
        )

    def to_queue(self) -> dict[str, object]:
        """Return the fields persisted in the queue."""
        return {
            "job": self.operation.name,
            "server_id": self.server_id,
            "record_id": self.record_id,
            "payload": dict(self.payload),
        }

    @property
    def tries(self) -> int:
        """Return the number of queue attempts allowed."""
        return max(1, self.operation.max_attempts)

    @property
    def collection(self) -> str:
        """Return the collection holding the job's record."""
        return self.operation.kind.collection

    def middleware(self, config: AppConfig) -> WithoutOverlapping:
        """Return the overlap guard for this job."""
        return WithoutOverlapping(
            self.operation.lock_key(self.server_id),
            release_after=config.queue.release_after,
            expire_after=config.queue.expire_after,
        )

    def handle(
        self,
        ctx: JobContext,
        *,
        deadline: float | None = None,
        final_attempt: bool = True,
    ) -> OrchestrationResult:
        """Run the operation once.

        Raises :class:`ConfigurationError` when the record or server is gone,
        and re-raises any orchestration failure after persisting it. Pass
        ``final_attempt=False`` when the queue will try again; the record then
        stays ``pending`` instead of ``failed``.
        """
        record = ctx.store.get_record(self.collection, self.record_id)
        if record is None:
            raise ConfigurationError(f"{self.operation.kind.value} #{self.record_id} no longer exists.")
        target = {"server_id": self.server_id, "record_id": self.record_id, "kind": self.operation.kind.value}

        with ctx.logger.operation(f"job {self.operation.name}", args=dict(self.payload), target=target) as op:
            try:
                server = self._load_server(ctx, record)
                credential = ctx.resolver.resolve(server, self.operation.credential_type)
                ctx.store.update_record(
                    self.collection,
                    self.record_id,
                    {self.operation.status_field: self.operation.in_progress_status.value, "error_log": None},
                )
                build_ctx = BuildContext(
                    app_user=ctx.config.app_user,
                    templates=ctx.templates,
                    store=ctx.store,
                    server_id=self.server_id,
                    record_id=self.record_id,
                )
                steps = self.operation.build(record, build_ctx)
                logger.debug("Plan for %s #%s:\n%s", self.operation.name, self.record_id, "\n".join(render_plan(steps)))
                orchestrator = Orchestrator(
                    executor=ctx.executor,
                    server=server,
                    credential=credential,
                    milestones=self.operation.milestones,
                    sink=RecordProgressSink(ctx.store, self.collection, self.record_id),
                    command_timeout=ctx.config.ssh.command_timeout,
                    strict_host_key_checking=ctx.config.ssh.strict_host_key_checking,
                    deadline=deadline,
                )
                logger.info("Server #%s: starting %s for record #%s", self.server_id, self.operation.name, self.record_id)
                result = orchestrator.execute(steps)
            except (ForgeError, TemplateError) as exc:
                if final_attempt or not _retryable(exc):
                    self._record_failure(ctx, exc)
                else:
                    self._record_pending_retry(ctx, exc)
                hint = failure_hint(exc.command, exc.stderr) if isinstance(exc, CommandFailedError) else None
                op.error(
                    str(exc),
                    rc=4,
                    context={"hint": hint} if hint else None,
                )
                raise
            for key in result.milestones:
                op.add_step(key)
            self._record_success(ctx)
            op.success(
                f"{self.operation.name} finished for {self.operation.kind.value} #{self.record_id}.",
                changed=result.steps_run,
            )
        logger.info("Server #%s: %s finished for record #%s", self.server_id, self.operation.name, self.record_id)
        return result

    def failed(self, ctx: JobContext, exc: BaseException) -> None:
        """Persist a terminal failure reported by the queue."""
        self._record_failure(ctx, exc)
        logger.error(
            "Server #%s: %s for record #%s failed permanently: %s",
            self.server_id,
            self.operation.name,
            self.record_id,
            exc,
        )

    def _load_server(self, ctx: JobContext, record: Mapping[str, Any]) -> Server:
        if int(record.get("server_id", -1)) != self.server_id:
            raise ConfigurationError(
                f"{self.operation.kind.value} #{self.record_id} does not belong to server #{self.server_id}."
            )
        server_record = ctx.store.get_record(SERVERS_COLLECTION, self.server_id)
        if server_record is None:
            raise ConfigurationError(f"Server #{self.server_id} no longer exists.")
        return Server.from_record(server_record)

    def _record_success(self, ctx: JobContext) -> None:
        if ctx.store.get_record(self.collection, self.record_id) is None:
            return
        status = self.operation.success_status
        ctx.store.update_record(
            self.collection,
            self.record_id,
            {self.operation.status_field: status.value if status else None, "error_log": None},
        )

    def _record_pending_retry(self, ctx: JobContext, exc: BaseException) -> None:
        if ctx.store.get_record(self.collection, self.record_id) is None:
            return
        ctx.store.update_record(
            self.collection,
            self.record_id,
            {self.operation.status_field: TaskStatus.PENDING.value, "error_log": str(exc)},
        )

    def _record_failure(self, ctx: JobContext, exc: BaseException) -> None:
        record = ctx.store.get_record(self.collection, self.record_id)
        if record is None:
            return
        ctx.store.update_record(
            self.collection,
            self.record_id,
            {self.operation.status_field: TaskStatus.FAILED.value, "error_log": str(exc)},
        )
        if self.operation.compensate is not None:
            self.operation.compensate(ctx.store, record, self.payload)


def _retryable(exc: BaseException) -> bool:
    return isinstance(exc, ForgeError) and not isinstance(exc, ConfigurationError)


def deadline_after(seconds: float) -> float:
    """Return a ``time.monotonic()`` deadline *seconds* from now."""
    return time.monotonic() + seconds


__all__ = [
    "JobContext",
    "ProvisioningJob",
    "WithoutOverlapping",
    "create_job_context",
    "deadline_after",
]
