"""Operator-triggered retry of failed provisioning runs."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import AuthorizationError, PreconditionError
from .jobs import ProvisioningJob
from .logging import StructuredLogger
from .models import SERVERS_COLLECTION, EntityKind, TaskStatus
from .packages import get_operation
from .progress import RecordProgressSink
from .queue import JobQueue
from .state import RecordNotFoundError, StateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryOutcome:
    """Result of a successful retry request."""

    kind: EntityKind
    record_id: int
    operation: str
    job_id: int


class RetryService:
    """Reset a failed entity and enqueue its last operation again."""

    def __init__(self, store: StateRegistry, queue: JobQueue, audit: StructuredLogger) -> None:
        """Store collaborators."""
        self.store = store
        self.queue = queue
        self.audit = audit

    def retry(
        self,
        kind: EntityKind,
        record_id: int,
        *,
        user: str,
        server_id: int | None = None,
    ) -> RetryOutcome:
        """Retry the last operation run against a failed entity.

        Raises :class:`AuthorizationError` when *user* does not own the
        server, and :class:`PreconditionError` when the entity is not in the
        ``failed`` state or belongs to a different server than requested.
        Nothing is modified or enqueued when either error is raised.
        """
        record = self.store.get_record(kind.collection, record_id)
        if record is None:
            raise RecordNotFoundError(f"{kind.value} #{record_id} not found.")
        owning_server = int(record.get("server_id", -1))
        server = self.store.get_record(SERVERS_COLLECTION, owning_server)
        if server is None or str(server.get("owner", "")) != user:
            raise AuthorizationError(f"User '{user}' may not manage {kind.value} #{record_id}.")
        if server_id is not None and int(server_id) != owning_server:
            raise PreconditionError(f"Invalid {kind.value} for server #{server_id}.")

        operation = get_operation(str(record.get("last_operation") or ""))
        if operation.kind is not kind:
            raise PreconditionError(f"{kind.value} #{record_id} has no retryable operation.")
        if record.get(operation.status_field) != TaskStatus.FAILED.value:
            raise PreconditionError(f"Only failed {kind.plural_label} can be retried")

        target = {"server_id": owning_server, "record_id": record_id, "kind": kind.value}
        with self.audit.operation(f"{kind.value} retry", args={"user": user}, target=target) as op:
            self.store.update_record(
                kind.collection,
                record_id,
                {operation.status_field: TaskStatus.PENDING.value, "error_log": None},
            )
            RecordProgressSink(self.store, kind.collection, record_id).reset()
            job = ProvisioningJob(
                operation,
                server_id=owning_server,
                record_id=record_id,
                payload=record.get("last_payload") or {},
            )
            job_id = self.queue.enqueue(job)
            op.success(f"Re-queued {operation.name} for {kind.value} #{record_id}.", changed=1)
        logger.info("User %s retried %s #%s (job #%s)", user, kind.value, record_id, job_id)
        return RetryOutcome(kind=kind, record_id=record_id, operation=operation.name, job_id=job_id)


__all__ = ["RetryOutcome", "RetryService"]
