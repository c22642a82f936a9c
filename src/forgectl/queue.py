"""Persistent job queue and the worker that drains it.

Jobs live in the ``jobs`` registry collection. A reserved job that is not
completed, released or buried within ``retry_after`` seconds becomes
available again, so a crashed worker never loses work (delivery is
at-least-once). Jobs that give up are moved to ``failed_jobs``.
"""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from copy import deepcopy
from enum import Enum
from typing import Any

from .config import QueueConfig
from .errors import ConfigurationError, ForgeError
from .jobs import JobContext, ProvisioningJob, deadline_after
from .state import StateRegistry, StateRegistryError, utcnow

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "jobs"
FAILED_JOBS_COLLECTION = "failed_jobs"


class JobQueue:
    """FIFO queue stored in the state registry."""

    def __init__(
        self,
        store: StateRegistry,
        config: QueueConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Bind the queue to its registry and tuning."""
        self.store = store
        self.config = config
        self._clock = clock

    def enqueue(self, job: ProvisioningJob, *, delay: float = 0) -> int:
        """Append *job* and return its queue id."""
        now = self._clock()
        entry = self.store.insert_record(
            JOBS_COLLECTION,
            {
                **job.to_queue(),
                "attempts": 0,
                "available_at": now + max(delay, 0),
                "reserved_at": None,
            },
        )
        logger.info("Queued %r as job #%s", job, entry["id"])
        return int(entry["id"])

    def reserve(self) -> dict[str, Any] | None:
        """Claim the oldest available job, counting an attempt."""
        now = self._clock()
        with self.store.mutate(JOBS_COLLECTION) as view:
            for entry in view.records:
                reserved_at = entry.get("reserved_at")
                if reserved_at is None:
                    if float(entry.get("available_at") or 0) > now:
                        continue
                elif now - float(reserved_at) < self.config.retry_after:
                    continue
                entry["reserved_at"] = now
                entry["attempts"] = int(entry.get("attempts") or 0) + 1
                return deepcopy(entry)
        return None

    def release(self, job_id: int, *, delay: float = 0, count_attempt: bool = True) -> None:
        """Make a reserved job available again after *delay* seconds."""
        with self.store.mutate(JOBS_COLLECTION) as view:
            entry = view.require(job_id)
            entry["reserved_at"] = None
            entry["available_at"] = self._clock() + max(delay, 0)
            if not count_attempt:
                entry["attempts"] = max(0, int(entry.get("attempts") or 0) - 1)

    def complete(self, job_id: int) -> None:
        """Drop a finished job."""
        with self.store.mutate(JOBS_COLLECTION) as view:
            if view.find(job_id) is not None:
                view.remove(job_id)

    def bury(self, job_id: int, error: str) -> None:
        """Move a job to the failed list."""
        with self.store.mutate(JOBS_COLLECTION) as view:
            entry = view.find(job_id)
            if entry is None:
                return
            view.remove(job_id)
        self.store.insert_record(
            FAILED_JOBS_COLLECTION,
            {
                "job": entry.get("job"),
                "server_id": entry.get("server_id"),
                "record_id": entry.get("record_id"),
                "payload": entry.get("payload") or {},
                "attempts": entry.get("attempts", 0),
                "error": error,
                "failed_at": utcnow(),
                "queue_id": job_id,
            },
        )

    def pending(self) -> list[dict[str, Any]]:
        """Return the queued jobs."""
        return self.store.list_records(JOBS_COLLECTION)

    def failed(self) -> list[dict[str, Any]]:
        """Return the buried jobs."""
        return self.store.list_records(FAILED_JOBS_COLLECTION)


class WorkOutcome(str, Enum):
    """What happened to a reserved job."""

    COMPLETED = "completed"
    RELEASED = "released"
    RETRYING = "retrying"
    FAILED = "failed"


class Worker:
    """Reserve jobs and run them under their overlap guard."""

    def __init__(self, ctx: JobContext, queue: JobQueue) -> None:
        """Store the job context and the queue to drain."""
        self.ctx = ctx
        self.queue = queue
        self._count_lock = threading.Lock()

    def run_once(self) -> WorkOutcome | None:
        """Process at most one job; return ``None`` when nothing is available."""
        entry = self.queue.reserve()
        if entry is None:
            return None
        job_id = int(entry["id"])
        attempts = int(entry.get("attempts") or 1)
        try:
            job = ProvisioningJob.from_queue(entry)
        except (ConfigurationError, KeyError, ValueError) as exc:
            logger.error("Job #%s cannot be decoded: %s", job_id, exc)
            self.queue.bury(job_id, f"Job cannot be decoded: {exc}")
            return WorkOutcome.FAILED

        if attempts > job.tries:
            exc = ForgeError(f"{job.operation.name} has been attempted too many times or run too long.")
            job.failed(self.ctx, exc)
            self.queue.bury(job_id, str(exc))
            return WorkOutcome.FAILED

        guard = job.middleware(self.ctx.config)
        handle = guard.acquire(self.ctx.locks)
        if handle is None:
            logger.info("Job #%s waiting for lock %s", job_id, guard.key)
            self.queue.release(job_id, delay=guard.release_after, count_attempt=False)
            return WorkOutcome.RELEASED
        try:
            return self._run(job, job_id, attempts, deadline_after(guard.expire_after))
        finally:
            handle.release()

    def _run(self, job: ProvisioningJob, job_id: int, attempts: int, deadline: float) -> WorkOutcome:
        try:
            job.handle(self.ctx, deadline=deadline, final_attempt=attempts >= job.tries)
        except ConfigurationError as exc:
            job.failed(self.ctx, exc)
            self.queue.bury(job_id, str(exc))
            return WorkOutcome.FAILED
        except (ForgeError, StateRegistryError) as exc:
            if attempts < job.tries:
                delay = job.operation.delay_before(attempts)
                logger.warning("Job #%s attempt %d failed, retrying in %ss: %s", job_id, attempts, delay, exc)
                self.queue.release(job_id, delay=delay)
                return WorkOutcome.RETRYING
            job.failed(self.ctx, exc)
            self.queue.bury(job_id, str(exc))
            return WorkOutcome.FAILED
        except Exception as exc:
            logger.exception("Job #%s crashed", job_id)
            job.failed(self.ctx, exc)
            self.queue.bury(job_id, f"{type(exc).__name__}: {exc}")
            return WorkOutcome.FAILED
        self.queue.complete(job_id)
        return WorkOutcome.COMPLETED

    def run(
        self,
        *,
        max_jobs: int | None = None,
        stop_when_empty: bool = True,
        idle_sleep: float = 1.0,
    ) -> Counter[WorkOutcome]:
        """Drain the queue with ``queue.concurrency`` threads."""
        totals: Counter[WorkOutcome] = Counter()
        budget = [max_jobs]

        def take_slot() -> bool:
            with self._count_lock:
                if budget[0] is None:
                    return True
                if budget[0] <= 0:
                    return False
                budget[0] -= 1
                return True

        def drain() -> Counter[WorkOutcome]:
            counts: Counter[WorkOutcome] = Counter()
            while take_slot():
                outcome = self.run_once()
                if outcome is None:
                    with self._count_lock:
                        if budget[0] is not None:
                            budget[0] += 1
                    if stop_when_empty:
                        break
                    time.sleep(idle_sleep)
                    continue
                counts[outcome] += 1
            return counts

        workers = max(1, self.ctx.config.queue.concurrency)
        if workers == 1:
            return drain()
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(drain) for _ in range(workers)]
            for future in concurrent.futures.as_completed(futures):
                totals.update(future.result())
        return totals


__all__ = [
    "FAILED_JOBS_COLLECTION",
    "JOBS_COLLECTION",
    "JobQueue",
    "WorkOutcome",
    "Worker",
]
