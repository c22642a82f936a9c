"""Progress sinks: persist milestone events onto the owning record."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .state import RecordNotFoundError, StateRegistry, utcnow

logger = logging.getLogger(__name__)

PROGRESS_FIELDS = ("milestone", "current_step", "total_steps", "progress_label", "progress_updated_at")


@dataclass(frozen=True, slots=True)
class MilestoneEvent:
    """A milestone reached during a run."""

    milestone: str
    label: str
    current_step: int
    total_steps: int

    def to_wire(self) -> dict[str, object]:
        """Return the mapping exposed to progress observers."""
        return {
            "milestone": self.milestone,
            "label": self.label,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
        }


class ProgressSink(Protocol):
    """Receiver of milestone and outcome notifications from the orchestrator."""

    def milestone_reached(self, event: MilestoneEvent) -> None:
        """Record that *event* was reached."""
        ...

    def mark_completed(self) -> None:
        """Record that every step finished."""
        ...

    def mark_failed(self, message: str) -> None:
        """Record that the run failed with *message*."""
        ...


class RecordProgressSink:
    """Write progress columns and an event trail onto a registry record."""

    def __init__(self, store: StateRegistry, collection: str, record_id: int) -> None:
        """Bind the sink to one record."""
        self.store = store
        self.collection = collection
        self.record_id = record_id

    def milestone_reached(self, event: MilestoneEvent) -> None:
        """Persist *event* and close out the previous pending event."""
        now = utcnow()
        with self.store.mutate(self.collection) as view:
            record = view.require(self.record_id)
            events = _events(record)
            _settle_pending(events, "success")
            events.append({**event.to_wire(), "status": "pending", "at": now})
            record.update(
                {
                    "milestone": event.milestone,
                    "current_step": event.current_step,
                    "total_steps": event.total_steps,
                    "progress_label": event.label,
                    "progress_updated_at": now,
                    "events": events,
                    "updated_at": now,
                }
            )
        logger.info(
            "%s #%s: %s (step %d/%d)",
            self.collection,
            self.record_id,
            event.label,
            event.current_step,
            event.total_steps,
        )

    def mark_completed(self) -> None:
        """Mark the trailing pending event as successful."""
        self._settle("success", None)

    def mark_failed(self, message: str) -> None:
        """Mark the trailing pending event as failed with *message*."""
        self._settle("failed", message)

    def reset(self) -> None:
        """Clear progress so a retried run starts from step one."""
        try:
            self.store.update_record(
                self.collection,
                self.record_id,
                {**{name: None for name in PROGRESS_FIELDS}, "events": []},
            )
        except RecordNotFoundError:
            logger.debug("%s #%s vanished before reset", self.collection, self.record_id)

    def _settle(self, status: str, message: str | None) -> None:
        try:
            with self.store.mutate(self.collection) as view:
                record = view.require(self.record_id)
                events = _events(record)
                _settle_pending(events, status, message)
                record["events"] = events
        except RecordNotFoundError:
            # Removers delete their record in the final step.
            logger.debug("%s #%s already removed", self.collection, self.record_id)


def _events(record: Mapping[str, Any]) -> list[dict[str, Any]]:
    raw = record.get("events") or []
    return [dict(item) for item in raw if isinstance(item, Mapping)]


def _settle_pending(events: list[dict[str, Any]], status: str, message: str | None = None) -> None:
    pending = [item for item in events if item.get("status") == "pending"]
    if not pending:
        return
    *earlier, last = pending
    for item in earlier:
        item["status"] = "success"
    last["status"] = status
    if message is not None:
        last["error_log"] = message


def read_progress(record: Mapping[str, Any]) -> dict[str, object] | None:
    """Return the wire-format progress of *record*, or ``None`` before any milestone."""
    milestone = record.get("milestone")
    if not milestone:
        return None
    return {
        "milestone": milestone,
        "label": record.get("progress_label"),
        "current_step": record.get("current_step"),
        "total_steps": record.get("total_steps"),
    }


__all__ = [
    "MilestoneEvent",
    "PROGRESS_FIELDS",
    "ProgressSink",
    "RecordProgressSink",
    "read_progress",
]
