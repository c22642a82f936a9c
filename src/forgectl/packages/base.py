"""Shared pieces for command-list builders."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from ..milestones import MilestoneTable
from ..models import CredentialType, EntityKind, TaskStatus
from ..state import StateRegistry, utcnow
from ..steps import Effect, EffectResult, RemoteRunner, Step
from ..templates import TemplateEngine


@dataclass(frozen=True, slots=True)
class BuildContext:
    """Everything a builder needs besides the entity configuration."""

    app_user: str
    templates: TemplateEngine
    store: StateRegistry
    server_id: int
    record_id: int

    @property
    def home(self) -> str:
        """Return the app user's home directory."""
        return f"/home/{self.app_user}"


Builder = Callable[[Mapping[str, Any], BuildContext], list[Step]]
Compensation = Callable[[StateRegistry, Mapping[str, Any], Mapping[str, Any]], None]


@dataclass(frozen=True, slots=True)
class Operation:
    """One operation type: its builder, milestone table and queue policy.

    ``status_field`` names the record column the job drives through
    installing/active/failed. Removals flip it to ``removing``; removers of
    whole entities delete the record in their final step. ``compensate`` runs
    after a failed run to undo bookkeeping done when the job was enqueued.
    ``max_attempts`` counts queue attempts and ``backoff`` gives the delay
    before each automatic re-attempt.
    """

    name: str
    kind: EntityKind
    milestones: MilestoneTable
    build: Builder
    credential_type: CredentialType = CredentialType.ROOT
    status_field: str = "status"
    removal: bool = False
    overlap_key: str = "package:action"
    max_attempts: int = 1
    backoff: tuple[int, ...] = ()
    success_status: TaskStatus | None = TaskStatus.ACTIVE
    compensate: Compensation | None = None

    @property
    def in_progress_status(self) -> TaskStatus:
        """Return the status written when a run starts."""
        return TaskStatus.REMOVING if self.removal else TaskStatus.INSTALLING

    def lock_key(self, server_id: int) -> str:
        """Return the overlap lock key serialising this operation per server."""
        return f"{self.overlap_key}:{server_id}"

    def delay_before(self, attempt: int) -> int:
        """Return the backoff before re-running after *attempt* failed attempts."""
        if not self.backoff:
            return 0
        return self.backoff[min(attempt, len(self.backoff)) - 1]


def update_entity(ctx: BuildContext, collection: str, name: str, updates: Mapping[str, object]) -> Effect:
    """Return an effect that merges *updates* into the owning record."""

    def apply(_runner: RemoteRunner) -> EffectResult:
        ctx.store.update_record(collection, ctx.record_id, updates)
        return EffectResult.success()

    return Effect(name, apply)


def mark_active(ctx: BuildContext, collection: str) -> Effect:
    """Return the conventional final effect of an install."""

    def apply(_runner: RemoteRunner) -> EffectResult:
        ctx.store.update_record(
            collection,
            ctx.record_id,
            {"status": TaskStatus.ACTIVE.value, "provisioned_at": utcnow(), "error_log": None},
        )
        return EffectResult.success()

    return Effect("mark_active", apply)


def delete_entity(ctx: BuildContext, collection: str) -> Effect:
    """Return the conventional final effect of a removal."""

    def apply(_runner: RemoteRunner) -> EffectResult:
        ctx.store.delete_record(collection, ctx.record_id)
        return EffectResult.success()

    return Effect("delete_record", apply)


_FAILURE_HINTS: tuple[tuple[str, str], ...] = (
    ("nginx -t", "Nginx configuration validation failed. Check the generated config file for syntax errors."),
    ("sites-available", "Failed to write nginx configuration. Check file permissions on /etc/nginx."),
    ("git clone", "Failed to clone git repository. Verify repository URL and access credentials."),
    ("apt-get", "Package installation failed. Check the server's apt sources and network access."),
    ("ufw", "Firewall command failed. Ensure UFW is installed and enabled."),
)


def failure_hint(command: str, error_output: str) -> str | None:
    """Return operator guidance for a failed *command*, when one applies."""
    for needle, hint in _FAILURE_HINTS:
        if needle in command:
            return hint
    if "Permission denied" in error_output:
        return "Permission denied. Ensure the SSH user has the necessary permissions."
    return None


__all__ = [
    "BuildContext",
    "Builder",
    "Compensation",
    "Operation",
    "delete_entity",
    "failure_hint",
    "mark_active",
    "update_entity",
]
