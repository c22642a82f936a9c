"""Sequential command-list execution against one server.

The :class:`Orchestrator` is configured by composition: an executor that can
run one remote command, the target server and resolved credential, the
milestone table for the operation and a progress sink. It walks the step list
strictly in order and stops at the first failing step.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol, assert_never

from .errors import (
    CommandFailedError,
    ConfigurationError,
    EffectFailedError,
    OrchestrationError,
    OrchestrationTimeoutError,
)
from .milestones import MilestoneTable
from .models import Credential, Server
from .progress import MilestoneEvent, ProgressSink
from .ssh import SshResult
from .steps import Command, Effect, EffectResult, Milestone, Step, redact

logger = logging.getLogger(__name__)


class CommandExecutor(Protocol):
    """Anything able to run a single remote command."""

    def execute(
        self,
        command: str,
        *,
        host: str,
        port: int,
        credential: Credential,
        timeout: float | None,
        strict_host_key_checking: bool = True,
    ) -> SshResult:
        """Run *command* and return its result."""
        ...


@dataclass(slots=True)
class OrchestrationResult:
    """Summary of a completed run."""

    steps_run: int = 0
    milestones: list[str] = field(default_factory=list)
    values: dict[str, object] = field(default_factory=dict)


class Orchestrator:
    """Run a command list, reporting milestones and aborting on first failure."""

    def __init__(
        self,
        *,
        executor: CommandExecutor,
        server: Server,
        credential: Credential,
        milestones: MilestoneTable,
        sink: ProgressSink,
        command_timeout: float | None = 570.0,
        strict_host_key_checking: bool = True,
        deadline: float | None = None,
    ) -> None:
        """Store collaborators; *deadline* is a ``time.monotonic()`` instant."""
        self.executor = executor
        self.server = server
        self.credential = credential
        self.milestones = milestones
        self.sink = sink
        self.command_timeout = command_timeout
        self.strict_host_key_checking = strict_host_key_checking
        self.deadline = deadline
        self._secrets: tuple[str, ...] = ()

    def run(self, command: str, *, timeout: float | None = None) -> SshResult:
        """Execute one command on the server (the hook effects use for read-backs)."""
        return self.executor.execute(
            command,
            host=self.server.host,
            port=self.server.ssh_port,
            credential=self.credential,
            timeout=self.command_timeout if timeout is None else timeout,
            strict_host_key_checking=self.strict_host_key_checking,
        )

    def execute(self, steps: Sequence[Step]) -> OrchestrationResult:
        """Run *steps* in order and return a summary.

        Raises :class:`OrchestrationError` subclasses for command, effect and
        deadline failures after notifying the sink, and
        :class:`ConfigurationError` before any step runs when the list names
        milestones unknown to the table.
        """
        unknown = [step.key for step in steps if isinstance(step, Milestone) and step.key not in self.milestones]
        if unknown:
            raise ConfigurationError(
                f"Milestones {', '.join(unknown)} are not defined for '{self.milestones.name}'."
            )

        self._secrets = tuple(secret for step in steps if isinstance(step, Command) for secret in step.secrets)
        result = OrchestrationResult()
        for index, step in enumerate(steps):
            try:
                self._check_deadline(index)
                if isinstance(step, Command):
                    self._run_command(index, step)
                elif isinstance(step, Effect):
                    result.values[step.name] = self._run_effect(index, step)
                elif isinstance(step, Milestone):
                    self._reach(step)
                    result.milestones.append(step.key)
                else:
                    assert_never(step)
            except OrchestrationError as exc:
                logger.error(
                    "Server #%s: %s step %d failed: %s",
                    self.server.id,
                    self.milestones.name,
                    index,
                    exc,
                )
                self.sink.mark_failed(str(exc))
                raise
            result.steps_run += 1
        self.sink.mark_completed()
        return result

    def _check_deadline(self, index: int) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise OrchestrationTimeoutError(
                f"Run exceeded its time limit before step {index}.",
                step_index=index,
            )

    def _run_command(self, index: int, step: Command) -> None:
        shown = redact(step.text, self._secrets)
        logger.debug("Server #%s: $ %s", self.server.id, shown)
        outcome = self.run(step.text)
        if not outcome.is_successful():
            raise CommandFailedError(
                shown,
                exit_code=outcome.exit_code,
                stdout=redact(outcome.output, self._secrets),
                stderr=redact(outcome.error_output, self._secrets),
                step_index=index,
            )

    def _run_effect(self, index: int, step: Effect) -> object:
        try:
            outcome = step.fn(self)
        except Exception as exc:
            reason = redact(str(exc), self._secrets) or type(exc).__name__
            raise EffectFailedError(step.name, reason, step_index=index) from exc
        if not isinstance(outcome, EffectResult):
            raise EffectFailedError(
                step.name,
                f"returned {type(outcome).__name__} instead of an EffectResult",
                step_index=index,
            )
        if not outcome.ok:
            raise EffectFailedError(step.name, redact(outcome.error or "unknown error", self._secrets), step_index=index)
        return outcome.value

    def _reach(self, step: Milestone) -> None:
        entry = self.milestones.entry(step.key)
        if entry is None:  # pragma: no cover - rejected before the loop
            raise ConfigurationError(f"Unknown milestone '{step.key}'.")
        self.sink.milestone_reached(
            MilestoneEvent(
                milestone=entry.key,
                label=entry.label,
                current_step=entry.ordinal,
                total_steps=self.milestones.count_labels(),
            )
        )


__all__ = ["CommandExecutor", "OrchestrationResult", "Orchestrator"]
