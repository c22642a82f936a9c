"""Error taxonomy shared by the provisioning core."""
from __future__ import annotations


class ForgeError(RuntimeError):
    """Base class for provisioning errors surfaced to operators."""


class ConfigurationError(ForgeError):
    """Missing or invalid configuration; fails before any remote command runs."""


class OrchestrationError(ForgeError):
    """A step failed while running a command list."""

    def __init__(self, message: str, *, step_index: int | None = None) -> None:
        """Store the message and the zero-based index of the failing step."""
        super().__init__(message)
        self.step_index = step_index


class CommandFailedError(OrchestrationError):
    """A remote command exited non-zero or the connection failed."""

    def __init__(
        self,
        command: str,
        *,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        step_index: int | None = None,
    ) -> None:
        """Capture the command, its exit code and output."""
        detail = stderr.strip()
        message = f"Command failed: {command} - {detail}" if detail else f"Command failed: {command}"
        super().__init__(message, step_index=step_index)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class EffectFailedError(OrchestrationError):
    """An effect step reported failure or raised."""

    def __init__(self, name: str, reason: str, *, step_index: int | None = None) -> None:
        """Capture the effect name and the failure reason."""
        position = "unknown" if step_index is None else str(step_index)
        super().__init__(
            f"Effect '{name}' failed at step {position}: {reason}",
            step_index=step_index,
        )
        self.name = name
        self.reason = reason


class OrchestrationTimeoutError(OrchestrationError):
    """The run exceeded its deadline before the next step could start."""


class AuthorizationError(ForgeError):
    """The acting user does not own the targeted resource."""


class PreconditionError(ForgeError):
    """The targeted resource is not in a state that allows the operation."""


__all__ = [
    "AuthorizationError",
    "CommandFailedError",
    "ConfigurationError",
    "EffectFailedError",
    "ForgeError",
    "OrchestrationError",
    "OrchestrationTimeoutError",
    "PreconditionError",
]
