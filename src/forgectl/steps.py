"""Step types that make up a command list.

A command list is an ordered sequence of :class:`Command`, :class:`Effect`
and :class:`Milestone` steps. Builders produce it; the orchestrator walks it.
Effects report failure through :class:`EffectResult` instead of raising.
"""
from __future__ import annotations

import shlex
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .errors import ConfigurationError
from .ssh import SshResult


class RemoteRunner(Protocol):
    """What an effect may use to talk to the server."""

    def run(self, command: str, *, timeout: float | None = None) -> SshResult:
        """Execute *command* on the target server."""
        ...


@dataclass(frozen=True, slots=True)
class EffectResult:
    """Explicit outcome of an effect step."""

    ok: bool
    value: object = None
    error: str | None = None

    @classmethod
    def success(cls, value: object = None) -> EffectResult:
        """Return a successful result carrying *value*."""
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, message: str) -> EffectResult:
        """Return a failed result carrying *message*."""
        return cls(ok=False, error=message)


EffectFn = Callable[[RemoteRunner], EffectResult]


REDACTED = "********"


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in *text*."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


@dataclass(frozen=True, slots=True)
class Command:
    """A literal shell command run over SSH.

    ``secrets`` lists values embedded in ``text`` that must never reach
    errors, logs or stored records; use :attr:`display` for anything shown.
    """

    text: str
    secrets: tuple[str, ...] = field(default=(), compare=False, repr=False)

    @property
    def display(self) -> str:
        """Return the command text with its secrets masked."""
        return redact(self.text, self.secrets)

    def mask(self, output: str) -> str:
        """Mask this command's secrets in captured *output*."""
        return redact(output, self.secrets)


@dataclass(frozen=True, slots=True)
class Effect:
    """A local callback run once every earlier step succeeded."""

    name: str
    fn: EffectFn = field(compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Milestone:
    """A progress marker resolved against the operation's milestone table."""

    key: str


Step = Command | Effect | Milestone


def quote(value: object) -> str:
    """Shell-quote *value* for interpolation into a command."""
    return shlex.quote(str(value))


def feed(command: str, content: str, *, delimiter: str = "FORGECTL_EOF") -> str:
    """Return *command* reading *content* on stdin from a quoted heredoc."""
    if any(line.strip() == delimiter for line in content.splitlines()):
        raise ConfigurationError(f"Input for '{command}' contains the heredoc delimiter {delimiter}.")
    body = content.rstrip("\n")
    return f"{command} << '{delimiter}'\n{body}\n{delimiter}"


def heredoc(path: str, content: str, *, delimiter: str = "FORGECTL_EOF", append: bool = False) -> str:
    """Return a command writing *content* to *path* through a quoted heredoc."""
    if any(line.strip() == delimiter for line in content.splitlines()):
        raise ConfigurationError(f"Content for {path} contains the heredoc delimiter {delimiter}.")
    operator = ">>" if append else ">"
    return feed(f"cat {operator} {quote(path)}", content, delimiter=delimiter)


def commands(*texts: str) -> list[Step]:
    """Wrap plain command strings as steps."""
    return [Command(text) for text in texts]


def milestone_keys(steps: Iterable[Step]) -> list[str]:
    """Return the milestone keys in *steps*, in order."""
    return [step.key for step in steps if isinstance(step, Milestone)]


def render_plan(steps: Sequence[Step]) -> list[str]:
    """Return a printable, one-entry-per-step description of *steps*."""
    rendered: list[str] = []
    for step in steps:
        if isinstance(step, Command):
            rendered.append(f"$ {step.display}")
        elif isinstance(step, Effect):
            rendered.append(f"[effect] {step.name}")
        else:
            rendered.append(f"[milestone] {step.key}")
    return rendered


__all__ = [
    "Command",
    "Effect",
    "EffectFn",
    "EffectResult",
    "Milestone",
    "REDACTED",
    "RemoteRunner",
    "Step",
    "commands",
    "feed",
    "heredoc",
    "milestone_keys",
    "quote",
    "redact",
    "render_plan",
]
