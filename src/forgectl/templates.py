"""Jinja2 template engine for remote configuration files.

Built-in templates ship inside the package under ``forgectl/templates``. An
operator may shadow any of them by placing a file with the same relative name
under the configured ``templates_dir``.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be rendered."""


@dataclass(frozen=True)
class TemplateEngine:
    """Render named templates with strict variable checking."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose lookups prefer *override_dir* when it exists."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("forgectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render *name* with *context* and return the text."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template '{name}': {exc}") from exc


__all__ = ["TemplateEngine", "TemplateError"]
