"""Configuration loader for forgectl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/forgectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``FORGECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export FORGECTL_SSH__COMMAND_TIMEOUT=600
    export FORGECTL_QUEUE__CONCURRENCY=4

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml
from packaging.version import InvalidVersion, Version

ENV_PREFIX = "FORGECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}USER",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SshConfig:
    """Connection defaults for the SSH executor."""

    connect_timeout: float = 60.0
    command_timeout: float = 300.0
    read_timeout: float = 30.0
    strict_host_key_checking: bool = True
    known_hosts: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "connect_timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "read_timeout": self.read_timeout,
            "strict_host_key_checking": self.strict_host_key_checking,
            "known_hosts": str(self.known_hosts) if self.known_hosts else None,
        }


@dataclass(frozen=True)
class QueueConfig:
    """Job queue and worker tuning."""

    release_after: int = 15
    expire_after: int = 900
    retry_after: int = 960
    concurrency: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "release_after": self.release_after,
            "expire_after": self.expire_after,
            "retry_after": self.retry_after,
            "concurrency": self.concurrency,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for forgectl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    app_user: str
    default_php_version: str
    ssh: SshConfig
    queue: QueueConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "app_user": self.app_user,
            "default_php_version": self.default_php_version,
            "ssh": self.ssh.to_dict(),
            "queue": self.queue.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/forgectl/config.yml",
    "state_dir": "/var/lib/forgectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/forgectl",
    "runtime_dir": "/run/forgectl",
    "templates_dir": "/etc/forgectl/templates",
    "lock_timeout": 30.0,
    "app_user": "forge",
    "default_php_version": "8.3",
    "ssh": {
        "connect_timeout": 60.0,
        "command_timeout": 300.0,
        "read_timeout": 30.0,
        "strict_host_key_checking": True,
        "known_hosts": None,
    },
    "queue": {
        "release_after": 15,
        "expire_after": 900,
        "retry_after": 960,
        "concurrency": 1,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SSH_KEYS = {
    "connect_timeout",
    "command_timeout",
    "read_timeout",
    "strict_host_key_checking",
    "known_hosts",
}
ALLOWED_QUEUE_KEYS = {"release_after", "expire_after", "retry_after", "concurrency"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    app_user = raw.get("app_user")
    if not isinstance(app_user, str) or not app_user.strip():
        raise ConfigError("app_user must be a non-empty string.")

    php_version = raw.get("default_php_version")
    _expect_php_version(php_version, "default_php_version")

    ssh = raw.get("ssh")
    if ssh is not None:
        ssh_map = _as_dict(ssh, "ssh")
        unknown = set(ssh_map.keys()) - ALLOWED_SSH_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown ssh configuration keys: {joined}.")
        strict = ssh_map.get("strict_host_key_checking")
        if strict is not None and not isinstance(strict, bool):
            raise ConfigError("ssh.strict_host_key_checking must be a boolean.")

    queue = raw.get("queue")
    if queue is not None:
        queue_map = _as_dict(queue, "queue")
        unknown = set(queue_map.keys()) - ALLOWED_QUEUE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown queue configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    known_hosts_value = ssh_mapping.get("known_hosts")
    ssh = SshConfig(
        connect_timeout=_expect_positive_float(
            ssh_mapping.get("connect_timeout"), "ssh.connect_timeout", default=60.0
        ),
        command_timeout=_expect_positive_float(
            ssh_mapping.get("command_timeout"), "ssh.command_timeout", default=300.0
        ),
        read_timeout=_expect_positive_float(
            ssh_mapping.get("read_timeout"), "ssh.read_timeout", default=30.0
        ),
        strict_host_key_checking=bool(ssh_mapping.get("strict_host_key_checking", True)),
        known_hosts=_to_path(known_hosts_value) if known_hosts_value else None,
    )

    queue_mapping = _as_dict(raw.get("queue"), "queue")
    release_after = _expect_int(
        queue_mapping.get("release_after"), "queue.release_after", default=15
    )
    expire_after = _expect_int(
        queue_mapping.get("expire_after"), "queue.expire_after", default=900
    )
    retry_after = _expect_int(queue_mapping.get("retry_after"), "queue.retry_after", default=960)
    concurrency = _expect_int(queue_mapping.get("concurrency"), "queue.concurrency", default=1)
    if release_after < 0:
        raise ConfigError("queue.release_after must be non-negative.")
    if expire_after <= 0:
        raise ConfigError("queue.expire_after must be greater than zero.")
    if retry_after <= expire_after:
        raise ConfigError(
            "queue.retry_after must exceed queue.expire_after so running jobs are not "
            "handed to a second worker."
        )
    if concurrency <= 0:
        raise ConfigError("queue.concurrency must be greater than zero.")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        app_user=str(raw.get("app_user", "forge")).strip(),
        default_php_version=_expect_php_version(
            raw.get("default_php_version"), "default_php_version"
        ),
        ssh=ssh,
        queue=QueueConfig(
            release_after=release_after,
            expire_after=expire_after,
            retry_after=retry_after,
            concurrency=concurrency,
        ),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_php_version(value: object, label: str) -> str:
    # YAML reads ``8.3`` as a float; normalise it back to text.
    text = str(value).strip() if value is not None else ""
    try:
        parsed = Version(text)
    except InvalidVersion as exc:
        raise ConfigError(f"Invalid PHP version for {label}: {value!r}.") from exc
    if len(parsed.release) != 2:
        raise ConfigError(f"{label} must use MAJOR.MINOR form. Got {value!r}.")
    return text


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "QueueConfig",
    "SshConfig",
    "load_config",
]
