"""Typed views over registry records."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ConfigurationError


class TaskStatus(str, Enum):
    """Lifecycle status of a provisioned entity."""

    PENDING = "pending"
    INSTALLING = "installing"
    ACTIVE = "active"
    FAILED = "failed"
    REMOVING = "removing"
    UNINSTALLED = "uninstalled"


class CredentialType(str, Enum):
    """Which account a session authenticates as."""

    ROOT = "root"
    APP = "app"


class EntityKind(str, Enum):
    """Kinds of provisioned entities and where they are stored."""

    SITE = "site"
    DATABASE = "database"
    PHP = "php"
    FIREWALL_RULE = "firewall_rule"

    @property
    def collection(self) -> str:
        """Return the registry collection holding this kind."""
        return _COLLECTIONS[self]

    @property
    def plural_label(self) -> str:
        """Return the human label used in operator messages."""
        return _PLURAL_LABELS[self]


_COLLECTIONS = {
    EntityKind.SITE: "sites",
    EntityKind.DATABASE: "databases",
    EntityKind.PHP: "php",
    EntityKind.FIREWALL_RULE: "firewall_rules",
}

_PLURAL_LABELS = {
    EntityKind.SITE: "sites",
    EntityKind.DATABASE: "databases",
    EntityKind.PHP: "PHP installations",
    EntityKind.FIREWALL_RULE: "firewall rules",
}

SERVERS_COLLECTION = "servers"


@dataclass(frozen=True, slots=True)
class Credential:
    """SSH login material for one account on a server."""

    user: str
    type: CredentialType
    private_key: str = field(repr=False)
    public_key: str | None = None

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> Credential:
        """Build a credential from its registry mapping."""
        try:
            kind = CredentialType(str(data.get("type", "")))
        except ValueError as exc:
            raise ConfigurationError(f"Unknown credential type {data.get('type')!r}.") from exc
        user = str(data.get("user") or "").strip()
        private_key = str(data.get("private_key") or "")
        if not user or not private_key.strip():
            raise ConfigurationError("Credential entries require a user and private key.")
        public_key = data.get("public_key")
        return cls(
            user=user,
            type=kind,
            private_key=private_key,
            public_key=str(public_key) if public_key else None,
        )


@dataclass(frozen=True, slots=True)
class Server:
    """Connection target for orchestrations."""

    id: int
    name: str
    host: str
    ssh_port: int
    owner: str
    credentials: tuple[Credential, ...] = ()

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> Server:
        """Build a server from its registry mapping."""
        raw_credentials = data.get("credentials") or []
        credentials = tuple(
            Credential.from_record(entry) for entry in raw_credentials if isinstance(entry, Mapping)
        )
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or data.get("host")),
            host=str(data["host"]),
            ssh_port=int(data.get("ssh_port", 22)),
            owner=str(data.get("owner", "")),
            credentials=credentials,
        )


__all__ = [
    "Credential",
    "CredentialType",
    "EntityKind",
    "SERVERS_COLLECTION",
    "Server",
    "TaskStatus",
]
