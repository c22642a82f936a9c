"""Server inventory: connection targets and their SSH credentials."""
from __future__ import annotations

import re
from pathlib import Path

from .errors import ConfigurationError
from .models import SERVERS_COLLECTION, Credential, CredentialType, Server
from .ssh import load_private_key
from .state import RecordNotFoundError, StateRegistry

_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")


def add_server(store: StateRegistry, *, name: str, host: str, owner: str, ssh_port: int = 22) -> Server:
    """Register a server and return it."""
    if not _NAME.match(name):
        raise ConfigurationError(f"Server name '{name}' may only contain letters, numbers, '.', '_' or '-'.")
    if not host.strip():
        raise ConfigurationError("Server host is required.")
    if not 1 <= ssh_port <= 65535:
        raise ConfigurationError(f"SSH port {ssh_port} is out of range.")
    if not owner.strip():
        raise ConfigurationError("Server owner is required.")
    with store.mutate(SERVERS_COLLECTION) as view:
        if any(record.get("name") == name for record in view.records):
            raise ConfigurationError(f"Server '{name}' already exists.")
        record = view.insert(
            {"name": name, "host": host.strip(), "ssh_port": ssh_port, "owner": owner.strip(), "credentials": []}
        )
    return Server.from_record(record)


def get_server(store: StateRegistry, server_id: int) -> Server:
    """Return the server with *server_id*."""
    record = store.get_record(SERVERS_COLLECTION, server_id)
    if record is None:
        raise RecordNotFoundError(f"Server #{server_id} not found.")
    return Server.from_record(record)


def list_servers(store: StateRegistry, *, owner: str | None = None) -> list[Server]:
    """Return registered servers, optionally only those owned by *owner*."""
    records = store.list_records(
        SERVERS_COLLECTION,
        where=(lambda record: record.get("owner") == owner) if owner is not None else None,
    )
    return [Server.from_record(record) for record in records]


def add_credential(
    store: StateRegistry,
    server_id: int,
    *,
    user: str,
    credential_type: CredentialType,
    private_key: str,
    public_key: str | None = None,
) -> Credential:
    """Attach a credential to a server, replacing any of the same type."""
    load_private_key(private_key)
    credential = Credential.from_record(
        {"user": user, "type": credential_type.value, "private_key": private_key, "public_key": public_key}
    )
    with store.mutate(SERVERS_COLLECTION) as view:
        record = view.require(server_id)
        entries = [
            entry for entry in record.get("credentials") or [] if entry.get("type") != credential_type.value
        ]
        entries.append(
            {
                "user": credential.user,
                "type": credential.type.value,
                "private_key": credential.private_key,
                "public_key": credential.public_key,
            }
        )
        record["credentials"] = entries
    return credential


def read_key_file(path: Path) -> str:
    """Return the contents of a private key file."""
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Unable to read key file {path}: {exc}") from exc


__all__ = ["add_credential", "add_server", "get_server", "list_servers", "read_key_file"]
