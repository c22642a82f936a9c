"""Operator-facing provisioning requests.

Each request validates its input, checks that the acting user owns the
server, creates or flags the record as ``pending`` and enqueues the matching
job. Nothing here talks to a server; the worker does that later.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from packaging.version import InvalidVersion, Version

from .config import AppConfig
from .errors import AuthorizationError, ConfigurationError, PreconditionError
from .jobs import ProvisioningJob
from .logging import StructuredLogger
from .models import SERVERS_COLLECTION, EntityKind, TaskStatus
from .packages import Operation
from .packages.databases import (
    DatabaseEngine,
    generate_root_password,
    get_engine,
    install_operation,
    remove_operation,
)
from .packages.deploy_keys import SITE_DEPLOY_KEY
from .packages.firewall import FIREWALL_RULE_INSTALL, FIREWALL_RULE_REMOVE, FirewallRule
from .packages.git import GIT_REPOSITORY, normalize_branch, normalize_repository
from .packages.php import PHP_INSTALL, PHP_REMOVE
from .packages.sites import (
    SITE_INSTALL,
    SITE_REMOVE,
    SITE_SET_DEFAULT,
    SITE_UNSET_DEFAULT,
    default_document_root,
    validate_domain,
)
from .queue import JobQueue
from .state import RecordNotFoundError, StateRegistry

logger = logging.getLogger(__name__)

_BUSY = {TaskStatus.PENDING.value, TaskStatus.INSTALLING.value, TaskStatus.REMOVING.value}


def _php_version(value: object) -> str:
    text = str(value).strip()
    try:
        parsed = Version(text)
    except InvalidVersion as exc:
        raise ConfigurationError(f"PHP version '{text}' is not valid.") from exc
    if len(parsed.release) != 2 or parsed.pre or parsed.dev or parsed.post:
        raise ConfigurationError(f"PHP version must look like MAJOR.MINOR, got '{text}'.")
    return f"{parsed.major}.{parsed.minor}"


def _database_version(engine: DatabaseEngine, value: object) -> str | None:
    text = str(value).strip() if value is not None else ""
    if not text:
        return engine.default_version
    if engine.default_version is None:
        raise ConfigurationError(f"{engine.label} installs the distribution release; a version cannot be chosen.")
    try:
        parsed = Version(text)
    except InvalidVersion as exc:
        raise ConfigurationError(f"{engine.label} version '{text}' is not valid.") from exc
    if len(parsed.release) > 2 or parsed.pre or parsed.dev or parsed.post or parsed.local:
        raise ConfigurationError(f"{engine.label} version must look like MAJOR or MAJOR.MINOR, got '{text}'.")
    return ".".join(str(part) for part in parsed.release)


class ProvisioningService:
    """Validate requests, create pending records and enqueue their jobs."""

    def __init__(
        self,
        store: StateRegistry,
        queue: JobQueue,
        config: AppConfig,
        audit: StructuredLogger,
    ) -> None:
        """Store collaborators."""
        self.store = store
        self.queue = queue
        self.config = config
        self.audit = audit

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------
    def install_site(
        self,
        server_id: int,
        *,
        user: str,
        domain: str,
        document_root: str | None = None,
        php_version: str | None = None,
        ssl: bool = False,
        ssl_cert_path: str | None = None,
        ssl_key_path: str | None = None,
        repository: str | None = None,
        branch: str | None = None,
    ) -> dict[str, Any]:
        """Create a pending site and enqueue its installation."""
        self._require_owner(server_id, user)
        domain = validate_domain(domain)
        sites = EntityKind.SITE.collection
        if self.store.list_records(sites, where=lambda r: r.get("server_id") == server_id and r.get("domain") == domain):
            raise ConfigurationError(f"Site '{domain}' already exists on server #{server_id}.")
        if ssl and not (ssl_cert_path and ssl_key_path):
            raise ConfigurationError("SSL sites need both a certificate path and a key path.")
        configuration: dict[str, Any] = {
            "document_root": document_root or default_document_root(self.config.app_user, domain),
            "php_version": _php_version(php_version) if php_version else self._default_php(server_id),
            "ssl": bool(ssl),
            "ssl_cert_path": ssl_cert_path,
            "ssl_key_path": ssl_key_path,
        }
        if repository:
            if normalize_repository(repository) is None:
                logger.warning("Site %s: repository %r is not recognised and will not be cloned", domain, repository)
            configuration["git_repository"] = {
                "provider": "github",
                "repository": repository.strip(),
                "branch": normalize_branch(branch),
            }
        record = self.store.insert_record(
            sites,
            {
                "server_id": server_id,
                "domain": domain,
                "status": TaskStatus.PENDING.value,
                "error_log": None,
                "is_default": False,
                "configuration": configuration,
            },
        )
        return self._submit(SITE_INSTALL, record, user=user)

    def remove_site(self, site_id: int, *, user: str) -> dict[str, Any]:
        """Enqueue removal of a site."""
        record = self._owned_record(EntityKind.SITE, site_id, user)
        self._require_idle(record, SITE_REMOVE)
        return self._submit(SITE_REMOVE, record, user=user)

    def set_default_site(self, site_id: int, *, user: str) -> dict[str, Any]:
        """Make a site the server's catch-all, remembering the previous default."""
        record = self._owned_record(EntityKind.SITE, site_id, user)
        if record.get("status") != TaskStatus.ACTIVE.value:
            raise PreconditionError("Only active sites can be made the default site.")
        if record.get("is_default"):
            raise PreconditionError(f"Site '{record.get('domain')}' is already the default site.")
        self._require_idle(record, SITE_SET_DEFAULT)
        sites = EntityKind.SITE.collection
        server_id = int(record["server_id"])
        previous = self.store.list_records(
            sites, where=lambda r: r.get("server_id") == server_id and bool(r.get("is_default"))
        )
        previous_id = int(previous[0]["id"]) if previous else None
        for item in previous:
            self.store.update_record(sites, int(item["id"]), {"is_default": False})
        record = self.store.update_record(sites, site_id, {"is_default": True})
        return self._submit(SITE_SET_DEFAULT, record, user=user, payload={"previous_default_id": previous_id})

    def unset_default_site(self, site_id: int, *, user: str) -> dict[str, Any]:
        """Stop serving a site as the catch-all."""
        record = self._owned_record(EntityKind.SITE, site_id, user)
        if not record.get("is_default"):
            raise PreconditionError(f"Site '{record.get('domain')}' is not the default site.")
        self._require_idle(record, SITE_UNSET_DEFAULT)
        record = self.store.update_record(EntityKind.SITE.collection, site_id, {"is_default": False})
        return self._submit(SITE_UNSET_DEFAULT, record, user=user)

    def generate_deploy_key(self, site_id: int, *, user: str) -> dict[str, Any]:
        """Enqueue generation of a dedicated deploy key for a site."""
        record = self._owned_record(EntityKind.SITE, site_id, user)
        self._require_idle(record, SITE_DEPLOY_KEY)
        return self._submit(SITE_DEPLOY_KEY, record, user=user)

    def install_git_repository(
        self,
        site_id: int,
        *,
        user: str,
        repository: str,
        branch: str | None = None,
        provider: str = "github",
    ) -> dict[str, Any]:
        """Store the repository settings on a site and enqueue the checkout."""
        record = self._owned_record(EntityKind.SITE, site_id, user)
        if normalize_repository(repository) is None:
            raise ConfigurationError("Repository must be an SSH URL, a GitHub URL or follow the owner/name format.")
        self._require_idle(record, GIT_REPOSITORY)
        configuration = dict(record.get("configuration") or {})
        configuration["git_repository"] = {
            "provider": provider,
            "repository": repository.strip(),
            "branch": normalize_branch(branch),
        }
        record = self.store.update_record(EntityKind.SITE.collection, site_id, {"configuration": configuration})
        return self._submit(GIT_REPOSITORY, record, user=user)

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------
    def install_database(
        self,
        server_id: int,
        *,
        user: str,
        engine: str = "mysql",
        version: str | None = None,
    ) -> dict[str, Any]:
        """Create a pending database server record and enqueue its install.

        The port defaults to the engine's standard port; MariaDB and
        PostgreSQL fall back to their default release when *version* is empty.
        """
        self._require_owner(server_id, user)
        selected = get_engine(engine)
        resolved_version = _database_version(selected, version)
        databases = EntityKind.DATABASE.collection
        if self.store.list_records(databases, where=lambda r: r.get("server_id") == server_id):
            raise ConfigurationError(f"Server #{server_id} already has a database server.")
        record = self.store.insert_record(
            databases,
            {
                "server_id": server_id,
                "status": TaskStatus.PENDING.value,
                "error_log": None,
                "configuration": {
                    "engine": selected.name,
                    "port": selected.default_port,
                    "version": resolved_version,
                    "root_password": generate_root_password(),
                },
            },
        )
        return self._submit(install_operation(selected.name), record, user=user)

    def remove_database(self, database_id: int, *, user: str) -> dict[str, Any]:
        """Enqueue removal of a database server."""
        record = self._owned_record(EntityKind.DATABASE, database_id, user)
        operation = remove_operation((record.get("configuration") or {}).get("engine") or "mysql")
        self._require_idle(record, operation)
        return self._submit(operation, record, user=user)

    # ------------------------------------------------------------------
    # PHP
    # ------------------------------------------------------------------
    def install_php(self, server_id: int, *, user: str, version: str) -> dict[str, Any]:
        """Create a pending PHP installation and enqueue it."""
        self._require_owner(server_id, user)
        version = _php_version(version)
        collection = EntityKind.PHP.collection
        existing = self.store.list_records(
            collection,
            where=lambda r: r.get("server_id") == server_id and (r.get("configuration") or {}).get("version") == version,
        )
        if existing:
            raise ConfigurationError(f"PHP {version} is already installed on server #{server_id}.")
        record = self.store.insert_record(
            collection,
            {
                "server_id": server_id,
                "status": TaskStatus.PENDING.value,
                "error_log": None,
                "configuration": {"version": version},
            },
        )
        return self._submit(PHP_INSTALL, record, user=user)

    def remove_php(self, php_id: int, *, user: str) -> dict[str, Any]:
        """Enqueue removal of a PHP version no site depends on."""
        record = self._owned_record(EntityKind.PHP, php_id, user)
        version = (record.get("configuration") or {}).get("version")
        server_id = int(record["server_id"])
        users = self.store.list_records(
            EntityKind.SITE.collection,
            where=lambda r: r.get("server_id") == server_id
            and (r.get("configuration") or {}).get("php_version") == version,
        )
        if users:
            domains = ", ".join(str(item.get("domain")) for item in users)
            raise PreconditionError(f"PHP {version} is still used by: {domains}.")
        self._require_idle(record, PHP_REMOVE)
        return self._submit(PHP_REMOVE, record, user=user)

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------
    def add_firewall_rule(self, server_id: int, *, user: str, rule: Mapping[str, Any]) -> dict[str, Any]:
        """Create a pending firewall rule and enqueue it."""
        self._require_owner(server_id, user)
        parsed = FirewallRule.from_mapping(rule)
        record = self.store.insert_record(
            EntityKind.FIREWALL_RULE.collection,
            {
                "server_id": server_id,
                "name": str(rule.get("name") or parsed.comment or f"port {parsed.port}"),
                "status": TaskStatus.PENDING.value,
                "error_log": None,
                "configuration": parsed.to_dict(),
            },
        )
        return self._submit(FIREWALL_RULE_INSTALL, record, user=user)

    def remove_firewall_rule(self, rule_id: int, *, user: str) -> dict[str, Any]:
        """Enqueue removal of a firewall rule."""
        record = self._owned_record(EntityKind.FIREWALL_RULE, rule_id, user)
        self._require_idle(record, FIREWALL_RULE_REMOVE)
        return self._submit(FIREWALL_RULE_REMOVE, record, user=user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_owner(self, server_id: int, user: str) -> Mapping[str, Any]:
        server = self.store.get_record(SERVERS_COLLECTION, server_id)
        if server is None:
            raise RecordNotFoundError(f"Server #{server_id} not found.")
        if str(server.get("owner", "")) != user:
            raise AuthorizationError(f"User '{user}' may not manage server #{server_id}.")
        return server

    def _owned_record(self, kind: EntityKind, record_id: int, user: str) -> dict[str, Any]:
        record = self.store.get_record(kind.collection, record_id)
        if record is None:
            raise RecordNotFoundError(f"{kind.value} #{record_id} not found.")
        self._require_owner(int(record["server_id"]), user)
        return record

    def _require_idle(self, record: Mapping[str, Any], operation: Operation) -> None:
        if record.get("status") in _BUSY or record.get(operation.status_field) in _BUSY:
            raise PreconditionError(
                f"{operation.kind.value} #{record.get('id')} has an operation in progress."
            )

    def _default_php(self, server_id: int) -> str:
        installed = self.store.list_records(
            EntityKind.PHP.collection,
            where=lambda r: r.get("server_id") == server_id and r.get("status") == TaskStatus.ACTIVE.value,
        )
        if installed:
            newest = max(installed, key=lambda r: int(r["id"]))
            return str((newest.get("configuration") or {}).get("version") or self.config.default_php_version)
        return self.config.default_php_version

    def _submit(
        self,
        operation: Operation,
        record: Mapping[str, Any],
        *,
        user: str,
        payload: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        kind = operation.kind
        record_id = int(record["id"])
        server_id = int(record["server_id"])
        target = {"server_id": server_id, "record_id": record_id, "kind": kind.value}
        with self.audit.operation(f"{kind.value} {operation.name}", args={"user": user}, target=target) as op:
            stored = self.store.update_record(
                kind.collection,
                record_id,
                {
                    operation.status_field: TaskStatus.PENDING.value,
                    "error_log": None,
                    "last_operation": operation.name,
                    "last_payload": dict(payload or {}),
                },
            )
            job_id = self.queue.enqueue(
                ProvisioningJob(operation, server_id=server_id, record_id=record_id, payload=payload)
            )
            op.success(f"Queued {operation.name} for {kind.value} #{record_id} as job #{job_id}.", changed=1)
        stored["job_id"] = job_id
        return stored


__all__ = ["ProvisioningService"]
