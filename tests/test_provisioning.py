"""Tests for operator-facing provisioning requests."""
from __future__ import annotations

import logging

import pytest

from forgectl.errors import AuthorizationError, ConfigurationError, PreconditionError
from forgectl.models import Server
from forgectl.provisioning import ProvisioningService
from forgectl.queue import JobQueue
from forgectl.state import RecordNotFoundError, StateRegistry

OWNER = "alice"


def test_install_site_creates_pending_record(service: ProvisioningService, queue: JobQueue, server: Server) -> None:
    """A site request stores its configuration and queues the install."""
    record = service.install_site(server.id, user=OWNER, domain=" example.com ", php_version="8.2")

    assert record["domain"] == "example.com"
    assert record["status"] == "pending"
    assert record["last_operation"] == "site_install"
    assert record["configuration"]["document_root"] == "/home/forge/example.com/public"
    assert record["configuration"]["php_version"] == "8.2"
    (entry,) = queue.pending()
    assert entry["id"] == record["job_id"]
    assert (entry["job"], entry["server_id"], entry["record_id"]) == ("site_install", server.id, record["id"])


def test_install_site_defaults_to_newest_active_php(
    service: ProvisioningService, store: StateRegistry, server: Server
) -> None:
    """Without a version the newest installed PHP is used."""
    store.insert_record("php", {"server_id": server.id, "status": "active", "configuration": {"version": "8.1"}})
    store.insert_record("php", {"server_id": server.id, "status": "active", "configuration": {"version": "8.4"}})
    store.insert_record("php", {"server_id": server.id, "status": "failed", "configuration": {"version": "8.5"}})

    record = service.install_site(server.id, user=OWNER, domain="example.com")

    assert record["configuration"]["php_version"] == "8.4"


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"domain": ""}, "Domain is required"),
        ({"domain": "not a domain"}, "not a valid host name"),
        ({"domain": "example.com", "php_version": "eight"}, "is not valid"),
        ({"domain": "example.com", "php_version": "8.3.1"}, "MAJOR.MINOR"),
        ({"domain": "example.com", "ssl": True, "ssl_cert_path": "/etc/ssl/cert.pem"}, "certificate path and a key"),
    ],
)
def test_install_site_validation(
    service: ProvisioningService, queue: JobQueue, server: Server, kwargs: dict[str, object], message: str
) -> None:
    """Bad requests are refused before anything is queued."""
    with pytest.raises(ConfigurationError, match=message):
        service.install_site(server.id, user=OWNER, **kwargs)  # type: ignore[arg-type]
    assert queue.pending() == []


def test_duplicate_site(service: ProvisioningService, server: Server) -> None:
    """A domain exists once per server."""
    service.install_site(server.id, user=OWNER, domain="example.com")

    with pytest.raises(ConfigurationError, match="already exists"):
        service.install_site(server.id, user=OWNER, domain="example.com")


def test_unrecognised_repository_is_kept_with_warning(
    service: ProvisioningService, server: Server, caplog: pytest.LogCaptureFixture
) -> None:
    """Site installs accept odd repository strings but log that no clone will happen."""
    with caplog.at_level(logging.WARNING, logger="forgectl.provisioning"):
        record = service.install_site(
            server.id, user=OWNER, domain="example.com", repository="not a repo", branch=" feature/x "
        )

    assert record["configuration"]["git_repository"]["repository"] == "not a repo"
    assert "will not be cloned" in caplog.text


def test_git_repository_rejects_unrecognised_url(
    service: ProvisioningService, store: StateRegistry, server: Server
) -> None:
    """The explicit repository request refuses URLs it cannot clone."""
    site = store.insert_record("sites", {"server_id": server.id, "domain": "example.com", "status": "active"})

    with pytest.raises(ConfigurationError, match="owner/name"):
        service.install_git_repository(int(site["id"]), user=OWNER, repository="ftp://example.com/repo")

    record = service.install_git_repository(int(site["id"]), user=OWNER, repository="acme/shop")
    assert record["git_status"] == "pending"
    assert record["status"] == "active"
    assert record["configuration"]["git_repository"]["repository"] == "acme/shop"


def test_ownership_is_enforced(service: ProvisioningService, store: StateRegistry, server: Server) -> None:
    """Users cannot act on servers they do not own."""
    site = store.insert_record("sites", {"server_id": server.id, "domain": "example.com", "status": "active"})

    with pytest.raises(AuthorizationError):
        service.install_php(server.id, user="mallory", version="8.3")
    with pytest.raises(AuthorizationError):
        service.remove_site(int(site["id"]), user="mallory")
    with pytest.raises(RecordNotFoundError):
        service.install_php(server.id + 10, user=OWNER, version="8.3")


def test_busy_record_is_refused(service: ProvisioningService, server: Server) -> None:
    """A record with an operation in flight cannot start another."""
    record = service.install_site(server.id, user=OWNER, domain="example.com")

    with pytest.raises(PreconditionError, match="operation in progress"):
        service.remove_site(record["id"], user=OWNER)


def test_set_default_preconditions_and_payload(
    service: ProvisioningService, store: StateRegistry, queue: JobQueue, server: Server
) -> None:
    """The previous default is cleared and remembered for rollback."""
    old = store.insert_record(
        "sites", {"server_id": server.id, "domain": "old.example", "status": "active", "is_default": True}
    )
    new = store.insert_record("sites", {"server_id": server.id, "domain": "new.example", "status": "active"})
    pending = store.insert_record("sites", {"server_id": server.id, "domain": "wip.example", "status": "pending"})

    with pytest.raises(PreconditionError, match="Only active sites"):
        service.set_default_site(int(pending["id"]), user=OWNER)
    with pytest.raises(PreconditionError, match="already the default"):
        service.set_default_site(int(old["id"]), user=OWNER)

    record = service.set_default_site(int(new["id"]), user=OWNER)

    assert record["is_default"] is True
    assert record["default_site_status"] == "pending"
    assert record["last_payload"] == {"previous_default_id": old["id"]}
    assert store.get_record("sites", int(old["id"]))["is_default"] is False  # type: ignore[index]
    assert queue.pending()[0]["payload"] == {"previous_default_id": old["id"]}


def test_unset_default(service: ProvisioningService, store: StateRegistry, server: Server) -> None:
    """Only the current default can be unset."""
    site = store.insert_record(
        "sites", {"server_id": server.id, "domain": "example.com", "status": "active", "is_default": True}
    )

    record = service.unset_default_site(int(site["id"]), user=OWNER)

    assert record["is_default"] is False
    assert record["last_operation"] == "site_unset_default"
    with pytest.raises(PreconditionError, match="is not the default"):
        service.unset_default_site(int(site["id"]), user=OWNER)


def test_database_rules(service: ProvisioningService, server: Server) -> None:
    """One database server per host, with a generated root password."""
    with pytest.raises(ConfigurationError, match="engine must be one of"):
        service.install_database(server.id, user=OWNER, engine="oracle")

    record = service.install_database(server.id, user=OWNER, engine=" MySQL ")

    assert record["configuration"]["engine"] == "mysql"
    assert len(record["configuration"]["root_password"]) >= 16
    with pytest.raises(ConfigurationError, match="already has a database"):
        service.install_database(server.id, user=OWNER)


@pytest.mark.parametrize(
    ("engine", "version", "port", "expected_version", "operation"),
    [
        ("mysql", None, 3306, None, "mysql_install"),
        ("mariadb", None, 3306, "11.4", "mariadb_install"),
        ("mariadb", "10.11", 3306, "10.11", "mariadb_install"),
        ("postgresql", None, 5432, "16", "postgresql_install"),
        ("PostgreSQL", "15", 5432, "15", "postgresql_install"),
    ],
)
def test_database_engines(
    service: ProvisioningService,
    queue: JobQueue,
    server: Server,
    engine: str,
    version: str | None,
    port: int,
    expected_version: str | None,
    operation: str,
) -> None:
    """Each engine gets its own port, default release and install operation."""
    record = service.install_database(server.id, user=OWNER, engine=engine, version=version)

    assert record["configuration"]["port"] == port
    assert record["configuration"]["version"] == expected_version
    assert record["last_operation"] == operation
    assert [entry["job"] for entry in queue.pending()] == [operation]


@pytest.mark.parametrize(
    ("engine", "version", "message"),
    [
        ("mysql", "8.0", "cannot be chosen"),
        ("postgresql", "sixteen", "is not valid"),
        ("mariadb", "11.4.2", "MAJOR or MAJOR.MINOR"),
        ("mariadb", "11.4rc1", "MAJOR or MAJOR.MINOR"),
    ],
)
def test_database_version_validation(
    service: ProvisioningService, store: StateRegistry, server: Server, engine: str, version: str, message: str
) -> None:
    """Bad releases are refused before a record exists."""
    with pytest.raises(ConfigurationError, match=message):
        service.install_database(server.id, user=OWNER, engine=engine, version=version)

    assert store.list_records("databases") == []


def test_database_removal_follows_engine(
    service: ProvisioningService, store: StateRegistry, server: Server
) -> None:
    """Removal runs the remover matching the stored engine."""
    record = service.install_database(server.id, user=OWNER, engine="postgresql")
    store.update_record("databases", record["id"], {"status": "active"})

    removed = service.remove_database(record["id"], user=OWNER)

    assert removed["last_operation"] == "postgresql_remove"


def test_php_versions(service: ProvisioningService, store: StateRegistry, server: Server) -> None:
    """Versions are normalised, unique per server and protected while in use."""
    record = service.install_php(server.id, user=OWNER, version=" 8.3 ")
    assert record["configuration"]["version"] == "8.3"
    with pytest.raises(ConfigurationError, match="already installed"):
        service.install_php(server.id, user=OWNER, version="8.3")

    store.update_record("php", record["id"], {"status": "active"})
    store.insert_record(
        "sites",
        {"server_id": server.id, "domain": "example.com", "status": "active", "configuration": {"php_version": "8.3"}},
    )
    with pytest.raises(PreconditionError, match="still used by: example.com"):
        service.remove_php(record["id"], user=OWNER)


def test_firewall_rule(service: ProvisioningService, queue: JobQueue, server: Server) -> None:
    """Rules are validated and stored in normalised form."""
    record = service.add_firewall_rule(
        server.id, user=OWNER, rule={"port": "3000:3005", "action": "DENY", "name": "dev servers"}
    )

    assert record["name"] == "dev servers"
    assert record["configuration"]["port"] == "3000:3005"
    assert record["configuration"]["action"] == "deny"
    with pytest.raises(ConfigurationError, match="reversed"):
        service.add_firewall_rule(server.id, user=OWNER, rule={"port": "9:1"})
    assert [entry["job"] for entry in queue.pending()] == ["firewall_rule_install"]
