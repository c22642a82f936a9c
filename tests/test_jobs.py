"""End-to-end tests for provisioning jobs against a fake executor."""
from __future__ import annotations

import json
import logging

import pytest

from forgectl.errors import CommandFailedError, ConfigurationError
from forgectl.jobs import JobContext, ProvisioningJob
from forgectl.models import Server
from forgectl.packages.git import GIT_REPOSITORY
from forgectl.packages.php import PHP_INSTALL
from forgectl.packages.sites import SITE_INSTALL, SITE_REMOVE, SITE_SET_DEFAULT
from forgectl.progress import read_progress
from forgectl.provisioning import ProvisioningService
from forgectl.queue import JobQueue, WorkOutcome, Worker
from forgectl.state import StateRegistry

OWNER = "alice"


def _site(store: StateRegistry, server: Server, domain: str, **extra: object) -> dict[str, object]:
    return store.insert_record(
        "sites",
        {
            "server_id": server.id,
            "domain": domain,
            "status": "active",
            "is_default": False,
            "configuration": {"document_root": f"/home/forge/{domain}/public", "php_version": "8.3"},
            **extra,
        },
    )


def test_install_marks_record_active(
    service: ProvisioningService, job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """A clean run leaves the record active with complete progress."""
    record = service.install_php(server.id, user=OWNER, version="8.3")
    job = ProvisioningJob(PHP_INSTALL, server_id=server.id, record_id=record["id"])

    result = job.handle(job_context)

    stored = store.get_record("php", record["id"])
    assert stored is not None
    assert stored["status"] == "active"
    assert stored["error_log"] is None
    assert stored["provisioned_at"]
    assert read_progress(stored) == {
        "milestone": "complete",
        "label": "PHP installed",
        "current_step": 7,
        "total_steps": 7,
    }
    assert all(event["status"] == "success" for event in stored["events"])
    assert result.milestones == PHP_INSTALL.milestones.keys()
    assert any("php8.3-fpm" in command for command in executor.commands)
    assert set(executor.timeouts) == {job_context.config.ssh.command_timeout}


def test_failure_persists_error_text(
    service: ProvisioningService, job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """The failing command's stderr is stored verbatim on the record."""
    executor.fail_on("--no-install-recommends", stderr="E: Unable to locate package php9.9-fpm\n", exit_code=100)
    record = service.install_php(server.id, user=OWNER, version="8.3")
    job = ProvisioningJob(PHP_INSTALL, server_id=server.id, record_id=record["id"])

    with pytest.raises(CommandFailedError) as excinfo:
        job.handle(job_context)

    stored = store.get_record("php", record["id"])
    assert stored is not None
    assert stored["status"] == "failed"
    assert stored["error_log"] == str(excinfo.value)
    assert "E: Unable to locate package php9.9-fpm" in stored["error_log"]
    assert not any("systemctl enable" in command for command in executor.commands)
    assert stored["events"][-1]["status"] == "failed"

    log = [json.loads(line) for line in job_context.logger.path.read_text(encoding="utf-8").splitlines()]
    job_entry = next(entry for entry in log if entry["op"] == "job php_install")
    assert job_entry["result"]["rc"] == 4
    assert job_entry["result"]["context"]["hint"].startswith("Package installation failed")


def test_removal_deletes_record(job_context: JobContext, store: StateRegistry, executor, server: Server) -> None:
    """Removers drop the record after tearing the site down."""
    site = _site(store, server, "example.com")
    job = ProvisioningJob(SITE_REMOVE, server_id=server.id, record_id=int(site["id"]))

    job.handle(job_context)

    assert store.get_record("sites", int(site["id"])) is None
    assert "rm -rf /home/forge/example.com" in executor.commands


def test_site_install_uses_template(job_context: JobContext, store: StateRegistry, executor, server: Server) -> None:
    """The nginx config is written through a heredoc rendered from the template."""
    site = _site(store, server, "example.com", status="pending")
    job = ProvisioningJob(SITE_INSTALL, server_id=server.id, record_id=int(site["id"]))

    job.handle(job_context)

    heredoc = next(command for command in executor.commands if "NGINX_CONFIG_EOF" in command)
    assert "server_name example.com www.example.com;" in heredoc
    assert store.get_record("sites", int(site["id"]))["status"] == "active"  # type: ignore[index]


def test_set_default_failure_restores_previous_default(
    service: ProvisioningService, job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """A failed switch puts the old default back and keeps the site active."""
    old = _site(store, server, "old.example", is_default=True)
    new = _site(store, server, "new.example")
    queued = service.set_default_site(int(new["id"]), user=OWNER)
    assert store.get_record("sites", int(old["id"]))["is_default"] is False  # type: ignore[index]
    executor.fail_on("systemctl reload nginx", stderr="Job for nginx.service failed")

    job = ProvisioningJob(
        SITE_SET_DEFAULT,
        server_id=server.id,
        record_id=int(new["id"]),
        payload=queued["last_payload"],
    )
    with pytest.raises(CommandFailedError):
        job.handle(job_context)

    new_record = store.get_record("sites", int(new["id"]))
    old_record = store.get_record("sites", int(old["id"]))
    assert new_record is not None and old_record is not None
    assert new_record["is_default"] is False
    assert new_record["default_site_status"] == "failed"
    assert new_record["status"] == "active"
    assert old_record["is_default"] is True


def test_set_default_success(
    service: ProvisioningService, job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """A verified switch leaves exactly one default."""
    old = _site(store, server, "old.example", is_default=True)
    new = _site(store, server, "new.example")
    queued = service.set_default_site(int(new["id"]), user=OWNER)
    executor.respond("readlink", "new.example\n")

    ProvisioningJob(
        SITE_SET_DEFAULT, server_id=server.id, record_id=int(new["id"]), payload=queued["last_payload"]
    ).handle(job_context)

    defaults = store.list_records("sites", where=lambda r: bool(r.get("is_default")))
    assert [item["id"] for item in defaults] == [new["id"]]
    assert store.get_record("sites", int(new["id"]))["default_site_status"] == "active"  # type: ignore[index]
    assert store.get_record("sites", int(old["id"]))["is_default"] is False  # type: ignore[index]


def test_git_checkout_tracks_its_own_status(
    job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """The repository job drives ``git_status`` and leaves ``status`` alone."""
    site = _site(
        store,
        server,
        "example.com",
        configuration={
            "document_root": "/home/forge/example.com/public",
            "php_version": "8.3",
            "git_repository": {"repository": "acme/shop", "branch": "main"},
        },
    )

    ProvisioningJob(GIT_REPOSITORY, server_id=server.id, record_id=int(site["id"])).handle(job_context)

    stored = store.get_record("sites", int(site["id"]))
    assert stored is not None
    assert stored["git_status"] == "active"
    assert stored["status"] == "active"
    assert stored["configuration"]["git_repository"]["repository"] == "acme/shop"


def test_missing_record_is_a_configuration_error(job_context: JobContext, server: Server) -> None:
    """A job whose record vanished fails without touching the server."""
    job = ProvisioningJob(PHP_INSTALL, server_id=server.id, record_id=99)

    with pytest.raises(ConfigurationError, match="no longer exists"):
        job.handle(job_context)


def test_missing_credential_fails_record(
    job_context: JobContext, store: StateRegistry, executor
) -> None:
    """A server without the needed credential fails before any command."""
    bare = store.insert_record("servers", {"name": "bare", "host": "h", "ssh_port": 22, "owner": OWNER, "credentials": []})
    record = store.insert_record("php", {"server_id": bare["id"], "status": "pending", "configuration": {"version": "8.3"}})

    with pytest.raises(ConfigurationError, match="No root credential"):
        ProvisioningJob(PHP_INSTALL, server_id=int(bare["id"]), record_id=int(record["id"])).handle(job_context)

    assert executor.commands == []
    stored = store.get_record("php", int(record["id"]))
    assert stored is not None
    assert stored["status"] == "failed"
    assert "No root credential" in stored["error_log"]


def test_server_mismatch_is_rejected(job_context: JobContext, store: StateRegistry, server: Server) -> None:
    """A job cannot act on another server's record."""
    record = store.insert_record("php", {"server_id": server.id, "configuration": {"version": "8.3"}})

    with pytest.raises(ConfigurationError, match="does not belong"):
        ProvisioningJob(PHP_INSTALL, server_id=server.id + 1, record_id=int(record["id"])).handle(job_context)


def test_queue_round_trip() -> None:
    """Jobs serialise to plain queue entries and back."""
    job = ProvisioningJob(SITE_SET_DEFAULT, server_id=1, record_id=2, payload={"previous_default_id": 3})

    entry = {"id": 7, **job.to_queue()}
    rebuilt = ProvisioningJob.from_queue(entry)

    assert rebuilt.operation is SITE_SET_DEFAULT
    assert (rebuilt.server_id, rebuilt.record_id, rebuilt.payload) == (1, 2, {"previous_default_id": 3})
    assert rebuilt.tries == 1
    assert GIT_REPOSITORY.delay_before(1) == 30
    assert GIT_REPOSITORY.delay_before(5) == 120


@pytest.mark.parametrize("needle", ["debconf-set-selections", "CLIENT_CNF_EOF", "mysql --defaults-extra-file"])
def test_failed_database_install_never_exposes_password(
    needle: str,
    service: ProvisioningService,
    job_context: JobContext,
    queue: JobQueue,
    store: StateRegistry,
    executor,
    server: Server,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Errors, logs and the failed-job list mask the generated root password."""
    caplog.set_level(logging.DEBUG, logger="forgectl")
    record = service.install_database(server.id, user=OWNER)
    password = record["configuration"]["root_password"]
    executor.fail_on(needle, stderr=f"error near '{password}'")

    assert Worker(job_context, queue).run_once() is WorkOutcome.FAILED

    stored = store.get_record("databases", record["id"])
    assert stored is not None
    assert stored["status"] == "failed"
    assert "error near '********'" in stored["error_log"]
    assert password not in stored["error_log"]
    assert password not in queue.failed()[0]["error"]
    assert password not in job_context.logger.path.read_text(encoding="utf-8")
    assert password not in caplog.text
    assert any(password in command for command in executor.commands)


def test_site_install_with_repository_marks_git_installed(
    job_context: JobContext, store: StateRegistry, server: Server
) -> None:
    """Cloning during site install records the checkout like the repository job."""
    site = _site(
        store,
        server,
        "example.com",
        status="pending",
        configuration={
            "document_root": "/home/forge/example.com/public",
            "php_version": "8.3",
            "git_repository": {"repository": "acme/shop", "branch": "main"},
        },
    )

    ProvisioningJob(SITE_INSTALL, server_id=server.id, record_id=int(site["id"])).handle(job_context)

    stored = store.get_record("sites", int(site["id"]))
    assert stored is not None
    assert stored["status"] == "active"
    assert stored["git_status"] == "active"
    assert stored["git_installed_at"]


def test_site_install_without_repository_leaves_git_status(
    job_context: JobContext, store: StateRegistry, server: Server
) -> None:
    """No clone, no git bookkeeping."""
    site = _site(store, server, "example.com", status="pending")

    ProvisioningJob(SITE_INSTALL, server_id=server.id, record_id=int(site["id"])).handle(job_context)

    stored = store.get_record("sites", int(site["id"]))
    assert stored is not None
    assert "git_status" not in stored
    assert "git_installed_at" not in stored


def test_attempt_before_final_keeps_record_pending(
    job_context: JobContext, store: StateRegistry, executor, server: Server
) -> None:
    """A failure the queue will retry does not mark the record failed."""
    site = _site(
        store,
        server,
        "example.com",
        configuration={"php_version": "8.3", "git_repository": {"repository": "acme/shop"}},
    )
    executor.fail_on("git clone", stderr="Could not resolve host: github.com")
    job = ProvisioningJob(GIT_REPOSITORY, server_id=server.id, record_id=int(site["id"]))

    with pytest.raises(CommandFailedError):
        job.handle(job_context, final_attempt=False)

    stored = store.get_record("sites", int(site["id"]))
    assert stored is not None
    assert stored["git_status"] == "pending"
    assert "Could not resolve host" in stored["error_log"]
