"""Shared fixtures for the forgectl test suite."""

from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from pathlib import Path

import paramiko
import pytest

from forgectl.config import AppConfig, load_config
from forgectl.inventory import add_credential, add_server
from forgectl.jobs import JobContext
from forgectl.locking import LockManager
from forgectl.logging import StructuredLogger
from forgectl.models import Credential, CredentialType, Server
from forgectl.provisioning import ProvisioningService
from forgectl.queue import JobQueue
from forgectl.ssh import SshResult
from forgectl.state import StateRegistry
from forgectl.templates import TemplateEngine

OWNER = "alice"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeExecutor:
    """Record commands and answer them from canned responses.

    ``failures`` and ``outputs`` map a substring to the result returned for
    the first command containing it; everything else succeeds silently.
    """

    commands: list[str] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    failures: dict[str, tuple[int, str]] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)

    def fail_on(self, needle: str, *, stderr: str = "", exit_code: int = 1) -> None:
        self.failures[needle] = (exit_code, stderr)

    def respond(self, needle: str, output: str) -> None:
        self.outputs[needle] = output

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
        self.commands.append(command)
        self.timeouts.append(timeout)
        for needle, (exit_code, stderr) in self.failures.items():
            if needle in command:
                return SshResult(exit_code=exit_code, error_output=stderr, command=command)
        for needle, output in self.outputs.items():
            if needle in command:
                return SshResult(exit_code=0, output=output, command=command)
        return SshResult(exit_code=0, command=command)


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    """Return an RSA private key in PEM form."""
    key = paramiko.RSAKey.generate(2048)
    buffer = io.StringIO()
    key.write_private_key(buffer)
    return buffer.getvalue()


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in the test's temporary directory."""
    return load_config(
        config_file=tmp_path / "config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 2.0,
        },
    )


@pytest.fixture()
def store(app_config: AppConfig) -> StateRegistry:
    registry = StateRegistry(app_config.registry_dir, lock_timeout=app_config.lock_timeout)
    registry.ensure_root()
    return registry


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue(store: StateRegistry, app_config: AppConfig, clock: FakeClock) -> JobQueue:
    return JobQueue(store, app_config.queue, clock=clock)


@pytest.fixture()
def audit(app_config: AppConfig) -> StructuredLogger:
    return StructuredLogger(app_config.logs_dir)


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def job_context(
    app_config: AppConfig,
    store: StateRegistry,
    executor: FakeExecutor,
    audit: StructuredLogger,
) -> JobContext:
    return JobContext(
        config=app_config,
        store=store,
        locks=LockManager(app_config.runtime_dir, default_timeout=1.0),
        templates=TemplateEngine.with_overrides(app_config.templates_dir),
        executor=executor,
        logger=audit,
    )


@pytest.fixture()
def server(store: StateRegistry, private_key_pem: str) -> Server:
    """A server owned by ``alice`` with root and app credentials."""
    created = add_server(store, name="web-1", host="203.0.113.10", owner=OWNER)
    for credential_type, user in ((CredentialType.ROOT, "root"), (CredentialType.APP, "forge")):
        add_credential(
            store,
            created.id,
            user=user,
            credential_type=credential_type,
            private_key=private_key_pem,
        )
    return created


@pytest.fixture()
def service(
    store: StateRegistry,
    queue: JobQueue,
    app_config: AppConfig,
    audit: StructuredLogger,
) -> ProvisioningService:
    return ProvisioningService(store, queue, app_config, audit)
