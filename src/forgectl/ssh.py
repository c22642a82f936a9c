"""SSH execution over paramiko.

:class:`SshExecutor` runs exactly one command per call and never retries;
retrying is a whole-orchestration concern. Connection, authentication and
timeout problems come back as failed :class:`SshResult` values with
``exit_code == -1`` so callers handle them exactly like a non-zero exit.
The command timeout bounds the whole call, however much output arrives.
"""
from __future__ import annotations

import io
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import paramiko

from .errors import ConfigurationError
from .models import Credential, CredentialType, Server

logger = logging.getLogger(__name__)

CONNECTION_FAILED = -1
KEEPALIVE_INTERVAL = 15
POLL_INTERVAL = 0.1
RECV_CHUNK = 32768
_KEY_CLASSES: Sequence[type[paramiko.PKey]] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


@dataclass(frozen=True, slots=True)
class SshResult:
    """Exit status and captured output of one remote command."""

    exit_code: int
    output: str = ""
    error_output: str = ""
    command: str = ""

    def is_successful(self) -> bool:
        """Return True when the command exited with status zero."""
        return self.exit_code == 0


def load_private_key(material: str) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key text into a paramiko key."""
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(material))
        except paramiko.SSHException:
            continue
    raise ConfigurationError("Credential private key is not a supported Ed25519, ECDSA or RSA key.")


class SshExecutor:
    """Open a session per command and collect its result."""

    def __init__(
        self,
        *,
        connect_timeout: float = 60.0,
        read_timeout: float = 30.0,
        known_hosts: Path | None = None,
    ) -> None:
        """Store connection defaults."""
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.known_hosts = known_hosts

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
        """Run *command* on *host* as *credential*; ``timeout=None`` waits indefinitely."""
        target = f"{credential.user}@{host}:{port}"
        pkey = load_private_key(credential.private_key)
        client = self._create_client()
        try:
            self._configure_host_keys(client, strict_host_key_checking)
            try:
                client.connect(
                    hostname=host,
                    port=port,
                    username=credential.user,
                    pkey=pkey,
                    timeout=self.connect_timeout,
                    banner_timeout=self.read_timeout,
                    auth_timeout=self.read_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except (paramiko.SSHException, OSError) as exc:
                logger.warning("SSH connection to %s failed: %s", target, exc)
                return SshResult(
                    exit_code=CONNECTION_FAILED,
                    error_output=f"SSH connection to {target} failed: {exc}",
                    command=command,
                )
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
            logger.debug("SSH %s: running command", target)
            return self._run_command(client, command, timeout)
        finally:
            client.close()

    def _create_client(self) -> paramiko.SSHClient:
        return paramiko.SSHClient()

    def _configure_host_keys(self, client: paramiko.SSHClient, strict: bool) -> None:
        if not strict:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return
        client.load_system_host_keys()
        if self.known_hosts is not None and self.known_hosts.exists():
            client.load_host_keys(str(self.known_hosts))
        client.set_missing_host_key_policy(paramiko.RejectPolicy())

    def _run_command(
        self,
        client: paramiko.SSHClient,
        command: str,
        timeout: float | None,
    ) -> SshResult:
        deadline = None if timeout is None else time.monotonic() + timeout
        output = bytearray()
        error_output = bytearray()
        try:
            _stdin, stdout, _stderr = client.exec_command(command)
            channel = stdout.channel
            while True:
                received = False
                if channel.recv_ready():
                    output += channel.recv(RECV_CHUNK)
                    received = True
                if channel.recv_stderr_ready():
                    error_output += channel.recv_stderr(RECV_CHUNK)
                    received = True
                if not received and channel.exit_status_ready():
                    if not (channel.recv_ready() or channel.recv_stderr_ready()):
                        break
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    channel.close()
                    return SshResult(
                        exit_code=CONNECTION_FAILED,
                        output=output.decode("utf-8", errors="replace"),
                        error_output=(
                            f"SSH command timed out after {timeout} seconds. Check the server's "
                            "network connectivity and system resources."
                        ),
                        command=command,
                    )
                if not received:
                    time.sleep(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            return SshResult(
                exit_code=CONNECTION_FAILED,
                error_output=f"SSH session failed: {exc}",
                command=command,
            )
        return SshResult(
            exit_code=exit_code,
            output=output.decode("utf-8", errors="replace"),
            error_output=error_output.decode("utf-8", errors="replace"),
            command=command,
        )


class CredentialResolver:
    """Pick the single credential an orchestration authenticates with."""

    def resolve(self, server: Server, credential_type: CredentialType) -> Credential:
        """Return the *credential_type* credential of *server*.

        Raises :class:`ConfigurationError` when none or more than one exists.
        """
        matches = [item for item in server.credentials if item.type is credential_type]
        if not matches:
            raise ConfigurationError(
                f"No {credential_type.value} credential found for server #{server.id}. "
                "Ensure provisioning completed successfully."
            )
        if len(matches) > 1:
            raise ConfigurationError(
                f"Server #{server.id} has {len(matches)} {credential_type.value} credentials; "
                "exactly one is required."
            )
        return matches[0]


__all__ = [
    "CONNECTION_FAILED",
    "CredentialResolver",
    "SshExecutor",
    "SshResult",
    "load_private_key",
]
