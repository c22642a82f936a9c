"""Typer-powered command line for ``forgectl``.

Commands record pending work in the state registry and enqueue provisioning
jobs; ``forgectl worker run`` drains the queue and talks to servers over SSH.
Every command writes one structured record to the operations log.
"""
from __future__ import annotations

import getpass
import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import (
    AuthorizationError,
    ConfigurationError,
    ForgeError,
    OrchestrationError,
    PreconditionError,
)
from .exit_codes import ExitCode
from .inventory import add_credential, add_server, get_server, list_servers, read_key_file
from .jobs import create_job_context
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .models import CredentialType, EntityKind
from .progress import read_progress
from .provisioning import ProvisioningService
from .queue import JobQueue, Worker
from .retry import RetryService
from .ssh import SshExecutor
from .state import RecordNotFoundError, StateRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "--config",
    dir_okay=False,
    help="Override the path to forgectl's YAML config file.",
)
USER_OPTION = typer.Option(
    None,
    "--user",
    envvar="FORGECTL_USER",
    help="Acting user for ownership checks (defaults to the login name).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

_REQUEST_ERRORS = (ForgeError, StateRegistryError, LockTimeoutError)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Server fleet provisioning CLI.

        Requests are validated and queued immediately; run `forgectl worker run`
        to execute queued jobs against your servers.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    executor: SshExecutor
    queue: JobQueue
    user: str


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    user: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    registry = StateRegistry(config.registry_dir, lock_timeout=config.lock_timeout)
    registry.ensure_root()
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        executor=SshExecutor(
            connect_timeout=config.ssh.connect_timeout,
            read_timeout=config.ssh.read_timeout,
            known_hosts=config.ssh.known_hosts,
        ),
        queue=JobQueue(registry, config.queue),
        user=user or getpass.getuser(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the forgectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    user: str | None = USER_OPTION,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase console log verbosity (repeat for debug output).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout, user)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"forgectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, AuthorizationError):
        return ExitCode.FORBIDDEN
    if isinstance(exc, (ConfigurationError, PreconditionError, RecordNotFoundError)):
        return ExitCode.VALIDATION
    if isinstance(exc, OrchestrationError):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


def _request_error(op: OperationScope, exc: BaseException) -> NoReturn:
    """Translate a provisioning error into its exit code."""
    _command_error(op, str(exc), rc=_exit_code_for(exc))


def _provisioning(runtime: RuntimeContext) -> ProvisioningService:
    return ProvisioningService(runtime.registry, runtime.queue, runtime.config, runtime.logger)


def _retry_service(runtime: RuntimeContext) -> RetryService:
    return RetryService(runtime.registry, runtime.queue, runtime.logger)


def _report_queued(op: OperationScope, record: Mapping[str, Any], action: str, label: str) -> None:
    console.print(
        f"[green]Queued {action} for {label} #{record['id']} (job #{record.get('job_id')}).[/green]"
    )
    op.success(f"Queued {action}.", changed=1, context={"record_id": record["id"], "job_id": record.get("job_id")})


def _render_record(record: Mapping[str, Any], *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=dict(record))
        return
    table = Table(show_header=False)
    for key, value in record.items():
        if value in (None, "", [], {}) or key in {"events", "root_password"}:
            continue
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key.replace("_", " ").title(), rendered)
    console.print(table)


def _redact(record: Mapping[str, Any]) -> dict[str, Any]:
    cleaned = dict(record)
    configuration = dict(cleaned.get("configuration") or {})
    if "root_password" in configuration:
        configuration["root_password"] = "********"
        cleaned["configuration"] = configuration
    if "credentials" in cleaned:
        cleaned["credentials"] = [
            {"user": entry.get("user"), "type": entry.get("type")} for entry in cleaned["credentials"] or []
        ]
    return cleaned


server_app = typer.Typer(help="Register and inspect servers.")
credential_app = typer.Typer(help="Manage server SSH credentials.")
site_app = typer.Typer(help="Provision nginx sites.")
database_app = typer.Typer(help="Provision database servers.")
php_app = typer.Typer(help="Provision PHP-FPM versions.")
firewall_app = typer.Typer(help="Manage UFW firewall rules.")
jobs_app = typer.Typer(help="Inspect the job queue.")
worker_app = typer.Typer(help="Run queued provisioning jobs.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(server_app, name="server")
app.add_typer(credential_app, name="credential")
app.add_typer(site_app, name="site")
app.add_typer(database_app, name="database")
app.add_typer(php_app, name="php")
app.add_typer(firewall_app, name="firewall")
app.add_typer(jobs_app, name="jobs")
app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")


# ----------------------------------------------------------------------
# Servers and credentials
# ----------------------------------------------------------------------
@server_app.command("add")
def server_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unique server name."),
    host: str = typer.Option(..., "--host", help="Hostname or IP address."),
    port: int = typer.Option(22, "--port", help="SSH port."),
    owner: str | None = typer.Option(None, "--owner", help="Owning user (defaults to the acting user)."),
) -> None:
    """Register a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server add",
        args={"name": name, "host": host, "port": port},
        target={"kind": "server", "name": name},
    ) as op:
        try:
            server = add_server(runtime.registry, name=name, host=host, ssh_port=port, owner=owner or runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        console.print(f"[green]Registered server '{server.name}' as #{server.id}.[/green]")
        op.success("Server registered.", changed=1, context={"server_id": server.id})


@server_app.command("list")
def server_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List servers owned by the acting user."""
    runtime = _get_runtime(ctx)
    servers = list_servers(runtime.registry, owner=runtime.user)

    with runtime.logger.operation(
        "server list",
        args={"json": json_output},
        target={"kind": "server", "scope": "registry"},
    ) as op:
        entries = [
            {
                "id": server.id,
                "name": server.name,
                "host": server.host,
                "ssh_port": server.ssh_port,
                "credentials": [credential.type.value for credential in server.credentials],
            }
            for server in servers
        ]
        if json_output:
            console.print_json(data={"servers": entries})
            op.success("Reported servers as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Host")
        table.add_column("Port")
        table.add_column("Credentials")
        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["id"]),
                str(entry["name"]),
                str(entry["host"]),
                str(entry["ssh_port"]),
                ", ".join(entry["credentials"]) or "-",
            )
        console.print(table)
        op.success("Reported servers.", changed=0)


@server_app.command("show")
def server_show(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one server with its provisioned entities."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server show",
        args={"json": json_output},
        target={"kind": "server", "server_id": server_id},
    ) as op:
        try:
            server = get_server(runtime.registry, server_id)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        if server.owner != runtime.user:
            _command_error(op, f"User '{runtime.user}' may not view server #{server_id}.", rc=ExitCode.FORBIDDEN)
        data: dict[str, Any] = {
            "id": server.id,
            "name": server.name,
            "host": server.host,
            "ssh_port": server.ssh_port,
            "owner": server.owner,
            "credentials": [f"{item.type.value}:{item.user}" for item in server.credentials],
        }
        for kind in EntityKind:
            records = runtime.registry.list_records(kind.collection, where=lambda r: r.get("server_id") == server_id)
            data[kind.collection] = [
                {"id": record["id"], "status": record.get("status"), "label": _entity_label(record)}
                for record in records
            ]
        _render_record(data, json_output=json_output)
        op.success("Displayed server details.", changed=0)


def _entity_label(record: Mapping[str, Any]) -> str:
    configuration = record.get("configuration") or {}
    for value in (
        record.get("domain"),
        record.get("name"),
        configuration.get("version"),
        configuration.get("engine"),
    ):
        if value:
            return str(value)
    return f"#{record.get('id')}"


@credential_app.command("add")
def credential_add(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    user: str = typer.Option(..., "--ssh-user", help="Remote account name."),
    credential_type: CredentialType = typer.Option(CredentialType.ROOT, "--type", help="Credential role."),
    key_file: Path = typer.Option(..., "--key", exists=True, dir_okay=False, help="Private key file."),
    public_key_file: Path | None = typer.Option(None, "--public-key", dir_okay=False, help="Public key file."),
) -> None:
    """Attach an SSH credential to a server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "credential add",
        args={"user": user, "type": credential_type.value},
        target={"kind": "server", "server_id": server_id},
    ) as op:
        try:
            server = get_server(runtime.registry, server_id)
            if server.owner != runtime.user:
                raise AuthorizationError(f"User '{runtime.user}' may not manage server #{server_id}.")
            credential = add_credential(
                runtime.registry,
                server_id,
                user=user,
                credential_type=credential_type,
                private_key=read_key_file(key_file),
                public_key=read_key_file(public_key_file).strip() if public_key_file else None,
            )
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        console.print(
            f"[green]Stored {credential.type.value} credential '{credential.user}' for server #{server_id}.[/green]"
        )
        op.success("Credential stored.", changed=1)


# ----------------------------------------------------------------------
# Sites
# ----------------------------------------------------------------------
@site_app.command("install")
def site_install(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    domain: str = typer.Argument(..., help="Site domain."),
    document_root: str | None = typer.Option(None, "--document-root", help="Override the document root."),
    php_version: str | None = typer.Option(None, "--php", help="PHP version serving the site."),
    ssl: bool = typer.Option(False, "--ssl", help="Serve over HTTPS (requires --cert and --key)."),
    ssl_cert_path: str | None = typer.Option(None, "--cert", help="Certificate path on the server."),
    ssl_key_path: str | None = typer.Option(None, "--key", help="Private key path on the server."),
    repository: str | None = typer.Option(None, "--repository", help="Git repository to clone."),
    branch: str | None = typer.Option(None, "--branch", help="Branch to check out."),
) -> None:
    """Queue installation of a new site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site install",
        args={"domain": domain, "ssl": ssl, "repository": repository},
        target={"kind": "site", "server_id": server_id},
    ) as op:
        try:
            record = _provisioning(runtime).install_site(
                server_id,
                user=runtime.user,
                domain=domain,
                document_root=document_root,
                php_version=php_version,
                ssl=ssl,
                ssl_cert_path=ssl_cert_path,
                ssl_key_path=ssl_key_path,
                repository=repository,
                branch=branch,
            )
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "installation", "site")


@site_app.command("remove")
def site_remove(ctx: typer.Context, site_id: int = typer.Argument(..., help="Site id.")) -> None:
    """Queue removal of a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("site remove", target={"kind": "site", "record_id": site_id}) as op:
        try:
            record = _provisioning(runtime).remove_site(site_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "removal", "site")


@site_app.command("set-default")
def site_set_default(ctx: typer.Context, site_id: int = typer.Argument(..., help="Site id.")) -> None:
    """Make a site the server's default (catch-all) site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("site set-default", target={"kind": "site", "record_id": site_id}) as op:
        try:
            record = _provisioning(runtime).set_default_site(site_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "default switch", "site")


@site_app.command("unset-default")
def site_unset_default(ctx: typer.Context, site_id: int = typer.Argument(..., help="Site id.")) -> None:
    """Stop serving a site as the server's default site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("site unset-default", target={"kind": "site", "record_id": site_id}) as op:
        try:
            record = _provisioning(runtime).unset_default_site(site_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "default removal", "site")


@site_app.command("deploy-key")
def site_deploy_key(ctx: typer.Context, site_id: int = typer.Argument(..., help="Site id.")) -> None:
    """Queue generation of a dedicated deploy key for a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("site deploy-key", target={"kind": "site", "record_id": site_id}) as op:
        try:
            record = _provisioning(runtime).generate_deploy_key(site_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "deploy key generation", "site")


@site_app.command("git")
def site_git(
    ctx: typer.Context,
    site_id: int = typer.Argument(..., help="Site id."),
    repository: str = typer.Argument(..., help="owner/name, GitHub URL or SSH URL."),
    branch: str | None = typer.Option(None, "--branch", help="Branch to check out (default main)."),
) -> None:
    """Queue checkout of a git repository into a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site git",
        args={"repository": repository, "branch": branch},
        target={"kind": "site", "record_id": site_id},
    ) as op:
        try:
            record = _provisioning(runtime).install_git_repository(
                site_id, user=runtime.user, repository=repository, branch=branch
            )
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "repository checkout", "site")


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    site_id: int = typer.Argument(..., help="Site id."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a site record."""
    _show_entity(ctx, EntityKind.SITE, site_id, json_output)


@site_app.command("retry")
def site_retry(
    ctx: typer.Context,
    site_id: int = typer.Argument(..., help="Site id."),
    server_id: int | None = typer.Option(None, "--server", help="Expected owning server."),
) -> None:
    """Retry the last failed operation on a site."""
    _retry_entity(ctx, EntityKind.SITE, site_id, server_id)


# ----------------------------------------------------------------------
# Databases
# ----------------------------------------------------------------------
@database_app.command("install")
def database_install(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    engine: str = typer.Option("mysql", "--engine", help="Database engine: mysql, mariadb or postgresql."),
    engine_version: str | None = typer.Option(
        None, "--engine-version", help="MariaDB or PostgreSQL release (defaults to 11.4 and 16)."
    ),
) -> None:
    """Queue installation of a database server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "database install",
        args={"engine": engine, "version": engine_version},
        target={"kind": "database", "server_id": server_id},
    ) as op:
        try:
            record = _provisioning(runtime).install_database(
                server_id, user=runtime.user, engine=engine, version=engine_version
            )
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "installation", "database")


@database_app.command("remove")
def database_remove(ctx: typer.Context, database_id: int = typer.Argument(..., help="Database id.")) -> None:
    """Queue removal of a database server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("database remove", target={"kind": "database", "record_id": database_id}) as op:
        try:
            record = _provisioning(runtime).remove_database(database_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "removal", "database")


@database_app.command("show")
def database_show(
    ctx: typer.Context,
    database_id: int = typer.Argument(..., help="Database id."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a database record."""
    _show_entity(ctx, EntityKind.DATABASE, database_id, json_output)


@database_app.command("retry")
def database_retry(
    ctx: typer.Context,
    database_id: int = typer.Argument(..., help="Database id."),
    server_id: int | None = typer.Option(None, "--server", help="Expected owning server."),
) -> None:
    """Retry the last failed operation on a database server."""
    _retry_entity(ctx, EntityKind.DATABASE, database_id, server_id)


# ----------------------------------------------------------------------
# PHP
# ----------------------------------------------------------------------
@php_app.command("install")
def php_install(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    version: str = typer.Argument(..., help="PHP version, e.g. 8.3."),
) -> None:
    """Queue installation of a PHP version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "php install",
        args={"version": version},
        target={"kind": "php", "server_id": server_id},
    ) as op:
        try:
            record = _provisioning(runtime).install_php(server_id, user=runtime.user, version=version)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "installation", "PHP installation")


@php_app.command("remove")
def php_remove(ctx: typer.Context, php_id: int = typer.Argument(..., help="PHP installation id.")) -> None:
    """Queue removal of a PHP version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("php remove", target={"kind": "php", "record_id": php_id}) as op:
        try:
            record = _provisioning(runtime).remove_php(php_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "removal", "PHP installation")


@php_app.command("retry")
def php_retry(
    ctx: typer.Context,
    php_id: int = typer.Argument(..., help="PHP installation id."),
    server_id: int | None = typer.Option(None, "--server", help="Expected owning server."),
) -> None:
    """Retry the last failed operation on a PHP installation."""
    _retry_entity(ctx, EntityKind.PHP, php_id, server_id)


# ----------------------------------------------------------------------
# Firewall
# ----------------------------------------------------------------------
@firewall_app.command("add")
def firewall_add(
    ctx: typer.Context,
    server_id: int = typer.Argument(..., help="Server id."),
    port: str = typer.Option(..., "--port", help="Port or range (3000:3005)."),
    action: str = typer.Option("allow", "--action", help="allow or deny."),
    protocol: str = typer.Option("tcp", "--protocol", help="tcp, udp or any."),
    source: str | None = typer.Option(None, "--from", help="Source IP or CIDR."),
    destination: str | None = typer.Option(None, "--to", help="Destination IP or CIDR."),
    name: str | None = typer.Option(None, "--name", help="Rule name, also used as the ufw comment."),
) -> None:
    """Queue a new firewall rule."""
    runtime = _get_runtime(ctx)
    rule = {
        "port": port,
        "action": action,
        "protocol": protocol,
        "source": source,
        "destination": destination,
        "name": name,
    }
    with runtime.logger.operation(
        "firewall add",
        args=rule,
        target={"kind": "firewall_rule", "server_id": server_id},
    ) as op:
        try:
            record = _provisioning(runtime).add_firewall_rule(server_id, user=runtime.user, rule=rule)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "installation", "firewall rule")


@firewall_app.command("remove")
def firewall_remove(ctx: typer.Context, rule_id: int = typer.Argument(..., help="Firewall rule id.")) -> None:
    """Queue removal of a firewall rule."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("firewall remove", target={"kind": "firewall_rule", "record_id": rule_id}) as op:
        try:
            record = _provisioning(runtime).remove_firewall_rule(rule_id, user=runtime.user)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        _report_queued(op, record, "removal", "firewall rule")


@firewall_app.command("retry")
def firewall_retry(
    ctx: typer.Context,
    rule_id: int = typer.Argument(..., help="Firewall rule id."),
    server_id: int | None = typer.Option(None, "--server", help="Expected owning server."),
) -> None:
    """Retry the last failed operation on a firewall rule."""
    _retry_entity(ctx, EntityKind.FIREWALL_RULE, rule_id, server_id)


# ----------------------------------------------------------------------
# Shared entity commands
# ----------------------------------------------------------------------
def _show_entity(ctx: typer.Context, kind: EntityKind, record_id: int, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"{kind.value} show",
        args={"json": json_output},
        target={"kind": kind.value, "record_id": record_id},
    ) as op:
        record = runtime.registry.get_record(kind.collection, record_id)
        if record is None:
            _command_error(op, f"{kind.value} #{record_id} not found.", rc=ExitCode.VALIDATION)
        server = runtime.registry.get_record("servers", int(record.get("server_id", -1)))
        if server is None or server.get("owner") != runtime.user:
            _command_error(op, f"User '{runtime.user}' may not view {kind.value} #{record_id}.", rc=ExitCode.FORBIDDEN)
        _render_record(_redact(record), json_output=json_output)
        op.success(f"Displayed {kind.value} details.", changed=0)


def _retry_entity(ctx: typer.Context, kind: EntityKind, record_id: int, server_id: int | None) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"{kind.value} retry",
        args={"server_id": server_id},
        target={"kind": kind.value, "record_id": record_id},
    ) as op:
        try:
            outcome = _retry_service(runtime).retry(kind, record_id, user=runtime.user, server_id=server_id)
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        console.print(
            f"[green]Retrying {outcome.operation} for {kind.value} #{record_id} (job #{outcome.job_id}).[/green]"
        )
        op.success("Retry queued.", changed=1, context={"job_id": outcome.job_id})


@app.command()
def progress(
    ctx: typer.Context,
    kind: EntityKind = typer.Argument(..., help="Entity kind."),
    record_id: int = typer.Argument(..., help="Entity id."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the latest milestone reached by an entity."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "progress",
        args={"json": json_output},
        target={"kind": kind.value, "record_id": record_id},
    ) as op:
        record = runtime.registry.get_record(kind.collection, record_id)
        if record is None:
            _command_error(op, f"{kind.value} #{record_id} not found.", rc=ExitCode.VALIDATION)
        current = read_progress(record)
        payload = {
            "status": record.get("status"),
            "error_log": record.get("error_log"),
            "progress": current,
            "events": record.get("events") or [],
        }
        if json_output:
            console.print_json(data=payload)
            op.success("Reported progress as JSON.", changed=0)
            return

        if current is None:
            console.print(f"{kind.value} #{record_id}: {record.get('status')} (no milestones yet)")
        else:
            console.print(
                f"{kind.value} #{record_id}: {record.get('status')} - {current['label']} "
                f"({current['current_step']}/{current['total_steps']})"
            )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Step", style="bold")
        table.add_column("Milestone")
        table.add_column("Status")
        table.add_column("At")
        for event in payload["events"]:
            table.add_row(
                f"{event.get('current_step')}/{event.get('total_steps')}",
                str(event.get("label", "")),
                str(event.get("status", "")),
                str(event.get("at", "")),
            )
        if payload["events"]:
            console.print(table)
        if record.get("error_log"):
            console.print(f"[red]{record['error_log']}[/red]")
        op.success("Reported progress.", changed=0)


# ----------------------------------------------------------------------
# Queue
# ----------------------------------------------------------------------
@jobs_app.command("list")
def jobs_list(
    ctx: typer.Context,
    failed: bool = typer.Option(False, "--failed", help="List buried jobs instead of queued ones."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List queued (or failed) jobs."""
    runtime = _get_runtime(ctx)
    entries = runtime.queue.failed() if failed else runtime.queue.pending()
    with runtime.logger.operation(
        "jobs list",
        args={"failed": failed, "json": json_output},
        target={"kind": "queue"},
    ) as op:
        if json_output:
            console.print_json(data={"jobs": entries})
            op.success("Reported jobs as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Job")
        table.add_column("Server")
        table.add_column("Record")
        table.add_column("Attempts")
        table.add_column("Error" if failed else "Reserved")
        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        for entry in entries:
            detail = entry.get("error") if failed else ("yes" if entry.get("reserved_at") else "no")
            table.add_row(
                str(entry.get("id")),
                str(entry.get("job")),
                str(entry.get("server_id")),
                str(entry.get("record_id")),
                str(entry.get("attempts", 0)),
                str(detail or ""),
            )
        console.print(table)
        op.success("Reported jobs.", changed=0)


@worker_app.command("run")
def worker_run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process a single job and exit."),
    max_jobs: int | None = typer.Option(None, "--max-jobs", help="Stop after this many jobs."),
    wait: bool = typer.Option(False, "--wait", help="Keep polling when the queue is empty."),
    idle_sleep: float = typer.Option(1.0, "--sleep", help="Seconds to sleep between polls."),
) -> None:
    """Drain the job queue."""
    runtime = _get_runtime(ctx)
    worker = Worker(create_job_context(runtime), runtime.queue)
    with runtime.logger.operation(
        "worker run",
        args={"once": once, "max_jobs": max_jobs, "wait": wait},
        target={"kind": "queue"},
    ) as op:
        try:
            if once:
                outcome = worker.run_once()
                counts = {outcome.value: 1} if outcome else {}
            else:
                totals = worker.run(max_jobs=max_jobs, stop_when_empty=not wait, idle_sleep=idle_sleep)
                counts = {outcome.value: count for outcome, count in totals.items()}
        except _REQUEST_ERRORS as exc:
            _request_error(op, exc)
        if not counts:
            console.print("No jobs available.")
        for name, count in sorted(counts.items()):
            style = "red" if name == "failed" else "green"
            console.print(f"[{style}]{name}[/{style}]: {count}")
        op.success("Worker finished.", changed=sum(counts.values()), context=counts)
        if counts.get("failed"):
            raise typer.Exit(code=ExitCode.PROVIDER)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
