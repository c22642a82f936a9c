"""Site operations: nginx virtual hosts and the server's default site."""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from ..errors import ConfigurationError
from ..milestones import MilestoneTable
from ..models import EntityKind, TaskStatus
from ..state import StateRegistry, utcnow
from ..steps import Command, Effect, EffectResult, Milestone, RemoteRunner, Step, heredoc, quote
from .base import BuildContext, Operation, delete_entity, mark_active, update_entity
from .git import clone_steps

_DOMAIN = re.compile(
    r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))*$"
)
SITES = EntityKind.SITE.collection
AVAILABLE_DIR = "/etc/nginx/sites-available"
ENABLED_DIR = "/etc/nginx/sites-enabled"


def validate_domain(domain: object) -> str:
    """Return *domain* stripped, raising :class:`ConfigurationError` when unusable."""
    value = str(domain).strip() if domain is not None else ""
    if not value:
        raise ConfigurationError("Domain is required for site installation.")
    if not _DOMAIN.match(value):
        raise ConfigurationError(f"Domain '{value}' is not a valid host name.")
    return value


def default_document_root(app_user: str, domain: str) -> str:
    """Return the document root used when a site does not configure one."""
    return f"/home/{app_user}/{domain}/public"


def php_socket(php_version: str) -> str:
    """Return the PHP-FPM socket path for *php_version*."""
    return f"/var/run/php/php{php_version}-fpm.sock"


def _site_settings(site: Mapping[str, Any], ctx: BuildContext) -> tuple[str, dict[str, Any]]:
    domain = validate_domain(site.get("domain"))
    configuration = dict(site.get("configuration") or {})
    configuration.setdefault("document_root", default_document_root(ctx.app_user, domain))
    if not configuration.get("php_version"):
        raise ConfigurationError(f"Site '{domain}' has no PHP version configured.")
    return domain, configuration


def _public_directory(ctx: BuildContext, domain: str, document_root: str) -> str:
    site_dir = f"{ctx.home}/{domain}"
    if document_root.startswith(site_dir):
        return document_root[len(site_dir) :].rstrip("/")
    return ""


SITE_INSTALL_MILESTONES = MilestoneTable(
    "site_install",
    [
        ("prepare_directories", "Preparing directories"),
        ("create_config", "Creating nginx configuration"),
        ("enable_site", "Enabling site"),
        ("test_config", "Testing nginx configuration"),
        ("reload_nginx", "Reloading nginx"),
        ("set_permissions", "Setting permissions"),
        ("complete", "Site installed"),
    ],
)


def build_site_install(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Provision the nginx virtual host (and optional git checkout) for a site."""
    domain, configuration = _site_settings(site, ctx)
    document_root = str(configuration["document_root"])
    site_dir = f"{ctx.home}/{domain}"
    owner = f"{ctx.app_user}:{ctx.app_user}"
    nginx_config = ctx.templates.render_to_string(
        "nginx/site.conf.j2",
        {
            "domain": domain,
            "document_root": document_root,
            "php_socket": php_socket(str(configuration["php_version"])),
            "ssl": bool(configuration.get("ssl")),
            "ssl_cert_path": configuration.get("ssl_cert_path"),
            "ssl_key_path": configuration.get("ssl_key_path"),
        },
    )
    git_steps = clone_steps(site, configuration, ctx, site_dir)

    steps: list[Step] = [Milestone("prepare_directories")]
    steps.extend(git_steps)
    steps.extend(
        [
            Command(f"mkdir -p {quote(document_root)}"),
            Command(f"mkdir -p {quote('/var/log/nginx/' + domain)}"),
            Milestone("create_config"),
            Command(heredoc(f"{AVAILABLE_DIR}/{domain}", nginx_config, delimiter="NGINX_CONFIG_EOF")),
            Milestone("enable_site"),
            Command(f"ln -sf {quote(AVAILABLE_DIR + '/' + domain)} {quote(ENABLED_DIR + '/' + domain)}"),
            Milestone("test_config"),
            Command("nginx -t"),
            Milestone("reload_nginx"),
            Command("nginx -s reload"),
            Milestone("set_permissions"),
            Command(f"chown -R {quote(owner)} {quote(site_dir)}"),
            Command(f"chmod -R 755 {quote(site_dir)}"),
        ]
    )
    if not git_steps:
        steps.append(Command(f"echo '<?php phpinfo();' > {quote(document_root + '/index.php')}"))
    steps.extend([Milestone("complete"), mark_active(ctx, SITES)])
    if git_steps:
        steps.append(_mark_git_installed(ctx))
    return steps


def _mark_git_installed(ctx: BuildContext) -> Effect:
    def apply(_runner: RemoteRunner) -> EffectResult:
        ctx.store.update_record(
            SITES,
            ctx.record_id,
            {"git_status": TaskStatus.ACTIVE.value, "git_installed_at": utcnow()},
        )
        return EffectResult.success()

    return Effect("mark_git_installed", apply)


SITE_REMOVE_MILESTONES = MilestoneTable(
    "site_remove",
    [
        ("disable_site", "Disabling site"),
        ("remove_config", "Removing nginx configuration"),
        ("reload_nginx", "Reloading nginx"),
        ("remove_files", "Removing site files"),
        ("complete", "Site removed"),
    ],
)


def build_site_remove(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Tear down a site's virtual host and files, then delete its record."""
    domain = validate_domain(site.get("domain"))
    return [
        Milestone("disable_site"),
        Command(f"rm -f {quote(ENABLED_DIR + '/' + domain)}"),
        Milestone("remove_config"),
        Command(f"rm -f {quote(AVAILABLE_DIR + '/' + domain)}"),
        Milestone("reload_nginx"),
        Command("nginx -t"),
        Command("nginx -s reload"),
        Milestone("remove_files"),
        Command(f"rm -rf {quote(ctx.home + '/' + domain)}"),
        Command(f"rm -rf {quote('/var/log/nginx/' + domain)}"),
        Milestone("complete"),
        delete_entity(ctx, SITES),
    ]


SITE_SET_DEFAULT_MILESTONES = MilestoneTable(
    "site_set_default",
    [
        ("switch_symlink", "Switching default symlink"),
        ("write_default_config", "Writing default nginx configuration"),
        ("reload_services", "Reloading PHP-FPM and nginx"),
        ("verify_symlink", "Verifying default symlink"),
        ("complete", "Default site updated"),
    ],
)


def build_site_set_default(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Point ``~/default`` at the site and serve it as nginx's catch-all."""
    domain, configuration = _site_settings(site, ctx)
    php_version = str(configuration["php_version"])
    link = f"{ctx.home}/default"
    # Relative target so the link survives home directory moves.
    source = domain
    default_config = ctx.templates.render_to_string(
        "nginx/default.conf.j2",
        {
            "app_user": ctx.app_user,
            "public_directory": _public_directory(ctx, domain, str(configuration["document_root"])),
            "php_version": php_version,
        },
    )

    def verify(runner: RemoteRunner) -> EffectResult:
        result = runner.run(f"readlink {quote(link)}", timeout=30)
        if not result.is_successful():
            return EffectResult.failure(f"Failed to read default symlink: {result.error_output.strip()}")
        target = result.output.strip()
        if target != source:
            return EffectResult.failure(f"Default symlink points to '{target}' instead of '{source}'.")
        return EffectResult.success(target)

    def mark_default(_runner: RemoteRunner) -> EffectResult:
        with ctx.store.mutate(SITES) as view:
            for record in view.records:
                if record.get("server_id") == ctx.server_id:
                    record["is_default"] = record.get("id") == ctx.record_id
        return EffectResult.success()

    return [
        Milestone("switch_symlink"),
        Command(f"ln -sfn {quote(source)} {quote(link)}"),
        Command(f"chown -h {quote(ctx.app_user + ':' + ctx.app_user)} {quote(link)}"),
        Milestone("write_default_config"),
        Command(heredoc(f"{AVAILABLE_DIR}/default", default_config, delimiter="NGINX_CONFIG_EOF")),
        Command(f"ln -sf {quote(AVAILABLE_DIR + '/default')} {quote(ENABLED_DIR + '/default')}"),
        Milestone("reload_services"),
        Command(f"service {quote('php' + php_version + '-fpm')} reload"),
        Command("systemctl reload nginx"),
        Milestone("verify_symlink"),
        Effect("verify_symlink", verify),
        Milestone("complete"),
        Effect("mark_default", mark_default),
    ]


SITE_UNSET_DEFAULT_MILESTONES = MilestoneTable(
    "site_unset_default",
    [
        ("remove_symlink", "Removing default symlink"),
        ("reload_services", "Reloading nginx"),
        ("complete", "Default site cleared"),
    ],
)


def build_site_unset_default(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Stop serving the site as the server's catch-all."""
    validate_domain(site.get("domain"))
    return [
        Milestone("remove_symlink"),
        Command(f"rm -f {quote(ctx.home + '/default')}"),
        Milestone("reload_services"),
        Command("systemctl reload nginx"),
        Milestone("complete"),
        update_entity(ctx, SITES, "clear_default", {"is_default": False}),
    ]


def restore_previous_default(store: StateRegistry, site: Mapping[str, Any], payload: Mapping[str, Any]) -> None:
    """Undo the optimistic default switch recorded when the job was enqueued."""
    store.update_record(SITES, int(site["id"]), {"is_default": False})
    previous = payload.get("previous_default_id")
    if previous is not None and store.get_record(SITES, int(previous)) is not None:
        store.update_record(SITES, int(previous), {"is_default": True})


def restore_default_flag(store: StateRegistry, site: Mapping[str, Any], _payload: Mapping[str, Any]) -> None:
    """Mark the site default again after a failed unset."""
    store.update_record(SITES, int(site["id"]), {"is_default": True})


SITE_INSTALL = Operation(
    name="site_install",
    kind=EntityKind.SITE,
    milestones=SITE_INSTALL_MILESTONES,
    build=build_site_install,
)

SITE_REMOVE = Operation(
    name="site_remove",
    kind=EntityKind.SITE,
    milestones=SITE_REMOVE_MILESTONES,
    build=build_site_remove,
    removal=True,
)

SITE_SET_DEFAULT = Operation(
    name="site_set_default",
    kind=EntityKind.SITE,
    milestones=SITE_SET_DEFAULT_MILESTONES,
    build=build_site_set_default,
    status_field="default_site_status",
    overlap_key="site:default",
    compensate=restore_previous_default,
)

SITE_UNSET_DEFAULT = Operation(
    name="site_unset_default",
    kind=EntityKind.SITE,
    milestones=SITE_UNSET_DEFAULT_MILESTONES,
    build=build_site_unset_default,
    status_field="default_site_status",
    removal=True,
    overlap_key="site:default",
    success_status=None,
    compensate=restore_default_flag,
)


__all__ = [
    "SITE_INSTALL",
    "SITE_INSTALL_MILESTONES",
    "SITE_REMOVE",
    "SITE_REMOVE_MILESTONES",
    "SITE_SET_DEFAULT",
    "SITE_SET_DEFAULT_MILESTONES",
    "SITE_UNSET_DEFAULT",
    "SITE_UNSET_DEFAULT_MILESTONES",
    "build_site_install",
    "build_site_remove",
    "build_site_set_default",
    "build_site_unset_default",
    "default_document_root",
    "php_socket",
    "restore_default_flag",
    "restore_previous_default",
    "validate_domain",
]
