"""Per-site deploy key generation."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..milestones import MilestoneTable
from ..models import CredentialType, EntityKind
from ..steps import Command, Effect, EffectResult, Milestone, RemoteRunner, Step, quote
from .base import BuildContext, Operation
from .git import deploy_key_path
from .sites import validate_domain

READ_TIMEOUT = 30

SITE_DEPLOY_KEY_MILESTONES = MilestoneTable(
    "site_deploy_key",
    [
        ("generate_key", "Generating deploy key"),
        ("set_permissions", "Setting key permissions"),
        ("read_public_key", "Reading public key"),
        ("complete", "Deploy key ready"),
    ],
)


def deploy_key_title(domain: str) -> str:
    """Return the comment/title attached to a site's deploy key."""
    return f"forgectl Site - {domain}"


def build_site_deploy_key(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Generate an ed25519 key pair for the site and record its public half."""
    domain = validate_domain(site.get("domain"))
    key_path = deploy_key_path(ctx, int(site["id"]))
    title = deploy_key_title(domain)

    def read_public_key(runner: RemoteRunner) -> EffectResult:
        result = runner.run(f"cat {quote(key_path + '.pub')}", timeout=READ_TIMEOUT)
        if not result.is_successful():
            return EffectResult.failure(f"Failed to read public key: {result.error_output}")
        public_key = result.output.strip()
        if not public_key:
            return EffectResult.failure("Generated public key is empty")
        record = ctx.store.get_record(EntityKind.SITE.collection, ctx.record_id)
        if record is None:
            return EffectResult.failure(f"Site #{ctx.record_id} disappeared during key generation.")
        configuration = dict(record.get("configuration") or {})
        configuration["has_dedicated_deploy_key"] = True
        ctx.store.update_record(
            EntityKind.SITE.collection,
            ctx.record_id,
            {
                "configuration": configuration,
                "has_dedicated_deploy_key": True,
                "dedicated_deploy_key_title": title,
                "deploy_key_public": public_key,
            },
        )
        return EffectResult.success(public_key)

    return [
        Milestone("generate_key"),
        Command(f"mkdir -p {quote(ctx.home + '/.ssh')}"),
        Command(f"rm -f {quote(key_path)} {quote(key_path + '.pub')}"),
        Command(f'ssh-keygen -t ed25519 -f {quote(key_path)} -N "" -C {quote(title)}'),
        Milestone("set_permissions"),
        Command(f"chmod 600 {quote(key_path)}"),
        Command(f"chmod 644 {quote(key_path + '.pub')}"),
        Milestone("read_public_key"),
        Effect("read_public_key", read_public_key),
        Milestone("complete"),
    ]


SITE_DEPLOY_KEY = Operation(
    name="site_deploy_key",
    kind=EntityKind.SITE,
    milestones=SITE_DEPLOY_KEY_MILESTONES,
    build=build_site_deploy_key,
    credential_type=CredentialType.APP,
    status_field="deploy_key_status",
)


__all__ = [
    "SITE_DEPLOY_KEY",
    "SITE_DEPLOY_KEY_MILESTONES",
    "build_site_deploy_key",
    "deploy_key_title",
]
