"""Git repository helpers and the repository install operation."""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from ..errors import ConfigurationError
from ..milestones import MilestoneTable
from ..models import CredentialType, EntityKind
from ..steps import Command, EffectResult, Effect, Milestone, RemoteRunner, Step, heredoc, quote
from .base import BuildContext, Operation

logger = logging.getLogger(__name__)

_OWNER_REPO = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_GITHUB_HTTPS = re.compile(r"^https://github\.com/(?P<path>[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+?)(?:\.git)?/?$")
_BRANCH = re.compile(r"^[A-Za-z0-9._/-]{1,255}$")
DEFAULT_BRANCH = "main"


def normalize_repository(repository: str) -> str | None:
    """Return the SSH clone URL for *repository*, or ``None`` when unrecognised."""
    value = repository.strip()
    if value.startswith(("git@", "ssh://")):
        return value
    match = _GITHUB_HTTPS.match(value)
    if match:
        return f"git@github.com:{match.group('path')}.git"
    if _OWNER_REPO.match(value):
        return f"git@github.com:{value}.git"
    return None


def host_alias(site_id: int) -> str:
    """Return the SSH config host alias used by a site's dedicated key."""
    return f"github.com-site-{site_id}"


def alias_repository_url(url: str, site_id: int) -> str:
    """Route a GitHub SSH URL through the site's host alias."""
    alias = host_alias(site_id)
    if url.startswith("git@github.com:"):
        return f"git@{alias}:" + url[len("git@github.com:") :]
    if url.startswith("ssh://git@github.com/"):
        return f"ssh://git@{alias}/" + url[len("ssh://git@github.com/") :]
    return url


def normalize_branch(branch: object) -> str:
    """Return a validated branch name, defaulting to ``main``."""
    value = str(branch).strip() if branch is not None else ""
    if not value:
        return DEFAULT_BRANCH
    if not _BRANCH.match(value):
        raise ConfigurationError(
            "Branch may only contain letters, numbers, periods, hyphens, underscores, or slashes."
        )
    return value


def deploy_key_path(ctx: BuildContext, site_id: int) -> str:
    """Return the private key path of a site's dedicated deploy key."""
    return f"{ctx.home}/.ssh/site_{site_id}_ed25519"


def git_ssh_command(ctx: BuildContext, *, dedicated_key: bool = False) -> str:
    """Return the ``GIT_SSH_COMMAND`` prefix for git commands.

    Sites with a dedicated key rely on their SSH config alias instead, so the
    prefix is empty for them.
    """
    if dedicated_key:
        return ""
    ssh = (
        f"ssh -i {ctx.home}/.ssh/id_rsa -o StrictHostKeyChecking=accept-new "
        f"-o IdentitiesOnly=yes -o UserKnownHostsFile={ctx.home}/.ssh/known_hosts"
    )
    return f"GIT_SSH_COMMAND={quote(ssh)} "


def ssh_config_commands(ctx: BuildContext, site_id: int) -> list[Step]:
    """Return commands appending the site's host alias block exactly once."""
    config_path = f"{ctx.home}/.ssh/config"
    alias = host_alias(site_id)
    block = ctx.templates.render_to_string(
        "ssh/deploy_key_host.j2",
        {
            "host_alias": alias,
            "identity_file": deploy_key_path(ctx, site_id),
            "known_hosts": f"{ctx.home}/.ssh/known_hosts",
        },
    )
    append = heredoc(config_path, block, delimiter="SSH_CONFIG_EOF", append=True)
    return [
        Command(f"mkdir -p {quote(ctx.home + '/.ssh')}"),
        Command(f"touch {quote(config_path)}"),
        Command(f"chmod 600 {quote(config_path)}"),
        Command(
            f"if ! grep -qxF {quote('Host ' + alias)} {quote(config_path)}; then\n{append}\nfi"
        ),
    ]


def clone_steps(
    site: Mapping[str, Any],
    configuration: Mapping[str, Any],
    ctx: BuildContext,
    destination: str,
) -> list[Step]:
    """Return the clone commands for a site's configured repository.

    An unrecognised repository yields no steps; callers carry on without git.
    """
    git = configuration.get("git_repository")
    if not isinstance(git, Mapping) or not git.get("repository"):
        return []
    url = normalize_repository(str(git["repository"]))
    if url is None:
        logger.warning(
            "Site #%s: unrecognised repository %r; skipping clone", site.get("id"), git["repository"]
        )
        return []
    branch = normalize_branch(git.get("branch"))

    steps: list[Step] = []
    site_id = int(site["id"])
    dedicated = bool(configuration.get("has_dedicated_deploy_key"))
    if dedicated:
        steps.extend(ssh_config_commands(ctx, site_id))
        url = alias_repository_url(url, site_id)
    owner = f"{ctx.app_user}:{ctx.app_user}"
    steps.extend(
        [
            Command(f"rm -rf {quote(destination)}"),
            Command(
                f"{git_ssh_command(ctx, dedicated_key=dedicated)}git clone -b {quote(branch)} {quote(url)} {quote(destination)}"
            ),
            Command(f"sudo chown -R {quote(owner)} {quote(destination)}"),
            Command(f"sudo chmod -R 775 {quote(destination)}"),
        ]
    )
    return steps


GIT_REPOSITORY_MILESTONES = MilestoneTable(
    "git_repository",
    [
        ("ensure_repository_directory", "Preparing repository directory"),
        ("clone_or_fetch_repository", "Cloning repository"),
        ("checkout_target_branch", "Checking out branch"),
        ("sync_worktree", "Syncing working tree"),
        ("complete", "Repository installed"),
    ],
)


def build_git_repository(site: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Clone (or refresh) the configured repository into the site's checkout."""
    configuration = dict(site.get("configuration") or {})
    request = configuration.get("git_repository")
    if not isinstance(request, Mapping) or not request.get("repository"):
        raise ConfigurationError("A repository identifier is required.")
    repository = str(request["repository"]).strip()
    url = normalize_repository(repository)
    if url is None:
        raise ConfigurationError("Repository must be an SSH URL, a GitHub URL or follow the owner/name format.")
    branch = normalize_branch(request.get("branch"))
    if configuration.get("has_dedicated_deploy_key"):
        url = alias_repository_url(url, int(site["id"]))

    repo_dir = str(configuration.get("repository_path") or f"{ctx.home}/{site['domain']}").rstrip("/")
    git_ssh = git_ssh_command(ctx, dedicated_key=bool(configuration.get("has_dedicated_deploy_key")))
    stored = {
        key: value
        for key, value in {
            "provider": str(request.get("provider") or "github"),
            "repository": repository,
            "branch": branch,
        }.items()
        if value
    }

    def persist(_runner: RemoteRunner) -> EffectResult:
        record = ctx.store.get_record(EntityKind.SITE.collection, ctx.record_id)
        if record is None:
            return EffectResult.failure(f"Site #{ctx.record_id} disappeared during installation.")
        merged = dict(record.get("configuration") or {})
        merged["git_repository"] = stored
        ctx.store.update_record(EntityKind.SITE.collection, ctx.record_id, {"configuration": merged})
        return EffectResult.success(stored)

    steps: list[Step] = [Milestone("ensure_repository_directory")]
    if configuration.get("has_dedicated_deploy_key"):
        steps.extend(ssh_config_commands(ctx, int(site["id"])))
    steps.extend(
        [
            Command(f"mkdir -p {quote(repo_dir)}"),
            Milestone("clone_or_fetch_repository"),
            Command(
                f"git config --global --add safe.directory {quote(repo_dir)}; "
                f"REPO_DIR={quote(repo_dir)}; "
                f'if [ -d "$REPO_DIR/.git" ]; then cd "$REPO_DIR" && {git_ssh}git fetch --all --prune; '
                f'else {git_ssh}git clone {quote(url)} "$REPO_DIR"; fi'
            ),
            Milestone("checkout_target_branch"),
            Command(
                f'cd {quote(repo_dir)} && BRANCH={quote(branch)}; '
                'if git show-ref --verify --quiet refs/heads/"$BRANCH" '
                '|| git show-ref --verify --quiet refs/remotes/origin/"$BRANCH"; '
                'then git checkout "$BRANCH"; '
                'else echo "Branch $BRANCH not found in repository" >&2 && exit 1; fi'
            ),
            Milestone("sync_worktree"),
            Command(
                f"cd {quote(repo_dir)} && CURRENT_BRANCH=$(git rev-parse --abbrev-ref HEAD) "
                f'&& git reset --hard origin/"$CURRENT_BRANCH" && {git_ssh}git pull origin "$CURRENT_BRANCH"'
            ),
            Command(f"chmod -R 775 {quote(repo_dir)}"),
            Milestone("complete"),
            Effect("store_repository", persist),
        ]
    )
    return steps


GIT_REPOSITORY = Operation(
    name="git_repository",
    kind=EntityKind.SITE,
    milestones=GIT_REPOSITORY_MILESTONES,
    build=build_git_repository,
    credential_type=CredentialType.APP,
    status_field="git_status",
    max_attempts=3,
    backoff=(30, 60, 120),
)


__all__ = [
    "DEFAULT_BRANCH",
    "GIT_REPOSITORY",
    "GIT_REPOSITORY_MILESTONES",
    "alias_repository_url",
    "build_git_repository",
    "clone_steps",
    "deploy_key_path",
    "git_ssh_command",
    "host_alias",
    "normalize_branch",
    "normalize_repository",
    "ssh_config_commands",
]
