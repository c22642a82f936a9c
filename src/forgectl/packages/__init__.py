"""Command-list builders, one module per package family."""
from __future__ import annotations

from ..errors import ConfigurationError
from .base import BuildContext, Operation, failure_hint
from .databases import DATABASE_OPERATIONS
from .deploy_keys import SITE_DEPLOY_KEY
from .firewall import FIREWALL_RULE_INSTALL, FIREWALL_RULE_REMOVE
from .git import GIT_REPOSITORY
from .php import PHP_INSTALL, PHP_REMOVE
from .sites import SITE_INSTALL, SITE_REMOVE, SITE_SET_DEFAULT, SITE_UNSET_DEFAULT

OPERATIONS: dict[str, Operation] = {
    operation.name: operation
    for operation in (
        SITE_INSTALL,
        SITE_REMOVE,
        SITE_SET_DEFAULT,
        SITE_UNSET_DEFAULT,
        SITE_DEPLOY_KEY,
        GIT_REPOSITORY,
        *DATABASE_OPERATIONS,
        PHP_INSTALL,
        PHP_REMOVE,
        FIREWALL_RULE_INSTALL,
        FIREWALL_RULE_REMOVE,
    )
}


def get_operation(name: str) -> Operation:
    """Return the registered operation called *name*."""
    try:
        return OPERATIONS[name]
    except KeyError as exc:
        raise ConfigurationError(f"Unknown operation '{name}'.") from exc


__all__ = ["BuildContext", "OPERATIONS", "Operation", "failure_hint", "get_operation"]
