"""PHP-FPM install and removal."""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from ..errors import ConfigurationError
from ..milestones import MilestoneTable
from ..models import EntityKind
from ..steps import Command, Milestone, Step, quote
from .base import BuildContext, Operation, delete_entity, mark_active

PHP = EntityKind.PHP.collection
APT_ENV = "DEBIAN_FRONTEND=noninteractive"
EXTENSIONS = (
    "fpm",
    "cli",
    "common",
    "curl",
    "mbstring",
    "xml",
    "zip",
    "intl",
    "mysql",
    "gd",
    "bcmath",
    "soap",
    "opcache",
    "readline",
)
FPM_SETTINGS = (
    ("upload_max_filesize", "100M"),
    ("post_max_size", "100M"),
    ("max_execution_time", "300"),
    ("memory_limit", "256M"),
)
_VERSION = re.compile(r"^\d+\.\d+$")


def php_version_of(record: Mapping[str, Any]) -> str:
    """Return the validated ``MAJOR.MINOR`` version stored on a PHP record."""
    configuration = record.get("configuration") or {}
    version = str(configuration.get("version") or "").strip()
    if not _VERSION.match(version):
        raise ConfigurationError(f"PHP version must look like MAJOR.MINOR, got '{version}'.")
    return version


def _ini_edit(path: str, key: str, value: str) -> Command:
    return Command(f"sed -i 's/^;\\?{key} = .*/{key} = {value}/' {quote(path)}")


PHP_INSTALL_MILESTONES = MilestoneTable(
    "php_install",
    [
        ("prepare_system", "Preparing system"),
        ("setup_repository", "Adding PHP repository"),
        ("install_php", "Installing PHP packages"),
        ("configure_php", "Configuring PHP"),
        ("enable_service", "Enabling PHP-FPM"),
        ("verify_installation", "Verifying installation"),
        ("complete", "PHP installed"),
    ],
)


def build_php_install(php: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Install PHP-FPM and the common extensions for one version."""
    version = php_version_of(php)
    service = f"php{version}-fpm"
    packages = " ".join(f"php{version}-{extension}" for extension in EXTENSIONS)
    fpm_ini = f"/etc/php/{version}/fpm/php.ini"
    cli_ini = f"/etc/php/{version}/cli/php.ini"

    steps: list[Step] = [
        Milestone("prepare_system"),
        Command(f"{APT_ENV} apt-get update -y"),
        Command(
            f"{APT_ENV} apt-get install -y ca-certificates curl gnupg lsb-release software-properties-common"
        ),
        Milestone("setup_repository"),
        Command(
            "if command -v lsb_release >/dev/null 2>&1 && [ \"$(lsb_release -is)\" = \"Ubuntu\" ]; then "
            f"add-apt-repository -y ppa:ondrej/php || true; {APT_ENV} apt-get update -y; fi || true"
        ),
        Milestone("install_php"),
        Command(f"{APT_ENV} apt-get install -y --no-install-recommends {packages}"),
        Milestone("configure_php"),
    ]
    steps.extend(_ini_edit(fpm_ini, key, value) for key, value in FPM_SETTINGS)
    steps.append(_ini_edit(cli_ini, "memory_limit", "-1"))
    steps.extend(
        [
            Milestone("enable_service"),
            Command(f"systemctl enable {quote(service)}"),
            Command(f"systemctl restart {quote(service)}"),
            Milestone("verify_installation"),
            Command(f"php{version} -v"),
            Command(f"systemctl status {quote(service)} --no-pager"),
            Milestone("complete"),
            mark_active(ctx, PHP),
        ]
    )
    return steps


PHP_REMOVE_MILESTONES = MilestoneTable(
    "php_remove",
    [
        ("stop_service", "Stopping PHP-FPM"),
        ("remove_packages", "Removing PHP packages"),
        ("remove_configuration", "Removing configuration"),
        ("complete", "PHP removed"),
    ],
)


def build_php_remove(php: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Purge one PHP version and delete its record."""
    version = php_version_of(php)
    service = f"php{version}-fpm"
    return [
        Milestone("stop_service"),
        Command(f"systemctl stop {quote(service)} || true"),
        Command(f"systemctl disable {quote(service)} || true"),
        Milestone("remove_packages"),
        Command(f"{APT_ENV} apt-get remove -y --purge {quote(f'php{version}-*')}"),
        Command(f"{APT_ENV} apt-get autoremove -y"),
        Milestone("remove_configuration"),
        Command(f"rm -rf {quote(f'/etc/php/{version}')}"),
        Milestone("complete"),
        delete_entity(ctx, PHP),
    ]


PHP_INSTALL = Operation(
    name="php_install",
    kind=EntityKind.PHP,
    milestones=PHP_INSTALL_MILESTONES,
    build=build_php_install,
)

PHP_REMOVE = Operation(
    name="php_remove",
    kind=EntityKind.PHP,
    milestones=PHP_REMOVE_MILESTONES,
    build=build_php_remove,
    removal=True,
)


__all__ = [
    "EXTENSIONS",
    "PHP_INSTALL",
    "PHP_INSTALL_MILESTONES",
    "PHP_REMOVE",
    "PHP_REMOVE_MILESTONES",
    "build_php_install",
    "build_php_remove",
    "php_version_of",
]
