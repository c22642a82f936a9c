"""Database server install and removal: MySQL, MariaDB and PostgreSQL.

Root passwords never appear on a command line. They reach the server through
quoted heredocs (debconf selections, a ``0600`` client defaults file, psql
stdin), and every command carrying one lists it in ``Command.secrets``.
"""
from __future__ import annotations

import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..errors import ConfigurationError
from ..milestones import MilestoneTable
from ..models import EntityKind
from ..steps import Command, Milestone, Step, feed, heredoc, quote
from .base import BuildContext, Operation, delete_entity, mark_active

DATABASES = EntityKind.DATABASE.collection
APT_ENV = "DEBIAN_FRONTEND=noninteractive"
CLIENT_DEFAULTS_FILE = "/root/.forgectl-client.cnf"
SECURE_SQL = (
    "DELETE FROM mysql.user WHERE User='';"
    " DELETE FROM mysql.user WHERE User='root' AND Host NOT IN ('localhost', '127.0.0.1', '::1');"
    " DROP DATABASE IF EXISTS test;"
    " DELETE FROM mysql.db WHERE Db='test' OR Db='test\\_%';"
    " FLUSH PRIVILEGES;"
)


@dataclass(frozen=True, slots=True)
class DatabaseEngine:
    """A supported database server and its defaults."""

    name: str
    label: str
    default_port: int
    default_version: str | None = None


ENGINES: dict[str, DatabaseEngine] = {
    engine.name: engine
    for engine in (
        DatabaseEngine("mysql", "MySQL", 3306),
        DatabaseEngine("mariadb", "MariaDB", 3306, "11.4"),
        DatabaseEngine("postgresql", "PostgreSQL", 5432, "16"),
    )
}
SUPPORTED_ENGINES = tuple(ENGINES)


def get_engine(name: object) -> DatabaseEngine:
    """Return the engine called *name*, raising :class:`ConfigurationError` otherwise."""
    key = str(name or "").strip().lower()
    try:
        return ENGINES[key]
    except KeyError as exc:
        raise ConfigurationError(f"Database engine must be one of {', '.join(SUPPORTED_ENGINES)}.") from exc


def generate_root_password() -> str:
    """Return a fresh random root password."""
    return secrets.token_hex(16)


def _root_password(database: Mapping[str, Any]) -> str:
    configuration = database.get("configuration") or {}
    password = str(configuration.get("root_password") or "")
    if not password:
        raise ConfigurationError(f"Database #{database.get('id')} has no root password configured.")
    return password


def _port(database: Mapping[str, Any], engine: DatabaseEngine) -> int:
    configuration = database.get("configuration") or {}
    return int(configuration.get("port") or engine.default_port)


def _version(database: Mapping[str, Any], engine: DatabaseEngine) -> str:
    configuration = database.get("configuration") or {}
    return str(configuration.get("version") or engine.default_version)


def debconf_root_password(package: str, password: str) -> Command:
    """Preseed the MySQL-family root password for *package*."""
    selections = "\n".join(
        f"{package} mysql-server/{question} password {password}"
        for question in ("root_password", "root_password_again")
    )
    return Command(feed("debconf-set-selections", selections, delimiter="DEBCONF_EOF"), secrets=(password,))


def client_defaults(password: str) -> Command:
    """Write the root client options file used by ``--defaults-extra-file``."""
    escaped = password.replace("\\", "\\\\").replace('"', '\\"')
    content = f'[client]\nuser=root\npassword="{escaped}"\n'
    return Command(
        "umask 077 && " + heredoc(CLIENT_DEFAULTS_FILE, content, delimiter="CLIENT_CNF_EOF"),
        secrets=(password, escaped),
    )


def _client(binary: str) -> str:
    return f"{binary} --defaults-extra-file={CLIENT_DEFAULTS_FILE}"


# ----------------------------------------------------------------------
# MySQL
# ----------------------------------------------------------------------
MYSQL_INSTALL_MILESTONES = MilestoneTable(
    "mysql_install",
    [
        ("update_packages", "Updating package lists"),
        ("install_prerequisites", "Installing prerequisites"),
        ("configure_root_password", "Configuring root password"),
        ("install_mysql", "Installing MySQL server"),
        ("start_service", "Starting MySQL"),
        ("secure_installation", "Securing installation"),
        ("create_backup_directory", "Creating backup directory"),
        ("configure_remote_access", "Configuring remote access"),
        ("restart_service", "Restarting MySQL"),
        ("configure_firewall", "Opening firewall port"),
        ("installation_complete", "MySQL installed"),
    ],
)


def build_mysql_install(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Install and harden MySQL using the record's stored root password."""
    password = _root_password(database)
    port = _port(database, ENGINES["mysql"])
    mysql = _client("mysql")
    return [
        Milestone("update_packages"),
        Command(f"{APT_ENV} apt-get update -y"),
        Milestone("install_prerequisites"),
        Command(f"{APT_ENV} apt-get install -y ca-certificates curl gnupg lsb-release software-properties-common"),
        Milestone("configure_root_password"),
        debconf_root_password("mysql-server", password),
        Milestone("install_mysql"),
        Command(f"{APT_ENV} apt-get install -y mysql-server mysql-client"),
        Milestone("start_service"),
        Command("systemctl enable --now mysql"),
        Milestone("secure_installation"),
        client_defaults(password),
        Command(f"{mysql} -e {quote(SECURE_SQL)}"),
        Milestone("create_backup_directory"),
        Command("mkdir -p /var/backups/mysql"),
        Command("chown mysql:mysql /var/backups/mysql"),
        Milestone("configure_remote_access"),
        Command("sed -i 's/bind-address.*/bind-address = 0.0.0.0/' /etc/mysql/mysql.conf.d/mysqld.cnf || true"),
        Milestone("restart_service"),
        Command("systemctl restart mysql"),
        Milestone("configure_firewall"),
        Command(f"ufw allow {port}/tcp >/dev/null 2>&1 || true"),
        Milestone("installation_complete"),
        Command("systemctl status mysql --no-pager"),
        Command(f"{mysql} -e {quote('SELECT VERSION();')}"),
        Command(f"rm -f {CLIENT_DEFAULTS_FILE}"),
        mark_active(ctx, DATABASES),
    ]


MYSQL_REMOVE_MILESTONES = MilestoneTable(
    "mysql_remove",
    [
        ("stop_service", "Stopping MySQL"),
        ("backup_databases", "Backing up databases"),
        ("remove_packages", "Removing packages"),
        ("remove_data_directories", "Removing data directories"),
        ("remove_user_group", "Removing mysql user and group"),
        ("update_firewall", "Closing firewall port"),
        ("uninstallation_complete", "MySQL removed"),
    ],
)


def build_mysql_remove(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Back up, purge and clean up MySQL, then delete the record."""
    port = _port(database, ENGINES["mysql"])
    return [
        Milestone("stop_service"),
        Command("systemctl stop mysql || true"),
        Command("systemctl disable mysql || true"),
        Milestone("backup_databases"),
        Command(
            "BACKUP_DIR=/var/backups/mysql-removal-$(date +%Y%m%d-%H%M%S); "
            'mkdir -p "$BACKUP_DIR" && mysqldump --all-databases '
            '> "$BACKUP_DIR/all-databases.sql" 2>/dev/null || true'
        ),
        Milestone("remove_packages"),
        Command(
            f"{APT_ENV} apt-get remove -y --purge mysql-server mysql-client mysql-common "
            "'mysql-server-core-*' 'mysql-client-core-*'"
        ),
        Command(f"{APT_ENV} apt-get autoremove -y"),
        Milestone("remove_data_directories"),
        Command(f"rm -rf /var/lib/mysql /var/log/mysql /etc/mysql {CLIENT_DEFAULTS_FILE}"),
        Milestone("remove_user_group"),
        Command("userdel mysql || true"),
        Command("groupdel mysql || true"),
        Milestone("update_firewall"),
        Command(f"ufw delete allow {port}/tcp >/dev/null 2>&1 || true"),
        Milestone("uninstallation_complete"),
        Command("apt-get clean"),
        delete_entity(ctx, DATABASES),
    ]


# ----------------------------------------------------------------------
# MariaDB
# ----------------------------------------------------------------------
MARIADB_KEYRING = "/usr/share/keyrings/mariadb-keyring.gpg"
MARIADB_SOURCES = "/etc/apt/sources.list.d/mariadb.list"

MARIADB_INSTALL_MILESTONES = MilestoneTable(
    "mariadb_install",
    [
        ("update_packages", "Updating package lists"),
        ("install_prerequisites", "Installing prerequisites"),
        ("add_repository", "Adding MariaDB repository"),
        ("configure_root_password", "Configuring root password"),
        ("install_mariadb", "Installing MariaDB server"),
        ("start_service", "Starting MariaDB"),
        ("secure_installation", "Securing installation"),
        ("create_backup_directory", "Creating backup directory"),
        ("configure_remote_access", "Configuring remote access"),
        ("restart_service", "Restarting MariaDB"),
        ("configure_firewall", "Opening firewall port"),
        ("installation_complete", "MariaDB installed"),
    ],
)


def build_mariadb_install(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Install MariaDB from the upstream repository for the stored version."""
    engine = ENGINES["mariadb"]
    password = _root_password(database)
    port = _port(database, engine)
    version = _version(database, engine)
    mariadb = _client("mariadb")
    source = (
        f"deb [signed-by={MARIADB_KEYRING}] https://mirror.rackspace.com/mariadb/repo/{version}/ubuntu "
        "$(lsb_release -cs) main"
    )
    return [
        # Recover from half-configured packages and clear earlier MySQL-family installs.
        Command("dpkg --configure -a"),
        Command(f"{APT_ENV} apt-get -f install -y"),
        Command("systemctl stop mariadb 2>/dev/null || true"),
        Command("systemctl stop mysql 2>/dev/null || true"),
        Command(f"{APT_ENV} apt-get remove -y --purge 'mariadb-*' 'mysql-*' 2>/dev/null || true"),
        Command(f"{APT_ENV} apt-get autoremove -y"),
        Command(f"rm -rf /etc/mysql /var/lib/mysql {MARIADB_SOURCES}"),
        Milestone("update_packages"),
        Command(f"{APT_ENV} apt-get update -y"),
        Milestone("install_prerequisites"),
        Command(f"{APT_ENV} apt-get install -y ca-certificates curl gnupg lsb-release software-properties-common"),
        Milestone("add_repository"),
        Command(f"rm -f {MARIADB_KEYRING}"),
        Command(
            "curl -fsSL https://mariadb.org/mariadb_release_signing_key.asc "
            f"| gpg --batch --yes --dearmor -o {MARIADB_KEYRING}"
        ),
        Command(f'echo "{source}" > {MARIADB_SOURCES}'),
        Command(f"{APT_ENV} apt-get update -y"),
        Milestone("configure_root_password"),
        debconf_root_password("mariadb-server", password),
        Milestone("install_mariadb"),
        Command(f"{APT_ENV} apt-get install -y mariadb-server mariadb-client"),
        Milestone("start_service"),
        Command("systemctl enable --now mariadb"),
        Milestone("secure_installation"),
        client_defaults(password),
        Command(f"{mariadb} -e {quote(SECURE_SQL)}"),
        Milestone("create_backup_directory"),
        Command("mkdir -p /var/backups/mariadb"),
        Command("chown mysql:mysql /var/backups/mariadb"),
        Milestone("configure_remote_access"),
        Command("sed -i 's/bind-address.*/bind-address = 0.0.0.0/' /etc/mysql/mariadb.conf.d/50-server.cnf || true"),
        Milestone("restart_service"),
        Command("systemctl restart mariadb"),
        Milestone("configure_firewall"),
        Command(f"ufw allow {port}/tcp >/dev/null 2>&1 || true"),
        Milestone("installation_complete"),
        Command("systemctl status mariadb --no-pager"),
        Command(f"{mariadb} -e {quote('SELECT VERSION();')}"),
        Command(f"rm -f {CLIENT_DEFAULTS_FILE}"),
        mark_active(ctx, DATABASES),
    ]


MARIADB_REMOVE_MILESTONES = MilestoneTable(
    "mariadb_remove",
    [
        ("stop_service", "Stopping MariaDB"),
        ("backup_databases", "Backing up databases"),
        ("remove_packages", "Removing packages"),
        ("remove_data_directories", "Removing data directories"),
        ("remove_repository", "Removing MariaDB repository"),
        ("remove_user_group", "Removing mysql user and group"),
        ("update_firewall", "Closing firewall port"),
        ("uninstallation_complete", "MariaDB removed"),
    ],
)


def build_mariadb_remove(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Back up and purge MariaDB and its repository, then delete the record."""
    port = _port(database, ENGINES["mariadb"])
    return [
        Milestone("stop_service"),
        Command("systemctl stop mariadb >/dev/null 2>&1 || true"),
        Command("systemctl disable mariadb >/dev/null 2>&1 || true"),
        Milestone("backup_databases"),
        Command(
            "BACKUP_DIR=/var/backups/mariadb-removal-$(date +%Y%m%d-%H%M%S); "
            'mkdir -p "$BACKUP_DIR" && mariadb-dump --all-databases '
            '> "$BACKUP_DIR/all-databases.sql" 2>/dev/null || true'
        ),
        Milestone("remove_packages"),
        Command(f"{APT_ENV} apt-get remove -y --purge mariadb-server mariadb-client mariadb-common"),
        Command(f"{APT_ENV} apt-get autoremove -y"),
        Milestone("remove_data_directories"),
        Command(f"rm -rf /var/lib/mysql /var/log/mysql /etc/mysql {CLIENT_DEFAULTS_FILE}"),
        Milestone("remove_repository"),
        Command(f"rm -f {MARIADB_SOURCES} {MARIADB_KEYRING}"),
        Milestone("remove_user_group"),
        Command("userdel mysql >/dev/null 2>&1 || true"),
        Command("groupdel mysql >/dev/null 2>&1 || true"),
        Milestone("update_firewall"),
        Command(f"ufw delete allow {port}/tcp >/dev/null 2>&1 || true"),
        Milestone("uninstallation_complete"),
        Command("apt-get clean"),
        delete_entity(ctx, DATABASES),
    ]


# ----------------------------------------------------------------------
# PostgreSQL
# ----------------------------------------------------------------------
POSTGRESQL_KEYRING = "/usr/share/keyrings/postgresql-keyring.gpg"
POSTGRESQL_SOURCES = "/etc/apt/sources.list.d/pgdg.list"
_HBA_RULES = (
    "host    all             all             0.0.0.0/0               md5",
    "host    all             all             ::/0                    md5",
)


def _major(version: str) -> str:
    digits = "".join(char for char in version.split(".")[0] if char.isdigit())
    return digits or str(ENGINES["postgresql"].default_version)


POSTGRESQL_INSTALL_MILESTONES = MilestoneTable(
    "postgresql_install",
    [
        ("update_packages", "Updating package lists"),
        ("install_prerequisites", "Installing prerequisites"),
        ("add_repository", "Adding PostgreSQL repository"),
        ("install_postgresql", "Installing PostgreSQL"),
        ("start_service", "Starting PostgreSQL"),
        ("configure_root_password", "Configuring postgres password"),
        ("configure_remote_access", "Configuring remote access"),
        ("restart_service", "Restarting PostgreSQL"),
        ("configure_firewall", "Opening firewall port"),
        ("verify_installation", "Verifying installation"),
        ("installation_complete", "PostgreSQL installed"),
    ],
)


def build_postgresql_install(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Install PostgreSQL from the PGDG repository and open it to md5 logins."""
    engine = ENGINES["postgresql"]
    password = _root_password(database)
    port = _port(database, engine)
    major = _major(_version(database, engine))
    config_dir = f"/etc/postgresql/{major}/main"
    postgresql_conf = f"{config_dir}/postgresql.conf"
    hba_conf = f"{config_dir}/pg_hba.conf"
    escaped = password.replace("'", "''")
    source = f"deb [signed-by={POSTGRESQL_KEYRING}] http://apt.postgresql.org/pub/repos/apt $(lsb_release -cs)-pgdg main"

    steps: list[Step] = [
        Milestone("update_packages"),
        Command(f"{APT_ENV} apt-get update -y"),
        Milestone("install_prerequisites"),
        Command(f"{APT_ENV} apt-get install -y ca-certificates curl gnupg lsb-release software-properties-common"),
        Milestone("add_repository"),
        Command(
            "curl -fsSL https://www.postgresql.org/media/keys/ACCC4CF8.asc "
            f"| gpg --batch --yes --dearmor -o {POSTGRESQL_KEYRING}"
        ),
        Command(f'echo "{source}" > {POSTGRESQL_SOURCES}'),
        Command(f"{APT_ENV} apt-get update -y"),
        Milestone("install_postgresql"),
        Command(f"{APT_ENV} apt-get install -y postgresql-{major} postgresql-client-{major}"),
        Milestone("start_service"),
        Command("systemctl enable --now postgresql"),
        Milestone("configure_root_password"),
        Command(
            feed(
                "sudo -u postgres psql -v ON_ERROR_STOP=1",
                f"ALTER USER postgres WITH PASSWORD '{escaped}';",
                delimiter="PSQL_EOF",
            ),
            secrets=(password, escaped),
        ),
        Milestone("configure_remote_access"),
        Command(
            f"if [ -f {postgresql_conf} ]; then "
            f"sed -i \"s/^#\\?listen_addresses = .*/listen_addresses = '*'/\" {postgresql_conf}; "
            f"sed -i \"s/^#\\?port = .*/port = {port}/\" {postgresql_conf}; fi"
        ),
    ]
    steps.extend(
        Command(
            f"if [ -f {hba_conf} ]; then grep -qxF {quote(rule)} {hba_conf} || echo {quote(rule)} >> {hba_conf}; fi"
        )
        for rule in _HBA_RULES
    )
    steps.extend(
        [
            Milestone("restart_service"),
            Command("systemctl restart postgresql"),
            Milestone("configure_firewall"),
            Command(f"ufw allow {port}/tcp >/dev/null 2>&1 || true"),
            Milestone("verify_installation"),
            Command("systemctl status postgresql --no-pager"),
            Command("sudo -u postgres psql -c 'SELECT version();'"),
            Milestone("installation_complete"),
            mark_active(ctx, DATABASES),
        ]
    )
    return steps


POSTGRESQL_REMOVE_MILESTONES = MilestoneTable(
    "postgresql_remove",
    [
        ("backup_databases", "Backing up databases"),
        ("stop_service", "Stopping PostgreSQL"),
        ("remove_packages", "Removing packages"),
        ("remove_data_directories", "Removing data directories"),
        ("remove_repository", "Removing PostgreSQL repository"),
        ("remove_user_group", "Removing postgres user and group"),
        ("update_firewall", "Closing firewall port"),
        ("uninstallation_complete", "PostgreSQL removed"),
    ],
)


def build_postgresql_remove(database: Mapping[str, Any], ctx: BuildContext) -> list[Step]:
    """Dump every database, purge PostgreSQL and delete the record."""
    engine = ENGINES["postgresql"]
    port = _port(database, engine)
    major = _major(_version(database, engine))
    return [
        Milestone("backup_databases"),
        Command(
            "BACKUP_DIR=/var/backups/postgresql-removal-$(date +%Y%m%d-%H%M%S); "
            'mkdir -p "$BACKUP_DIR" && sudo -u postgres pg_dumpall > "$BACKUP_DIR/all-databases.sql" '
            "2>/dev/null || true"
        ),
        Milestone("stop_service"),
        Command("systemctl stop postgresql >/dev/null 2>&1 || true"),
        Command("systemctl disable postgresql >/dev/null 2>&1 || true"),
        Milestone("remove_packages"),
        Command(
            f"{APT_ENV} apt-get remove -y --purge postgresql postgresql-{major} "
            f"postgresql-client-{major} postgresql-contrib-{major}"
        ),
        Command(f"{APT_ENV} apt-get autoremove -y"),
        Milestone("remove_data_directories"),
        Command("rm -rf /var/lib/postgresql /var/log/postgresql /etc/postgresql"),
        Milestone("remove_repository"),
        Command(f"rm -f {POSTGRESQL_SOURCES} {POSTGRESQL_KEYRING}"),
        Milestone("remove_user_group"),
        Command("userdel postgres >/dev/null 2>&1 || true"),
        Command("groupdel postgres >/dev/null 2>&1 || true"),
        Milestone("update_firewall"),
        Command(f"ufw delete allow {port}/tcp >/dev/null 2>&1 || true"),
        Milestone("uninstallation_complete"),
        Command("apt-get clean"),
        delete_entity(ctx, DATABASES),
    ]


MYSQL_INSTALL = Operation(
    name="mysql_install",
    kind=EntityKind.DATABASE,
    milestones=MYSQL_INSTALL_MILESTONES,
    build=build_mysql_install,
)

MYSQL_REMOVE = Operation(
    name="mysql_remove",
    kind=EntityKind.DATABASE,
    milestones=MYSQL_REMOVE_MILESTONES,
    build=build_mysql_remove,
    removal=True,
)

MARIADB_INSTALL = Operation(
    name="mariadb_install",
    kind=EntityKind.DATABASE,
    milestones=MARIADB_INSTALL_MILESTONES,
    build=build_mariadb_install,
)

MARIADB_REMOVE = Operation(
    name="mariadb_remove",
    kind=EntityKind.DATABASE,
    milestones=MARIADB_REMOVE_MILESTONES,
    build=build_mariadb_remove,
    removal=True,
)

POSTGRESQL_INSTALL = Operation(
    name="postgresql_install",
    kind=EntityKind.DATABASE,
    milestones=POSTGRESQL_INSTALL_MILESTONES,
    build=build_postgresql_install,
)

POSTGRESQL_REMOVE = Operation(
    name="postgresql_remove",
    kind=EntityKind.DATABASE,
    milestones=POSTGRESQL_REMOVE_MILESTONES,
    build=build_postgresql_remove,
    removal=True,
)

_ENGINE_OPERATIONS: dict[str, tuple[Operation, Operation]] = {
    "mysql": (MYSQL_INSTALL, MYSQL_REMOVE),
    "mariadb": (MARIADB_INSTALL, MARIADB_REMOVE),
    "postgresql": (POSTGRESQL_INSTALL, POSTGRESQL_REMOVE),
}
DATABASE_OPERATIONS: tuple[Operation, ...] = tuple(
    operation for pair in _ENGINE_OPERATIONS.values() for operation in pair
)


def install_operation(engine: object) -> Operation:
    """Return the install operation for *engine*."""
    return _ENGINE_OPERATIONS[get_engine(engine).name][0]


def remove_operation(engine: object) -> Operation:
    """Return the removal operation for *engine*."""
    return _ENGINE_OPERATIONS[get_engine(engine).name][1]


__all__ = [
    "CLIENT_DEFAULTS_FILE",
    "DATABASE_OPERATIONS",
    "ENGINES",
    "MARIADB_INSTALL",
    "MARIADB_REMOVE",
    "MYSQL_INSTALL",
    "MYSQL_INSTALL_MILESTONES",
    "MYSQL_REMOVE",
    "MYSQL_REMOVE_MILESTONES",
    "POSTGRESQL_INSTALL",
    "POSTGRESQL_REMOVE",
    "SUPPORTED_ENGINES",
    "DatabaseEngine",
    "build_mariadb_install",
    "build_mariadb_remove",
    "build_mysql_install",
    "build_mysql_remove",
    "build_postgresql_install",
    "build_postgresql_remove",
    "client_defaults",
    "debconf_root_password",
    "generate_root_password",
    "get_engine",
    "install_operation",
    "remove_operation",
]
