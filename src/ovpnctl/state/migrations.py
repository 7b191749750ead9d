"""Versioned schema migrations.

Applied versions are recorded in ``schema_migrations``. Each migration runs
inside its own transaction with foreign key enforcement suspended; the
foreign key graph is verified before commit and any failure rolls the
database back to its previous schema.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Connection, inspect, text

from ..config import LegacyPathsConfig
from ..errors import OvpnctlError
from ..exit_codes import ExitCode
from . import models  # noqa: F401 - registers tables on Base.metadata
from .database import Base, Database, utcnow

_LOG = logging.getLogger("ovpnctl.migrations")


class MigrationError(OvpnctlError):
    """Raised when a schema migration fails and was rolled back."""

    kind = "migration"
    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True, slots=True)
class Migration:
    """One schema step."""

    version: int
    name: str
    apply: Callable[[Connection, LegacyPathsConfig], None]


def _table_names(connection: Connection) -> set[str]:
    return set(inspect(connection).get_table_names())


def _adopt_single_instance_schema(connection: Connection, legacy: LegacyPathsConfig) -> None:
    """Re-parent a single-instance database under a synthetic ``default`` instance."""
    tables = _table_names(connection)
    if "instances" in tables or "server_config" not in tables:
        return

    _LOG.info("adopting single-instance schema as instance 'default'")
    connection.exec_driver_sql(
        """
        CREATE TABLE instances (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name VARCHAR(32) NOT NULL UNIQUE,
          display_name VARCHAR(64),
          status VARCHAR(16) NOT NULL DEFAULT 'provisioning',
          easyrsa_dir TEXT NOT NULL,
          config_path TEXT NOT NULL,
          status_file TEXT NOT NULL,
          log_file TEXT NOT NULL,
          ccd_dir TEXT NOT NULL,
          created_at DATETIME NOT NULL,
          updated_at DATETIME NOT NULL
        )
        """
    )
    now = utcnow().isoformat(sep=" ")
    connection.execute(
        text(
            "INSERT INTO instances (name, display_name, status, easyrsa_dir, config_path, "
            "status_file, log_file, ccd_dir, created_at, updated_at) VALUES "
            "('default', 'Default', 'active', :easyrsa, :config, :status, :log, :ccd, "
            ":now, :now)"
        ),
        {
            "easyrsa": str(legacy.easyrsa_dir),
            "config": str(legacy.config_path),
            "status": str(legacy.status_file),
            "log": str(legacy.log_file),
            "ccd": str(legacy.ccd_dir),
            "now": now,
        },
    )
    instance_id = connection.execute(
        text("SELECT id FROM instances WHERE name = 'default'")
    ).scalar_one()
    params = {"instance_id": instance_id}

    connection.exec_driver_sql("ALTER TABLE server_config RENAME TO _old_server_config")
    connection.exec_driver_sql(
        """
        CREATE TABLE server_config (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id INTEGER NOT NULL UNIQUE REFERENCES instances(id) ON DELETE CASCADE,
          hostname TEXT NOT NULL DEFAULT 'vpn.example.com',
          protocol VARCHAR(8) NOT NULL DEFAULT 'udp',
          port INTEGER NOT NULL DEFAULT 1194,
          dev_type VARCHAR(8) NOT NULL DEFAULT 'tun',
          subnet VARCHAR(45) NOT NULL DEFAULT '10.8.0.0',
          subnet_mask VARCHAR(45) NOT NULL DEFAULT '255.255.255.0',
          dns JSON NOT NULL DEFAULT '["1.1.1.1","1.0.0.1"]',
          cipher VARCHAR(32) NOT NULL DEFAULT 'AES-256-GCM',
          auth VARCHAR(32) NOT NULL DEFAULT 'SHA256',
          tls_auth BOOLEAN NOT NULL DEFAULT 1,
          compress VARCHAR(16) NOT NULL DEFAULT '',
          client_to_client BOOLEAN NOT NULL DEFAULT 0,
          max_clients INTEGER NOT NULL DEFAULT 100,
          keepalive VARCHAR(32) NOT NULL DEFAULT '10 120',
          pki_initialized BOOLEAN NOT NULL DEFAULT 0,
          push_routes JSON NOT NULL DEFAULT '[]',
          created_at DATETIME NOT NULL,
          updated_at DATETIME NOT NULL
        )
        """
    )
    connection.execute(
        text(
            "INSERT INTO server_config (instance_id, hostname, protocol, port, dev_type, "
            "subnet, subnet_mask, dns, cipher, auth, tls_auth, compress, client_to_client, "
            "max_clients, keepalive, pki_initialized, created_at, updated_at) "
            "SELECT :instance_id, hostname, protocol, port, dev_type, subnet, subnet_mask, "
            "dns, cipher, auth, tls_auth, compress, client_to_client, max_clients, keepalive, "
            "pki_initialized, created_at, updated_at FROM _old_server_config WHERE id = 1"
        ),
        params,
    )
    connection.exec_driver_sql("DROP TABLE _old_server_config")

    connection.exec_driver_sql("ALTER TABLE clients RENAME TO _old_clients")
    connection.exec_driver_sql(
        """
        CREATE TABLE clients (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id INTEGER NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
          name VARCHAR(64) NOT NULL,
          email TEXT,
          status VARCHAR(16) NOT NULL DEFAULT 'active',
          cert_cn VARCHAR(64) NOT NULL,
          static_ip VARCHAR(45),
          created_at DATETIME NOT NULL,
          revoked_at DATETIME,
          expires_at DATETIME,
          notes TEXT,
          UNIQUE (instance_id, name)
        )
        """
    )
    connection.execute(
        text(
            "INSERT INTO clients (id, instance_id, name, email, status, cert_cn, static_ip, "
            "created_at, revoked_at, expires_at, notes) "
            "SELECT id, :instance_id, name, email, status, cert_cn, static_ip, created_at, "
            "revoked_at, expires_at, notes FROM _old_clients"
        ),
        params,
    )
    connection.exec_driver_sql("DROP TABLE _old_clients")

    connection.exec_driver_sql("ALTER TABLE connection_log RENAME TO _old_connection_log")
    connection.exec_driver_sql(
        """
        CREATE TABLE connection_log (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id INTEGER REFERENCES instances(id) ON DELETE CASCADE,
          client_id INTEGER REFERENCES clients(id) ON DELETE SET NULL,
          client_name VARCHAR(64) NOT NULL,
          real_address TEXT NOT NULL,
          virtual_address TEXT NOT NULL,
          bytes_received INTEGER NOT NULL DEFAULT 0,
          bytes_sent INTEGER NOT NULL DEFAULT 0,
          connected_at TEXT NOT NULL,
          disconnected_at TEXT,
          duration_seconds INTEGER
        )
        """
    )
    connection.execute(
        text(
            "INSERT INTO connection_log (id, instance_id, client_id, client_name, "
            "real_address, virtual_address, bytes_received, bytes_sent, connected_at, "
            "disconnected_at, duration_seconds) "
            "SELECT id, :instance_id, client_id, client_name, real_address, virtual_address, "
            "bytes_received, bytes_sent, connected_at, disconnected_at, duration_seconds "
            "FROM _old_connection_log"
        ),
        params,
    )
    connection.exec_driver_sql("DROP TABLE _old_connection_log")

    connection.exec_driver_sql("ALTER TABLE setup_state RENAME TO _old_setup_state")
    connection.exec_driver_sql(
        """
        CREATE TABLE setup_state (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id INTEGER NOT NULL UNIQUE REFERENCES instances(id) ON DELETE CASCADE,
          step VARCHAR(32) NOT NULL DEFAULT 'none',
          completed BOOLEAN NOT NULL DEFAULT 0,
          started_at DATETIME,
          completed_at DATETIME,
          error TEXT
        )
        """
    )
    connection.execute(
        text(
            "INSERT INTO setup_state (instance_id, step, completed, started_at, "
            "completed_at, error) SELECT :instance_id, step, completed, started_at, "
            "completed_at, error FROM _old_setup_state WHERE id = 1"
        ),
        params,
    )
    connection.exec_driver_sql("DROP TABLE _old_setup_state")

    for statement in (
        "CREATE INDEX IF NOT EXISTS ix_instances_name ON instances (name)",
        "CREATE INDEX IF NOT EXISTS ix_clients_status ON clients (status)",
        "CREATE INDEX IF NOT EXISTS ix_clients_name ON clients (name)",
        "CREATE INDEX IF NOT EXISTS ix_clients_instance_id ON clients (instance_id)",
        "CREATE INDEX IF NOT EXISTS ix_connection_log_client_name "
        "ON connection_log (client_name)",
        "CREATE INDEX IF NOT EXISTS ix_connection_log_connected_at "
        "ON connection_log (connected_at)",
        "CREATE INDEX IF NOT EXISTS ix_connection_log_instance_id "
        "ON connection_log (instance_id)",
    ):
        connection.exec_driver_sql(statement)


def _create_current_schema(connection: Connection, _legacy: LegacyPathsConfig) -> None:
    """Create any table of the current schema that does not exist yet."""
    Base.metadata.create_all(connection, checkfirst=True)


def _add_push_routes(connection: Connection, _legacy: LegacyPathsConfig) -> None:
    """Add the pushed-routes column to server_config tables created before it existed."""
    columns = {column["name"] for column in inspect(connection).get_columns("server_config")}
    if "push_routes" not in columns:
        connection.exec_driver_sql(
            "ALTER TABLE server_config ADD COLUMN push_routes JSON NOT NULL DEFAULT '[]'"
        )


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "adopt_single_instance_schema", _adopt_single_instance_schema),
    Migration(2, "create_current_schema", _create_current_schema),
    Migration(3, "server_config_push_routes", _add_push_routes),
)


def applied_versions(database: Database) -> list[int]:
    """Return the migration versions already recorded."""
    with database.engine.begin() as connection:
        _ensure_version_table(connection)
        rows = connection.execute(text("SELECT version FROM schema_migrations ORDER BY version"))
        return [int(row[0]) for row in rows]


def migrate(
    database: Database,
    legacy: LegacyPathsConfig | None = None,
    *,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> list[int]:
    """Apply pending migrations in order; return the versions applied."""
    legacy_paths = legacy or LegacyPathsConfig()
    done = set(applied_versions(database))
    applied: list[int] = []
    for migration in sorted(migrations, key=lambda item: item.version):
        if migration.version in done:
            continue
        _apply(database, migration, legacy_paths)
        applied.append(migration.version)
    return applied


def _ensure_version_table(connection: Connection) -> None:
    connection.exec_driver_sql(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        "version INTEGER PRIMARY KEY, name TEXT NOT NULL, applied_at DATETIME NOT NULL)"
    )


def _driver_connection(connection: Connection) -> Any:
    """Return the DB-API connection behind *connection*."""
    raw = connection.connection.dbapi_connection
    if raw is None:
        raise MigrationError("The database connection was closed before migrating.")
    return raw


def _apply(database: Database, migration: Migration, legacy: LegacyPathsConfig) -> None:
    with database.engine.connect() as connection:
        raw = _driver_connection(connection)
        # PRAGMA foreign_keys is ignored inside a transaction.
        raw.execute("PRAGMA foreign_keys=OFF")
        try:
            with connection.begin():
                migration.apply(connection, legacy)
                violations = connection.exec_driver_sql("PRAGMA foreign_key_check").fetchall()
                if violations:
                    raise MigrationError(
                        f"Migration {migration.version} ({migration.name}) left "
                        f"{len(violations)} dangling foreign key reference(s)."
                    )
                connection.execute(
                    text(
                        "INSERT INTO schema_migrations (version, name, applied_at) "
                        "VALUES (:version, :name, :applied_at)"
                    ),
                    {
                        "version": migration.version,
                        "name": migration.name,
                        "applied_at": utcnow().isoformat(sep=" "),
                    },
                )
        except MigrationError:
            raise
        except Exception as exc:
            raise MigrationError(
                f"Migration {migration.version} ({migration.name}) failed and was rolled "
                f"back: {exc}"
            ) from exc
        finally:
            raw.execute("PRAGMA foreign_keys=ON")
    _LOG.info("applied migration %s (%s)", migration.version, migration.name)


__all__ = ["MIGRATIONS", "Migration", "MigrationError", "applied_versions", "migrate"]
