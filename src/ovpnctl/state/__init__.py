"""Persistent state: database handle, ORM rows, value records and migrations."""
from __future__ import annotations

from .database import Base, Database, utcnow
from .migrations import MIGRATIONS, Migration, MigrationError, applied_versions, migrate
from .records import (
    ClientRecord,
    ClientStatus,
    InstancePaths,
    InstanceRecord,
    InstanceStatus,
    ProvisioningStatus,
    ProvisioningStep,
    Route,
    ServerSettings,
)
from .registry import InstanceRegistry

__all__ = [
    "Base",
    "ClientRecord",
    "ClientStatus",
    "Database",
    "InstancePaths",
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceStatus",
    "MIGRATIONS",
    "Migration",
    "MigrationError",
    "ProvisioningStatus",
    "ProvisioningStep",
    "Route",
    "ServerSettings",
    "applied_versions",
    "migrate",
    "utcnow",
]
