"""Instance registry backed by the SQLite database.

The registry owns instance rows and their one-to-one companions (server
settings and provisioning state). Creation is atomic: the directories and
all three rows appear together or not at all. Deletion is best effort for
everything outside the database and reports what it could not clean up.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import AdvisoryResult, ConflictError, CreationError, NotFoundError, OvpnctlError
from .database import Database, utcnow
from .models import Instance, ServerConfig, SetupState
from .records import (
    InstancePaths,
    InstanceRecord,
    InstanceStatus,
    ProvisioningStatus,
    ServerSettings,
    validate_display_name,
    validate_instance_name,
)

ServiceHook = Callable[[str], object]


@dataclass(slots=True)
class InstanceRegistry:
    """Create, look up and delete instances."""

    database: Database
    server_dir: Path
    log_dir: Path
    stop_service: ServiceHook | None = None
    disable_service: ServiceHook | None = None

    def derive_paths(self, name: str) -> InstancePaths:
        """Return the filesystem layout for instance *name*."""
        return InstancePaths.derive(self.server_dir, self.log_dir, name)

    def create(self, name: str, display_name: str | None = None) -> InstanceRecord:
        """Create instance *name* with default settings and an empty provisioning state."""
        name = validate_instance_name(name)
        display_name = validate_display_name(display_name)
        if self.get(name) is not None:
            raise ConflictError(f"Instance '{name}' already exists.")

        paths = self.derive_paths(name)
        created: list[Path] = []
        try:
            for directory in (paths.authority_dir, paths.ccd_dir, paths.log_file.parent):
                _mkdirs(directory, created)
            with self.database.session() as session:
                row = Instance(
                    name=name,
                    display_name=display_name,
                    status=InstanceStatus.PROVISIONING.value,
                    easyrsa_dir=str(paths.authority_dir),
                    config_path=str(paths.config_path),
                    status_file=str(paths.status_file),
                    log_file=str(paths.log_file),
                    ccd_dir=str(paths.ccd_dir),
                )
                row.server_config = ServerConfig()
                row.setup_state = SetupState(step="none", completed=False)
                session.add(row)
                session.flush()
                record = InstanceRecord.from_row(row)
        except IntegrityError as exc:
            _remove_created(created)
            raise ConflictError(f"Instance '{name}' already exists.") from exc
        except (OSError, SQLAlchemyError) as exc:
            _remove_created(created)
            raise CreationError(f"Failed to create instance '{name}': {exc}") from exc
        return record

    def list(self) -> list[InstanceRecord]:
        """Return all instances ordered by creation time."""
        with self.database.session() as session:
            rows = session.scalars(select(Instance).order_by(Instance.created_at, Instance.id))
            return [InstanceRecord.from_row(row) for row in rows]

    def get(self, name: str) -> InstanceRecord | None:
        """Return instance *name* or ``None``."""
        with self.database.session() as session:
            row = _by_name(session, name)
            return InstanceRecord.from_row(row) if row is not None else None

    def get_by_id(self, instance_id: int) -> InstanceRecord | None:
        """Return the instance with primary key *instance_id* or ``None``."""
        with self.database.session() as session:
            row = session.get(Instance, instance_id)
            return InstanceRecord.from_row(row) if row is not None else None

    def require(self, name: str) -> InstanceRecord:
        """Return instance *name* or raise :class:`NotFoundError`."""
        record = self.get(name)
        if record is None:
            raise NotFoundError(f"Instance '{name}' not found.")
        return record

    def delete(self, name: str) -> AdvisoryResult[InstanceRecord]:
        """Delete instance *name* and its artifacts; absent instances are a no-op."""
        result: AdvisoryResult[InstanceRecord] = AdvisoryResult()
        record = self.get(name)
        if record is None:
            result.changed = False
            result.message = f"Instance '{name}' does not exist; nothing to delete."
            return result
        result.value = record

        for label, hook in (("stop", self.stop_service), ("disable", self.disable_service)):
            if hook is None:
                continue
            try:
                hook(name)
            except (OvpnctlError, OSError) as exc:
                result.warn(f"Failed to {label} service for '{name}': {exc}")

        paths = record.paths
        for directory in (paths.authority_dir, paths.ccd_dir):
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                pass
            except OSError as exc:
                result.warn(f"Failed to remove {directory}: {exc}")
        for path in (paths.config_path, paths.status_file, paths.log_file, paths.pool_file):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                result.warn(f"Failed to remove {path}: {exc}")
        instance_root = paths.authority_dir.parent
        if instance_root.name == name:
            try:
                instance_root.rmdir()
            except FileNotFoundError:
                pass
            except OSError as exc:
                result.warn(f"Failed to remove {instance_root}: {exc}")

        with self.database.session() as session:
            row = _by_name(session, name)
            if row is not None:
                session.delete(row)
        return result

    def update_status(self, name: str, status: InstanceStatus) -> None:
        """Set the lifecycle status of instance *name*."""
        with self.database.session() as session:
            row = _require_row(session, name)
            row.status = InstanceStatus(status).value
            row.updated_at = utcnow()

    # Companion rows ---------------------------------------------------
    def server_settings(self, name: str) -> ServerSettings:
        """Return the daemon settings of instance *name*."""
        with self.database.session() as session:
            row = _require_row(session, name)
            return ServerSettings.from_row(row.server_config)

    def save_server_settings(self, name: str, settings: ServerSettings) -> ServerSettings:
        """Persist *settings* for instance *name*."""
        with self.database.session() as session:
            row = _require_row(session, name)
            settings.apply_to(row.server_config)
            row.server_config.updated_at = utcnow()
            return ServerSettings.from_row(row.server_config)

    def provisioning_status(self, name: str) -> ProvisioningStatus:
        """Return the provisioning state of instance *name*."""
        with self.database.session() as session:
            row = _require_row(session, name)
            return ProvisioningStatus.from_row(row.setup_state)

    def update_provisioning(self, name: str, **changes: object) -> ProvisioningStatus:
        """Update fields of the provisioning state of instance *name*."""
        with self.database.session() as session:
            row = _require_row(session, name)
            state = row.setup_state
            for key, value in changes.items():
                if key not in {"step", "completed", "started_at", "completed_at", "error"}:
                    raise ValueError(f"Unknown provisioning field: {key}")
                if key == "step" and value is not None:
                    value = getattr(value, "value", value)
                setattr(state, key, value)
            return ProvisioningStatus.from_row(state)


def _by_name(session: Session, name: str) -> Instance | None:
    return session.scalars(select(Instance).where(Instance.name == name)).one_or_none()


def _require_row(session: Session, name: str) -> Instance:
    row = _by_name(session, name)
    if row is None:
        raise NotFoundError(f"Instance '{name}' not found.")
    return row


def _mkdirs(directory: Path, created: list[Path]) -> None:
    """Create *directory* and parents, recording in *created* those that did not exist."""
    missing: list[Path] = []
    current = directory
    while not current.exists():
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent
    created.extend(reversed(missing))
    directory.mkdir(parents=True, exist_ok=True)


def _remove_created(created: list[Path]) -> None:
    for directory in reversed(created):
        shutil.rmtree(directory, ignore_errors=True)


__all__ = ["InstanceRegistry"]
