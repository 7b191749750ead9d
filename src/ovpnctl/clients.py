"""Client credential management for one instance.

Certificates live in the instance's authority; the database mirrors their
state. Revocation is the only transition away from ``active`` and renewal is
the only way back.
"""
from __future__ import annotations

import ipaddress
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    AdvisoryResult,
    ConflictError,
    ExternalCommandError,
    NotFoundError,
    OvpnctlError,
    RevokedNotFencedError,
    ValidationError,
)
from .locking import LockManager
from .providers import HostProviders
from .rendering import ConfigRenderer
from .state.database import utcnow
from .state.models import Client
from .state.records import (
    NOTES_MAX,
    ClientRecord,
    ClientStatus,
    InstanceRecord,
    InstanceStatus,
    Route,
    ServerSettings,
    validate_client_name,
    validate_ipv4,
)
from .state.registry import InstanceRegistry
from .templates import write_if_changed

_LOG = logging.getLogger("ovpnctl.clients")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


@dataclass(frozen=True, slots=True)
class ClientPage:
    """One page of a client listing."""

    clients: list[ClientRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        """Return the number of pages at this page size."""
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "clients": [client.to_dict() for client in self.clients],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "pages": self.pages,
            },
        }


@dataclass(slots=True)
class ClientService:
    """Issue, revoke, renew and export client credentials."""

    registry: InstanceRegistry
    locks: LockManager
    renderer: ConfigRenderer
    providers: HostProviders

    # Queries ----------------------------------------------------------
    def list(
        self,
        name: str,
        *,
        status: ClientStatus | str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> ClientPage:
        """Return clients of instance *name*, newest first."""
        instance = self.registry.require(name)
        if page < 1:
            raise ValidationError("page must be at least 1.")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")

        conditions = [Client.instance_id == instance.id]
        if status is not None:
            conditions.append(Client.status == ClientStatus(status).value)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(Client.name.like(pattern), Client.email.like(pattern)))

        with self.registry.database.session() as session:
            total = session.scalar(select(func.count(Client.id)).where(*conditions)) or 0
            rows = session.scalars(
                select(Client)
                .where(*conditions)
                .order_by(Client.created_at.desc(), Client.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            clients = [ClientRecord.from_row(row) for row in rows]
        return ClientPage(clients=clients, page=page, limit=limit, total=total)

    def get(self, name: str, client: str) -> ClientRecord:
        """Return client *client* of instance *name*."""
        instance = self.registry.require(name)
        with self.registry.database.session() as session:
            return ClientRecord.from_row(_require_client(session, instance, client))

    # Lifecycle --------------------------------------------------------
    def issue(
        self,
        name: str,
        client: str,
        *,
        static_address: str | None = None,
        notes: str | None = None,
        email: str | None = None,
    ) -> ClientRecord:
        """Issue a certificate for *client* and record it."""
        instance = self.registry.require(name)
        client = validate_client_name(client)
        if notes is not None and len(notes) > NOTES_MAX:
            raise ValidationError(f"notes must be at most {NOTES_MAX} characters.")

        with self.locks.instance_lock(name):
            settings = self.registry.server_settings(name)
            if static_address:
                static_address = _check_static_address(static_address, settings)
            with self.registry.database.session() as session:
                if _client_row(session, instance, client) is not None:
                    raise ConflictError(f"Client '{client}' already exists in '{name}'.")

            authority = self.providers.authority(instance)
            authority.issue_client(client)
            expires_at = authority.certificate_expiry(client)

            try:
                with self.registry.database.session() as session:
                    row = Client(
                        instance_id=instance.id,
                        name=client,
                        email=email,
                        status=ClientStatus.ACTIVE.value,
                        cert_cn=client,
                        static_ip=static_address or None,
                        notes=notes,
                        expires_at=expires_at,
                    )
                    session.add(row)
                    session.flush()
                    record = ClientRecord.from_row(row)
            except IntegrityError as exc:
                raise ConflictError(f"Client '{client}' already exists in '{name}'.") from exc

            if static_address:
                self._write_override(instance, client, static_address, settings.subnet_mask)
        _LOG.info("instance %s: issued client %s", name, client)
        return record

    def revoke(self, name: str, client: str) -> AdvisoryResult[ClientRecord]:
        """Revoke *client*; revoking twice only reports that nothing changed.

        When the revocation list cannot be regenerated the client is still
        marked revoked and :class:`RevokedNotFencedError` propagates; see
        :meth:`refence`.
        """
        instance = self.registry.require(name)
        result: AdvisoryResult[ClientRecord] = AdvisoryResult()
        with self.locks.instance_lock(name):
            current = self.get(name, client)
            if current.status is ClientStatus.REVOKED:
                result.value = current
                result.changed = False
                result.message = f"Client '{current.name}' is already revoked."
                return result

            authority = self.providers.authority(instance)
            try:
                authority.revoke(current.name)
            except RevokedNotFencedError:
                self._mark_revoked(instance, current.name)
                raise
            result.value = self._mark_revoked(instance, current.name)
            self._restart_if_active(instance, result)
        return result

    def refence(self, name: str) -> None:
        """Regenerate the revocation list of instance *name*."""
        instance = self.registry.require(name)
        with self.locks.instance_lock(name):
            self.providers.authority(instance).regenerate_crl()

    def renew(self, name: str, client: str) -> AdvisoryResult[ClientRecord]:
        """Replace the certificate of *client* and mark it active again.

        When the old certificate is revoked but the revocation list is not
        regenerated, the list is regenerated once more after the reissue. If
        that also fails :class:`RevokedNotFencedError` propagates with the
        renewal already recorded.
        """
        instance = self.registry.require(name)
        result: AdvisoryResult[ClientRecord] = AdvisoryResult()
        with self.locks.instance_lock(name):
            current = self.get(name, client)
            authority = self.providers.authority(instance)
            unfenced: RevokedNotFencedError | None = None
            try:
                authority.revoke(current.name)
            except RevokedNotFencedError as exc:
                unfenced = exc
            except ExternalCommandError as exc:
                result.warn(f"Previous certificate of '{current.name}' was not revoked: {exc}")
            authority.issue_client(current.name)
            expires_at = authority.certificate_expiry(current.name)

            with self.registry.database.session() as session:
                row = _require_client(session, instance, current.name)
                row.status = ClientStatus.ACTIVE.value
                row.revoked_at = None
                row.created_at = utcnow()
                row.expires_at = expires_at
                result.value = ClientRecord.from_row(row)

            if unfenced is not None:
                try:
                    authority.regenerate_crl()
                except ExternalCommandError:
                    raise unfenced
        return result

    # Overrides --------------------------------------------------------
    def override(self, name: str, client: str) -> str:
        """Return the per-client override file of *client* (empty when absent)."""
        instance = self.registry.require(name)
        current = self.get(name, client)
        path = instance.paths.ccd_dir / current.name
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def set_override(
        self,
        name: str,
        client: str,
        *,
        static_address: str | None = None,
        routes: Sequence[object] = (),
    ) -> str:
        """Rewrite the override file of *client*; return its new content."""
        instance = self.registry.require(name)
        parsed = [Route.parse(item) for item in routes]
        with self.locks.instance_lock(name):
            current = self.get(name, client)
            settings = self.registry.server_settings(name)
            if static_address:
                static_address = _check_static_address(static_address, settings)
            content = self._write_override(
                instance, current.name, static_address, settings.subnet_mask, parsed
            )
            with self.registry.database.session() as session:
                row = _require_client(session, instance, current.name)
                row.static_ip = static_address or None
        return content

    # Export -----------------------------------------------------------
    def profile(self, name: str, client: str) -> str:
        """Return the ``.ovpn`` profile of *client* with inline credentials."""
        instance = self.registry.require(name)
        current = self.get(name, client)
        if current.status is ClientStatus.REVOKED:
            raise ValidationError(f"Client '{current.name}' is revoked.")
        settings = self.registry.server_settings(name)
        authority = self.providers.authority(instance)
        return self.renderer.render_client_profile(
            settings,
            authority.ca_certificate(),
            authority.client_certificate(current.cert_cn),
            authority.client_key(current.cert_cn),
            authority.shared_secret() if settings.tls_auth else None,
        )

    # Helpers ----------------------------------------------------------
    def _mark_revoked(self, instance: InstanceRecord, client: str) -> ClientRecord:
        with self.registry.database.session() as session:
            row = _require_client(session, instance, client)
            row.status = ClientStatus.REVOKED.value
            row.revoked_at = utcnow()
            return ClientRecord.from_row(row)

    def _restart_if_active(
        self,
        instance: InstanceRecord,
        result: AdvisoryResult[ClientRecord],
    ) -> None:
        if instance.status is not InstanceStatus.ACTIVE:
            return
        try:
            self.providers.systemd.restart(instance.name)
        except OvpnctlError as exc:
            result.warn(f"Restart of '{instance.name}' failed: {exc}")

    def _write_override(
        self,
        instance: InstanceRecord,
        client: str,
        static_address: str | None,
        netmask: str,
        routes: Sequence[Route] = (),
    ) -> str:
        content = self.renderer.render_client_override(static_address, netmask, routes)
        write_if_changed(instance.paths.ccd_dir / client, content, mode=0o644)
        return content


def _client_row(session: Session, instance: InstanceRecord, client: str) -> Client | None:
    return session.scalars(
        select(Client).where(Client.instance_id == instance.id, Client.name == client)
    ).one_or_none()


def _require_client(session: Session, instance: InstanceRecord, client: str) -> Client:
    row = _client_row(session, instance, client)
    if row is None:
        raise NotFoundError(f"Client '{client}' not found in '{instance.name}'.")
    return row


def _check_static_address(value: str, settings: ServerSettings) -> str:
    address = ipaddress.IPv4Address(validate_ipv4(value, "static address"))
    network = settings.network
    if address not in network:
        raise ValidationError(f"Static address {address} is outside {network}.")
    if address in (network.network_address, network.broadcast_address):
        raise ValidationError(f"Static address {address} is not a usable host address.")
    return str(address)


__all__ = ["ClientPage", "ClientService", "DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE"]
