"""Immutable value records exchanged between ovpnctl components.

ORM rows never leave :mod:`ovpnctl.state`; callers receive these frozen
records instead. :meth:`ServerSettings.with_changes` is the single place
where daemon settings are validated.
"""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from ..errors import ValidationError
from .models import Client, Instance, ServerConfig, SetupState

INSTANCE_NAME_PATTERN = re.compile(r"[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?")
INSTANCE_NAME_MAX = 32
DISPLAY_NAME_MAX = 64
CLIENT_NAME_PATTERN = re.compile(r"[a-zA-Z0-9_-]+")
CLIENT_NAME_MAX = 64
NOTES_MAX = 500
ALLOWED_COMPRESSION = ("", "lz4", "lz4-v2", "lzo", "stub", "stub-v2")
_KEEPALIVE_PATTERN = re.compile(r"\d+ \d+")
_CIPHER_PATTERN = re.compile(r"[A-Za-z0-9-]+")


class InstanceStatus(str, Enum):
    """Lifecycle state of an instance."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class ProvisioningStep(str, Enum):
    """Last provisioning step whose side effects completed."""

    NONE = "none"
    PACKAGES_INSTALLED = "packages_installed"
    PKI_INITIALIZED = "pki_initialized"
    SERVER_CONFIGURED = "server_configured"
    NETWORK_CONFIGURED = "network_configured"
    RUNNING = "running"


class ClientStatus(str, Enum):
    """Credential state."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def validate_instance_name(name: str) -> str:
    """Validate and normalise an instance name."""
    normalised = name.strip()
    if not normalised:
        raise ValidationError("Instance name must be a non-empty string.")
    if len(normalised) > INSTANCE_NAME_MAX:
        raise ValidationError(f"Instance name must be at most {INSTANCE_NAME_MAX} characters.")
    if not INSTANCE_NAME_PATTERN.fullmatch(normalised):
        raise ValidationError(
            "Instance name must contain letters, digits and inner hyphens only."
        )
    return normalised


def validate_display_name(value: str | None) -> str | None:
    """Validate an optional display name."""
    if value is None:
        return None
    if len(value) > DISPLAY_NAME_MAX:
        raise ValidationError(f"Display name must be at most {DISPLAY_NAME_MAX} characters.")
    return value


def validate_client_name(name: str) -> str:
    """Validate a client (certificate common) name."""
    normalised = name.strip()
    if not normalised:
        raise ValidationError("Client name must be a non-empty string.")
    if len(normalised) > CLIENT_NAME_MAX:
        raise ValidationError(f"Client name must be at most {CLIENT_NAME_MAX} characters.")
    if not CLIENT_NAME_PATTERN.fullmatch(normalised):
        raise ValidationError("Client name must match [a-zA-Z0-9_-]+.")
    return normalised


def validate_ipv4(value: str, label: str) -> str:
    """Return *value* when it is a dotted IPv4 address."""
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ValueError as exc:
        raise ValidationError(f"{label} must be an IPv4 address: {value!r}.") from exc


def validate_netmask(value: str, label: str = "Subnet mask") -> str:
    """Return *value* when it is a contiguous dotted IPv4 netmask."""
    address = validate_ipv4(value, label)
    try:
        network = ipaddress.IPv4Network(f"0.0.0.0/{address}")
    except ValueError as exc:
        raise ValidationError(f"{label} is not a contiguous netmask: {value!r}.") from exc
    # ipaddress also accepts host masks such as 0.0.0.255.
    if str(network.netmask) != address:
        raise ValidationError(f"{label} is not a contiguous netmask: {value!r}.")
    return address


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem locations owned by one instance."""

    authority_dir: Path
    config_path: Path
    status_file: Path
    log_file: Path
    ccd_dir: Path

    @classmethod
    def derive(cls, server_dir: Path, log_dir: Path, name: str) -> InstancePaths:
        """Return the canonical paths for instance *name*."""
        return cls(
            authority_dir=server_dir / name / "easy-rsa",
            config_path=server_dir / f"{name}.conf",
            status_file=log_dir / f"{name}-status.log",
            log_file=log_dir / f"{name}.log",
            ccd_dir=server_dir / name / "ccd",
        )

    @property
    def pool_file(self) -> Path:
        """Return the address pool persistence file next to the log."""
        return self.log_file.parent / f"{self.log_file.stem}-ipp.txt"

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "authority_dir": str(self.authority_dir),
            "config_path": str(self.config_path),
            "status_file": str(self.status_file),
            "log_file": str(self.log_file),
            "ccd_dir": str(self.ccd_dir),
        }


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """Snapshot of an instance row."""

    id: int
    name: str
    display_name: str | None
    status: InstanceStatus
    paths: InstancePaths
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Instance) -> InstanceRecord:
        """Build a record from an ORM row."""
        return cls(
            id=row.id,
            name=row.name,
            display_name=row.display_name,
            status=InstanceStatus(row.status),
            paths=InstancePaths(
                authority_dir=Path(row.easyrsa_dir),
                config_path=Path(row.config_path),
                status_file=Path(row.status_file),
                log_file=Path(row.log_file),
                ccd_dir=Path(row.ccd_dir),
            ),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "status": self.status.value,
            "paths": self.paths.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True, slots=True)
class Route:
    """A network pushed to clients."""

    network: str
    netmask: str

    @classmethod
    def parse(cls, value: object) -> Route:
        """Parse ``"10.1.0.0/255.255.0.0"``, ``"10.1.0.0/16"`` or a mapping."""
        if isinstance(value, Route):
            return value
        if isinstance(value, Mapping):
            network = str(value.get("network", ""))
            netmask = str(value.get("netmask", ""))
        elif isinstance(value, str) and "/" in value:
            network, _, suffix = value.partition("/")
            if suffix.isdigit():
                try:
                    parsed = ipaddress.IPv4Network(f"0.0.0.0/{suffix}")
                except ValueError as exc:
                    raise ValidationError(f"Invalid route prefix: {value!r}.") from exc
                netmask = str(parsed.netmask)
            else:
                netmask = suffix
        elif isinstance(value, str) and " " in value.strip():
            network, netmask = value.split(None, 1)
        else:
            raise ValidationError(f"Route must be 'network/netmask': {value!r}.")
        network = validate_ipv4(network, "Route network")
        netmask = validate_netmask(netmask, "Route netmask")
        return cls(network=network, netmask=netmask)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"network": self.network, "netmask": self.netmask}


@dataclass(frozen=True, slots=True)
class ServerSettings:
    """Daemon settings of one instance."""

    hostname: str = "vpn.example.com"
    protocol: str = "udp"
    port: int = 1194
    dev_type: str = "tun"
    subnet: str = "10.8.0.0"
    subnet_mask: str = "255.255.255.0"
    dns: tuple[str, ...] = ("1.1.1.1", "1.0.0.1")
    cipher: str = "AES-256-GCM"
    auth: str = "SHA256"
    tls_auth: bool = True
    compress: str = ""
    client_to_client: bool = False
    max_clients: int = 100
    keepalive: str = "10 120"
    pki_initialized: bool = False
    routes: tuple[Route, ...] = ()

    @classmethod
    def from_row(cls, row: ServerConfig) -> ServerSettings:
        """Build settings from an ORM row."""
        return cls(
            hostname=row.hostname,
            protocol=row.protocol,
            port=row.port,
            dev_type=row.dev_type,
            subnet=row.subnet,
            subnet_mask=row.subnet_mask,
            dns=tuple(row.dns or ()),
            cipher=row.cipher,
            auth=row.auth,
            tls_auth=bool(row.tls_auth),
            compress=row.compress or "",
            client_to_client=bool(row.client_to_client),
            max_clients=row.max_clients,
            keepalive=row.keepalive,
            pki_initialized=bool(row.pki_initialized),
            routes=tuple(Route.parse(item) for item in (row.push_routes or ())),
        )

    def apply_to(self, row: ServerConfig) -> None:
        """Copy these settings onto *row*."""
        row.hostname = self.hostname
        row.protocol = self.protocol
        row.port = self.port
        row.dev_type = self.dev_type
        row.subnet = self.subnet
        row.subnet_mask = self.subnet_mask
        row.dns = list(self.dns)
        row.cipher = self.cipher
        row.auth = self.auth
        row.tls_auth = self.tls_auth
        row.compress = self.compress
        row.client_to_client = self.client_to_client
        row.max_clients = self.max_clients
        row.keepalive = self.keepalive
        row.pki_initialized = self.pki_initialized
        row.push_routes = [route.to_dict() for route in self.routes]

    @property
    def network(self) -> ipaddress.IPv4Network:
        """Return the client address network."""
        return ipaddress.IPv4Network(f"{self.subnet}/{self.subnet_mask}", strict=False)

    def with_changes(self, changes: Mapping[str, object]) -> ServerSettings:
        """Return a validated copy with *changes* applied."""
        known = {item.name for item in fields(self)}
        unknown = set(changes) - known
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ValidationError(f"Unknown server settings: {joined}.")
        values: dict[str, object] = {}
        for key, raw in changes.items():
            if raw is None:
                continue
            values[key] = _coerce_setting(key, raw)
        updated = replace(self, **values)
        updated._check()
        return updated

    def _check(self) -> None:
        if not self.hostname.strip():
            raise ValidationError("hostname must be a non-empty string.")
        if self.protocol not in ("udp", "tcp"):
            raise ValidationError("protocol must be 'udp' or 'tcp'.")
        if not 1 <= self.port <= 65535:
            raise ValidationError("port must be between 1 and 65535.")
        if self.dev_type not in ("tun", "tap"):
            raise ValidationError("dev_type must be 'tun' or 'tap'.")
        validate_ipv4(self.subnet, "subnet")
        validate_netmask(self.subnet_mask, "subnet_mask")
        for resolver in self.dns:
            validate_ipv4(resolver, "dns entry")
        if not _CIPHER_PATTERN.fullmatch(self.cipher):
            raise ValidationError(f"cipher is not a valid cipher name: {self.cipher!r}.")
        if not _CIPHER_PATTERN.fullmatch(self.auth):
            raise ValidationError(f"auth is not a valid digest name: {self.auth!r}.")
        if self.compress not in ALLOWED_COMPRESSION:
            allowed = ", ".join(repr(item) for item in ALLOWED_COMPRESSION)
            raise ValidationError(f"compress must be one of {allowed}.")
        if self.max_clients < 1:
            raise ValidationError("max_clients must be at least 1.")
        if not _KEEPALIVE_PATTERN.fullmatch(self.keepalive):
            raise ValidationError("keepalive must look like '<interval> <timeout>'.")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "hostname": self.hostname,
            "protocol": self.protocol,
            "port": self.port,
            "dev_type": self.dev_type,
            "subnet": self.subnet,
            "subnet_mask": self.subnet_mask,
            "dns": list(self.dns),
            "cipher": self.cipher,
            "auth": self.auth,
            "tls_auth": self.tls_auth,
            "compress": self.compress,
            "client_to_client": self.client_to_client,
            "max_clients": self.max_clients,
            "keepalive": self.keepalive,
            "pki_initialized": self.pki_initialized,
            "routes": [route.to_dict() for route in self.routes],
        }


def _coerce_setting(key: str, raw: object) -> object:
    if key in ("port", "max_clients"):
        if isinstance(raw, bool):
            raise ValidationError(f"{key} must be an integer.")
        try:
            return int(raw)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{key} must be an integer. Got {raw!r}.") from exc
    if key in ("tls_auth", "client_to_client", "pki_initialized"):
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValidationError(f"{key} must be a boolean. Got {raw!r}.")
        return bool(raw)
    if key == "dns":
        if isinstance(raw, str):
            return tuple(item.strip() for item in raw.split(",") if item.strip())
        if isinstance(raw, Sequence):
            return tuple(str(item).strip() for item in raw)
        raise ValidationError("dns must be a list of IPv4 addresses.")
    if key == "routes":
        if isinstance(raw, (str, bytes)) or not isinstance(raw, Sequence):
            raise ValidationError("routes must be a list of 'network/netmask' entries.")
        return tuple(Route.parse(item) for item in raw)
    return str(raw).strip()


@dataclass(frozen=True, slots=True)
class ProvisioningStatus:
    """Snapshot of a setup_state row."""

    step: ProvisioningStep
    completed: bool
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None

    @classmethod
    def from_row(cls, row: SetupState) -> ProvisioningStatus:
        """Build a record from an ORM row."""
        return cls(
            step=ProvisioningStep(row.step),
            completed=bool(row.completed),
            started_at=row.started_at,
            completed_at=row.completed_at,
            error=row.error,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "step": self.step.value,
            "completed": self.completed,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class ClientRecord:
    """Snapshot of a client credential row."""

    id: int
    name: str
    email: str | None
    status: ClientStatus
    cert_cn: str
    static_ip: str | None
    notes: str | None
    created_at: datetime
    revoked_at: datetime | None
    expires_at: datetime | None

    @classmethod
    def from_row(cls, row: Client) -> ClientRecord:
        """Build a record from an ORM row."""
        return cls(
            id=row.id,
            name=row.name,
            email=row.email,
            status=ClientStatus(row.status),
            cert_cn=row.cert_cn,
            static_ip=row.static_ip,
            notes=row.notes,
            created_at=row.created_at,
            revoked_at=row.revoked_at,
            expires_at=row.expires_at,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "status": self.status.value,
            "cert_cn": self.cert_cn,
            "static_ip": self.static_ip,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "revoked_at": _iso(self.revoked_at),
            "expires_at": _iso(self.expires_at),
        }


__all__ = [
    "ClientRecord",
    "ClientStatus",
    "InstancePaths",
    "InstanceRecord",
    "InstanceStatus",
    "ProvisioningStatus",
    "ProvisioningStep",
    "Route",
    "ServerSettings",
    "validate_client_name",
    "validate_display_name",
    "validate_instance_name",
    "validate_ipv4",
    "validate_netmask",
]
