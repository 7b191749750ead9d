"""ORM tables for instances and their dependent rows."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base, utcnow


def _default_dns() -> list[str]:
    return ["1.1.1.1", "1.0.0.1"]


class Instance(Base):
    """One supervised OpenVPN server."""

    __tablename__ = "instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="provisioning")
    easyrsa_dir: Mapped[str] = mapped_column(Text, nullable=False)
    config_path: Mapped[str] = mapped_column(Text, nullable=False)
    status_file: Mapped[str] = mapped_column(Text, nullable=False)
    log_file: Mapped[str] = mapped_column(Text, nullable=False)
    ccd_dir: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    server_config: Mapped[ServerConfig] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )
    setup_state: Mapped[SetupState] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )
    clients: Mapped[list[Client]] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    connections: Mapped[list[ConnectionLog]] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ServerConfig(Base):
    """Daemon settings for one instance."""

    __tablename__ = "server_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        ForeignKey("instances.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    hostname: Mapped[str] = mapped_column(Text, nullable=False, default="vpn.example.com")
    protocol: Mapped[str] = mapped_column(String(8), nullable=False, default="udp")
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=1194)
    dev_type: Mapped[str] = mapped_column(String(8), nullable=False, default="tun")
    subnet: Mapped[str] = mapped_column(String(45), nullable=False, default="10.8.0.0")
    subnet_mask: Mapped[str] = mapped_column(String(45), nullable=False, default="255.255.255.0")
    dns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=_default_dns)
    cipher: Mapped[str] = mapped_column(String(32), nullable=False, default="AES-256-GCM")
    auth: Mapped[str] = mapped_column(String(32), nullable=False, default="SHA256")
    tls_auth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    compress: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    client_to_client: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_clients: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    keepalive: Mapped[str] = mapped_column(String(32), nullable=False, default="10 120")
    pki_initialized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    push_routes: Mapped[list[dict[str, str]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    instance: Mapped[Instance] = relationship(back_populates="server_config")


class SetupState(Base):
    """Provisioning progress for one instance."""

    __tablename__ = "setup_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        ForeignKey("instances.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    step: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    instance: Mapped[Instance] = relationship(back_populates="setup_state")


class Client(Base):
    """A client credential issued by an instance's authority."""

    __tablename__ = "clients"
    __table_args__ = (UniqueConstraint("instance_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        ForeignKey("instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    cert_cn: Mapped[str] = mapped_column(String(64), nullable=False)
    static_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    instance: Mapped[Instance] = relationship(back_populates="clients")


class ConnectionLog(Base):
    """One observed client session, updated in place while it stays connected."""

    __tablename__ = "connection_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("instances.id", ondelete="CASCADE"), nullable=True, index=True
    )
    client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    client_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    real_address: Mapped[str] = mapped_column(Text, nullable=False)
    virtual_address: Mapped[str] = mapped_column(Text, nullable=False)
    bytes_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bytes_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    connected_at: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    disconnected_at: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    instance: Mapped[Instance | None] = relationship(back_populates="connections")


__all__ = ["Client", "ConnectionLog", "Instance", "ServerConfig", "SetupState"]
