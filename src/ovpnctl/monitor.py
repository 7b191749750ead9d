"""Live session telemetry read from an instance's status feed.

The daemon rewrites its status file periodically. Two layouts exist in the
wild: the marked layout (``status-version 2``/``3``) whose rows start with
``HEADER``/``CLIENT_LIST``/``ROUTING_TABLE`` tags, and the original unmarked
layout split into ``OpenVPN CLIENT LIST`` and ``ROUTING TABLE`` sections.
Parsing is tolerant: rows that are too short or malformed are skipped.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .state.database import Database
from .state.models import Client, ConnectionLog
from .state.records import InstanceRecord

_LOG = logging.getLogger("ovpnctl.monitor")

MAX_PAGE_SIZE = 100
_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S", "%a %b %d %H:%M:%S %Y")


@dataclass(frozen=True, slots=True)
class ActiveConnection:
    """One connected client as reported by the status feed."""

    common_name: str
    real_address: str
    virtual_address: str
    virtual_ipv6_address: str
    bytes_received: int
    bytes_sent: int
    connected_since: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "common_name": self.common_name,
            "real_address": self.real_address,
            "virtual_address": self.virtual_address,
            "virtual_ipv6_address": self.virtual_ipv6_address,
            "bytes_received": self.bytes_received,
            "bytes_sent": self.bytes_sent,
            "connected_since": self.connected_since,
        }


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    """Snapshot of a connection_log row."""

    id: int
    client_name: str
    client_id: int | None
    real_address: str
    virtual_address: str
    bytes_received: int
    bytes_sent: int
    connected_at: str
    disconnected_at: str | None
    duration_seconds: int | None

    @classmethod
    def from_row(cls, row: ConnectionLog) -> ConnectionRecord:
        """Build a record from an ORM row."""
        return cls(
            id=row.id,
            client_name=row.client_name,
            client_id=row.client_id,
            real_address=row.real_address,
            virtual_address=row.virtual_address,
            bytes_received=row.bytes_received,
            bytes_sent=row.bytes_sent,
            connected_at=row.connected_at,
            disconnected_at=row.disconnected_at,
            duration_seconds=row.duration_seconds,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "client_name": self.client_name,
            "client_id": self.client_id,
            "real_address": self.real_address,
            "virtual_address": self.virtual_address,
            "bytes_received": self.bytes_received,
            "bytes_sent": self.bytes_sent,
            "connected_at": self.connected_at,
            "disconnected_at": self.disconnected_at,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class HistoryPage:
    """A most-recent-first slice of connection history."""

    rows: list[ConnectionRecord]
    page: int
    limit: int
    total: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "rows": [row.to_dict() for row in self.rows],
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class BandwidthStat:
    """Cumulative traffic of one client."""

    client_name: str
    total_received: int
    total_sent: int
    connection_count: int
    last_connected: str | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "client_name": self.client_name,
            "total_received": self.total_received,
            "total_sent": self.total_sent,
            "connection_count": self.connection_count,
            "last_connected": self.last_connected,
        }


def _to_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return 0


def _split(line: str) -> list[str]:
    return line.split("\t") if "\t" in line else line.split(",")


def parse_status(content: str) -> list[ActiveConnection]:
    """Parse either status layout into active connections."""
    lines = [line.rstrip("\r") for line in content.splitlines()]
    if any(_split(line)[0] in ("HEADER", "CLIENT_LIST", "TITLE") for line in lines if line):
        return _parse_marked(lines)
    return _parse_unmarked(lines)


_MARKED_TAGS = {"TITLE", "TIME", "HEADER", "CLIENT_LIST", "ROUTING_TABLE", "GLOBAL_STATS"}


def _parse_marked(lines: Iterable[str]) -> list[ActiveConnection]:
    connections: list[ActiveConnection] = []
    in_client_block = False
    for line in lines:
        parts = _split(line)
        tag = parts[0]
        if tag == "END":
            break
        if tag == "HEADER":
            in_client_block = len(parts) > 1 and parts[1] == "CLIENT_LIST"
            continue
        # CLIENT_LIST,CN,Real,Virtual,Virtual IPv6,Bytes Received,Bytes Sent,Connected Since,...
        if tag == "CLIENT_LIST":
            if len(parts) >= 8:
                connections.append(_connection(parts[1:8]))
            continue
        # Untagged rows under the client header: CN,Real,Virtual,Virtual IPv6,Received,Sent,Since
        if in_client_block and tag not in _MARKED_TAGS and len(parts) >= 5:
            connections.append(_connection(parts[:7]))
    return connections


def _connection(fields: list[str]) -> ActiveConnection:
    fields = fields + [""] * (7 - len(fields))
    return ActiveConnection(
        common_name=fields[0],
        real_address=fields[1],
        virtual_address=fields[2],
        virtual_ipv6_address=fields[3],
        bytes_received=_to_int(fields[4]),
        bytes_sent=_to_int(fields[5]),
        connected_since=fields[6],
    )


def _parse_unmarked(lines: Iterable[str]) -> list[ActiveConnection]:
    sessions: list[list[str]] = []
    virtual: dict[tuple[str, str], str] = {}
    section = None
    for line in lines:
        if not line.strip():
            continue
        if line.startswith("OpenVPN CLIENT LIST"):
            section = "preamble"
            continue
        if line.startswith("ROUTING TABLE"):
            section = "routing"
            continue
        if line.startswith("GLOBAL STATS") or line.startswith("END"):
            break
        parts = _split(line)
        if section == "preamble" and parts[0] == "Common Name":
            section = "clients"
            continue
        if section == "clients" and len(parts) >= 5:
            sessions.append(parts)
        elif section == "routing" and parts[0] != "Virtual Address" and len(parts) >= 3:
            # Virtual Address,Common Name,Real Address,Last Ref
            virtual.setdefault((parts[1], parts[2]), parts[0])

    # Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since
    return [
        ActiveConnection(
            common_name=parts[0],
            real_address=parts[1],
            virtual_address=virtual.get((parts[0], parts[1]), ""),
            virtual_ipv6_address="",
            bytes_received=_to_int(parts[2]),
            bytes_sent=_to_int(parts[3]),
            connected_since=parts[4],
        )
        for parts in sessions
    ]


def _parse_timestamp(value: str) -> datetime | None:
    normalised = " ".join(value.split())
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(normalised, fmt)
        except ValueError:
            continue
    return None


def _normalise_timestamp(value: str) -> str:
    """Return *value* in the sortable ISO-like form when it can be parsed."""
    parsed = _parse_timestamp(value)
    return parsed.strftime(_TIMESTAMP_FORMATS[0]) if parsed is not None else value


@dataclass(slots=True)
class ConnectionMonitor:
    """Read the status feed of one instance and keep its session history."""

    database: Database
    status_file: Path
    instance_id: int | None = None

    @classmethod
    def for_instance(cls, database: Database, instance: InstanceRecord) -> ConnectionMonitor:
        """Return a monitor bound to *instance*."""
        return cls(
            database=database,
            status_file=instance.paths.status_file,
            instance_id=instance.id,
        )

    def get_active_connections(self) -> list[ActiveConnection]:
        """Return the sessions currently listed in the status feed."""
        try:
            content = Path(self.status_file).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        return parse_status(content)

    def record_snapshot(self, *, now: datetime | None = None) -> int:
        """Persist the current sessions; return how many rows were written.

        A session is identified by client name and connect time, so polling
        the same session again refreshes its counters. Open sessions missing
        from the feed are closed.
        """
        latest: dict[str, ActiveConnection] = {}
        for connection in self.get_active_connections():
            latest[connection.common_name] = connection
        now = now or datetime.now()

        with self.database.session() as session:
            client_ids = self._client_ids(session, latest)
            seen: set[int] = set()
            for connection in latest.values():
                connected_at = _normalise_timestamp(connection.connected_since)
                row = session.scalars(
                    select(ConnectionLog).where(
                        self._scope(),
                        ConnectionLog.client_name == connection.common_name,
                        ConnectionLog.connected_at == connected_at,
                    )
                ).first()
                if row is None:
                    row = ConnectionLog(
                        instance_id=self.instance_id,
                        client_name=connection.common_name,
                        connected_at=connected_at,
                    )
                    session.add(row)
                row.client_id = client_ids.get(connection.common_name)
                row.real_address = connection.real_address
                row.virtual_address = connection.virtual_address
                row.bytes_received = connection.bytes_received
                row.bytes_sent = connection.bytes_sent
                row.disconnected_at = None
                row.duration_seconds = None
                session.flush()
                seen.add(row.id)

            stale = session.scalars(
                select(ConnectionLog).where(
                    self._scope(),
                    ConnectionLog.disconnected_at.is_(None),
                    ConnectionLog.id.not_in(seen),
                )
            )
            for row in stale:
                row.disconnected_at = now.strftime(_TIMESTAMP_FORMATS[0])
                started = _parse_timestamp(row.connected_at)
                if started is not None:
                    row.duration_seconds = max(int((now - started).total_seconds()), 0)
        _LOG.debug("recorded %d active sessions from %s", len(latest), self.status_file)
        return len(latest)

    def get_connection_history(self, page: int = 1, limit: int = 20) -> HistoryPage:
        """Return one page of session history, most recent first."""
        if page < 1:
            raise ValidationError("page must be at least 1.")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
        with self.database.session() as session:
            total = session.scalar(select(func.count(ConnectionLog.id)).where(self._scope())) or 0
            rows = session.scalars(
                select(ConnectionLog)
                .where(self._scope())
                .order_by(ConnectionLog.connected_at.desc(), ConnectionLog.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            records = [ConnectionRecord.from_row(row) for row in rows]
        return HistoryPage(rows=records, page=page, limit=limit, total=total)

    def get_bandwidth_stats(self) -> list[BandwidthStat]:
        """Return per-client traffic totals ordered by bytes received."""
        received = func.sum(ConnectionLog.bytes_received)
        statement = (
            select(
                ConnectionLog.client_name,
                received,
                func.sum(ConnectionLog.bytes_sent),
                func.count(ConnectionLog.id),
                func.max(ConnectionLog.connected_at),
            )
            .where(self._scope())
            .group_by(ConnectionLog.client_name)
            .order_by(received.desc(), ConnectionLog.client_name)
        )
        with self.database.session() as session:
            return [
                BandwidthStat(
                    client_name=name,
                    total_received=int(total_received or 0),
                    total_sent=int(total_sent or 0),
                    connection_count=int(count),
                    last_connected=last,
                )
                for name, total_received, total_sent, count, last in session.execute(statement)
            ]

    def _scope(self) -> ColumnElement[bool]:
        if self.instance_id is None:
            return ConnectionLog.instance_id.is_(None)
        return ConnectionLog.instance_id == self.instance_id

    def _client_ids(self, session: Session, names: Iterable[str]) -> dict[str, int]:
        if self.instance_id is None:
            return {}
        rows = session.execute(
            select(Client.name, Client.id).where(
                Client.instance_id == self.instance_id,
                Client.name.in_(list(names)),
            )
        )
        return {name: client_id for name, client_id in rows}


__all__ = [
    "ActiveConnection",
    "BandwidthStat",
    "ConnectionMonitor",
    "ConnectionRecord",
    "HistoryPage",
    "parse_status",
]
