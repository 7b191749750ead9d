"""Tests for status feed parsing and session history."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from ovpnctl.errors import ValidationError
from ovpnctl.monitor import ConnectionMonitor, parse_status
from ovpnctl.state import Database, InstanceRegistry
from ovpnctl.state.models import Client

MARKED = """\
TITLE,OpenVPN 2.6.9 x86_64-pc-linux-gnu
TIME,2026-10-17 09:00:00,1792227600
HEADER,CLIENT_LIST,Common Name,Real Address,Virtual Address,Virtual IPv6 Address,\
Bytes Received,Bytes Sent,Connected Since,Connected Since (time_t),Username
CLIENT_LIST,alice,198.51.100.7:51820,10.8.0.6,,18452,90311,2026-10-17 08:30:00,1792225800,UNDEF
CLIENT_LIST,bob,203.0.113.9:1194,10.8.0.7,,oops,512,2026-10-17 08:55:00,1792227300,UNDEF
CLIENT_LIST,truncated,198.51.100.8
HEADER,ROUTING_TABLE,Virtual Address,Common Name,Real Address,Last Ref,Last Ref (time_t)
ROUTING_TABLE,10.8.0.6,alice,198.51.100.7:51820,2026-10-17 09:00:00,1792227600
GLOBAL_STATS,Max bcast/mcast queue length,0
END
"""

UNMARKED = """\
OpenVPN CLIENT LIST
Updated,Sat Oct 17 09:00:00 2026
Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since
alice,198.51.100.7:51820,18452,90311,Sat Oct 17 08:30:00 2026
broken,row
ROUTING TABLE
Virtual Address,Common Name,Real Address,Last Ref
10.8.0.6,alice,198.51.100.7:51820,Sat Oct 17 09:00:00 2026
GLOBAL STATS
Max bcast/mcast queue length,0
END
"""


def _status_line(name: str, connected: str, received: int = 100, sent: int = 200) -> str:
    return f"CLIENT_LIST,{name},198.51.100.1:5000,10.8.0.9,,{received},{sent},{connected},0,UNDEF"


@pytest.fixture
def status_file(tmp_path: Path) -> Path:
    """Return the path of a status feed that does not exist yet."""
    return tmp_path / "status.log"


@pytest.fixture
def monitor(database: Database, status_file: Path) -> ConnectionMonitor:
    """Return a monitor that is not bound to an instance."""
    return ConnectionMonitor(database=database, status_file=status_file)


def _feed(path: Path, *lines: str) -> None:
    path.write_text("\n".join(["TITLE,OpenVPN", *lines, "END"]) + "\n", encoding="utf-8")


def test_parse_marked_layout() -> None:
    """Tagged rows are parsed and short rows are skipped."""
    connections = parse_status(MARKED)

    assert [connection.common_name for connection in connections] == ["alice", "bob"]
    alice = connections[0]
    assert alice.real_address == "198.51.100.7:51820"
    assert alice.virtual_address == "10.8.0.6"
    assert alice.bytes_received == 18452
    assert alice.bytes_sent == 90311
    assert alice.connected_since == "2026-10-17 08:30:00"
    assert connections[1].bytes_received == 0


def test_parse_marked_tab_layout() -> None:
    """Version 3 feeds use tabs instead of commas."""
    content = MARKED.replace(",", "\t")

    connections = parse_status(content)

    assert connections[0].common_name == "alice"
    assert connections[0].bytes_sent == 90311


def test_parse_unmarked_layout() -> None:
    """The sectioned layout joins virtual addresses from the routing table."""
    connections = parse_status(UNMARKED)

    assert len(connections) == 1
    assert connections[0].to_dict() == {
        "common_name": "alice",
        "real_address": "198.51.100.7:51820",
        "virtual_address": "10.8.0.6",
        "virtual_ipv6_address": "",
        "bytes_received": 18452,
        "bytes_sent": 90311,
        "connected_since": "Sat Oct 17 08:30:00 2026",
    }


def test_parse_untagged_rows_under_client_header() -> None:
    """Rows without a tag inside the client block use the plain column order."""
    content = (
        "TITLE,OpenVPN\n"
        "HEADER,CLIENT_LIST,Common Name,Real Address,Virtual Address,Virtual IPv6 Address,"
        "Bytes Received,Bytes Sent,Connected Since\n"
        "alice,198.51.100.7:51820,10.8.0.6,,100,200,2026-10-17 08:30:00\n"
        "bob,203.0.113.9:1194,10.8.0.7,,300\n"
        "HEADER,ROUTING_TABLE,Virtual Address,Common Name,Real Address,Last Ref\n"
        "10.8.0.6,alice,198.51.100.7:51820,2026-10-17 09:00:00\n"
        "END\n"
    )

    connections = parse_status(content)

    assert [connection.common_name for connection in connections] == ["alice", "bob"]
    assert connections[0].virtual_address == "10.8.0.6"
    assert (connections[0].bytes_received, connections[0].bytes_sent) == (100, 200)
    assert connections[0].connected_since == "2026-10-17 08:30:00"
    assert (connections[1].bytes_received, connections[1].connected_since) == (300, "")


def test_parse_garbage_yields_nothing() -> None:
    """Unrecognised content is not an error."""
    assert parse_status("") == []
    assert parse_status("hello\nworld\n") == []


def test_missing_status_file(monitor: ConnectionMonitor) -> None:
    """A daemon that has not written its feed has no sessions."""
    assert monitor.get_active_connections() == []
    assert monitor.record_snapshot() == 0


def test_snapshot_updates_then_closes_sessions(
    monitor: ConnectionMonitor, status_file: Path
) -> None:
    """Repeated polls refresh one row and a vanished session is closed."""
    _feed(status_file, _status_line("alice", "2026-10-17 08:30:00", 100, 200))
    assert monitor.record_snapshot() == 1

    _feed(status_file, _status_line("alice", "2026-10-17 08:30:00", 500, 900))
    monitor.record_snapshot()

    history = monitor.get_connection_history()
    assert history.total == 1
    row = history.rows[0]
    assert (row.bytes_received, row.bytes_sent) == (500, 900)
    assert row.disconnected_at is None

    _feed(status_file)
    monitor.record_snapshot(now=datetime(2026, 10, 17, 9, 0, 0))

    closed = monitor.get_connection_history().rows[0]
    assert closed.disconnected_at == "2026-10-17 09:00:00"
    assert closed.duration_seconds == 1800


def test_reconnect_starts_a_new_session(monitor: ConnectionMonitor, status_file: Path) -> None:
    """A new connect time is a new history row."""
    _feed(status_file, _status_line("alice", "2026-10-17 08:00:00"))
    monitor.record_snapshot(now=datetime(2026, 10, 17, 8, 5, 0))
    _feed(status_file, _status_line("alice", "2026-10-17 08:10:00"))
    monitor.record_snapshot(now=datetime(2026, 10, 17, 8, 15, 0))

    rows = monitor.get_connection_history().rows

    assert [row.connected_at for row in rows] == ["2026-10-17 08:10:00", "2026-10-17 08:00:00"]
    assert rows[0].disconnected_at is None
    assert rows[1].disconnected_at == "2026-10-17 08:15:00"
    assert rows[1].duration_seconds == 900


def test_history_pagination(monitor: ConnectionMonitor, status_file: Path) -> None:
    """History pages are most recent first."""
    _feed(
        status_file,
        *(_status_line(f"user{index}", f"2026-10-17 08:0{index}:00") for index in range(5)),
    )
    monitor.record_snapshot()

    page = monitor.get_connection_history(page=2, limit=2)

    assert page.total == 5
    assert [row.client_name for row in page.rows] == ["user2", "user1"]
    with pytest.raises(ValidationError):
        monitor.get_connection_history(page=0)
    with pytest.raises(ValidationError):
        monitor.get_connection_history(limit=101)


def test_bandwidth_stats(monitor: ConnectionMonitor, status_file: Path) -> None:
    """Totals are summed per client and ordered by bytes received."""
    _feed(
        status_file,
        _status_line("alice", "2026-10-17 08:00:00", 100, 10),
        _status_line("bob", "2026-10-17 08:01:00", 700, 70),
    )
    monitor.record_snapshot()
    _feed(status_file, _status_line("alice", "2026-10-17 08:30:00", 900, 90))
    monitor.record_snapshot()

    stats = monitor.get_bandwidth_stats()

    assert [stat.client_name for stat in stats] == ["alice", "bob"]
    assert stats[0].to_dict() == {
        "client_name": "alice",
        "total_received": 1000,
        "total_sent": 100,
        "connection_count": 2,
        "last_connected": "2026-10-17 08:30:00",
    }
    assert stats[1].connection_count == 1


def test_instance_monitor_links_clients(database: Database, registry: InstanceRegistry) -> None:
    """Sessions of known clients carry the client id; history is per instance."""
    office = registry.create("office")
    lab = registry.create("lab")
    with database.session() as session:
        client = Client(instance_id=office.id, name="alice", cert_cn="alice")
        session.add(client)
        session.flush()
        client_id = client.id

    office_monitor = ConnectionMonitor.for_instance(database, office)
    _feed(
        office.paths.status_file,
        _status_line("alice", "2026-10-17 08:00:00"),
        _status_line("guest", "2026-10-17 08:05:00"),
    )
    office_monitor.record_snapshot()

    rows = {row.client_name: row for row in office_monitor.get_connection_history().rows}
    assert rows["alice"].client_id == client_id
    assert rows["guest"].client_id is None
    assert ConnectionMonitor.for_instance(database, lab).get_connection_history().total == 0


def test_unmarked_timestamps_are_stored_sortable(
    monitor: ConnectionMonitor, status_file: Path
) -> None:
    """Sessions from the sectioned layout are ordered by actual connect time."""
    status_file.write_text(
        "OpenVPN CLIENT LIST\n"
        "Updated,Mon Oct 19 09:00:00 2026\n"
        "Common Name,Real Address,Bytes Received,Bytes Sent,Connected Since\n"
        "old,198.51.100.7:51820,10,20,Sat Oct 17 08:30:00 2026\n"
        "new,198.51.100.8:51820,30,40,Mon Oct 19 08:30:00 2026\n"
        "ROUTING TABLE\n"
        "END\n",
        encoding="utf-8",
    )
    monitor.record_snapshot()
    monitor.record_snapshot()

    rows = monitor.get_connection_history().rows

    assert [row.client_name for row in rows] == ["new", "old"]
    assert rows[0].connected_at == "2026-10-19 08:30:00"
    assert len(rows) == 2
    stats = {stat.client_name: stat for stat in monitor.get_bandwidth_stats()}
    assert stats["old"].last_connected == "2026-10-17 08:30:00"
