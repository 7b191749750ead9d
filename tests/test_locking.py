"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from ovpnctl.locking import LockManager, LockTimeoutError


def test_instance_lock_writes_holder_metadata(tmp_path: Path) -> None:
    """Acquiring a lock records the holder and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    lock_path = tmp_path / "run" / "instances" / "office.lock"

    with manager.instance_lock("office") as handle:
        assert handle.path == lock_path
        assert handle.wait_ms >= 0
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data == {"pid": os.getpid(), "path": str(lock_path)}

    # The file stays behind but is free again.
    with manager.instance_lock("office", timeout=0.2):
        pass
    assert lock_path.exists()


def test_instance_lock_times_out_while_held(tmp_path: Path) -> None:
    """A second holder gives up once the timeout elapses."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("office"):
        with pytest.raises(LockTimeoutError, match="office.lock"):
            with manager.instance_lock("office", timeout=0.1):
                pass


def test_different_instances_do_not_contend(tmp_path: Path) -> None:
    """Locks for separate instances can be held at the same time."""
    manager = LockManager(tmp_path / "run", default_timeout=0.2)

    with manager.instance_lock("office"):
        with manager.instance_lock("lab"):
            pass


def test_mutate_instances_takes_global_then_sorted_instances(tmp_path: Path) -> None:
    """Bundles hold the registry lock first and each named instance once."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["office", "lab", "office"]) as bundle:
        assert [handle.path for handle in bundle.handles] == [
            tmp_path / "run" / "ovpnctl.lock",
            tmp_path / "run" / "instances" / "lab.lock",
            tmp_path / "run" / "instances" / "office.lock",
        ]
        assert bundle.wait_ms >= 0
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass


def test_instance_named_like_the_global_lock(tmp_path: Path) -> None:
    """An instance called ovpnctl does not contend with the registry lock."""
    manager = LockManager(tmp_path / "run", default_timeout=0.3)

    with manager.mutate_instances(["ovpnctl"]) as bundle:
        assert len({handle.path for handle in bundle.handles}) == 2


def test_lock_timeout_error_maps_to_conflict() -> None:
    """Lock timeouts surface as HTTP conflicts."""
    error = LockTimeoutError("busy")

    assert error.status_code == 409
    assert error.kind == "lock_timeout"
