"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from typing import Any

import pytest
from conftest import FakeRunner

from ovpnctl.errors import ExternalCommandError
from ovpnctl.providers.process import CommandRunner
from ovpnctl.providers.systemd import SystemdProvider


@pytest.fixture
def provider(runner: FakeRunner) -> SystemdProvider:
    """Return a provider recording its commands."""
    return SystemdProvider(runner=runner)


def test_unit_name_uses_template_prefix(provider: SystemdProvider) -> None:
    """Each instance maps onto the templated server unit."""
    assert provider.unit_name("office") == "openvpn-server@office.service"


@pytest.mark.parametrize("action", ["enable", "disable", "start", "stop", "restart"])
def test_lifecycle_actions_call_systemctl(
    provider: SystemdProvider, runner: FakeRunner, action: str
) -> None:
    """Lifecycle helpers pass the unit to systemctl."""
    getattr(provider, action)("office")

    assert runner.calls == [("systemctl", action, "openvpn-server@office.service")]


def test_failed_start_raises(provider: SystemdProvider, runner: FakeRunner) -> None:
    """A non-zero systemctl exit surfaces as an external command error."""
    runner.on("start", returncode=1, stderr="Job failed")

    with pytest.raises(ExternalCommandError, match="Job failed"):
        provider.start("office")


def test_active_state_reports_raw_answer(provider: SystemdProvider, runner: FakeRunner) -> None:
    """``is-active`` output is passed through, even on a non-zero exit."""
    runner.on("is-active", returncode=3, stdout="failed\n")

    assert provider.active_state("office") == "failed"
    assert provider.is_active("office") is False


def test_active_state_unknown_when_empty(provider: SystemdProvider) -> None:
    """An empty answer is reported as unknown."""
    assert provider.active_state("office") == "unknown"


def test_is_active_true(provider: SystemdProvider, runner: FakeRunner) -> None:
    """An ``active`` answer reports the unit as running."""
    runner.on("is-active", stdout="active\n")

    assert provider.is_active("office") is True


def test_logs_passes_line_limit(provider: SystemdProvider, runner: FakeRunner) -> None:
    """Journal reads are bounded by the requested line count."""
    runner.on("journalctl", stdout="line\n")

    result = provider.logs("office", lines=25)

    assert result.stdout == "line\n"
    assert runner.calls[-1] == (
        "journalctl",
        "--unit",
        "openvpn-server@office.service",
        "--no-pager",
        "--lines",
        "25",
    )


def test_command_runner_wraps_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing executable is reported without an exit status."""

    def fake_run(*_args: Any, **_kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("systemctl")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(ExternalCommandError) as excinfo:
        CommandRunner().run(["systemctl", "start", "x"])

    assert excinfo.value.returncode is None
    assert "not executed" in str(excinfo.value)


def test_command_runner_check_uses_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    """Failing commands carry their stderr; unchecked ones return the result."""

    def fake_run(args: list[str], **_kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, 5, stdout="", stderr="boom\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    runner = CommandRunner()

    with pytest.raises(ExternalCommandError, match="exit 5"):
        runner.run(["iptables", "-L"])
    result = runner.run(["iptables", "-C"], check=False)
    assert result.ok is False
    assert result.stderr == "boom\n"
