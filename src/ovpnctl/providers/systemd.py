"""Systemd provider controlling ``openvpn-server@<instance>`` units."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..errors import ExternalCommandError
from .process import CommandResult, CommandRunner


@dataclass(slots=True)
class SystemdProvider:
    """Manage the templated OpenVPN service unit of each instance."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    unit_prefix: str = "openvpn-server@"

    def unit_name(self, instance: str) -> str:
        """Return the systemd unit name for *instance*."""
        safe = instance.replace("/", "-")
        return f"{self.unit_prefix}{safe}.service"

    def enable(self, instance: str) -> CommandResult:
        """Enable the instance unit."""
        return self._systemctl("enable", self.unit_name(instance))

    def disable(self, instance: str) -> CommandResult:
        """Disable the instance unit."""
        return self._systemctl("disable", self.unit_name(instance))

    def start(self, instance: str) -> CommandResult:
        """Start the instance unit."""
        return self._systemctl("start", self.unit_name(instance))

    def stop(self, instance: str) -> CommandResult:
        """Stop the instance unit."""
        return self._systemctl("stop", self.unit_name(instance))

    def restart(self, instance: str) -> CommandResult:
        """Restart the instance unit."""
        return self._systemctl("restart", self.unit_name(instance))

    def is_active(self, instance: str) -> bool:
        """Return ``True`` when systemd reports the unit as active."""
        try:
            result = self._systemctl("is-active", self.unit_name(instance), check=False)
        except ExternalCommandError:
            return False
        return result.stdout.strip() == "active"

    def active_state(self, instance: str) -> str:
        """Return the raw ``is-active`` answer (``active``, ``inactive``, ``failed``...)."""
        try:
            result = self._systemctl("is-active", self.unit_name(instance), check=False)
        except ExternalCommandError:
            return "unknown"
        return result.stdout.strip() or "unknown"

    def status(self, instance: str) -> CommandResult:
        """Return the status output for the unit."""
        return self._systemctl("status", self.unit_name(instance), "--no-pager", check=False)

    def logs(self, instance: str, *, lines: int | None = None) -> CommandResult:
        """Return journalctl output for the unit."""
        args: list[str] = [self.journalctl_bin, "--unit", self.unit_name(instance), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        return self.runner.run(args)

    def _systemctl(self, command: str, *args: str, check: bool = True) -> CommandResult:
        return self.runner.run([self.systemctl_bin, command, *args], check=check)


__all__ = ["SystemdProvider"]
