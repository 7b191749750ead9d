"""Day-two management of a provisioned instance's daemon."""
from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .errors import AdvisoryResult, NotFoundError, OvpnctlError
from .locking import LockManager
from .providers import HostProviders
from .rendering import ConfigRenderer
from .state.records import InstanceRecord, InstanceStatus, Route, ServerSettings
from .state.registry import InstanceRegistry
from .templates import write_if_changed

DEFAULT_LOG_LINES = 50


@dataclass(slots=True)
class ServerManager:
    """Edit settings, control the service and read daemon output."""

    registry: InstanceRegistry
    locks: LockManager
    renderer: ConfigRenderer
    providers: HostProviders

    def settings(self, name: str) -> ServerSettings:
        """Return the settings of instance *name*."""
        return self.registry.server_settings(name)

    def update_settings(
        self,
        name: str,
        changes: Mapping[str, object],
    ) -> AdvisoryResult[ServerSettings]:
        """Persist *changes*, re-render the configuration and restart a running daemon.

        The restart is opportunistic: its failure is reported as a warning.
        """
        instance = self.registry.require(name)
        with self.locks.instance_lock(name):
            current = self.registry.server_settings(name)
            updated = self.registry.save_server_settings(name, current.with_changes(changes))
            return self._apply(instance, updated)

    def routes(self, name: str) -> tuple[Route, ...]:
        """Return the networks pushed to clients of instance *name*."""
        return self.registry.server_settings(name).routes

    def set_routes(
        self,
        name: str,
        routes: Sequence[object],
    ) -> AdvisoryResult[ServerSettings]:
        """Replace the pushed routes of instance *name*."""
        return self.update_settings(name, {"routes": list(routes)})

    def rerender(self, name: str) -> bool:
        """Write the configuration of *name* from stored settings; return whether it changed."""
        instance = self.registry.require(name)
        settings = self.registry.server_settings(name)
        return self._write_config(instance, settings)

    def start(self, name: str) -> None:
        """Start the daemon of instance *name*."""
        self.registry.require(name)
        self.providers.systemd.start(name)
        self.registry.update_status(name, InstanceStatus.ACTIVE)

    def stop(self, name: str) -> None:
        """Stop the daemon of instance *name*."""
        self.registry.require(name)
        self.providers.systemd.stop(name)
        self.registry.update_status(name, InstanceStatus.INACTIVE)

    def restart(self, name: str) -> None:
        """Restart the daemon of instance *name*."""
        self.registry.require(name)
        self.providers.systemd.restart(name)
        self.registry.update_status(name, InstanceStatus.ACTIVE)

    def service_status(self, name: str) -> dict[str, object]:
        """Return the unit name and its systemd state."""
        self.registry.require(name)
        systemd = self.providers.systemd
        state = systemd.active_state(name)
        return {"unit": systemd.unit_name(name), "state": state, "active": state == "active"}

    def logs(self, name: str, lines: int = DEFAULT_LOG_LINES) -> str:
        """Return the last *lines* lines of the daemon log, falling back to the journal."""
        instance = self.registry.require(name)
        log_file = instance.paths.log_file
        if log_file.is_file():
            with log_file.open("r", encoding="utf-8", errors="replace") as handle:
                return "".join(deque(handle, maxlen=max(lines, 0)))
        return self.providers.systemd.logs(name, lines=lines).stdout

    def raw_config(self, name: str) -> str:
        """Return the rendered configuration file of instance *name*."""
        instance = self.registry.require(name)
        try:
            return instance.paths.config_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"Configuration for '{name}' has not been rendered yet."
            ) from exc

    def _apply(
        self,
        instance: InstanceRecord,
        settings: ServerSettings,
    ) -> AdvisoryResult[ServerSettings]:
        result: AdvisoryResult[ServerSettings] = AdvisoryResult(value=settings)
        if not settings.pki_initialized:
            return result
        changed = self._write_config(instance, settings)
        if changed and instance.status is InstanceStatus.ACTIVE:
            try:
                self.providers.systemd.restart(instance.name)
            except OvpnctlError as exc:
                result.warn(f"Settings saved but restart of '{instance.name}' failed: {exc}")
        return result

    def _write_config(self, instance: InstanceRecord, settings: ServerSettings) -> bool:
        authority = self.providers.authority(instance)
        content = self.renderer.render_server_config(
            settings,
            authority.paths(),
            instance.paths,
            self.providers.device(instance, settings),
            instance_name=instance.name,
        )
        return write_if_changed(instance.paths.config_path, content, mode=0o600)


__all__ = ["DEFAULT_LOG_LINES", "ServerManager"]
