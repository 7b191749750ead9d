"""Resumable, step-tracked provisioning of an instance.

``setup`` walks an instance from a bare registry entry to a running daemon.
The persisted step always names the last step whose side effects completed,
so a failed run shows exactly how far it got. Failures are never rolled back
and never retried automatically; the next ``setup`` starts again from the
first step, and every step is safe to repeat.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass

from .config import PackagesConfig
from .errors import ConflictError, OvpnctlError, ServiceError
from .locking import LockManager
from .providers import HostProviders
from .rendering import ConfigRenderer
from .state.database import utcnow
from .state.records import (
    InstanceRecord,
    InstanceStatus,
    ProvisioningStatus,
    ProvisioningStep,
    ServerSettings,
)
from .state.registry import InstanceRegistry
from .templates import write_if_changed

_LOG = logging.getLogger("ovpnctl.provisioning")

StepCallback = Callable[[ProvisioningStep], None]


@dataclass(slots=True)
class ProvisioningOrchestrator:
    """Drive the provisioning state machine of each instance."""

    registry: InstanceRegistry
    locks: LockManager
    renderer: ConfigRenderer
    providers: HostProviders
    packages: PackagesConfig

    def status(self, name: str) -> ProvisioningStatus:
        """Return the provisioning state of instance *name*."""
        return self.registry.provisioning_status(name)

    def setup(
        self,
        name: str,
        params: Mapping[str, object] | None = None,
        *,
        on_step: StepCallback | None = None,
    ) -> ProvisioningStatus:
        """Provision instance *name* with server settings *params*.

        Raises :class:`ConflictError` without side effects when the instance is
        already provisioned, and :class:`ServiceError` wrapping the cause when a
        step fails.
        """
        instance = self.registry.require(name)
        self._ensure_not_completed(name)
        with self.locks.instance_lock(name):
            self._ensure_not_completed(name)
            settings = self.registry.server_settings(name).with_changes(params or {})

            self.registry.update_provisioning(
                name,
                step=ProvisioningStep.NONE,
                error=None,
                started_at=utcnow(),
                completed_at=None,
            )
            self.registry.update_status(name, InstanceStatus.PROVISIONING)

            reached = ProvisioningStep.NONE
            try:
                for step, action in self._steps(instance, settings):
                    _LOG.info("instance %s: running step %s", name, step.value)
                    action()
                    self.registry.update_provisioning(name, step=step)
                    reached = step
                    if on_step is not None:
                        on_step(step)
            except (OvpnctlError, OSError) as exc:
                self.registry.update_provisioning(name, error=str(exc))
                self.registry.update_status(name, InstanceStatus.ERROR)
                raise ServiceError(
                    f"Provisioning of '{name}' failed after step '{reached.value}': {exc}",
                    cause=exc,
                ) from exc

            self.registry.update_provisioning(name, completed=True, completed_at=utcnow())
            self.registry.update_status(name, InstanceStatus.ACTIVE)
            return self.registry.provisioning_status(name)

    def reset(self, name: str) -> ProvisioningStatus:
        """Clear the completion flag so the instance can be provisioned again."""
        self.registry.require(name)
        with self.locks.instance_lock(name):
            return self.registry.update_provisioning(
                name,
                step=ProvisioningStep.NONE,
                completed=False,
                started_at=None,
                completed_at=None,
                error=None,
            )

    def _ensure_not_completed(self, name: str) -> None:
        if self.registry.provisioning_status(name).completed:
            raise ConflictError(f"Instance '{name}' is already provisioned.")

    def _steps(
        self,
        instance: InstanceRecord,
        settings: ServerSettings,
    ) -> Iterator[tuple[ProvisioningStep, Callable[[], None]]]:
        yield ProvisioningStep.PACKAGES_INSTALLED, self._install_packages
        yield ProvisioningStep.PKI_INITIALIZED, lambda: self._initialize_authority(instance)
        yield ProvisioningStep.SERVER_CONFIGURED, lambda: self._configure_server(
            instance, settings
        )
        yield ProvisioningStep.NETWORK_CONFIGURED, lambda: self._configure_network(
            instance, settings
        )
        yield ProvisioningStep.RUNNING, lambda: self._start_service(instance)

    def _install_packages(self) -> None:
        runner = self.providers.runner
        runner.run([self.packages.apt_bin, "update", "-y"])
        runner.run([self.packages.apt_bin, "install", "-y", *self.packages.names])

    def _initialize_authority(self, instance: InstanceRecord) -> None:
        authority = self.providers.authority(instance)
        authority.initialize()
        authority.build_authority()
        authority.issue_server()
        authority.generate_dh()
        authority.generate_shared_secret()
        authority.regenerate_crl()

    def _configure_server(self, instance: InstanceRecord, settings: ServerSettings) -> None:
        settings = self.registry.save_server_settings(
            instance.name, settings.with_changes({"pki_initialized": True})
        )
        authority = self.providers.authority(instance)
        content = self.renderer.render_server_config(
            settings,
            authority.paths(),
            instance.paths,
            self.providers.device(instance, settings),
            instance_name=instance.name,
        )
        write_if_changed(instance.paths.config_path, content, mode=0o600)
        instance.paths.ccd_dir.mkdir(parents=True, exist_ok=True)

    def _configure_network(self, instance: InstanceRecord, settings: ServerSettings) -> None:
        network = self.providers.network_for(instance, settings)
        network.enable_forwarding()
        network.setup_nat(settings.subnet, settings.subnet_mask)
        network.persist()

    def _start_service(self, instance: InstanceRecord) -> None:
        self.providers.systemd.enable(instance.name)
        self.providers.systemd.start(instance.name)


__all__ = ["ProvisioningOrchestrator"]
