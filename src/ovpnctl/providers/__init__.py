"""Provider implementations used by ovpnctl."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..config import EasyRSAConfig, NetworkConfig
from ..state.records import InstanceRecord, ServerSettings
from .easyrsa import AuthorityPaths, CredentialAuthority
from .network import NetworkConfigurator, virtual_interface_name
from .process import CommandResult, CommandRunner
from .systemd import SystemdProvider


@dataclass(slots=True)
class HostProviders:
    """Bind the host-level providers to individual instances."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    systemd: SystemdProvider = field(default_factory=SystemdProvider)
    easyrsa: EasyRSAConfig = field(default_factory=EasyRSAConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)

    def authority(self, instance: InstanceRecord) -> CredentialAuthority:
        """Return the certificate authority of *instance*."""
        return CredentialAuthority(
            authority_dir=instance.paths.authority_dir,
            runner=self.runner,
            easyrsa_bin=self.easyrsa.bin,
            openvpn_bin=self.easyrsa.openvpn_bin,
            ca_common_name=self.easyrsa.ca_common_name,
        )

    def device(self, instance: InstanceRecord, settings: ServerSettings) -> str:
        """Return the virtual interface name of *instance*."""
        return virtual_interface_name(settings.dev_type, instance.name)

    def network_for(
        self,
        instance: InstanceRecord,
        settings: ServerSettings,
    ) -> NetworkConfigurator:
        """Return the network configurator of *instance*."""
        return NetworkConfigurator(
            device=self.device(instance, settings),
            runner=self.runner,
            settings=self.network,
        )


__all__ = [
    "AuthorityPaths",
    "CommandResult",
    "CommandRunner",
    "CredentialAuthority",
    "HostProviders",
    "NetworkConfigurator",
    "SystemdProvider",
]
