"""Layered configuration for ovpnctl.

Sources are applied in order, later ones winning:

1. Built-in defaults (the dataclass defaults below).
2. The YAML file, ``/etc/ovpnctl/config.yml`` unless ``--config-file`` or
   ``OVPNCTL_CONFIG_FILE`` names another one.
3. ``OVPNCTL_*`` environment variables. A double underscore descends into a
   section, so ``OVPNCTL_NETWORK__RULES_FILE`` sets ``network.rules_file``.
4. Programmatic overrides (the CLI's ``--lock-timeout``).

Environment values go through ``yaml.safe_load`` so ``45`` arrives as an
integer and ``true`` as a boolean.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .errors import OvpnctlError
from .exit_codes import ExitCode

ENV_PREFIX = "OVPNCTL_"
CONFIG_ENV_VAR = "OVPNCTL_CONFIG_FILE"
DEFAULT_CONFIG_FILE = Path("/etc/ovpnctl/config.yml")
DEFAULT_LOCK_TIMEOUT = 30.0


class ConfigError(OvpnctlError):
    """Raised when configuration parsing fails."""

    kind = "config"
    exit_code = ExitCode.VALIDATION


@dataclass(frozen=True)
class PackagesConfig:
    """System packages installed during provisioning."""

    apt_bin: str = "apt-get"
    names: tuple[str, ...] = ("openvpn", "easy-rsa", "iptables-persistent")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return _section_dict(self)


@dataclass(frozen=True)
class EasyRSAConfig:
    """Locations of the certificate tooling."""

    bin: str = "/usr/share/easy-rsa/easyrsa"
    openvpn_bin: str = "openvpn"
    ca_common_name: str = "OpenVPN-CA"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return _section_dict(self)


@dataclass(frozen=True)
class NetworkConfig:
    """Firewall and forwarding tool locations."""

    iptables_bin: str = "iptables"
    iptables_save_bin: str = "iptables-save"
    sysctl_bin: str = "sysctl"
    ip_bin: str = "ip"
    sysctl_conf: Path = Path("/etc/sysctl.d/99-openvpn.conf")
    rules_file: Path = Path("/etc/iptables/rules.v4")
    fallback_interface: str = "eth0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return _section_dict(self)


@dataclass(frozen=True)
class SystemdConfig:
    """Binaries and unit template used to drive the daemons."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    unit_prefix: str = "openvpn-server@"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return _section_dict(self)


@dataclass(frozen=True)
class LegacyPathsConfig:
    """Paths used by single-instance installs, adopted as the ``default`` instance."""

    easyrsa_dir: Path = Path("/etc/openvpn/easy-rsa")
    config_path: Path = Path("/etc/openvpn/server.conf")
    status_file: Path = Path("/var/log/openvpn/status.log")
    log_file: Path = Path("/var/log/openvpn/openvpn.log")
    ccd_dir: Path = Path("/etc/openvpn/ccd")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return _section_dict(self)


SECTIONS: dict[str, type[Any]] = {
    "packages": PackagesConfig,
    "easyrsa": EasyRSAConfig,
    "network": NetworkConfig,
    "systemd": SystemdConfig,
    "legacy": LegacyPathsConfig,
}

DIRECTORY_DEFAULTS: dict[str, Path] = {
    "state_dir": Path("/var/lib/ovpnctl"),
    "server_dir": Path("/etc/openvpn/server"),
    "log_dir": Path("/var/log/openvpn"),
    "logs_dir": Path("/var/log/ovpnctl"),
    "runtime_dir": Path("/run/ovpnctl"),
    "templates_dir": Path("/etc/ovpnctl/templates"),
}

TOP_LEVEL_KEYS = {"config_file", "database", "lock_timeout", *DIRECTORY_DEFAULTS, *SECTIONS}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ovpnctl."""

    config_file: Path
    state_dir: Path
    database: Path
    server_dir: Path
    log_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    packages: PackagesConfig
    easyrsa: EasyRSAConfig
    network: NetworkConfig
    systemd: SystemdConfig
    legacy: LegacyPathsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        data: dict[str, object] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name in SECTIONS:
                data[item.name] = value.to_dict()
            elif isinstance(value, Path):
                data[item.name] = str(value)
            else:
                data[item.name] = value
        return data


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    elif environ.get(CONFIG_ENV_VAR):
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = DEFAULT_CONFIG_FILE

    raw: dict[str, Any] = {}
    for layer in (_read_file(path), _from_environment(environ), dict(overrides or {})):
        _merge_into(raw, layer)
    raw.pop("config_file", None)
    return _resolve(path, raw)


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(document)


def _from_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for key, value in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        node = tree
        for segment in segments[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} conflicts with the scalar {ENV_PREFIX}{segment.upper()}.")
            node = child
        node[segments[-1]] = _parse_scalar(value)
    return tree


def _parse_scalar(value: str) -> object:
    try:
        return yaml.safe_load(value.strip())
    except yaml.YAMLError:
        return value.strip()


def _merge_into(target: dict[str, Any], layer: Mapping[str, Any]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        elif isinstance(value, Mapping):
            target[key] = {}
            _merge_into(target[key], value)
        else:
            target[key] = value


def _resolve(path: Path, raw: Mapping[str, Any]) -> AppConfig:
    unknown = set(raw) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")

    directories = {
        key: _path(raw.get(key, default), key) for key, default in DIRECTORY_DEFAULTS.items()
    }
    database = raw.get("database")
    sections = {name: _build_section(name, cls, raw.get(name)) for name, cls in SECTIONS.items()}
    return AppConfig(
        config_file=path,
        database=(
            _path(database, "database") if database else directories["state_dir"] / "ovpnctl.db"
        ),
        lock_timeout=_timeout(raw.get("lock_timeout", DEFAULT_LOCK_TIMEOUT)),
        **directories,
        **sections,
    )


_SectionT = TypeVar("_SectionT")


def _build_section(name: str, cls: type[_SectionT], value: object) -> _SectionT:
    if value is None:
        return cls()
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {name} to be a mapping. Got {type(value).__name__}.")
    defaults = cls()
    known = {item.name for item in fields(defaults)}
    unknown = set(value) - known
    if unknown:
        raise ConfigError(f"Unknown {name} configuration keys: {', '.join(sorted(unknown))}.")

    values: dict[str, object] = {}
    for key, item in value.items():
        label = f"{name}.{key}"
        default = getattr(defaults, key)
        if isinstance(default, Path):
            values[key] = _path(item, label)
        elif isinstance(default, tuple):
            values[key] = _names(item, label)
        else:
            values[key] = str(item)
    return cls(**values)


def _names(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    names: list[str] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, str) or not entry.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        names.append(entry.strip())
    return tuple(names)


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _timeout(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected lock_timeout to be a number. Got {value!r}.")
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for lock_timeout: {value!r}.") from exc
    if seconds <= 0:
        raise ConfigError(f"lock_timeout must be greater than zero. Got {seconds}.")
    return seconds


def _section_dict(section: object) -> dict[str, object]:
    data: dict[str, object] = {}
    for item in fields(section):  # type: ignore[arg-type]
        value = getattr(section, item.name)
        if isinstance(value, Path):
            value = str(value)
        elif isinstance(value, tuple):
            value = list(value)
        data[item.name] = value
    return data


__all__ = [
    "AppConfig",
    "ConfigError",
    "EasyRSAConfig",
    "LegacyPathsConfig",
    "NetworkConfig",
    "PackagesConfig",
    "SystemdConfig",
    "load_config",
]
