"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ovpnctl.config import EasyRSAConfig, NetworkConfig, PackagesConfig
from ovpnctl.errors import ExternalCommandError
from ovpnctl.locking import LockManager
from ovpnctl.providers import CommandResult, CommandRunner, HostProviders, SystemdProvider
from ovpnctl.rendering import ConfigRenderer
from ovpnctl.state import Database, InstanceRegistry, migrate
from ovpnctl.templates import TemplateEngine

Effect = Callable[[tuple[str, ...]], None]


class FakeRunner(CommandRunner):
    """Record commands and answer them from scripted rules instead of executing them."""

    def __init__(self) -> None:
        """Start with no recorded calls and no rules."""
        self.calls: list[tuple[str, ...]] = []
        self._rules: list[tuple[str, int, str, str, Effect | None]] = []

    def on(
        self,
        token: str,
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Effect | None = None,
    ) -> None:
        """Answer commands containing *token*; later rules win."""
        self._rules.append((token, returncode, stdout, stderr, effect))

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        """Record *args* and return the scripted result."""
        command = tuple(str(arg) for arg in args)
        self.calls.append(command)
        result = CommandResult(args=command, returncode=0, stdout="", stderr="")
        for token, returncode, stdout, stderr, effect in reversed(self._rules):
            if token in command:
                if effect is not None:
                    effect(command)
                result = CommandResult(command, returncode, stdout, stderr)
                break
        if check and not result.ok:
            raise ExternalCommandError(command, result.returncode, result.stderr)
        return result

    def commands_with(self, token: str) -> list[tuple[str, ...]]:
        """Return recorded commands containing *token*."""
        return [call for call in self.calls if token in call]


def make_certificate(common_name: str, *, days: int = 825) -> tuple[str, str]:
    """Return a self-signed PEM certificate and key for *common_name*."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


def _pki_dir(command: tuple[str, ...]) -> Path:
    for arg in command:
        if arg.startswith("--pki-dir="):
            return Path(arg.split("=", 1)[1])
    raise AssertionError(f"no --pki-dir in {command}")


def _issue(command: tuple[str, ...]) -> None:
    pki = _pki_dir(command)
    name = command[-2]
    cert, key = make_certificate(name)
    (pki / "issued").mkdir(parents=True, exist_ok=True)
    (pki / "private").mkdir(parents=True, exist_ok=True)
    # EasyRSA prefixes the PEM block with a text dump.
    (pki / "issued" / f"{name}.crt").write_text(
        f"Certificate:\n    Subject: CN={name}\n{cert}", encoding="utf-8"
    )
    (pki / "private" / f"{name}.key").write_text(key, encoding="utf-8")


def _init_pki(command: tuple[str, ...]) -> None:
    _pki_dir(command).mkdir(parents=True, exist_ok=True)


def _build_ca(command: tuple[str, ...]) -> None:
    pki = _pki_dir(command)
    cert, key = make_certificate("OpenVPN-CA")
    (pki / "private").mkdir(parents=True, exist_ok=True)
    (pki / "ca.crt").write_text(cert, encoding="utf-8")
    (pki / "private" / "ca.key").write_text(key, encoding="utf-8")


def _revoke(command: tuple[str, ...]) -> None:
    pki = _pki_dir(command)
    (pki / "issued" / f"{command[-1]}.crt").unlink(missing_ok=True)


def _write(name: str, content: str) -> Effect:
    def effect(command: tuple[str, ...]) -> None:
        pki = _pki_dir(command)
        pki.mkdir(parents=True, exist_ok=True)
        (pki / name).write_text(content, encoding="utf-8")

    return effect


def _genkey(command: tuple[str, ...]) -> None:
    target = Path(command[-1])
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("-----BEGIN OpenVPN Static key V1-----\nabc\n", encoding="utf-8")


def install_easyrsa(runner: FakeRunner) -> None:
    """Make *runner* create the files EasyRSA and ``openvpn --genkey`` would."""
    runner.on("init-pki", effect=_init_pki)
    runner.on("build-ca", effect=_build_ca)
    runner.on("build-server-full", effect=_issue)
    runner.on("build-client-full", effect=_issue)
    runner.on("gen-dh", effect=_write("dh.pem", "DH PARAMETERS\n"))
    runner.on("gen-crl", effect=_write("crl.pem", "X509 CRL\n"))
    runner.on("revoke", effect=_revoke)
    runner.on("--genkey", effect=_genkey)


@pytest.fixture
def runner() -> FakeRunner:
    """Return a command runner that never executes anything."""
    return FakeRunner()


@pytest.fixture
def database() -> Iterator[Database]:
    """Return a migrated in-memory database."""
    db = Database.in_memory()
    migrate(db)
    yield db
    db.dispose()


@pytest.fixture
def registry(database: Database, tmp_path: Path) -> InstanceRegistry:
    """Return a registry rooted in the temporary path."""
    return InstanceRegistry(
        database=database,
        server_dir=tmp_path / "server",
        log_dir=tmp_path / "log",
    )


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    """Return a lock manager with a short timeout."""
    return LockManager(tmp_path / "run", default_timeout=1.0)


@pytest.fixture
def renderer() -> ConfigRenderer:
    """Return a renderer using the built-in templates."""
    return ConfigRenderer(TemplateEngine.with_overrides(None))


@pytest.fixture
def network_config(tmp_path: Path) -> NetworkConfig:
    """Return network settings whose persisted files live in the temporary path."""
    return NetworkConfig(
        sysctl_conf=tmp_path / "sysctl.d" / "99-openvpn.conf",
        rules_file=tmp_path / "iptables" / "rules.v4",
    )


@pytest.fixture
def providers(runner: FakeRunner, network_config: NetworkConfig) -> HostProviders:
    """Return host providers wired to the fake runner."""
    return HostProviders(
        runner=runner,
        systemd=SystemdProvider(runner=runner),
        easyrsa=EasyRSAConfig(bin="easyrsa"),
        network=network_config,
    )


@pytest.fixture
def packages() -> PackagesConfig:
    """Return the default package list."""
    return PackagesConfig()
