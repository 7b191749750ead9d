"""Per-instance certificate authority backed by EasyRSA.

Every instance owns a private PKI under ``<authority_dir>/pki``; nothing is
shared between instances. Cryptographic work is delegated to the
``easyrsa`` script and ``openvpn --genkey``; this module only sequences the
calls and reads the resulting files.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

from ..errors import ExternalCommandError, NotFoundError, RevokedNotFencedError
from ..state.records import validate_client_name
from .process import CommandResult, CommandRunner

_PEM_CERTIFICATE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL,
)
SERVER_ENTITY = "server"


@dataclass(frozen=True, slots=True)
class AuthorityPaths:
    """Files the daemon configuration references."""

    ca: Path
    server_cert: Path
    server_key: Path
    dh: Path
    crl: Path
    tls_auth: Path


@dataclass(slots=True)
class CredentialAuthority:
    """EasyRSA wrapper bound to one authority directory."""

    authority_dir: Path
    runner: CommandRunner = field(default_factory=CommandRunner)
    easyrsa_bin: str = "/usr/share/easy-rsa/easyrsa"
    openvpn_bin: str = "openvpn"
    ca_common_name: str = "OpenVPN-CA"

    @property
    def pki_dir(self) -> Path:
        """Return the PKI directory managed by EasyRSA."""
        return Path(self.authority_dir) / "pki"

    def paths(self, server_name: str = SERVER_ENTITY) -> AuthorityPaths:
        """Return the paths of the server-side authority files."""
        pki = self.pki_dir
        return AuthorityPaths(
            ca=pki / "ca.crt",
            server_cert=pki / "issued" / f"{server_name}.crt",
            server_key=pki / "private" / f"{server_name}.key",
            dh=pki / "dh.pem",
            crl=pki / "crl.pem",
            tls_auth=pki / "ta.key",
        )

    # Lifecycle --------------------------------------------------------
    def initialize(self) -> CommandResult:
        """Create an empty PKI."""
        Path(self.authority_dir).mkdir(parents=True, exist_ok=True)
        return self._easyrsa("init-pki")

    def build_authority(self) -> CommandResult:
        """Build the root certificate without a passphrase."""
        return self._easyrsa(f"--req-cn={self.ca_common_name}", "build-ca", "nopass")

    def issue_server(self, name: str = SERVER_ENTITY) -> CommandResult:
        """Issue the server certificate and key."""
        return self._easyrsa("build-server-full", validate_client_name(name), "nopass")

    def issue_client(self, name: str) -> CommandResult:
        """Issue a client certificate and key for common name *name*."""
        return self._easyrsa("build-client-full", validate_client_name(name), "nopass")

    def generate_dh(self) -> CommandResult:
        """Generate Diffie-Hellman parameters."""
        return self._easyrsa("gen-dh")

    def generate_shared_secret(self) -> CommandResult:
        """Generate the static key used for tls-auth."""
        return self.runner.run(
            [self.openvpn_bin, "--genkey", "secret", str(self.paths().tls_auth)]
        )

    def regenerate_crl(self) -> CommandResult:
        """Regenerate the revocation list consulted by the daemon."""
        return self._easyrsa("gen-crl")

    def revoke(self, name: str) -> CommandResult:
        """Revoke *name* and regenerate the revocation list.

        Raises :class:`RevokedNotFencedError` when the revocation succeeded but
        the list could not be regenerated.
        """
        self._easyrsa("revoke", validate_client_name(name))
        try:
            return self.regenerate_crl()
        except ExternalCommandError as exc:
            raise RevokedNotFencedError(
                exc.command,
                exc.returncode,
                exc.stderr,
                message=(
                    f"Certificate '{name}' was revoked but the revocation list was not "
                    f"regenerated: {exc}"
                ),
            ) from exc

    # Material ---------------------------------------------------------
    def ca_certificate(self) -> str:
        """Return the PEM text of the root certificate."""
        return _read(self.paths().ca, "CA certificate")

    def client_certificate(self, name: str) -> str:
        """Return the PEM certificate issued to *name*, without the text dump."""
        raw = _read(self.pki_dir / "issued" / f"{validate_client_name(name)}.crt", "certificate")
        match = _PEM_CERTIFICATE.search(raw)
        return match.group(0) if match else raw.strip()

    def client_key(self, name: str) -> str:
        """Return the private key of *name*."""
        return _read(self.pki_dir / "private" / f"{validate_client_name(name)}.key", "key")

    def shared_secret(self) -> str:
        """Return the tls-auth static key."""
        return _read(self.paths().tls_auth, "tls-auth key")

    def certificate_expiry(self, name: str) -> datetime | None:
        """Return the expiry of the certificate issued to *name* (naive UTC)."""
        path = self.pki_dir / "issued" / f"{validate_client_name(name)}.crt"
        if not path.exists():
            return None
        match = _PEM_CERTIFICATE.search(path.read_text(encoding="utf-8"))
        if match is None:
            return None
        try:
            certificate = x509.load_pem_x509_certificate(match.group(0).encode("ascii"))
        except ValueError:
            return None
        return certificate.not_valid_after_utc.astimezone(UTC).replace(tzinfo=None)

    def _easyrsa(self, *args: str) -> CommandResult:
        return self.runner.run(
            [self.easyrsa_bin, "--batch", f"--pki-dir={self.pki_dir}", *args]
        )


def _read(path: Path, label: str) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError as exc:
        raise NotFoundError(f"{label} not found at {path}.") from exc


__all__ = ["AuthorityPaths", "CredentialAuthority", "SERVER_ENTITY"]
