"""Error taxonomy shared by every ovpnctl component.

Components raise the most specific subclass of :class:`OvpnctlError`; the CLI
and any HTTP collaborator translate them at the boundary using
:func:`exit_code_for`, :func:`http_status` and :func:`error_payload`.
Best-effort side operations never raise: they return an
:class:`AdvisoryResult` carrying warnings instead.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .exit_codes import ExitCode

T = TypeVar("T")


class OvpnctlError(RuntimeError):
    """Base class for errors raised by ovpnctl."""

    kind = "error"
    status_code = 500
    exit_code = ExitCode.PROVIDER

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"error": self.kind, "message": str(self)}


class ValidationError(OvpnctlError):
    """Raised when caller input is malformed or not allowed in the current state."""

    kind = "validation"
    status_code = 400
    exit_code = ExitCode.VALIDATION


class NotFoundError(OvpnctlError):
    """Raised when a named entity does not exist."""

    kind = "not_found"
    status_code = 404
    exit_code = ExitCode.VALIDATION


class ConflictError(OvpnctlError):
    """Raised when an operation collides with existing state."""

    kind = "conflict"
    status_code = 409
    exit_code = ExitCode.VALIDATION


class CreationError(OvpnctlError):
    """Raised when an instance could not be created atomically."""

    kind = "creation"
    exit_code = ExitCode.ENVIRONMENT


class ExternalCommandError(OvpnctlError):
    """Raised when an external program exits non-zero or cannot be executed."""

    kind = "command"

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        stderr: str = "",
        *,
        message: str | None = None,
    ) -> None:
        """Capture the failed command line, its exit status and stderr."""
        self.command = tuple(command)
        self.returncode = exit_code
        self.stderr = stderr.strip()
        if message is None:
            joined = " ".join(self.command)
            detail = self.stderr or "no output"
            status = "not executed" if exit_code is None else f"exit {exit_code}"
            message = f"{joined} failed ({status}): {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation including command details."""
        payload = super().to_dict()
        payload["details"] = {
            "command": " ".join(self.command),
            "exit_code": self.returncode,
            "stderr": self.stderr,
        }
        return payload


class RevokedNotFencedError(ExternalCommandError):
    """Raised when a certificate was revoked but the revocation list was not regenerated.

    The credential is already revoked inside the authority; only the CRL the
    daemon consults is stale. Retrying the CRL regeneration alone repairs it.
    """

    kind = "revoked_not_fenced"


class ServiceError(OvpnctlError):
    """Raised when a multi-step operation fails; wraps the underlying cause."""

    kind = "service"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        """Store the message and the originating exception."""
        super().__init__(message)
        self.cause = cause


@dataclass(slots=True)
class AdvisoryResult(Generic[T]):
    """Outcome of an operation whose secondary steps are best effort."""

    value: T | None = None
    warnings: list[str] = field(default_factory=list)
    changed: bool = True
    message: str | None = None

    def warn(self, message: str) -> None:
        """Record a non-fatal failure."""
        self.warnings.append(message)

    @property
    def ok(self) -> bool:
        """Return ``True`` when no warnings were recorded."""
        return not self.warnings


def http_status(exc: BaseException) -> int:
    """Return the HTTP status an API boundary should use for *exc*."""
    if isinstance(exc, OvpnctlError):
        return exc.status_code
    return 500


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the CLI exit code for *exc*."""
    if isinstance(exc, OvpnctlError):
        return exc.exit_code
    if isinstance(exc, OSError):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def error_payload(exc: BaseException) -> dict[str, object]:
    """Return the JSON body an API boundary should send for *exc*."""
    if isinstance(exc, OvpnctlError):
        return exc.to_dict()
    return {"error": "internal", "message": "Internal server error"}


__all__ = [
    "AdvisoryResult",
    "ConflictError",
    "CreationError",
    "ExternalCommandError",
    "NotFoundError",
    "OvpnctlError",
    "RevokedNotFencedError",
    "ServiceError",
    "ValidationError",
    "error_payload",
    "exit_code_for",
    "http_status",
]
