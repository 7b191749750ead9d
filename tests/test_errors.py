"""Tests for the error taxonomy and its boundary mappings."""
from __future__ import annotations

import pytest

from ovpnctl.errors import (
    AdvisoryResult,
    ConflictError,
    CreationError,
    ExternalCommandError,
    NotFoundError,
    RevokedNotFencedError,
    ServiceError,
    ValidationError,
    error_payload,
    exit_code_for,
    http_status,
)
from ovpnctl.exit_codes import ExitCode


@pytest.mark.parametrize(
    ("error", "status", "code"),
    [
        (ValidationError("bad"), 400, ExitCode.VALIDATION),
        (NotFoundError("gone"), 404, ExitCode.VALIDATION),
        (ConflictError("dup"), 409, ExitCode.VALIDATION),
        (CreationError("disk"), 500, ExitCode.ENVIRONMENT),
        (ServiceError("step failed"), 500, ExitCode.PROVIDER),
        (ExternalCommandError(["easyrsa"], 1), 500, ExitCode.PROVIDER),
    ],
)
def test_boundary_mappings(error: Exception, status: int, code: ExitCode) -> None:
    """Each error kind maps onto one HTTP status and one exit code."""
    assert http_status(error) == status
    assert exit_code_for(error) == code


def test_unexpected_errors_are_opaque() -> None:
    """Foreign exceptions never leak their message to API callers."""
    error = KeyError("secret")

    assert http_status(error) == 500
    assert exit_code_for(error) == ExitCode.PROVIDER
    assert error_payload(error) == {"error": "internal", "message": "Internal server error"}


def test_os_errors_are_environment_failures() -> None:
    """Filesystem failures map to the environment exit code."""
    assert exit_code_for(PermissionError("denied")) == ExitCode.ENVIRONMENT


def test_external_command_message_and_payload() -> None:
    """Command failures describe the command, status and stderr."""
    error = ExternalCommandError(["easyrsa", "gen-crl"], 1, "  unable to open CA\n")

    assert str(error) == "easyrsa gen-crl failed (exit 1): unable to open CA"
    assert error_payload(error) == {
        "error": "command",
        "message": "easyrsa gen-crl failed (exit 1): unable to open CA",
        "details": {"command": "easyrsa gen-crl", "exit_code": 1, "stderr": "unable to open CA"},
    }


def test_revoked_not_fenced_is_a_command_error() -> None:
    """The not-fenced failure keeps the command details with its own kind."""
    error = RevokedNotFencedError(["easyrsa", "gen-crl"], 1, "", message="stale CRL")

    assert isinstance(error, ExternalCommandError)
    assert error.to_dict()["error"] == "revoked_not_fenced"
    assert str(error) == "stale CRL"


def test_service_error_keeps_cause() -> None:
    """Service errors expose the originating exception."""
    cause = NotFoundError("ca.crt")
    error = ServiceError("setup failed", cause=cause)

    assert error.cause is cause
    assert error.to_dict() == {"error": "service", "message": "setup failed"}


def test_advisory_result_collects_warnings() -> None:
    """Warnings accumulate without failing the operation."""
    result: AdvisoryResult[str] = AdvisoryResult(value="office")
    assert result.ok
    assert result.changed

    result.warn("restart failed")

    assert not result.ok
    assert result.warnings == ["restart failed"]
    assert result.value == "office"
