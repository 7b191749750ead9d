"""Process exit statuses returned by ``ovpnctl``."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status per failure class; see :func:`ovpnctl.errors.exit_code_for`."""

    OK = 0
    # Bad input, unknown names and conflicting state.
    VALIDATION = 2
    # Host problems: filesystem, locks, database.
    ENVIRONMENT = 3
    # A host command (easyrsa, systemctl, iptables) failed.
    PROVIDER = 4
