"""External program execution shared by all providers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ExternalCommandError

_LOG = logging.getLogger("ovpnctl.process")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


class CommandRunner:
    """Run external programs synchronously, capturing their output.

    Commands block until completion; no timeout is applied.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run *args*; raise :class:`ExternalCommandError` on failure when *check* is set."""
        command = tuple(str(arg) for arg in args)
        _LOG.debug("running %s", " ".join(command))
        try:
            completed = subprocess.run(  # noqa: S603, S607
                list(command),
                capture_output=True,
                text=True,
                input=input_text,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExternalCommandError(
                command, None, f"{command[0]} not found: {exc}"
            ) from exc
        except PermissionError as exc:
            raise ExternalCommandError(
                command, None, f"{command[0]} is not executable: {exc}"
            ) from exc
        result = CommandResult(
            args=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise ExternalCommandError(
                command,
                result.returncode,
                result.stderr.strip() or result.stdout.strip(),
            )
        return result


__all__ = ["CommandResult", "CommandRunner"]
