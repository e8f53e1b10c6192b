"""
Shared subprocess helper for the external collaborators.

The dependency installer, the migration runner and the runtime checks all
shell out to external tools. They share run_command so timeouts and missing
executables are reported the same way everywhere.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from zsmart_manager.errors import UnavailableError
from zsmart_manager.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def output_tail(self, lines: int = 20) -> str:
        """Return the last lines of stderr, or stdout when stderr is empty."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


def run_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float = 300.0,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """
    Run an external command and capture its output.

    Args:
        *args: Command and arguments.
        cwd: Working directory for the command.
        timeout: Command timeout in seconds.
        env: Optional full environment for the child process.

    Returns:
        CommandResult with the exit status and decoded output.

    Raises:
        UnavailableError: If the executable is missing or the command
            times out.
    """
    logger.debug("Running command", extra={"command": " ".join(args), "cwd": str(cwd)})

    try:
        completed = subprocess.run(
            list(args),
            cwd=cwd,
            env=env,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise UnavailableError(
            f"Command not found: {args[0]}",
            details={"command": " ".join(args)},
        ) from e
    except subprocess.TimeoutExpired as e:
        raise UnavailableError(
            f"Command timed out after {timeout}s",
            details={"command": " ".join(args), "timeout": timeout},
        ) from e
    except OSError as e:
        raise UnavailableError(
            f"Failed to execute command: {e}",
            details={"command": " ".join(args), "error": str(e)},
        ) from e

    return CommandResult(
        args=tuple(args),
        returncode=completed.returncode,
        stdout=completed.stdout.decode("utf-8", errors="replace"),
        stderr=completed.stderr.decode("utf-8", errors="replace"),
    )
