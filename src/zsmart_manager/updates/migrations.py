"""
Invocation of the application's own migration runner.

The runner ships with each release (scripts/migrate-runner.js) and receives
three positional arguments: the migrations directory, the version being
upgraded from and the version being upgraded to. What a migration does is the
application's business; the manager only reports whether the runner exists
and whether it succeeded.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from zsmart_manager.errors import MigrationWarning, UnavailableError
from zsmart_manager.logging import get_logger
from zsmart_manager.process_utils import run_command

if TYPE_CHECKING:
    from zsmart_manager.config import InstallConfig

logger = get_logger(__name__)


class MigrationInvocation(BaseModel):
    """Arguments handed to the migration runner."""

    model_config = ConfigDict(frozen=True)

    migrations_dir: str
    from_version: str
    to_version: str

    def as_args(self) -> list[str]:
        return [self.migrations_dir, self.from_version, self.to_version]


class MigrationRunner:
    """
    Runs the migration runner script of an installation.

    Attributes:
        runner_script: Runner path relative to the installation directory.
        migrations_dir: Migrations directory relative to the installation.
        interpreter: Program used to execute the runner.
        timeout: Timeout in seconds.
    """

    def __init__(
        self,
        runner_script: str = "scripts/migrate-runner.js",
        migrations_dir: str = "migrations",
        interpreter: str = "node",
        timeout: float = 900.0,
    ) -> None:
        self.runner_script = runner_script
        self.migrations_dir = migrations_dir
        self.interpreter = interpreter
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: InstallConfig) -> MigrationRunner:
        """Create a MigrationRunner from configuration."""
        return cls(
            runner_script=config.migration_runner,
            migrations_dir=config.migrations_dir,
            interpreter=config.node_command,
            timeout=config.command_timeout_seconds,
        )

    def invocation(self, from_version: str, to_version: str) -> MigrationInvocation:
        return MigrationInvocation(
            migrations_dir=self.migrations_dir,
            from_version=from_version,
            to_version=to_version,
        )

    def run(self, directory: Path, from_version: str, to_version: str) -> None:
        """
        Apply pending migrations between two versions.

        Args:
            directory: Installation directory (the runner's working directory).
            from_version: Version before the update.
            to_version: Version after the update.

        Raises:
            MigrationWarning: If the runner is missing, cannot be executed or
                exits with a non-zero status.
        """
        script = directory / self.runner_script
        if not script.is_file():
            raise MigrationWarning(
                "Migration runner not found",
                details={"runner": str(script)},
            )

        invocation = self.invocation(from_version, to_version)
        logger.info(
            f"Running migrations {from_version} -> {to_version}",
            extra={"directory": str(directory), "runner": self.runner_script},
        )

        try:
            result = run_command(
                self.interpreter,
                self.runner_script,
                *invocation.as_args(),
                cwd=directory,
                timeout=self.timeout,
            )
        except UnavailableError as e:
            raise MigrationWarning(e.message, details=e.details) from e

        if not result.ok:
            raise MigrationWarning(
                f"Migration runner exited with code {result.returncode}",
                details={
                    "returncode": result.returncode,
                    "output": result.output_tail(),
                    "from_version": from_version,
                    "to_version": to_version,
                },
            )

        logger.info("Migrations applied", extra={"to_version": to_version})
