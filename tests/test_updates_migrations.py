"""
Tests for the migration runner invocation.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from zsmart_manager.config import InstallConfig
from zsmart_manager.errors import MigrationWarning, UnavailableError
from zsmart_manager.process_utils import CommandResult
from zsmart_manager.updates.migrations import MigrationInvocation, MigrationRunner


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """An installation containing a migration runner script."""
    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts" / "migrate-runner.js").write_text("// runner\n")
    return tmp_path


class TestMigrationInvocation:
    def test_positional_arguments(self) -> None:
        invocation = MigrationInvocation(
            migrations_dir="migrations", from_version="1.0.0", to_version="2.0.0"
        )
        assert invocation.as_args() == ["migrations", "1.0.0", "2.0.0"]


class TestMigrationRunner:
    """Tests for MigrationRunner.run."""

    def test_runs_runner_with_three_arguments(self, install_dir: Path) -> None:
        result = CommandResult(("node",), 0, "ok", "")
        with patch(
            "zsmart_manager.updates.migrations.run_command", return_value=result
        ) as run:
            MigrationRunner(timeout=60).run(install_dir, "1.0.0", "2.0.0")

        run.assert_called_once_with(
            "node",
            "scripts/migrate-runner.js",
            "migrations",
            "1.0.0",
            "2.0.0",
            cwd=install_dir,
            timeout=60,
        )

    def test_missing_runner_warns(self, tmp_path: Path) -> None:
        with patch("zsmart_manager.updates.migrations.run_command") as run:
            with pytest.raises(MigrationWarning) as exc_info:
                MigrationRunner().run(tmp_path, "1.0.0", "2.0.0")

        assert "not found" in exc_info.value.message
        run.assert_not_called()

    def test_failing_runner_warns(self, install_dir: Path) -> None:
        result = CommandResult(("node",), 2, "", "migration 003 failed")
        with patch("zsmart_manager.updates.migrations.run_command", return_value=result):
            with pytest.raises(MigrationWarning) as exc_info:
                MigrationRunner().run(install_dir, "1.0.0", "2.0.0")

        assert exc_info.value.details["returncode"] == 2
        assert exc_info.value.details["output"] == "migration 003 failed"

    def test_missing_interpreter_warns(self, install_dir: Path) -> None:
        with patch(
            "zsmart_manager.updates.migrations.run_command",
            side_effect=UnavailableError("Command not found: node"),
        ):
            with pytest.raises(MigrationWarning):
                MigrationRunner().run(install_dir, "1.0.0", "2.0.0")

    def test_from_config(self) -> None:
        config = InstallConfig(
            migration_runner="bin/migrate.js",
            migrations_dir="db/migrations",
            node_command="/usr/bin/node",
        )
        runner = MigrationRunner.from_config(config)
        assert runner.runner_script == "bin/migrate.js"
        assert runner.invocation("1", "2").migrations_dir == "db/migrations"
        assert runner.interpreter == "/usr/bin/node"
