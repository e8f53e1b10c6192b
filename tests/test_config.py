"""
Tests for the configuration module.

This test module validates:
- Default values
- Model validation and normalization
- Configuration loading from YAML files
- Environment variable overrides
- Configuration precedence (defaults < YAML < env vars < overrides)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from zsmart_manager.config import (
    AppConfig,
    InstallConfig,
    LoggingConfig,
    ManagerConfig,
    NetworkConfig,
    ServiceConfig,
    _deep_merge,
    _load_env_config,
    _load_yaml_config,
    _parse_env_value,
    load_config,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the host's config file and ZSM_* variables out of the tests."""
    monkeypatch.setattr(
        "zsmart_manager.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yml"
    )
    for key in list(os.environ):
        if key.startswith("ZSM_"):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A YAML config file with a few non-default values."""
    path = tmp_path / "config.yml"
    data: dict[str, Any] = {
        "app": {"repository": "someone/fork"},
        "network": {"timeout_seconds": 10, "archive_extension": "tar.gz"},
        "logging": {"level": "debug"},
    }
    path.write_text(yaml.safe_dump(data))
    return path


# =============================================================================
# Tests for Default Configuration
# =============================================================================


class TestDefaultConfiguration:
    """Tests for default configuration values."""

    def test_manager_config_defaults(self) -> None:
        config = ManagerConfig()

        assert config.app.name == "z-smart-server"
        assert config.app.repository == "ezequielgandolfi/z-smart-server"
        assert config.app.manifest_file == "package.json"
        assert config.network.api_base_url == "https://api.github.com"
        assert config.network.archive_extension == ".zip"
        assert config.network.include_prereleases is False
        assert config.install.dependency_command == ["npm", "install", "--production"]
        assert config.install.migration_runner == "scripts/migrate-runner.js"
        assert config.service.unit_name == "z-smart-server"
        assert config.runtime.min_major_version == 22
        assert config.logging.level == "info"


# =============================================================================
# Tests for Configuration Validation
# =============================================================================


class TestConfigurationValidation:
    """Tests for configuration validation."""

    @pytest.mark.parametrize("repository", ["noslash", "/name", "owner/", "a/b/c"])
    def test_invalid_repository(self, repository: str) -> None:
        with pytest.raises(ValidationError, match="Invalid repository"):
            AppConfig(repository=repository)

    def test_api_base_url_trailing_slash_removed(self) -> None:
        assert NetworkConfig(api_base_url="https://x/api/").api_base_url == "https://x/api"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("zip", ".zip"), (".TAR.GZ", ".tar.gz"), ("tgz", ".tgz"), (".tar", ".tar")],
    )
    def test_archive_extension_normalized(self, value: str, expected: str) -> None:
        assert NetworkConfig(archive_extension=value).archive_extension == expected

    def test_unsupported_archive_extension(self) -> None:
        with pytest.raises(ValidationError, match="Invalid archive extension"):
            NetworkConfig(archive_extension=".rar")

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            NetworkConfig(timeout_seconds=0)

    def test_empty_dependency_command(self) -> None:
        with pytest.raises(ValidationError):
            InstallConfig(dependency_command=[])

    def test_service_suffix_stripped(self) -> None:
        assert ServiceConfig(unit_name="zss.service").unit_name == "zss"

    def test_log_level_validation_valid(self) -> None:
        """Test valid log levels are accepted."""
        for level in ["debug", "info", "warn", "warning", "error", "DEBUG"]:
            config = LoggingConfig(level=level)
            if level.lower() == "warn":
                assert config.level == "warning"
            else:
                assert config.level == level.lower()

    def test_log_level_validation_invalid(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingConfig(level="loud")


# =============================================================================
# Tests for Helpers
# =============================================================================


class TestHelpers:
    def test_deep_merge(self) -> None:
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = _deep_merge(base, {"a": {"c": 20}, "e": 5})
        assert merged == {"a": {"b": 1, "c": 20}, "d": 3, "e": 5}
        assert base == {"a": {"b": 1, "c": 2}, "d": 3}

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("true", True),
            ("Yes", True),
            ("off", False),
            ("42", 42),
            ("1.5", 1.5),
            ("npm,ci", ["npm", "ci"]),
            ("plain", "plain"),
        ],
    )
    def test_parse_env_value(self, raw: str, expected: Any) -> None:
        assert _parse_env_value(raw) == expected

    def test_load_yaml_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            _load_yaml_config(tmp_path / "missing.yml")

    def test_load_empty_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert _load_yaml_config(path) == {}

    def test_load_env_config_nesting(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ZSM_NETWORK__TIMEOUT_SECONDS", "12")
        monkeypatch.setenv("ZSM_APP__NAME", "other")
        monkeypatch.setenv("UNRELATED", "x")

        assert _load_env_config() == {
            "network": {"timeout_seconds": 12},
            "app": {"name": "other"},
        }


# =============================================================================
# Tests for load_config
# =============================================================================


class TestLoadConfig:
    """Tests for layered configuration loading."""

    def test_defaults_without_file(self) -> None:
        assert load_config() == ManagerConfig()

    def test_yaml_file(self, config_file: Path) -> None:
        config = load_config(config_file)

        assert config.app.repository == "someone/fork"
        assert config.network.timeout_seconds == 10
        assert config.network.archive_extension == ".tar.gz"
        assert config.logging.level == "debug"
        # Untouched sections keep defaults
        assert config.install.node_command == "node"

    def test_explicit_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yml")

    def test_default_path_used_when_present(
        self, monkeypatch: pytest.MonkeyPatch, config_file: Path
    ) -> None:
        monkeypatch.setattr("zsmart_manager.config.DEFAULT_CONFIG_PATH", config_file)
        assert load_config().app.repository == "someone/fork"

    def test_precedence(
        self, monkeypatch: pytest.MonkeyPatch, config_file: Path
    ) -> None:
        """Test defaults < YAML < env vars < overrides."""
        monkeypatch.setenv("ZSM_NETWORK__TIMEOUT_SECONDS", "20")
        monkeypatch.setenv("ZSM_LOGGING__LEVEL", "error")

        config = load_config(
            str(config_file), overrides={"logging": {"level": "warn"}}
        )

        assert config.app.repository == "someone/fork"
        assert config.network.timeout_seconds == 20
        assert config.logging.level == "warning"

    def test_invalid_value_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text(yaml.safe_dump({"network": {"archive_extension": ".7z"}}))
        with pytest.raises(ValidationError):
            load_config(path)
