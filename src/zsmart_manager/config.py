"""
Configuration management for the Z Smart Server manager.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/z-smart-manager/config.yml or --config path)
3. Environment variables (ZSM_* prefix, __ for nesting)
4. Explicit overrides from the command line (highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/z-smart-manager/config.yml")
DEFAULT_ENV_PREFIX = "ZSM_"

# =============================================================================
# Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Identity of the managed application.

    Attributes:
        name: Canonical application identifier, matched against the manifest.
        repository: GitHub repository publishing the releases ("owner/name").
        manifest_file: Manifest file name at the installation root.
        folder_name: Wrapping folder name used inside release archives.
    """

    name: str = Field(
        default="z-smart-server",
        description="Canonical application identifier (manifest 'name' field)",
    )
    repository: str = Field(
        default="ezequielgandolfi/z-smart-server",
        description="GitHub repository in 'owner/name' form",
    )
    manifest_file: str = Field(
        default="package.json",
        description="Manifest file at the installation root",
    )
    folder_name: str = Field(
        default="z-smart-server",
        description="Top-level folder that release archives may wrap content in",
    )

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate the repository identifier has an owner and a name."""
        owner, _, name = v.strip().partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"Invalid repository: {v}. Expected 'owner/name'")
        return f"{owner}/{name}"


# =============================================================================
# Network Configuration
# =============================================================================


class NetworkConfig(BaseModel):
    """Release index and download settings.

    Attributes:
        api_base_url: Base URL of the release index API.
        timeout_seconds: Timeout for release index requests.
        download_timeout_seconds: Timeout for asset downloads.
        archive_extension: Extension of the asset to download.
        include_prereleases: Whether pre-releases may be installed.
        token: Optional API token sent as a bearer token.
    """

    api_base_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the release index API",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Timeout for release index requests in seconds",
    )
    download_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        le=3600,
        description="Timeout for asset downloads in seconds",
    )
    archive_extension: str = Field(
        default=".zip",
        description="File extension of the release asset to install",
    )
    include_prereleases: bool = Field(
        default=False,
        description="Allow installing releases flagged as pre-release",
    )
    token: str | None = Field(
        default=None,
        description="Optional API token for authenticated requests",
    )

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the API base URL."""
        return v.rstrip("/")

    @field_validator("archive_extension")
    @classmethod
    def validate_archive_extension(cls, v: str) -> str:
        """Validate the archive extension is one we can extract."""
        v_lower = v.lower()
        if not v_lower.startswith("."):
            v_lower = f".{v_lower}"
        valid = {".zip", ".tar", ".tar.gz", ".tgz"}
        if v_lower not in valid:
            raise ValueError(
                f"Invalid archive extension: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower


# =============================================================================
# Install Configuration
# =============================================================================


class InstallConfig(BaseModel):
    """Installation, dependency and migration settings.

    Attributes:
        default_directory: Directory used when none is given (cwd if None).
        dependency_command: Command installing production dependencies.
        run_dependencies: Whether to run the dependency command at all.
        migration_runner: Migration runner script relative to the install dir.
        migrations_dir: Migrations directory relative to the install dir.
        node_command: Interpreter used to run the migration runner.
        command_timeout_seconds: Timeout for dependency/migration commands.
    """

    default_directory: str | None = Field(
        default=None,
        description="Default install directory (current directory if unset)",
    )
    dependency_command: list[str] = Field(
        default_factory=lambda: ["npm", "install", "--production"],
        description="Command that installs production dependencies",
    )
    run_dependencies: bool = Field(
        default=True,
        description="Run the dependency command after extracting a release",
    )
    migration_runner: str = Field(
        default="scripts/migrate-runner.js",
        description="Migration runner script, relative to the install directory",
    )
    migrations_dir: str = Field(
        default="migrations",
        description="Migrations directory, relative to the install directory",
    )
    node_command: str = Field(
        default="node",
        description="Interpreter used to run the migration runner",
    )
    command_timeout_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Timeout for dependency and migration commands in seconds",
    )

    @field_validator("dependency_command")
    @classmethod
    def validate_dependency_command(cls, v: list[str]) -> list[str]:
        """Validate the dependency command is not empty."""
        if not v:
            raise ValueError("dependency_command must not be empty")
        return v


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceConfig(BaseModel):
    """systemd service registration settings.

    Attributes:
        unit_name: systemd unit name (without .service).
        unit_dir: Directory the unit file is written to.
        description: Unit description.
        entry_point: Application entry point relative to the install dir.
        user: User the service runs as (current user if None).
    """

    unit_name: str = Field(
        default="z-smart-server",
        description="systemd unit name without the .service suffix",
    )
    unit_dir: str = Field(
        default="/etc/systemd/system",
        description="Directory the unit file is written to",
    )
    description: str = Field(
        default="Z Smart Server",
        description="Unit description",
    )
    entry_point: str = Field(
        default="src/server.js",
        description="Entry point, relative to the install directory",
    )
    user: str | None = Field(
        default=None,
        description="User the service runs as (defaults to the current user)",
    )

    @field_validator("unit_name")
    @classmethod
    def strip_service_suffix(cls, v: str) -> str:
        """Store the unit name without a .service suffix."""
        return v.removesuffix(".service")


# =============================================================================
# Runtime Configuration
# =============================================================================


class RuntimeConfig(BaseModel):
    """Node.js runtime requirements.

    Attributes:
        min_major_version: Minimum compatible Node.js major version.
        nvm_install_url: NVM install script URL.
    """

    min_major_version: int = Field(
        default=22,
        ge=1,
        description="Minimum compatible Node.js major version",
    )
    nvm_install_url: str = Field(
        default="https://raw.githubusercontent.com/nvm-sh/nvm/v0.39.7/install.sh",
        description="NVM install script URL",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
        log_to_stdout: Whether to log to stdout.
        log_file: Optional log file path.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON lines instead of plain text",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Root Configuration
# =============================================================================


class ManagerConfig(BaseModel):
    """Root configuration model."""

    app: AppConfig = Field(default_factory=AppConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Booleans and numbers are converted; comma-separated values become lists.
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [item.strip() for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    ZSM_NETWORK__TIMEOUT_SECONDS=10.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> ManagerConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to a YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        overrides: Nested dictionary of values taking precedence over every
            other source (typically built from command-line flags).

    Returns:
        Fully validated ManagerConfig instance.

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"logging": {"level": "debug"}})
        >>> config.app.name
        'z-smart-server'
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return ManagerConfig(**config_dict)
