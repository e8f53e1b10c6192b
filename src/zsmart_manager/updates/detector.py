"""
Installation detection and manifest commit.

The filesystem is the only source of truth for what is installed: every
orchestration cycle starts by reading the manifest (package.json) at the
installation root. The application counts as present only when the
manifest's "name" equals the canonical identifier, so unrelated projects in
the same directory are never mistaken for an installation.

commit_manifest is the single place where the recorded version changes. The
orchestrator calls it only after the new files, dependencies and migrations
are in place. Before that, stage_manifest puts the release manifest on disk
with the previous version kept, so npm and the migration runner see the new
dependency list.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from zsmart_manager.errors import FilesystemError
from zsmart_manager.logging import get_logger
from zsmart_manager.updates.version import is_valid_version

logger = get_logger(__name__)

DEFAULT_APP_NAME = "z-smart-server"
DEFAULT_MANIFEST_NAME = "package.json"


class InstallationState(BaseModel):
    """
    What is installed in a directory.

    A present installation whose manifest lacks a usable version is reported
    with version=None; the orchestrator always treats that as needing an
    update.
    """

    directory: Path = Field(..., description="Inspected directory")
    present: bool = Field(default=False, description="Application installed")
    version: str | None = Field(default=None, description="Installed version")

    @model_validator(mode="after")
    def absent_has_no_version(self) -> InstallationState:
        if not self.present and self.version is not None:
            raise ValueError("An absent installation cannot have a version")
        return self

    @property
    def degraded(self) -> bool:
        """Installed, but the version could not be determined."""
        return self.present and self.version is None


def read_manifest(path: Path) -> dict[str, Any] | None:
    """
    Read and decode a JSON manifest.

    Returns:
        The decoded object, or None if the file is missing, unreadable,
        not JSON, or not a JSON object.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(
            "Could not read manifest",
            extra={"path": str(path), "error": str(e)},
        )
        return None

    if not isinstance(data, dict):
        logger.warning("Manifest is not a JSON object", extra={"path": str(path)})
        return None
    return data


def detect_installation(
    directory: Path | str,
    app_name: str = DEFAULT_APP_NAME,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
) -> InstallationState:
    """
    Inspect a directory for an installation of the application.

    Args:
        directory: Directory to inspect.
        app_name: Canonical application identifier expected in the manifest.
        manifest_name: Manifest file name at the directory root.

    Returns:
        InstallationState describing the directory.
    """
    directory = Path(directory)
    manifest = read_manifest(directory / manifest_name)

    if manifest is None or manifest.get("name") != app_name:
        logger.debug(
            "No installation detected",
            extra={"directory": str(directory)},
        )
        return InstallationState(directory=directory, present=False)

    version = manifest.get("version")
    if not isinstance(version, str) or not is_valid_version(version):
        logger.warning(
            "Installation has no usable version",
            extra={"directory": str(directory), "version": version},
        )
        version = None

    logger.debug(
        "Installation detected",
        extra={"directory": str(directory), "version": version},
    )
    return InstallationState(directory=directory, present=True, version=version)


def commit_manifest(
    directory: Path | str,
    manifest: dict[str, Any] | None,
    version: str,
    app_name: str = DEFAULT_APP_NAME,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
) -> Path:
    """
    Write the manifest with its version set, atomically.

    The content is taken from `manifest` (the manifest shipped with the new
    release); when the release carried none, the manifest already on disk is
    reused, and failing that a minimal one is created.

    Args:
        directory: Installation directory.
        manifest: Manifest content from the new release, if any.
        version: Version to record.
        app_name: Canonical application identifier.
        manifest_name: Manifest file name.

    Returns:
        Path of the written manifest.

    Raises:
        FilesystemError: If the manifest cannot be written.
    """
    directory = Path(directory)
    path = directory / manifest_name

    payload = dict(manifest) if manifest else (read_manifest(path) or {})
    payload["name"] = app_name
    payload["version"] = version

    write_manifest(path, payload)
    logger.debug("Manifest committed", extra={"path": str(path), "version": version})
    return path


def stage_manifest(
    directory: Path | str,
    manifest: dict[str, Any],
    app_name: str = DEFAULT_APP_NAME,
    manifest_name: str = DEFAULT_MANIFEST_NAME,
) -> Path:
    """
    Write a release manifest while keeping the recorded version.

    The "version" field is taken from the manifest already on disk when that
    manifest belongs to this application, and left out otherwise, so detection
    keeps reporting the previous state until commit_manifest runs.

    Raises:
        FilesystemError: If the manifest cannot be written.
    """
    path = Path(directory) / manifest_name
    previous = read_manifest(path) or {}

    payload = dict(manifest)
    payload["name"] = app_name
    payload.pop("version", None)
    if previous.get("name") == app_name and "version" in previous:
        payload["version"] = previous["version"]

    write_manifest(path, payload)
    logger.debug(
        "Manifest staged",
        extra={"path": str(path), "version": payload.get("version")},
    )
    return path


def write_manifest(path: Path, payload: dict[str, Any]) -> None:
    """Write a manifest atomically with mode 0644."""
    try:
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            # mkstemp creates 0600 files
            os.chmod(temp_name, 0o644)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise FilesystemError(
            f"Failed to write manifest: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e
