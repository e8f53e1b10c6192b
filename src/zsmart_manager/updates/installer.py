"""
Release archive installation.

ArchiveInstaller moves the files of a release into an installation directory:
1. Download the asset to a temporary file inside the target directory
2. Extract it into a temporary staging directory, also inside the target
3. Unwrap a single top-level "z-smart-server" folder if the archive has one
4. Merge the staged tree into the target directory and stage the manifest
5. Remove the temporary archive and staging directory, whatever happened
6. Install production dependencies

Merging overwrites files that the release ships and leaves every other file
alone, so local configuration and data survive an update. Only uninstall
wipes a directory.

The release manifest is written before dependencies are installed, but with
the previous version kept. It is also returned to the caller, which records
the new version as the last step of a successful update so that a failed
install never does.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
import tempfile
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field

from zsmart_manager.errors import (
    DependencyInstallError,
    DownloadError,
    ExtractError,
    FilesystemError,
    ManagerError,
    NetworkTimeoutError,
    UnavailableError,
)
from zsmart_manager.logging import get_logger
from zsmart_manager.process_utils import run_command
from zsmart_manager.updates.detector import (
    DEFAULT_APP_NAME,
    DEFAULT_MANIFEST_NAME,
    read_manifest,
    stage_manifest,
)
from zsmart_manager.updates.version import is_valid_version

if TYPE_CHECKING:
    from zsmart_manager.config import ManagerConfig

logger = get_logger(__name__)

DOWNLOAD_PREFIX = ".zsm-download-"
STAGING_PREFIX = ".zsm-staging-"

# Archive tool metadata that never belongs to the release content
_IGNORED_TOP_LEVEL = frozenset({"__MACOSX"})

_CHUNK_SIZE = 64 * 1024


class StagedRelease(BaseModel):
    """
    Result of a successful file transition.

    Attributes:
        directory: Installation directory the files were merged into.
        version: Version declared by the release manifest, if any.
        manifest: Decoded release manifest, not yet written to disk.
        files_written: Number of files copied into the directory.
    """

    directory: Path
    version: str | None = None
    manifest: dict[str, Any] | None = None
    files_written: int = Field(default=0, ge=0)


class DependencyInstaller:
    """
    Runs the application's dependency installation in production mode.

    Attributes:
        command: Command and arguments (default "npm install --production").
        timeout: Command timeout in seconds.
    """

    DEFAULT_COMMAND = ("npm", "install", "--production")

    def __init__(
        self,
        command: list[str] | tuple[str, ...] = DEFAULT_COMMAND,
        timeout: float = 900.0,
    ) -> None:
        self.command = tuple(command)
        self.timeout = timeout

    def __call__(self, directory: Path) -> None:
        """
        Install dependencies in a directory.

        Raises:
            DependencyInstallError: If the command is missing, times out or
                exits with a non-zero status.
        """
        logger.info(
            "Installing dependencies",
            extra={"directory": str(directory), "command": " ".join(self.command)},
        )

        try:
            result = run_command(*self.command, cwd=directory, timeout=self.timeout)
        except UnavailableError as e:
            raise DependencyInstallError(e.message, details=e.details) from e

        if not result.ok:
            raise DependencyInstallError(
                f"Dependency installation failed with exit code {result.returncode}",
                details={
                    "command": " ".join(self.command),
                    "returncode": result.returncode,
                    "output": result.output_tail(),
                },
            )


def _archive_format(extension: str) -> str:
    if extension.lower() == ".zip":
        return "zip"
    return "tar"


def _restore_zip_modes(archive: zipfile.ZipFile, destination: Path) -> None:
    """Apply the Unix permission bits stored in a zip to its extracted files."""
    root = destination.resolve()
    for info in archive.infolist():
        mode = stat.S_IMODE(info.external_attr >> 16)
        if not mode or info.is_dir():
            continue
        path = (destination / info.filename).resolve()
        # members whose names extractall rewrote
        if not path.is_relative_to(root) or not path.is_file():
            continue
        os.chmod(path, mode)


class ArchiveInstaller:
    """
    Downloads a release asset and merges its files into a directory.

    Attributes:
        app_name: Canonical application identifier.
        folder_name: Wrapping folder name that gets unwrapped.
        manifest_name: Manifest file name at the installation root.
        archive_extension: Extension of the downloaded asset.
        download_timeout: Download timeout in seconds.
    """

    def __init__(
        self,
        app_name: str = DEFAULT_APP_NAME,
        folder_name: str = DEFAULT_APP_NAME,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        archive_extension: str = ".zip",
        *,
        download_timeout: float = 300.0,
        dependency_installer: Callable[[Path], None] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the installer.

        Args:
            app_name: Canonical application identifier.
            folder_name: Wrapping folder name that gets unwrapped.
            manifest_name: Manifest file name.
            archive_extension: Extension of the downloaded asset.
            download_timeout: Download timeout in seconds.
            dependency_installer: Callable run on the directory after the
                merge; None skips dependency installation.
            client: Optional preconfigured httpx client (used by tests).
        """
        self.app_name = app_name
        self.folder_name = folder_name
        self.manifest_name = manifest_name
        self.archive_extension = archive_extension
        self.download_timeout = download_timeout
        self._dependency_installer = dependency_installer
        self._client = client

    @classmethod
    def from_config(
        cls, config: ManagerConfig, client: httpx.Client | None = None
    ) -> ArchiveInstaller:
        """Create an ArchiveInstaller from configuration."""
        dependency_installer = None
        if config.install.run_dependencies:
            dependency_installer = DependencyInstaller(
                config.install.dependency_command,
                timeout=config.install.command_timeout_seconds,
            )
        return cls(
            app_name=config.app.name,
            folder_name=config.app.folder_name,
            manifest_name=config.app.manifest_file,
            archive_extension=config.network.archive_extension,
            download_timeout=config.network.download_timeout_seconds,
            dependency_installer=dependency_installer,
            client=client,
        )

    def install(self, asset_url: str, target_dir: Path | str) -> StagedRelease:
        """
        Download a release and merge it into a directory.

        Every error raised carries details["stage"], one of "download",
        "extract", "merge" or "dependencies".

        Args:
            asset_url: Download URL of the release archive.
            target_dir: Installation directory (must exist).

        Returns:
            StagedRelease describing the merged release.

        Raises:
            DownloadError: If the download fails.
            NetworkTimeoutError: If the download times out.
            ExtractError: If the archive is corrupt or unsupported.
            FilesystemError: If files cannot be written.
            DependencyInstallError: If dependency installation fails.
        """
        target = Path(target_dir)
        stage = "download"
        archive_path: Path | None = None
        staging_dir: Path | None = None

        try:
            try:
                fd, archive_name = tempfile.mkstemp(
                    prefix=DOWNLOAD_PREFIX, suffix=self.archive_extension, dir=target
                )
                os.close(fd)
                archive_path = Path(archive_name)
                staging_dir = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=target))
            except OSError as e:
                raise FilesystemError(
                    f"Cannot create temporary files in {target}",
                    details={"directory": str(target), "error": str(e)},
                ) from e

            self.download(asset_url, archive_path)

            stage = "extract"
            self.extract(archive_path, staging_dir)
            content_root = self._content_root(staging_dir)

            stage = "merge"
            files_written, manifest = self.merge(content_root, target)
            if manifest is not None:
                stage_manifest(
                    target,
                    manifest,
                    app_name=self.app_name,
                    manifest_name=self.manifest_name,
                )
        except ManagerError as e:
            e.details.setdefault("stage", stage)
            raise
        finally:
            self._cleanup(archive_path, staging_dir)

        version = manifest.get("version") if manifest else None
        staged = StagedRelease(
            directory=target,
            version=version if isinstance(version, str) and is_valid_version(version) else None,
            manifest=manifest,
            files_written=files_written,
        )

        if self._dependency_installer is not None:
            try:
                self._dependency_installer(target)
            except ManagerError as e:
                e.details.setdefault("stage", "dependencies")
                raise

        logger.info(
            "Release files installed",
            extra={
                "directory": str(target),
                "version": staged.version,
                "files_written": files_written,
            },
        )
        return staged

    def download(self, url: str, destination: Path) -> None:
        """
        Download a URL to a file, following redirects.

        Raises:
            NetworkTimeoutError: If the download times out.
            DownloadError: If the server is unreachable or returns an error.
            FilesystemError: If the file cannot be written.
        """
        logger.info("Downloading release", extra={"url": url})

        try:
            if self._client is not None:
                self._stream_to_file(self._client, url, destination)
            else:
                with httpx.Client(
                    timeout=self.download_timeout, follow_redirects=True
                ) as client:
                    self._stream_to_file(client, url, destination)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(
                f"Download timed out after {self.download_timeout}s",
                details={"url": url},
            ) from e
        except httpx.HTTPError as e:
            raise DownloadError(
                f"Download failed: {e}",
                details={"url": url},
            ) from e
        except OSError as e:
            raise FilesystemError(
                f"Cannot write download to {destination}",
                details={"path": str(destination), "error": str(e)},
            ) from e

    def _stream_to_file(self, client: httpx.Client, url: str, destination: Path) -> None:
        with client.stream(
            "GET", url, follow_redirects=True, timeout=self.download_timeout
        ) as response:
            if response.is_error:
                raise DownloadError(
                    f"Download returned HTTP {response.status_code}",
                    details={"url": url, "status_code": response.status_code},
                )
            with open(destination, "wb") as f:
                for chunk in response.iter_bytes(_CHUNK_SIZE):
                    f.write(chunk)

    def extract(self, archive_path: Path, destination: Path) -> None:
        """
        Extract a zip or tar archive.

        Raises:
            ExtractError: If the archive is corrupt, unsupported or contains
                unsafe member paths.
            FilesystemError: If files cannot be written.
        """
        archive_format = _archive_format(self.archive_extension)
        try:
            if archive_format == "zip":
                with zipfile.ZipFile(archive_path) as archive:
                    archive.extractall(destination)
                    _restore_zip_modes(archive, destination)
            else:
                with tarfile.open(archive_path) as archive:
                    archive.extractall(destination, filter="data")
        except (zipfile.BadZipFile, tarfile.TarError, EOFError) as e:
            raise ExtractError(
                f"Cannot extract archive: {e}",
                details={"archive": str(archive_path), "format": archive_format},
            ) from e
        except OSError as e:
            raise FilesystemError(
                f"Cannot write extracted files: {e}",
                details={"destination": str(destination), "error": str(e)},
            ) from e

    def _content_root(self, staging_dir: Path) -> Path:
        """Return the folder holding the release content."""
        entries = [p for p in staging_dir.iterdir() if p.name not in _IGNORED_TOP_LEVEL]
        if (
            len(entries) == 1
            and entries[0].name == self.folder_name
            and entries[0].is_dir()
            and not entries[0].is_symlink()
        ):
            logger.debug("Unwrapping archive folder", extra={"folder": self.folder_name})
            return entries[0]
        return staging_dir

    def merge(self, source: Path, target: Path) -> tuple[int, dict[str, Any] | None]:
        """
        Copy a staged tree over a directory.

        Files with the same relative path are overwritten; files only present
        in the target are kept. The root manifest is read but not copied, and
        macOS metadata folders are skipped.

        Returns:
            Tuple of (files written, decoded release manifest or None).

        Raises:
            FilesystemError: If a file cannot be copied.
        """
        manifest: dict[str, Any] | None = None
        files_written = 0

        for src in sorted(source.rglob("*")):
            relative = src.relative_to(source)
            dest = target / relative

            if relative.parts[0] in _IGNORED_TOP_LEVEL:
                continue
            if relative == Path(self.manifest_name):
                manifest = read_manifest(src)
                continue

            try:
                if src.is_dir() and not src.is_symlink():
                    dest.mkdir(parents=True, exist_ok=True)
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                if src.is_symlink() and (dest.is_symlink() or dest.is_file()):
                    dest.unlink()
                shutil.copy2(src, dest, follow_symlinks=False)
                files_written += 1
            except OSError as e:
                raise FilesystemError(
                    f"Cannot install {relative}: {e}",
                    details={"path": str(dest), "error": str(e)},
                ) from e

        return files_written, manifest

    def _cleanup(self, archive_path: Path | None, staging_dir: Path | None) -> None:
        if archive_path is not None:
            try:
                archive_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(
                    "Failed to remove downloaded archive",
                    extra={"path": str(archive_path), "error": str(e)},
                )
        if staging_dir is not None and staging_dir.exists():
            shutil.rmtree(staging_dir, ignore_errors=True)
