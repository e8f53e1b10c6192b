"""
Tests for the archive installer.

Tests cover:
- Download, extraction and merge of a release
- Unwrapping the top-level application folder
- Merge policy (local files survive)
- Cleanup of temporary files on success and failure
- Dependency installation
"""

from __future__ import annotations

import io
import json
import stat
import tarfile
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest
from conftest import FakeGitHub, make_zip, release_files

from zsmart_manager.config import ManagerConfig
from zsmart_manager.errors import (
    DependencyInstallError,
    DownloadError,
    ExtractError,
    NetworkTimeoutError,
    UnavailableError,
)
from zsmart_manager.process_utils import CommandResult
from zsmart_manager.updates.installer import ArchiveInstaller, DependencyInstaller


def _installer(client: httpx.Client, **kwargs) -> ArchiveInstaller:
    return ArchiveInstaller(client=client, **kwargs)


def _leftovers(directory: Path) -> list[str]:
    return [p.name for p in directory.iterdir() if p.name.startswith(".zsm-")]


# =============================================================================
# Install Tests
# =============================================================================


class TestArchiveInstaller:
    """Tests for ArchiveInstaller.install."""

    def test_install_into_empty_directory(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        url = fake_github.publish("2.1.0")

        staged = _installer(fake_github.client()).install(url, tmp_path)

        assert staged.version == "2.1.0"
        assert staged.manifest == {"name": "z-smart-server", "version": "2.1.0"}
        assert staged.files_written == 2
        assert (tmp_path / "src" / "server.js").read_text() == "// server 2.1.0\n"
        assert (tmp_path / "config.default.json").exists()
        # Wrapper folder was unwrapped
        assert not (tmp_path / "z-smart-server").exists()
        # Manifest is on disk without a version until the commit step
        assert json.loads((tmp_path / "package.json").read_text()) == {
            "name": "z-smart-server"
        }
        assert _leftovers(tmp_path) == []

    def test_unwrapped_archive(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        url = fake_github.publish("1.0.0", make_zip(release_files("1.0.0", wrapped=False)))

        _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "src" / "server.js").exists()

    def test_other_wrapper_is_not_unwrapped(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        url = fake_github.publish("1.0.0", make_zip({"something/file.txt": "x"}))

        staged = _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "something" / "file.txt").exists()
        assert staged.manifest is None
        assert staged.version is None

    def test_wrapper_with_siblings_is_not_unwrapped(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        files = {**release_files("1.0.0"), "README.md": "readme"}
        url = fake_github.publish("1.0.0", make_zip(files))

        _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "z-smart-server" / "src" / "server.js").exists()
        assert (tmp_path / "README.md").exists()

    def test_macos_metadata_does_not_prevent_unwrapping(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        files = {**release_files("1.0.0"), "__MACOSX/._z-smart-server": "meta"}
        url = fake_github.publish("1.0.0", make_zip(files))

        _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "src" / "server.js").exists()

    def test_merge_keeps_local_files(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        """Test files not shipped in the release survive an update untouched."""
        (tmp_path / "config.local").write_text("secret=1\n")
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "server.js").write_text("// old\n")
        (tmp_path / "src" / "legacy.js").write_text("// legacy\n")
        old_manifest = {"name": "z-smart-server", "version": "1.0.0"}
        (tmp_path / "package.json").write_text(json.dumps(old_manifest))
        url = fake_github.publish(
            "2.0.0", make_zip(release_files("2.0.0", dependencies={"new": "2"}))
        )

        _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "config.local").read_text() == "secret=1\n"
        assert (tmp_path / "src" / "legacy.js").read_text() == "// legacy\n"
        assert (tmp_path / "src" / "server.js").read_text() == "// server 2.0.0\n"
        assert json.loads((tmp_path / "package.json").read_text()) == {
            "name": "z-smart-server",
            "version": "1.0.0",
            "dependencies": {"new": "2"},
        }

    def test_tar_archive(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            for name, content in release_files("3.0.0").items():
                data = content.encode()
                info = tarfile.TarInfo(name)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
        url = fake_github.publish("3.0.0", buffer.getvalue())

        staged = _installer(fake_github.client(), archive_extension=".tar.gz").install(
            url, tmp_path
        )

        assert staged.version == "3.0.0"
        assert (tmp_path / "src" / "server.js").exists()

    def test_unix_modes_restored_from_zip(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, content in release_files("1.0.0").items():
                archive.writestr(name, content)
            script = zipfile.ZipInfo("z-smart-server/scripts/start.sh")
            script.external_attr = 0o100755 << 16
            archive.writestr(script, "#!/bin/sh\n")
        url = fake_github.publish("1.0.0", buffer.getvalue())

        _installer(fake_github.client()).install(url, tmp_path)

        mode = (tmp_path / "scripts" / "start.sh").stat().st_mode
        assert stat.S_IMODE(mode) == 0o755

    def test_macos_metadata_not_merged(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        files = {
            **release_files("1.0.0", wrapped=False),
            "__MACOSX/._server.js": "meta",
        }
        url = fake_github.publish("1.0.0", make_zip(files))

        staged = _installer(fake_github.client()).install(url, tmp_path)

        assert (tmp_path / "src" / "server.js").exists()
        assert not (tmp_path / "__MACOSX").exists()
        assert staged.files_written == 2


class TestArchiveInstallerFailures:
    """Failure handling and cleanup."""

    def test_corrupt_archive(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        (tmp_path / "config.local").write_text("keep")
        url = fake_github.publish("2.0.0", b"this is not a zip")

        with pytest.raises(ExtractError) as exc_info:
            _installer(fake_github.client()).install(url, tmp_path)

        assert exc_info.value.details["stage"] == "extract"
        assert _leftovers(tmp_path) == []
        assert [p.name for p in tmp_path.iterdir()] == ["config.local"]

    def test_download_http_error(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        with pytest.raises(DownloadError) as exc_info:
            _installer(fake_github.client()).install(
                "https://downloads.example.test/missing.zip", tmp_path
            )

        assert exc_info.value.details["stage"] == "download"
        assert exc_info.value.details["status_code"] == 404
        assert _leftovers(tmp_path) == []

    def test_download_connection_error(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        url = fake_github.publish("2.0.0")
        fake_github.fail_with = httpx.ConnectError("refused")

        with pytest.raises(DownloadError):
            _installer(fake_github.client()).install(url, tmp_path)
        assert _leftovers(tmp_path) == []

    def test_download_timeout(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        url = fake_github.publish("2.0.0")
        fake_github.fail_with = httpx.ReadTimeout("slow")

        with pytest.raises(NetworkTimeoutError) as exc_info:
            _installer(fake_github.client()).install(url, tmp_path)
        assert exc_info.value.details["stage"] == "download"

    def test_follows_redirects(self, tmp_path: Path, fake_github: FakeGitHub) -> None:
        url = fake_github.publish("2.0.0")
        redirect_url = "https://github.example.test/download/z-smart-server.zip"
        inner = fake_github.handler

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == redirect_url:
                return httpx.Response(302, headers={"Location": url})
            return inner(request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        staged = _installer(client).install(redirect_url, tmp_path)
        assert staged.version == "2.0.0"


# =============================================================================
# Dependency Installation Tests
# =============================================================================


class TestDependencyInstallation:
    """Tests for the dependency step."""

    def test_dependency_installer_called_after_merge(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        (tmp_path / "package.json").write_text(
            json.dumps(
                {"name": "z-smart-server", "version": "1.0.0", "dependencies": {"old": "1"}}
            )
        )
        url = fake_github.publish(
            "2.0.0", make_zip(release_files("2.0.0", dependencies={"new": "2"}))
        )
        seen: list[tuple[bool, dict]] = []

        def dependency_installer(directory: Path) -> None:
            seen.append(
                (
                    (directory / "src" / "server.js").exists(),
                    json.loads((directory / "package.json").read_text()),
                )
            )

        _installer(fake_github.client(), dependency_installer=dependency_installer).install(
            url, tmp_path
        )
        assert seen == [
            (
                True,
                {
                    "name": "z-smart-server",
                    "version": "1.0.0",
                    "dependencies": {"new": "2"},
                },
            )
        ]

    def test_dependency_installer_sees_manifest_on_fresh_install(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        url = fake_github.publish(
            "2.0.0", make_zip(release_files("2.0.0", dependencies={"new": "2"}))
        )
        seen: list[dict] = []

        def dependency_installer(directory: Path) -> None:
            seen.append(json.loads((directory / "package.json").read_text()))

        _installer(fake_github.client(), dependency_installer=dependency_installer).install(
            url, tmp_path
        )
        assert seen == [{"name": "z-smart-server", "dependencies": {"new": "2"}}]

    def test_dependency_failure_propagates(
        self, tmp_path: Path, fake_github: FakeGitHub
    ) -> None:
        url = fake_github.publish("2.0.0")
        failing = MagicMock(side_effect=DependencyInstallError("npm failed"))

        with pytest.raises(DependencyInstallError) as exc_info:
            _installer(fake_github.client(), dependency_installer=failing).install(
                url, tmp_path
            )

        assert exc_info.value.details["stage"] == "dependencies"
        failing.assert_called_once_with(tmp_path)
        assert _leftovers(tmp_path) == []

    def test_dependency_installer_runs_command(self, tmp_path: Path) -> None:
        result = CommandResult(("npm",), 0, "", "")
        with patch(
            "zsmart_manager.updates.installer.run_command", return_value=result
        ) as run:
            DependencyInstaller(timeout=10)(tmp_path)

        run.assert_called_once_with(
            "npm", "install", "--production", cwd=tmp_path, timeout=10
        )

    def test_dependency_installer_nonzero_exit(self, tmp_path: Path) -> None:
        result = CommandResult(("npm",), 1, "", "ERR! missing\n")
        with patch("zsmart_manager.updates.installer.run_command", return_value=result):
            with pytest.raises(DependencyInstallError) as exc_info:
                DependencyInstaller()(tmp_path)
        assert exc_info.value.details["returncode"] == 1
        assert "ERR! missing" in exc_info.value.details["output"]

    def test_dependency_installer_missing_npm(self, tmp_path: Path) -> None:
        with patch(
            "zsmart_manager.updates.installer.run_command",
            side_effect=UnavailableError("Command not found: npm"),
        ):
            with pytest.raises(DependencyInstallError):
                DependencyInstaller()(tmp_path)


class TestFromConfig:
    def test_from_config_with_dependencies(self) -> None:
        config = ManagerConfig()
        installer = ArchiveInstaller.from_config(config)
        assert isinstance(installer._dependency_installer, DependencyInstaller)
        assert installer._dependency_installer.command == ("npm", "install", "--production")

    def test_from_config_without_dependencies(self) -> None:
        config = ManagerConfig(install={"run_dependencies": False})
        assert ArchiveInstaller.from_config(config)._dependency_installer is None
