"""
Pytest configuration and shared fixtures for the Z Smart Server manager tests.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from collections.abc import Callable
from typing import Any

import httpx
import pytest

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

REPOSITORY = "ezequielgandolfi/z-smart-server"
API_BASE_URL = "https://api.example.test"
DOWNLOAD_BASE_URL = "https://downloads.example.test"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


def make_zip(files: dict[str, str | bytes]) -> bytes:
    """Build an in-memory zip archive from a mapping of path to content."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def release_files(
    version: str,
    *,
    wrapped: bool = True,
    dependencies: dict[str, str] | None = None,
    **extra: str,
) -> dict[str, str]:
    """Files of a fake z-smart-server release."""
    manifest: dict[str, Any] = {"name": "z-smart-server", "version": version}
    if dependencies is not None:
        manifest["dependencies"] = dependencies
    files = {
        "package.json": json.dumps(manifest),
        "src/server.js": f"// server {version}\n",
        "config.default.json": "{}",
        **extra,
    }
    if wrapped:
        return {f"z-smart-server/{name}": content for name, content in files.items()}
    return files


def release_payload(tag: str, asset_names: list[str]) -> dict[str, Any]:
    """A GitHub release object with the given assets."""
    return {
        "url": f"{API_BASE_URL}/repos/{REPOSITORY}/releases/1",
        "tag_name": tag,
        "name": f"Release {tag}",
        "draft": False,
        "prerelease": False,
        "assets": [
            {
                "name": name,
                "browser_download_url": f"{DOWNLOAD_BASE_URL}/{tag}/{name}",
            }
            for name in asset_names
        ],
    }


class FakeGitHub:
    """
    Serves a release index and its assets through httpx.MockTransport.

    Attributes:
        latest: Payload returned for /releases/latest (None means 404).
        assets: Mapping of asset URL to archive bytes.
        requests: Every request received, in order.
    """

    def __init__(self) -> None:
        self.latest: Any = None
        self.assets: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: Exception | None = None

    def publish(self, version: str, archive: bytes | None = None) -> str:
        """Publish a release with a zip asset; return the asset URL."""
        tag = f"v{version}"
        self.latest = release_payload(tag, ["z-smart-server.zip"])
        url = self.latest["assets"][0]["browser_download_url"]
        self.assets[url] = archive if archive is not None else make_zip(
            release_files(version)
        )
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

        url = str(request.url)
        if url == f"{API_BASE_URL}/repos/{REPOSITORY}/releases/latest":
            if self.latest is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=self.latest)
        if url in self.assets:
            return httpx.Response(200, content=self.assets[url])
        return httpx.Response(404)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_github() -> FakeGitHub:
    """A fake release index with nothing published."""
    return FakeGitHub()


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.Client]:
    """Factory building an httpx client around a request handler."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture(autouse=True)
def _reset_package_logger() -> None:
    """Undo setup_logging so caplog keeps working across tests."""
    yield
    logger = logging.getLogger("zsmart_manager")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
