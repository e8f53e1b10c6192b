"""
Release resolution against the GitHub releases API.

The resolver issues a single read-only request for a repository's newest
release and extracts the tag and the download URL of the first asset with the
expected archive extension. Responses are decoded as JSON; fields are looked up
by key, so key ordering and whitespace never matter.

Drafts are never installable. Pre-releases are skipped unless explicitly
enabled, in which case the full release list is consulted because the
"latest" endpoint never returns them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from zsmart_manager.errors import (
    MalformedResponseError,
    NetworkError,
    NetworkTimeoutError,
    NotFoundError,
)
from zsmart_manager.logging import get_logger
from zsmart_manager.updates.version import normalize_tag

if TYPE_CHECKING:
    from zsmart_manager.config import NetworkConfig

logger = get_logger(__name__)

DEFAULT_API_BASE_URL = "https://api.github.com"


class ReleaseInfo(BaseModel):
    """
    One resolved release.

    Attributes:
        tag: Release tag name (e.g., "v2.1.0").
        asset_url: Download URL of the installable asset, or None when the
            release carries no asset with the expected extension.
        name: Optional release title.
        prerelease: Whether the release is flagged as a pre-release.
    """

    model_config = ConfigDict(frozen=True)

    tag: str = Field(..., description="Release tag name")
    asset_url: str | None = Field(
        default=None,
        description="Download URL of the installable asset",
    )
    name: str | None = Field(default=None, description="Release title")
    prerelease: bool = Field(default=False, description="Pre-release flag")

    @property
    def version(self) -> str:
        """The tag with its leading "v" removed."""
        return normalize_tag(self.tag)

    @property
    def installable(self) -> bool:
        return self.asset_url is not None


def select_asset_url(assets: Any, extension: str) -> str | None:
    """
    Pick the first asset whose name ends in the archive extension.

    Assets lacking a name are matched on their download URL instead. Entries
    that are not objects or have no string URL are ignored.

    Args:
        assets: The "assets" value of a release payload.
        extension: Archive extension such as ".zip".

    Returns:
        The asset's browser_download_url, or None if nothing matches.
    """
    if not isinstance(assets, list):
        return None

    extension = extension.lower()
    for asset in assets:
        if not isinstance(asset, dict):
            continue
        url = asset.get("browser_download_url")
        if not isinstance(url, str) or not url:
            continue
        name = asset.get("name")
        candidate = name if isinstance(name, str) and name else url
        if candidate.lower().endswith(extension):
            return url
    return None


def parse_release(payload: Any, extension: str) -> ReleaseInfo:
    """
    Build a ReleaseInfo from one decoded release object.

    Raises:
        MalformedResponseError: If the payload is not an object or lacks a
            string tag_name.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(
            "Release payload is not a JSON object",
            details={"type": type(payload).__name__},
        )

    tag = payload.get("tag_name")
    if not isinstance(tag, str) or not tag.strip():
        raise MalformedResponseError(
            "Release payload has no tag_name",
            details={"keys": sorted(payload.keys())},
        )

    name = payload.get("name")
    return ReleaseInfo(
        tag=tag.strip(),
        asset_url=select_asset_url(payload.get("assets"), extension),
        name=name if isinstance(name, str) else None,
        prerelease=bool(payload.get("prerelease", False)),
    )


class ReleaseResolver:
    """
    Resolves the newest release of a repository.

    Attributes:
        api_base_url: Base URL of the releases API.
        archive_extension: Extension of the asset to select.
        include_prereleases: Whether pre-releases are acceptable.
        timeout: Request timeout in seconds.

    Example:
        >>> resolver = ReleaseResolver()
        >>> release = resolver.resolve_latest("ezequielgandolfi/z-smart-server")
        >>> release.version
        '2.1.0'
    """

    def __init__(
        self,
        api_base_url: str = DEFAULT_API_BASE_URL,
        archive_extension: str = ".zip",
        *,
        include_prereleases: bool = False,
        timeout: float = 30.0,
        token: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            api_base_url: Base URL of the releases API.
            archive_extension: Extension of the asset to select.
            include_prereleases: Accept releases flagged as pre-release.
            timeout: Request timeout in seconds.
            token: Optional bearer token for authenticated requests.
            client: Optional preconfigured httpx client (used by tests).
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.archive_extension = archive_extension
        self.include_prereleases = include_prereleases
        self.timeout = timeout
        self._token = token
        self._client = client

    @classmethod
    def from_config(
        cls, config: NetworkConfig, client: httpx.Client | None = None
    ) -> ReleaseResolver:
        """Create a ReleaseResolver from configuration."""
        return cls(
            api_base_url=config.api_base_url,
            archive_extension=config.archive_extension,
            include_prereleases=config.include_prereleases,
            timeout=config.timeout_seconds,
            token=config.token,
            client=client,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_json(self, url: str) -> Any:
        """
        GET a URL and decode its JSON body.

        Raises:
            NetworkTimeoutError: If the request times out.
            NetworkError: If the endpoint is unreachable or returns an error.
            NotFoundError: If the endpoint returns 404.
            MalformedResponseError: If the body is not valid JSON.
        """
        logger.debug("Querying release index", extra={"url": url})

        try:
            if self._client is not None:
                response = self._client.get(
                    url, headers=self._headers(), timeout=self.timeout
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.get(url, headers=self._headers())
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(
                f"Release index request timed out after {self.timeout}s",
                details={"url": url},
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Failed to reach release index: {e}",
                details={"url": url},
            ) from e

        if response.status_code == 404:
            raise NotFoundError(
                "No published release found",
                details={"url": url},
            )
        if response.is_error:
            raise NetworkError(
                f"Release index returned HTTP {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Release index returned invalid JSON",
                details={"url": url, "error": str(e)},
            ) from e

    def resolve_latest(self, repository: str) -> ReleaseInfo:
        """
        Resolve the newest installable release of a repository.

        Args:
            repository: Repository identifier in "owner/name" form.

        Returns:
            ReleaseInfo for the newest release. asset_url is None when the
            release has no asset with the expected extension.

        Raises:
            NetworkError: If the release index is unreachable (including
                NetworkTimeoutError).
            NotFoundError: If the repository has no acceptable release.
            MalformedResponseError: If the response lacks a tag name.
        """
        if self.include_prereleases:
            payload = self._newest_from_list(repository)
        else:
            payload = self._get_json(
                f"{self.api_base_url}/repos/{repository}/releases/latest"
            )
            if isinstance(payload, dict) and payload.get("draft"):
                raise NotFoundError(
                    "Latest release is a draft",
                    details={"repository": repository},
                )
            if isinstance(payload, dict) and payload.get("prerelease"):
                raise NotFoundError(
                    "Latest release is a pre-release and pre-releases are disabled",
                    details={"repository": repository, "tag": payload.get("tag_name")},
                )

        release = parse_release(payload, self.archive_extension)

        logger.info(
            f"Resolved latest release {release.tag}",
            extra={
                "repository": repository,
                "tag": release.tag,
                "asset_url": release.asset_url,
            },
        )
        return release

    def _newest_from_list(self, repository: str) -> Any:
        """Return the newest non-draft entry of the release list."""
        releases = self._get_json(
            f"{self.api_base_url}/repos/{repository}/releases?per_page=20"
        )
        if not isinstance(releases, list):
            raise MalformedResponseError(
                "Release list is not a JSON array",
                details={"repository": repository},
            )

        for entry in releases:
            if isinstance(entry, dict) and not entry.get("draft"):
                return entry

        raise NotFoundError(
            "No published release found",
            details={"repository": repository},
        )
