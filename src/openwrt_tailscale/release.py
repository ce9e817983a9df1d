"""Release manifest resolution and asset selection.

The latest release is described by a GitHub-style JSON document carrying a
``tag_name`` and a list of ``assets`` (``name`` + ``browser_download_url``).
It is fetched once per run and reused for every later query.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from openwrt_tailscale.arch import Architecture
from openwrt_tailscale.constants import (
    ASSET_PRODUCT,
    ASSET_SUFFIX,
    GITHUB_ACCEPT_HEADER,
    HTTP_TIMEOUT,
)
from openwrt_tailscale.errors import AssetNotFound, NetworkError, ParseError
from openwrt_tailscale.logging import get_logger

log = get_logger("openwrt_tailscale.release")


def normalize_version(version: str | None) -> str:
    """Strip surrounding whitespace and a single leading ``v``/``V``."""
    if not version:
        return ""
    version = version.strip()
    if version[:1] in ("v", "V"):
        version = version[1:]
    return version


def asset_name(version: str, arch: str) -> str:
    """Expected archive name, e.g. ``tailscale_1.84.2_arm64.tar.gz``."""
    return f"{ASSET_PRODUCT}_{version}_{arch}{ASSET_SUFFIX}"


class Asset(BaseModel):
    """One downloadable release artifact."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    download_url: str = Field(alias="browser_download_url")


class ReleaseManifest(BaseModel):
    """The latest release: normalized version plus its assets in order."""

    model_config = ConfigDict(frozen=True)

    version: str
    assets: tuple[Asset, ...] = ()

    @property
    def asset_names(self) -> list[str]:
        return [asset.name for asset in self.assets]


class _ReleasePayload(BaseModel):
    """Subset of the release API response that we rely on."""

    model_config = ConfigDict(extra="ignore")

    tag_name: str | None = None
    assets: list[Asset] = Field(default_factory=list)


def parse_manifest(data: object) -> ReleaseManifest:
    """Build a manifest from a decoded release document.

    Raises:
        ParseError: if the document is malformed or the version is empty.
    """
    try:
        payload = _ReleasePayload.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"Malformed release document: {exc.error_count()} error(s)") from exc

    version = normalize_version(payload.tag_name)
    if not version:
        raise ParseError("Release document has no version tag")
    return ReleaseManifest(version=version, assets=tuple(payload.assets))


class ReleaseResolver:
    """Fetches the latest release manifest, at most once per instance."""

    def __init__(
        self,
        api_url: str,
        *,
        client: httpx.Client | None = None,
        timeout: float = HTTP_TIMEOUT,
        token: str | None = None,
    ) -> None:
        self._api_url = api_url
        self._client = client
        self._timeout = timeout
        self._token = token
        self._manifest: ReleaseManifest | None = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": GITHUB_ACCEPT_HEADER}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get(self, client: httpx.Client) -> httpx.Response:
        try:
            response = client.get(self._api_url, headers=self._headers(), follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Release API returned {exc.response.status_code} for {self._api_url}"
            ) from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Failed to get release info: {exc}") from exc
        return response

    def fetch_latest(self) -> ReleaseManifest:
        """Return the latest release manifest, fetching it on first use.

        Raises:
            NetworkError: on transport or HTTP failure.
            ParseError: if the document is not valid release metadata.
        """
        if self._manifest is not None:
            return self._manifest

        if self._client is not None:
            response = self._get(self._client)
        else:
            with httpx.Client(timeout=self._timeout) as client:
                response = self._get(client)

        try:
            data = response.json()
        except ValueError as exc:
            raise ParseError("Release document is not valid JSON") from exc

        self._manifest = parse_manifest(data)
        log.info(
            "release_manifest_fetched",
            version=self._manifest.version,
            assets=len(self._manifest.assets),
        )
        return self._manifest


@dataclass(frozen=True)
class AssetSelection:
    """Outcome of asset selection."""

    url: str
    name: str
    arch: str
    warning: str | None = None


class AssetSelector:
    """Picks the archive URL for a version and architecture.

    Matching is exact and case-sensitive over the manifest's assets in
    order; the first match wins. ``arm64`` falls back to the 32-bit ``arm``
    build, with a warning. No other architecture has a fallback.
    """

    @staticmethod
    def _find(manifest: ReleaseManifest, name: str) -> Asset | None:
        for asset in manifest.assets:
            if asset.name == name:
                return asset
        return None

    def select(self, manifest: ReleaseManifest, version: str, arch: str) -> AssetSelection:
        """Return the selected asset.

        Raises:
            AssetNotFound: if neither the exact asset nor a fallback exists.
        """
        if not version or not arch:
            raise AssetNotFound("Version and architecture are required", manifest.asset_names)

        arch = str(arch)
        target = asset_name(version, arch)
        asset = self._find(manifest, target)
        if asset is not None:
            return AssetSelection(url=asset.download_url, name=asset.name, arch=arch)

        if arch == Architecture.ARM64:
            fallback = asset_name(version, Architecture.ARM.value)
            asset = self._find(manifest, fallback)
            if asset is not None:
                warning = "arm64 asset missing, falling back to arm"
                log.warning("asset_fallback_arm", wanted=target, selected=fallback)
                return AssetSelection(
                    url=asset.download_url,
                    name=asset.name,
                    arch=Architecture.ARM.value,
                    warning=warning,
                )

        available = manifest.asset_names
        log.error("asset_not_found", wanted=target, available=available)
        raise AssetNotFound(f"No compatible package found for {arch}", available)
