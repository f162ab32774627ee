"""GitHub releases repository (theseus-rs/postgresql-binaries layout).

Catalog pages come from the REST releases endpoint; each release carries one
``postgresql-<version>-<target triple>.tar.gz`` per platform plus a sibling
``.sha256`` file.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from pglocal.archive.platform import Platform
from pglocal.constants import ArchiveFormat, Constants, HashAlgorithm
from pglocal.errors import AssetNotFound, CatalogUnavailable, UnsupportedRepository
from pglocal.repository.base import Repository
from pglocal.repository.models import Asset, AssetDescriptor, CatalogEntry, CatalogRequest
from pglocal.versioning.models import ResolvedVersion
from pglocal.versioning.parser import parse_tag

logger = logging.getLogger(__name__)


class GitHubRepository(Repository):
    """Repository backed by GitHub release assets.

    Supports optional authentication via GITHUB_TOKEN environment variable.
    """

    archive_format = ArchiveFormat.TAR_GZ
    hash_algorithm = HashAlgorithm.SHA256
    strip_components = 1

    def __init__(
        self,
        url: str = Constants.THESEUS_URL,
        platform: Optional[Platform] = None,
        token: Optional[str] = None,
    ):
        super().__init__(url, platform)
        segments = [s for s in urlsplit(self.url).path.split("/") if s]
        if len(segments) < 2:
            raise UnsupportedRepository(f"not a GitHub repository URL: {url}")
        self.owner, self.repo = segments[0], segments[1]
        self.token = token or os.environ.get(Constants.ENV_GITHUB_TOKEN)

    @classmethod
    def supports(cls, url: str) -> bool:
        return urlsplit(url).netloc.lower() in ("github.com", "www.github.com")

    def _get_headers(self) -> Dict[str, str]:
        """Get request headers including authorization if token is available."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": Constants.GITHUB_API_VERSION,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def catalog_request(self, page: int) -> Optional[CatalogRequest]:
        return CatalogRequest(
            url=f"{Constants.GITHUB_API_URL}/repos/{self.owner}/{self.repo}/releases",
            params={"page": page, "per_page": Constants.GITHUB_PER_PAGE},
            headers=self._get_headers(),
        )

    def parse_catalog(self, text: str) -> List[CatalogEntry]:
        try:
            releases: Any = json.loads(text)
        except ValueError as exc:
            raise CatalogUnavailable(f"malformed release listing from {self.url}: {exc}") from exc
        if not isinstance(releases, list):
            raise CatalogUnavailable(f"unexpected release listing from {self.url}")

        entries = []
        for release in releases:
            tag = str(release.get("tag_name") or "")
            version = parse_tag(tag)
            if version is None:
                logger.warning("Skipping release with unparsable tag '%s' in %s", tag, self.url)
                continue
            assets = [
                Asset(name=a["name"], url=a["browser_download_url"])
                for a in release.get("assets", [])
                if a.get("name") and a.get("browser_download_url")
            ]
            entries.append(CatalogEntry(version=version, tag=tag, assets=assets))
        return entries

    def asset_name(self, version: ResolvedVersion, platform: Platform) -> str:
        return f"postgresql-{version}-{platform.target_triple}.tar.gz"

    def asset_for(self, version: ResolvedVersion, platform: Platform) -> AssetDescriptor:
        name = self.asset_name(version, platform)
        checksum_name = f"{name}.{self.hash_algorithm.value}"
        entry = self.entry_for(version)
        if entry is not None:
            asset = entry.asset(name)
            if asset is None:
                raise AssetNotFound(f"release {entry.tag} of {self.url} has no asset {name}")
            checksum = entry.asset(checksum_name)
            url = asset.url
            checksum_url = checksum.url if checksum else None
        else:
            # exact pins skip the catalog; theseus tags equal the version
            url = f"{self.url}/releases/download/{version}/{name}"
            checksum_url = f"{url}.{self.hash_algorithm.value}"
        return AssetDescriptor(
            name=name,
            url=url,
            archive_format=self.archive_format,
            checksum_url=checksum_url,
            hash_algorithm=self.hash_algorithm,
        )
