"""Maven repository of zonky embedded-postgres-binaries.

One artifact per platform (``embedded-postgres-binaries-<os>-<arch>``); each
version is a jar holding a single ``.txz`` archive, with a ``.sha1`` beside it.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import List, Optional
from urllib.parse import urlsplit

from pglocal.archive.platform import Platform
from pglocal.constants import ArchiveFormat, Constants, HashAlgorithm
from pglocal.errors import CatalogUnavailable
from pglocal.repository.base import Repository
from pglocal.repository.models import AssetDescriptor, CatalogEntry, CatalogRequest
from pglocal.versioning.models import ResolvedVersion
from pglocal.versioning.parser import parse_tag

logger = logging.getLogger(__name__)

_OS_NAMES = {"macos": "darwin", "linux": "linux", "windows": "windows"}
_ARCH_NAMES = {
    "x86_64": "amd64",
    "aarch64": "arm64v8",
    "arm": "arm32v7",
    "ppc64le": "ppc64le",
    "x86": "i386",
}


class MavenRepository(Repository):
    """Repository backed by a Maven layout (``maven-metadata.xml`` per artifact)."""

    archive_format = ArchiveFormat.ZIP_TXZ
    hash_algorithm = HashAlgorithm.SHA1
    strip_components = 0

    def __init__(self, url: str = Constants.ZONKY_URL, platform: Optional[Platform] = None):
        super().__init__(url, platform)
        if self.url == Constants.ZONKY_URL:
            self.base_url = f"{Constants.MAVEN_CENTRAL_URL}/{Constants.ZONKY_GROUP_PATH}"
        else:
            self.base_url = self.url

    @classmethod
    def supports(cls, url: str) -> bool:
        url = url.rstrip("/")
        if url == Constants.ZONKY_URL:
            return True
        parts = urlsplit(url)
        return "maven" in parts.netloc.lower() or "/maven2" in parts.path

    def artifact_id(self, platform: Platform) -> str:
        os_name = _OS_NAMES.get(platform.os, platform.os)
        arch = _ARCH_NAMES.get(platform.arch, platform.arch)
        artifact = f"{Constants.ZONKY_ARTIFACT_PREFIX}-{os_name}-{arch}"
        if platform.libc == "musl":
            artifact += "-alpine"
        return artifact

    def catalog_request(self, page: int) -> Optional[CatalogRequest]:
        if page > 1:
            return None
        artifact = self.artifact_id(self.platform)
        return CatalogRequest(url=f"{self.base_url}/{artifact}/maven-metadata.xml")

    def parse_catalog(self, text: str) -> List[CatalogEntry]:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as exc:
            raise CatalogUnavailable(f"malformed maven-metadata.xml from {self.base_url}: {exc}") from exc

        entries = []
        for version_elem in root.findall("./versioning/versions/version"):
            tag = (version_elem.text or "").strip()
            version = parse_tag(tag)
            if version is None:
                logger.warning("Skipping unparsable Maven version '%s'", tag)
                continue
            entries.append(CatalogEntry(version=version, tag=tag))
        return entries

    def asset_for(self, version: ResolvedVersion, platform: Platform) -> AssetDescriptor:
        artifact = self.artifact_id(platform)
        entry = self.entry_for(version)
        tag = entry.tag if entry is not None else str(version)
        name = f"{artifact}-{tag}.jar"
        url = f"{self.base_url}/{artifact}/{tag}/{name}"
        return AssetDescriptor(
            name=name,
            url=url,
            archive_format=self.archive_format,
            checksum_url=f"{url}.{self.hash_algorithm.value}",
            hash_algorithm=self.hash_algorithm,
        )
