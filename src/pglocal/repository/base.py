"""Repository capability-set base class.

A repository describes how its catalog is listed and parsed, how an asset is
named for a platform, which archive format it publishes and which checksum
algorithm accompanies each archive. The resolver and fetcher drive the I/O.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from pglocal.archive.platform import Platform, detect_platform
from pglocal.constants import ArchiveFormat, HashAlgorithm
from pglocal.repository.models import AssetDescriptor, CatalogEntry, CatalogRequest
from pglocal.versioning.models import ResolvedVersion


class Repository(ABC):
    """A source of versioned PostgreSQL binary archives."""

    archive_format: ArchiveFormat = ArchiveFormat.TAR_GZ
    hash_algorithm: Optional[HashAlgorithm] = HashAlgorithm.SHA256
    # leading path components removed from archive members on extraction
    strip_components: int = 0

    def __init__(self, url: str, platform: Optional[Platform] = None):
        self.url = url.rstrip("/")
        self.platform = platform or detect_platform()
        self._entries: Dict[str, CatalogEntry] = {}

    @classmethod
    @abstractmethod
    def supports(cls, url: str) -> bool:
        """Return True when this implementation understands ``url``."""

    @property
    def identity(self) -> str:
        """Filesystem-safe name used as the first cache key component."""
        parts = urlsplit(self.url)
        return re.sub(r"[^A-Za-z0-9._-]+", "_", f"{parts.netloc}{parts.path}").strip("_")

    @abstractmethod
    def catalog_request(self, page: int) -> Optional[CatalogRequest]:
        """Describe catalog page ``page`` (1-based), or None past the last page."""

    @abstractmethod
    def parse_catalog(self, text: str) -> List[CatalogEntry]:
        """Parse one catalog page; unparsable entries are skipped."""

    @abstractmethod
    def asset_for(self, version: ResolvedVersion, platform: Platform) -> AssetDescriptor:
        """Locate the archive for ``version`` built for ``platform``."""

    def remember(self, entries: Iterable[CatalogEntry]) -> None:
        """Keep parsed entries so later asset lookups use published URLs."""
        for entry in entries:
            self._entries[str(entry.version)] = entry

    def entry_for(self, version: ResolvedVersion) -> Optional[CatalogEntry]:
        return self._entries.get(str(version))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"
