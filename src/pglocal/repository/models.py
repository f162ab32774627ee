"""Data models shared by repository implementations."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pglocal.constants import ArchiveFormat, HashAlgorithm
from pglocal.versioning.models import ResolvedVersion


@dataclass(frozen=True)
class CatalogRequest:
    """One page of a catalog listing."""
    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Asset:
    """A downloadable file attached to a release."""
    name: str
    url: str


@dataclass
class CatalogEntry:
    """A parsed release: its version, original tag and attached assets."""
    version: ResolvedVersion
    tag: str
    assets: List[Asset] = field(default_factory=list)

    def asset(self, name: str) -> Optional[Asset]:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None


@dataclass(frozen=True)
class AssetDescriptor:
    """Everything the fetcher needs to download and verify one archive."""
    name: str
    url: str
    archive_format: ArchiveFormat
    checksum_url: Optional[str] = None
    hash_algorithm: Optional[HashAlgorithm] = None
    headers: Dict[str, str] = field(default_factory=dict)
