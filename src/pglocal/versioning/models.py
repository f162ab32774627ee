"""Data models for version constraints and resolution."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import semantic_version

# A concrete version chosen from a catalog; immutable once computed.
ResolvedVersion = semantic_version.Version


class ResolutionMode(Enum):
    """Resolution strategy derived from the constraint text."""
    EXACT = "exact"
    RANGE = "range"
    LATEST = "latest"


@dataclass(frozen=True)
class VersionConstraint:
    """Normalized representation of a version requirement.

    ``normalized`` holds the exact version for EXACT, a SimpleSpec-compatible
    expression for RANGE, and ``*`` for LATEST.
    """
    raw: str
    mode: ResolutionMode
    normalized: str
    include_prerelease: bool = False

    @property
    def exact_version(self) -> Optional[ResolvedVersion]:
        if self.mode != ResolutionMode.EXACT:
            return None
        return semantic_version.Version(self.normalized)

    def matches(self, version: ResolvedVersion) -> bool:
        if self.mode == ResolutionMode.EXACT:
            return version == self.exact_version
        if version.prerelease and not self.include_prerelease:
            return False
        if self.mode == ResolutionMode.LATEST:
            return True
        return semantic_version.SimpleSpec(self.normalized).match(version)

    def __str__(self) -> str:
        return self.raw or "*"
