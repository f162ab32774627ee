"""Parsing of version constraint strings and catalog tags."""

import re
from typing import Optional

import semantic_version

from pglocal.errors import InvalidSettings
from pglocal.versioning.models import ResolutionMode, ResolvedVersion, VersionConstraint

_LATEST_TOKENS = {"", "*", "latest", "x"}
_EXACT_RE = re.compile(r"^(?:==?)?\s*v?(\d+\.\d+\.\d+(?:-[0-9A-Za-z.\-]+)?(?:\+[0-9A-Za-z.\-]+)?)$")
_PARTIAL_RE = re.compile(r"^v?(\d+)(?:\.(\d+|x|\*))?(?:\.(x|\*))?$", re.IGNORECASE)
_TAG_PREFIX_RE = re.compile(r"^[^0-9]*")


def _partial_to_range(major: str, minor: Optional[str]) -> str:
    """Expand ``16``, ``16.x`` or ``16.4`` into comparator pairs."""
    if minor is None or minor.lower() in ("x", "*"):
        return f">={int(major)}.0.0,<{int(major) + 1}.0.0"
    return f">={int(major)}.{int(minor)}.0,<{int(major)}.{int(minor) + 1}.0"


def _normalize_range(text: str) -> str:
    """Turn space or comma separated comparators into SimpleSpec grammar."""
    s = re.sub(r"([<>=!~^]+)\s+", r"\1", text.strip())
    parts = [p for p in re.split(r"[\s,]+", s) if p]
    return ",".join(parts)


def parse_constraint(text: Optional[str]) -> VersionConstraint:
    """Parse a user supplied version requirement.

    ``""``, ``*`` and ``latest`` select the newest release; a full
    ``X.Y.Z`` (optionally prefixed by ``=`` or ``==``) is an exact pin;
    ``16``, ``16.x`` and ``16.4`` are shorthand ranges; anything else is
    handed to :class:`semantic_version.SimpleSpec`.

    Raises:
        InvalidSettings: If the expression cannot be parsed.
    """
    raw = (text or "").strip()
    if raw.lower() in _LATEST_TOKENS:
        return VersionConstraint(raw=raw, mode=ResolutionMode.LATEST, normalized="*")

    m = _EXACT_RE.match(raw)
    if m:
        version = semantic_version.Version(m.group(1))
        return VersionConstraint(
            raw=raw,
            mode=ResolutionMode.EXACT,
            normalized=str(version),
            include_prerelease=bool(version.prerelease),
        )

    m = _PARTIAL_RE.match(raw)
    if m:
        normalized = _partial_to_range(m.group(1), m.group(2))
    else:
        normalized = _normalize_range(raw)
    try:
        semantic_version.SimpleSpec(normalized)
    except ValueError as exc:
        raise InvalidSettings(f"invalid version constraint '{raw}': {exc}") from exc
    return VersionConstraint(
        raw=raw,
        mode=ResolutionMode.RANGE,
        normalized=normalized,
        include_prerelease="-" in normalized,
    )


def parse_tag(tag: str) -> Optional[ResolvedVersion]:
    """Parse a release tag such as ``16.4.0`` or ``v16.4.0``; None if invalid."""
    candidate = _TAG_PREFIX_RE.sub("", tag.strip())
    try:
        return semantic_version.Version(candidate)
    except ValueError:
        return None
