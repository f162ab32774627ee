"""Checksum helpers for the algorithms repositories publish."""
from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Optional, Union

from pglocal.constants import Constants, HashAlgorithm


def new_hasher(algorithm: HashAlgorithm):
    return hashlib.new(algorithm.value)


def digest_length(algorithm: HashAlgorithm) -> int:
    """Length of the hex digest produced by ``algorithm``."""
    return new_hasher(algorithm).digest_size * 2


def file_digest(path: Union[str, Path], algorithm: HashAlgorithm) -> str:
    hasher = new_hasher(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(Constants.DOWNLOAD_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def parse_checksum(text: str, algorithm: HashAlgorithm) -> Optional[str]:
    """Extract the hex digest from a checksum file (``sha256sum`` style or bare)."""
    pattern = re.compile(rf"\b[0-9a-f]{{{digest_length(algorithm)}}}\b")
    m = pattern.search(text.lower())
    return m.group(0) if m else None
