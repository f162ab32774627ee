"""Download and verify archives into the on-disk install cache.

Cache layout, stable across releases::

    <root>/<repository identity>/<version>/<target triple>/
        <archive name>              verified archive
        <archive name>.<algorithm>  recorded digest
        install/                    extracted tree (see archive.cache)
        .complete                   completion marker
        .lock                       install lock
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from pglocal.archive.hasher import file_digest, parse_checksum
from pglocal.archive.platform import Platform, detect_platform
from pglocal.common.async_http import AsyncHttpClient
from pglocal.common.http_client import HttpClient
from pglocal.common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from pglocal.constants import ArchiveFormat, Constants, HashAlgorithm, default_cache_dir
from pglocal.errors import HashMismatch
from pglocal.repository.base import Repository
from pglocal.repository.models import AssetDescriptor
from pglocal.versioning.models import ResolvedVersion

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = HashAlgorithm.SHA256


@dataclass(frozen=True)
class ArchiveHandle:
    """A verified archive file in the cache."""
    version: ResolvedVersion
    platform: Platform
    path: Path
    content_hash: str
    hash_algorithm: HashAlgorithm
    archive_format: ArchiveFormat
    repository: str
    strip_components: int = 0


class CacheLayout:
    """Paths of one cache root."""

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root) if root is not None else default_cache_dir()

    def key_dir(self, repository: Repository, version: ResolvedVersion, platform: Platform) -> Path:
        return self.root / repository.identity / str(version) / platform.target_triple

    @staticmethod
    def install_dir(key_dir: Path) -> Path:
        return key_dir / Constants.INSTALL_SUBDIR

    @staticmethod
    def marker_path(key_dir: Path) -> Path:
        return key_dir / Constants.COMPLETION_MARKER

    @staticmethod
    def lock_path(key_dir: Path) -> Path:
        return key_dir / Constants.LOCK_FILE

    @staticmethod
    def hash_path(archive: Path, algorithm: HashAlgorithm) -> Path:
        return archive.with_name(f"{archive.name}.{algorithm.value}")


class ArchiveFetcher:
    """Fetch archives for resolved versions, reusing verified cache entries.

    The platform defaults to the host, detected once when the fetcher is built.
    A download whose digest disagrees with the published checksum is retried
    once from scratch; a second mismatch raises :class:`HashMismatch`. Bytes
    that fail verification never reach their final cache path.
    """

    def __init__(
        self,
        cache_root: Union[str, Path, None] = None,
        *,
        http: Optional[HttpClient] = None,
        async_http: Optional[AsyncHttpClient] = None,
        platform: Optional[Platform] = None,
    ):
        self.layout = CacheLayout(cache_root)
        self.platform = platform or detect_platform()
        self._http = http
        self._async_http = async_http

    def fetch(
        self,
        version: ResolvedVersion,
        repository: Repository,
        platform: Optional[Platform] = None,
    ) -> ArchiveHandle:
        """Return a verified archive for ``version``, downloading it if needed.

        Raises:
            HashMismatch: If the published checksum never matches.
            AssetNotFound: If the release has no archive for the platform.
            HttpError, NetworkError, Timeout: On download failure after retries.
        """
        platform = platform or self.platform
        descriptor, key_dir, archive, algorithm = self._prepare(version, repository, platform)

        cached = self._cached_hash(archive, algorithm)
        if cached is not None:
            return self._handle(version, platform, repository, descriptor, archive, cached, algorithm)

        http = self._http or HttpClient()
        try:
            checksum_text = None
            if descriptor.checksum_url:
                checksum_text = http.get_text(
                    descriptor.checksum_url, headers=descriptor.headers, allow_missing=True
                )
            expected = self._published(descriptor, algorithm, checksum_text)

            mismatch: Optional[HashMismatch] = None
            for _ in range(1 + Constants.HASH_MISMATCH_RETRIES):
                tmp = self._temp_path(key_dir, descriptor.name)
                with Timer() as t:
                    try:
                        http.download(descriptor.url, tmp, headers=descriptor.headers)
                        actual = file_digest(tmp, algorithm)
                    except BaseException:
                        _unlink(tmp)
                        raise
                self._log_download(descriptor, t)
                mismatch = self._verify(descriptor, algorithm, expected, actual)
                if mismatch is None:
                    self._promote(tmp, archive, actual, algorithm)
                    return self._handle(version, platform, repository, descriptor, archive, actual, algorithm)
                _unlink(tmp)
            raise mismatch
        finally:
            if self._http is None:
                http.close()

    async def fetch_async(
        self,
        version: ResolvedVersion,
        repository: Repository,
        platform: Optional[Platform] = None,
    ) -> ArchiveHandle:
        """Cooperative variant of :meth:`fetch` with identical semantics."""
        platform = platform or self.platform
        descriptor, key_dir, archive, algorithm = self._prepare(version, repository, platform)

        cached = await asyncio.to_thread(self._cached_hash, archive, algorithm)
        if cached is not None:
            return self._handle(version, platform, repository, descriptor, archive, cached, algorithm)

        if self._async_http is not None:
            return await self._download_async(
                self._async_http, version, repository, platform, descriptor, key_dir, archive, algorithm
            )
        async with AsyncHttpClient() as http:
            return await self._download_async(
                http, version, repository, platform, descriptor, key_dir, archive, algorithm
            )

    async def _download_async(
        self,
        http: AsyncHttpClient,
        version: ResolvedVersion,
        repository: Repository,
        platform: Platform,
        descriptor: AssetDescriptor,
        key_dir: Path,
        archive: Path,
        algorithm: HashAlgorithm,
    ) -> ArchiveHandle:
        checksum_text = None
        if descriptor.checksum_url:
            checksum_text = await http.get_text(
                descriptor.checksum_url, headers=descriptor.headers, allow_missing=True
            )
        expected = self._published(descriptor, algorithm, checksum_text)

        mismatch: Optional[HashMismatch] = None
        for _ in range(1 + Constants.HASH_MISMATCH_RETRIES):
            tmp = self._temp_path(key_dir, descriptor.name)
            with Timer() as t:
                try:
                    await http.download(descriptor.url, tmp, headers=descriptor.headers)
                    actual = await asyncio.to_thread(file_digest, tmp, algorithm)
                except BaseException:
                    _unlink(tmp)
                    raise
            self._log_download(descriptor, t)
            mismatch = self._verify(descriptor, algorithm, expected, actual)
            if mismatch is None:
                self._promote(tmp, archive, actual, algorithm)
                return self._handle(version, platform, repository, descriptor, archive, actual, algorithm)
            _unlink(tmp)
        raise mismatch

    def _prepare(
        self, version: ResolvedVersion, repository: Repository, platform: Platform
    ) -> Tuple[AssetDescriptor, Path, Path, HashAlgorithm]:
        descriptor = repository.asset_for(version, platform)
        key_dir = self.layout.key_dir(repository, version, platform)
        key_dir.mkdir(parents=True, exist_ok=True)
        algorithm = descriptor.hash_algorithm or DEFAULT_ALGORITHM
        return descriptor, key_dir, key_dir / descriptor.name, algorithm

    def _cached_hash(self, archive: Path, algorithm: HashAlgorithm) -> Optional[str]:
        """Digest of a cached archive if it still matches its record, else None."""
        hash_file = self.layout.hash_path(archive, algorithm)
        if not archive.is_file() or not hash_file.is_file():
            return None
        recorded = parse_checksum(hash_file.read_text(encoding="utf-8"), algorithm)
        actual = file_digest(archive, algorithm)
        if recorded == actual:
            if is_debug_enabled(logger):
                logger.debug(
                    "Archive cache hit",
                    extra=extra_context(
                        event="cache_hit", component="archive_fetcher", target=str(archive)
                    ),
                )
            return actual
        logger.warning("Cached archive %s failed verification; downloading again", archive)
        _unlink(archive)
        _unlink(hash_file)
        return None

    @staticmethod
    def _published(
        descriptor: AssetDescriptor, algorithm: HashAlgorithm, text: Optional[str]
    ) -> Optional[str]:
        if text is None:
            if descriptor.checksum_url:
                logger.info("No published checksum for %s; recording computed digest", descriptor.name)
            return None
        digest = parse_checksum(text, algorithm)
        if digest is None:
            raise HashMismatch(descriptor.name, algorithm.value, "<unreadable checksum>", "")
        return digest

    @staticmethod
    def _verify(
        descriptor: AssetDescriptor,
        algorithm: HashAlgorithm,
        expected: Optional[str],
        actual: str,
    ) -> Optional[HashMismatch]:
        if expected is None or expected == actual:
            return None
        logger.warning(
            "%s digest of %s is %s, expected %s", algorithm.value, descriptor.name, actual, expected
        )
        return HashMismatch(descriptor.name, algorithm.value, expected, actual)

    def _promote(self, tmp: Path, archive: Path, digest: str, algorithm: HashAlgorithm) -> None:
        os.replace(tmp, archive)
        hash_file = self.layout.hash_path(archive, algorithm)
        hash_tmp = hash_file.with_name(f".{hash_file.name}.part")
        hash_tmp.write_text(f"{digest}  {archive.name}\n", encoding="utf-8")
        os.replace(hash_tmp, hash_file)

    @staticmethod
    def _temp_path(key_dir: Path, name: str) -> Path:
        fd, path = tempfile.mkstemp(dir=key_dir, prefix=f".{name}.", suffix=".part")
        os.close(fd)
        return Path(path)

    @staticmethod
    def _handle(
        version: ResolvedVersion,
        platform: Platform,
        repository: Repository,
        descriptor: AssetDescriptor,
        archive: Path,
        digest: str,
        algorithm: HashAlgorithm,
    ) -> ArchiveHandle:
        return ArchiveHandle(
            version=version,
            platform=platform,
            path=archive,
            content_hash=digest,
            hash_algorithm=algorithm,
            archive_format=descriptor.archive_format,
            repository=repository.identity,
            strip_components=repository.strip_components,
        )

    @staticmethod
    def _log_download(descriptor: AssetDescriptor, timer: Timer) -> None:
        logger.info("Downloaded %s", descriptor.name)
        if is_debug_enabled(logger):
            logger.debug(
                "Archive downloaded",
                extra=extra_context(
                    event="download",
                    component="archive_fetcher",
                    action="GET",
                    outcome="success",
                    duration_ms=timer.duration_ms(),
                    target=safe_url(descriptor.url),
                ),
            )


def _unlink(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
