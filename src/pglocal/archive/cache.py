"""Install cache coordination: one idempotent, crash-safe install per key.

A key is (repository identity, resolved version, platform triple). The
install tree is considered usable only once the completion marker exists; the
marker is written after the extracted tree has been renamed into place, so a
crash at any earlier point leaves the key "not yet complete" and the next
attempt starts over.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from pglocal.archive.extractor import Extractor
from pglocal.archive.fetcher import ArchiveFetcher, ArchiveHandle, CacheLayout
from pglocal.archive.lock import InstallLock
from pglocal.archive.platform import Platform
from pglocal.constants import Constants
from pglocal.errors import InstallError, PgLocalError, Timeout
from pglocal.repository.base import Repository
from pglocal.versioning.models import ResolvedVersion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallDirectory:
    """A completed, read-only installation."""
    path: Path
    version: ResolvedVersion
    platform: Platform
    repository: str
    files: List[str] = field(default_factory=list)

    @property
    def bin_dir(self) -> Path:
        return self.path / "bin"

    def find(self, name: str) -> Optional[Path]:
        """Locate an installed file by base name (``pg_ctl``, ``initdb.exe``)."""
        for rel in self.files:
            if rel.rsplit("/", 1)[-1] == name:
                return self.path / rel
        return None


class InstallCacheCoordinator:
    """Ensure a key is installed exactly once across threads and processes."""

    def __init__(
        self,
        cache_root: Union[str, Path, None] = None,
        *,
        fetcher: Optional[ArchiveFetcher] = None,
        extractor: Optional[Extractor] = None,
        lock_timeout: float = Constants.LOCK_TIMEOUT_SEC,
    ):
        self.fetcher = fetcher or ArchiveFetcher(cache_root)
        self.layout: CacheLayout = self.fetcher.layout
        self.extractor = extractor or Extractor()
        self.lock_timeout = lock_timeout

    def key(self, version: ResolvedVersion, repository: Repository, platform: Platform) -> str:
        return f"{repository.identity}/{version}/{platform.target_triple}"

    def ensure_installed(
        self,
        version: ResolvedVersion,
        repository: Repository,
        platform: Optional[Platform] = None,
    ) -> InstallDirectory:
        """Return the install for the key, creating it if needed.

        Raises:
            InstallError: Wrapping the first fetch or extract failure.
            Timeout: If the install lock is not obtained in time.
        """
        platform = platform or self.fetcher.platform
        key_dir = self.layout.key_dir(repository, version, platform)
        done = self._completed(key_dir, version, repository, platform)
        if done is not None:
            return done

        with InstallLock(self.layout.lock_path(key_dir), timeout=self.lock_timeout):
            done = self._completed(key_dir, version, repository, platform)
            if done is not None:
                return done
            key = self.key(version, repository, platform)
            logger.info("Installing %s", key)
            self._discard_partial(key_dir)
            try:
                handle = self.fetcher.fetch(version, repository, platform)
                files = self.extractor.extract(handle, self.layout.install_dir(key_dir))
            except Timeout:
                raise
            except PgLocalError as exc:
                raise InstallError(key, str(exc)) from exc
            except OSError as exc:
                raise InstallError(key, str(exc)) from exc
            return self._complete(key_dir, handle, repository, files)

    async def ensure_installed_async(
        self,
        version: ResolvedVersion,
        repository: Repository,
        platform: Optional[Platform] = None,
    ) -> InstallDirectory:
        """Cooperative variant of :meth:`ensure_installed` with identical semantics."""
        platform = platform or self.fetcher.platform
        key_dir = self.layout.key_dir(repository, version, platform)
        done = self._completed(key_dir, version, repository, platform)
        if done is not None:
            return done

        async with InstallLock(self.layout.lock_path(key_dir), timeout=self.lock_timeout):
            done = self._completed(key_dir, version, repository, platform)
            if done is not None:
                return done
            key = self.key(version, repository, platform)
            logger.info("Installing %s", key)
            await asyncio.to_thread(self._discard_partial, key_dir)
            try:
                handle = await self.fetcher.fetch_async(version, repository, platform)
                files = await asyncio.to_thread(
                    self.extractor.extract, handle, self.layout.install_dir(key_dir)
                )
            except Timeout:
                raise
            except PgLocalError as exc:
                raise InstallError(key, str(exc)) from exc
            except OSError as exc:
                raise InstallError(key, str(exc)) from exc
            return self._complete(key_dir, handle, repository, files)

    def is_installed(
        self, version: ResolvedVersion, repository: Repository, platform: Optional[Platform] = None
    ) -> bool:
        platform = platform or self.fetcher.platform
        key_dir = self.layout.key_dir(repository, version, platform)
        return self.layout.marker_path(key_dir).is_file()

    def _completed(
        self,
        key_dir: Path,
        version: ResolvedVersion,
        repository: Repository,
        platform: Platform,
    ) -> Optional[InstallDirectory]:
        marker = self.layout.marker_path(key_dir)
        install_dir = self.layout.install_dir(key_dir)
        if not marker.is_file() or not install_dir.is_dir():
            return None
        try:
            record = json.loads(marker.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            record = {}
        return InstallDirectory(
            path=install_dir,
            version=version,
            platform=platform,
            repository=repository.identity,
            files=list(record.get("files", [])),
        )

    def _discard_partial(self, key_dir: Path) -> None:
        install_dir = self.layout.install_dir(key_dir)
        if install_dir.exists():
            logger.warning("Removing incomplete install %s", install_dir)
            shutil.rmtree(install_dir)
        for leftover in key_dir.glob(f".{Constants.INSTALL_SUBDIR}.staging-*"):
            shutil.rmtree(leftover, ignore_errors=True)

    def _complete(
        self,
        key_dir: Path,
        handle: ArchiveHandle,
        repository: Repository,
        files: List[Path],
    ) -> InstallDirectory:
        install_dir = self.layout.install_dir(key_dir)
        relative = [p.relative_to(install_dir).as_posix() for p in files]
        record = {
            "repository": repository.url,
            "version": str(handle.version),
            "platform": handle.platform.target_triple,
            "archive": handle.path.name,
            "hash_algorithm": handle.hash_algorithm.value,
            "content_hash": handle.content_hash,
            "installed_at": time.time(),
            "files": relative,
        }
        marker = self.layout.marker_path(key_dir)
        tmp = marker.with_name(f"{marker.name}.part")
        tmp.write_text(json.dumps(record, indent=2), encoding="utf-8")
        os.replace(tmp, marker)
        logger.info("Installed %s into %s", self.key(handle.version, repository, handle.platform), install_dir)
        return InstallDirectory(
            path=install_dir,
            version=handle.version,
            platform=handle.platform,
            repository=repository.identity,
            files=relative,
        )
