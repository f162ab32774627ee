"""Format-aware archive extraction into a staged, atomically renamed tree.

The packaging convention comes from the repository (``ArchiveHandle.archive_format``)
and is never sniffed from content. Members are written into a private staging
directory next to the destination; only a fully extracted tree is renamed into
place. Absolute paths, ``..`` components and links resolving outside the tree
are rejected.
"""
from __future__ import annotations

import logging
import lzma
import os
import shutil
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Dict, List, Optional

from pglocal.archive.fetcher import ArchiveHandle
from pglocal.common.logging_utils import extra_context, is_debug_enabled, Timer
from pglocal.constants import ArchiveFormat
from pglocal.errors import ExtractionError, PgLocalError, UnsupportedFormat

logger = logging.getLogger(__name__)


class _Staging:
    """Writes archive members below one root, enforcing containment."""

    def __init__(self, root: Path, strip_components: int):
        self.root = root
        self.real_root = os.path.realpath(root)
        self.strip = strip_components
        self.written: List[str] = []
        self._dir_modes: Dict[Path, int] = {}

    def target(self, name: str) -> Optional[Path]:
        """Map an archive member name to its staged path; None if fully stripped."""
        normalized = name.replace("\\", "/")
        pure = PurePosixPath(normalized)
        if pure.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
            raise ExtractionError(f"absolute path in archive: {name}")
        parts = [p for p in pure.parts if p not in ("", ".")]
        if ".." in parts:
            raise ExtractionError(f"path traversal in archive: {name}")
        parts = parts[self.strip:]
        if not parts:
            return None
        target = self.root.joinpath(*parts)
        self._ensure_within(os.path.realpath(target.parent), name)
        return target

    def _ensure_within(self, real: str, name: str) -> None:
        if real != self.real_root and not real.startswith(self.real_root + os.sep):
            raise ExtractionError(f"archive member escapes destination: {name}")

    def _record(self, target: Path) -> None:
        self.written.append(target.relative_to(self.root).as_posix())

    @staticmethod
    def _clear(target: Path) -> None:
        if target.is_symlink() or target.is_file():
            target.unlink()

    def directory(self, target: Path, mode: Optional[int]) -> None:
        target.mkdir(parents=True, exist_ok=True)
        if mode:
            self._dir_modes[target] = mode

    def file(self, target: Path, source: BinaryIO, mode: Optional[int]) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        self._clear(target)
        with open(target, "wb") as fh:
            shutil.copyfileobj(source, fh)
        if mode:
            os.chmod(target, mode & 0o7777)
        self._record(target)

    def symlink(self, target: Path, linkname: str, name: str) -> None:
        if os.path.isabs(linkname) or linkname.startswith("\\"):
            raise ExtractionError(f"absolute symlink in archive: {name} -> {linkname}")
        self._ensure_within(os.path.realpath(target.parent / linkname), name)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._clear(target)
        os.symlink(linkname, target)
        self._record(target)

    def hardlink(self, target: Path, source: Path, name: str) -> None:
        self._ensure_within(os.path.realpath(source), name)
        if not source.is_file():
            raise ExtractionError(f"hard link to missing member: {name}")
        target.parent.mkdir(parents=True, exist_ok=True)
        self._clear(target)
        try:
            os.link(source, target)
        except OSError:
            shutil.copy2(source, target)
        self._record(target)

    def finish(self) -> None:
        # directories last so read-only modes do not block member writes
        for directory, mode in sorted(self._dir_modes.items(), reverse=True):
            os.chmod(directory, (mode & 0o7777) | stat.S_IRWXU)


class Extractor:
    """Extract archives according to their declared packaging convention."""

    def __init__(self) -> None:
        self._handlers: Dict[ArchiveFormat, Callable[[Path, _Staging], None]] = {
            ArchiveFormat.TAR_GZ: lambda path, staging: self._extract_tar_file(path, "gz", staging),
            ArchiveFormat.TAR_XZ: lambda path, staging: self._extract_tar_file(path, "xz", staging),
            ArchiveFormat.ZIP: self._extract_zip,
            ArchiveFormat.ZIP_TXZ: self._extract_zip_txz,
        }

    def supports(self, archive_format: ArchiveFormat) -> bool:
        return archive_format in self._handlers

    def extract(self, handle: ArchiveHandle, destination: Path) -> List[Path]:
        """Extract ``handle`` so that ``destination`` appears fully populated.

        Returns:
            Paths of every extracted file and link below ``destination``.

        Raises:
            UnsupportedFormat: If the archive format has no handler.
            ExtractionError: On malformed or unsafe archives and I/O failure.
        """
        handler = self._handlers.get(handle.archive_format)
        if handler is None:
            raise UnsupportedFormat(f"unsupported archive format: {handle.archive_format}")
        destination = Path(destination)
        if destination.exists():
            raise ExtractionError(f"destination already exists: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)

        staging_dir = Path(
            tempfile.mkdtemp(dir=destination.parent, prefix=f".{destination.name}.staging-")
        )
        staging = _Staging(staging_dir, handle.strip_components)
        with Timer() as t:
            try:
                handler(handle.path, staging)
                staging.finish()
                os.rename(staging_dir, destination)
            except PgLocalError:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise
            except (tarfile.TarError, zipfile.BadZipFile, lzma.LZMAError, EOFError, OSError) as exc:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise ExtractionError(f"failed to extract {handle.path.name}: {exc}") from exc
            except BaseException:
                shutil.rmtree(staging_dir, ignore_errors=True)
                raise

        if is_debug_enabled(logger):
            logger.debug(
                "Archive extracted",
                extra=extra_context(
                    event="extract",
                    component="extractor",
                    outcome="success",
                    target=str(destination),
                    duration_ms=t.duration_ms(),
                ),
            )
        return [destination / rel for rel in staging.written]

    def _extract_tar_file(self, path: Path, compression: str, staging: _Staging) -> None:
        with tarfile.open(path, mode=f"r|{compression}") as tar:
            self._extract_tar(tar, staging)

    @staticmethod
    def _extract_tar(tar: tarfile.TarFile, staging: _Staging) -> None:
        for member in tar:
            target = staging.target(member.name)
            if target is None:
                continue
            if member.isdir():
                staging.directory(target, member.mode)
            elif member.issym():
                staging.symlink(target, member.linkname, member.name)
            elif member.islnk():
                source = staging.target(member.linkname)
                if source is None:
                    raise ExtractionError(f"hard link to stripped member: {member.name}")
                staging.hardlink(target, source, member.name)
            elif member.isfile():
                source = tar.extractfile(member)
                if source is None:
                    raise ExtractionError(f"unreadable member: {member.name}")
                with source:
                    staging.file(target, source, member.mode)
            else:
                logger.debug("Skipping special archive member %s", member.name)

    @staticmethod
    def _extract_zip(path: Path, staging: _Staging) -> None:
        with zipfile.ZipFile(path) as zf:
            for info in zf.infolist():
                target = staging.target(info.filename)
                if target is None:
                    continue
                mode = info.external_attr >> 16
                if info.is_dir():
                    staging.directory(target, stat.S_IMODE(mode))
                elif stat.S_ISLNK(mode):
                    staging.symlink(target, zf.read(info).decode("utf-8"), info.filename)
                else:
                    with zf.open(info) as source:
                        staging.file(target, source, stat.S_IMODE(mode))

    def _extract_zip_txz(self, path: Path, staging: _Staging) -> None:
        with zipfile.ZipFile(path) as zf:
            inner = next(
                (i for i in zf.infolist() if i.filename.endswith((".txz", ".tar.xz"))),
                None,
            )
            if inner is None:
                raise ExtractionError(f"no .txz archive inside {path.name}")
            with zf.open(inner) as raw, tarfile.open(fileobj=raw, mode="r|xz") as tar:
                self._extract_tar(tar, staging)
