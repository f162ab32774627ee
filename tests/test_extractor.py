"""Tests for format-aware, staged archive extraction."""

import os
import stat
import sys

import pytest
import semantic_version

from fakes import LINUX, jar_bytes, postgres_entries, tar_bytes, zip_bytes
from pglocal.archive.extractor import Extractor
from pglocal.archive.fetcher import ArchiveHandle
from pglocal.constants import ArchiveFormat, HashAlgorithm
from pglocal.errors import ExtractionError, UnsupportedFormat

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX modes and symlinks")


def _handle(path, archive_format, strip=1):
    return ArchiveHandle(
        version=semantic_version.Version("16.4.0"),
        platform=LINUX,
        path=path,
        content_hash="0" * 64,
        hash_algorithm=HashAlgorithm.SHA256,
        archive_format=archive_format,
        repository="test",
        strip_components=strip,
    )


def _write(tmp_path, name, data):
    path = tmp_path / name
    path.write_bytes(data)
    return path


def _staging_leftovers(parent):
    return [p for p in parent.iterdir() if ".staging-" in p.name]


class TestFormats:
    """Each supported packaging convention."""

    @posix_only
    def test_tar_gz_preserves_modes_and_links(self, tmp_path, tar_payload):
        """Executable bits and relative symlinks survive extraction."""
        archive = _write(tmp_path, "pg.tar.gz", tar_payload)
        dest = tmp_path / "install"

        files = Extractor().extract(_handle(archive, ArchiveFormat.TAR_GZ), dest)

        postgres = dest / "bin" / "postgres"
        assert postgres.read_bytes().startswith(b"#!/bin/sh")
        assert os.stat(postgres).st_mode & stat.S_IXUSR
        assert os.readlink(dest / "lib" / "libpq.so") == "libpq.so.5"
        assert (dest / "share" / "postgresql.conf.sample").is_file()
        assert sorted(p.relative_to(dest).as_posix() for p in files) == [
            "bin/initdb",
            "bin/postgres",
            "lib/libpq.so",
            "lib/libpq.so.5",
            "share/postgresql.conf.sample",
        ]
        assert _staging_leftovers(tmp_path) == []

    def test_tar_xz_without_strip(self, tmp_path):
        archive = _write(tmp_path, "pg.tar.xz", tar_bytes(postgres_entries(prefix=""), "xz"))
        dest = tmp_path / "install"

        Extractor().extract(_handle(archive, ArchiveFormat.TAR_XZ, strip=0), dest)

        assert (dest / "bin" / "initdb").is_file()

    @posix_only
    def test_zip(self, tmp_path):
        archive = _write(tmp_path, "pg.zip", zip_bytes(postgres_entries()))
        dest = tmp_path / "install"

        Extractor().extract(_handle(archive, ArchiveFormat.ZIP), dest)

        assert os.stat(dest / "bin" / "postgres").st_mode & stat.S_IXUSR
        assert os.readlink(dest / "lib" / "libpq.so") == "libpq.so.5"

    def test_zip_wrapping_txz(self, tmp_path):
        """A jar holding one .txz is unpacked in a single pass."""
        archive = _write(tmp_path, "pg.jar", jar_bytes(postgres_entries(prefix="")))
        dest = tmp_path / "install"

        Extractor().extract(_handle(archive, ArchiveFormat.ZIP_TXZ, strip=0), dest)

        assert (dest / "bin" / "postgres").is_file()
        assert not (dest / "META-INF").exists()

    def test_jar_without_txz(self, tmp_path):
        archive = _write(tmp_path, "pg.jar", zip_bytes([("README", "file", b"hi", 0o644)]))
        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.ZIP_TXZ, strip=0), tmp_path / "install")

    def test_supports(self):
        extractor = Extractor()
        assert all(extractor.supports(fmt) for fmt in ArchiveFormat)


class TestRejections:
    """Unsafe or unusable archives never produce a destination."""

    @pytest.mark.parametrize(
        "entries",
        [
            [("pkg/../../evil", "file", b"x", 0o644)],
            [("/etc/evil", "file", b"x", 0o644)],
            [("pkg/lib/escape", "symlink", "../../../outside", 0o777)],
            [("pkg/abs", "symlink", "/etc/passwd", 0o777)],
        ],
        ids=["dotdot", "absolute", "relative-symlink-escape", "absolute-symlink"],
    )
    def test_escaping_members(self, tmp_path, entries):
        archive = _write(tmp_path, "evil.tar.gz", tar_bytes(entries, "gz"))
        dest = tmp_path / "install"

        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.TAR_GZ), dest)

        assert not dest.exists()
        assert not (tmp_path / "evil").exists()
        assert _staging_leftovers(tmp_path) == []

    @posix_only
    def test_write_through_symlinked_directory(self, tmp_path):
        """A member written below a symlink pointing outside is refused."""
        entries = [
            ("pkg/link", "symlink", ".", 0o777),
            ("pkg/up", "symlink", "link/..", 0o777),
            ("pkg/up/escaped", "file", b"x", 0o644),
        ]
        archive = _write(tmp_path, "evil.tar.gz", tar_bytes(entries, "gz"))

        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.TAR_GZ), tmp_path / "install")
        assert not (tmp_path / "escaped").exists()

    def test_unsupported_format(self, tmp_path, tar_payload):
        archive = _write(tmp_path, "pg.tar.gz", tar_payload)
        handle = _handle(archive, "rar")
        with pytest.raises(UnsupportedFormat):
            Extractor().extract(handle, tmp_path / "install")

    def test_existing_destination(self, tmp_path, tar_payload):
        archive = _write(tmp_path, "pg.tar.gz", tar_payload)
        dest = tmp_path / "install"
        dest.mkdir()
        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.TAR_GZ), dest)

    def test_garbage_archive(self, tmp_path):
        """Corrupt bytes are reported as ExtractionError and staging is cleaned."""
        archive = _write(tmp_path, "pg.tar.gz", b"definitely not gzip")
        dest = tmp_path / "install"
        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.TAR_GZ), dest)
        assert not dest.exists()
        assert _staging_leftovers(tmp_path) == []

    def test_format_not_sniffed(self, tmp_path, tar_payload):
        """A tar.gz declared as zip is not silently accepted."""
        archive = _write(tmp_path, "pg.zip", tar_payload)
        with pytest.raises(ExtractionError):
            Extractor().extract(_handle(archive, ArchiveFormat.ZIP), tmp_path / "install")
