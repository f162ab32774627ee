"""Tests for the install cache coordinator."""

import asyncio
import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import semantic_version

from fakes import LINUX, FakeAsyncHttp, FakeHttp, sha256, tar_bytes
from pglocal.archive.cache import InstallCacheCoordinator
from pglocal.archive.extractor import Extractor
from pglocal.archive.fetcher import ArchiveFetcher
from pglocal.errors import ExtractionError, HashMismatch, InstallError
from pglocal.repository.github import GitHubRepository

VERSION = semantic_version.Version("16.4.0")


class CountingExtractor(Extractor):
    """Extractor recording how many times it ran."""

    def __init__(self):
        super().__init__()
        self.calls = 0
        self._lock = threading.Lock()

    def extract(self, handle, destination):
        with self._lock:
            self.calls += 1
        return super().extract(handle, destination)


@pytest.fixture
def repository():
    return GitHubRepository(platform=LINUX)


def _coordinator(tmp_path, http=None, async_http=None):
    fetcher = ArchiveFetcher(tmp_path / "cache", http=http, async_http=async_http, platform=LINUX)
    return InstallCacheCoordinator(fetcher=fetcher, extractor=CountingExtractor(), lock_timeout=30)


class TestEnsureInstalled:
    """Idempotent installs."""

    def test_installs_once(self, tmp_path, repository, tar_payload):
        http = FakeHttp(tar_payload)
        coordinator = _coordinator(tmp_path, http=http)

        first = coordinator.ensure_installed(VERSION, repository)
        second = coordinator.ensure_installed(VERSION, repository)

        assert first.path == second.path
        assert coordinator.extractor.calls == 1
        assert http.downloads == 1
        assert first.bin_dir == first.path / "bin"
        assert first.find("postgres") == first.path / "bin" / "postgres"
        assert first.find("pg_ctl") is None
        assert coordinator.is_installed(VERSION, repository)

    def test_marker_records_install(self, tmp_path, repository, tar_payload):
        coordinator = _coordinator(tmp_path, http=FakeHttp(tar_payload))
        install = coordinator.ensure_installed(VERSION, repository)

        record = json.loads((install.path.parent / ".complete").read_text())
        assert record["version"] == "16.4.0"
        assert record["platform"] == "x86_64-unknown-linux-gnu"
        assert record["content_hash"] == sha256(tar_payload)
        assert "bin/initdb" in record["files"]

    def test_completed_install_is_reused_by_new_coordinator(self, tmp_path, repository, tar_payload):
        """A later process trusts the completion marker."""
        _coordinator(tmp_path, http=FakeHttp(tar_payload)).ensure_installed(VERSION, repository)
        http = FakeHttp(tar_payload)
        coordinator = _coordinator(tmp_path, http=http)

        install = coordinator.ensure_installed(VERSION, repository)

        assert http.downloads == 0
        assert coordinator.extractor.calls == 0
        assert install.find("initdb") is not None

    def test_concurrent_threads_extract_once(self, tmp_path, repository, tar_payload):
        http = FakeHttp(tar_payload)
        coordinator = _coordinator(tmp_path, http=http)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: coordinator.ensure_installed(VERSION, repository), range(8)))

        assert len({r.path for r in results}) == 1
        assert coordinator.extractor.calls == 1
        assert http.downloads == 1

    def test_incomplete_install_is_replaced(self, tmp_path, repository, tar_payload, caplog):
        """A tree without a completion marker is discarded and rebuilt."""
        coordinator = _coordinator(tmp_path, http=FakeHttp(tar_payload))
        key_dir = coordinator.layout.key_dir(repository, VERSION, LINUX)
        (key_dir / "install" / "bin").mkdir(parents=True)
        (key_dir / "install" / "bin" / "half-written").write_text("x")

        with caplog.at_level("WARNING"):
            install = coordinator.ensure_installed(VERSION, repository)

        assert not (install.path / "bin" / "half-written").exists()
        assert (install.path / "bin" / "postgres").is_file()
        assert "incomplete install" in caplog.text


class TestInstallFailures:
    """Failures leave the key not installed."""

    def test_hash_mismatch(self, tmp_path, repository, tar_payload):
        coordinator = _coordinator(tmp_path, http=FakeHttp(tar_payload, corrupt_downloads=5))

        with pytest.raises(InstallError) as exc_info:
            coordinator.ensure_installed(VERSION, repository)

        assert isinstance(exc_info.value.__cause__, HashMismatch)
        assert exc_info.value.key == f"{repository.identity}/16.4.0/x86_64-unknown-linux-gnu"
        assert not coordinator.is_installed(VERSION, repository)

    def test_unsafe_archive(self, tmp_path, repository):
        payload = tar_bytes([("pkg/../../evil", "file", b"x", 0o644)], "gz")
        coordinator = _coordinator(tmp_path, http=FakeHttp(payload))

        with pytest.raises(InstallError) as exc_info:
            coordinator.ensure_installed(VERSION, repository)

        assert isinstance(exc_info.value.__cause__, ExtractionError)
        key_dir = coordinator.layout.key_dir(repository, VERSION, LINUX)
        assert not (key_dir / "install").exists()
        assert not (key_dir / ".complete").exists()

    def test_retry_after_failure_succeeds(self, tmp_path, repository, tar_payload):
        http = FakeHttp(tar_payload, corrupt_downloads=2)
        coordinator = _coordinator(tmp_path, http=http)

        with pytest.raises(InstallError):
            coordinator.ensure_installed(VERSION, repository)
        install = coordinator.ensure_installed(VERSION, repository)

        assert (install.path / "bin" / "postgres").is_file()
        assert http.downloads == 3


class TestEnsureInstalledAsync:
    def test_concurrent_coroutines_extract_once(self, tmp_path, repository, tar_payload):
        http = FakeAsyncHttp(tar_payload)
        coordinator = _coordinator(tmp_path, async_http=http)

        async def _run():
            return await asyncio.gather(
                *(coordinator.ensure_installed_async(VERSION, repository) for _ in range(4))
            )

        results = asyncio.run(_run())

        assert len({r.path for r in results}) == 1
        assert coordinator.extractor.calls == 1
        assert http.downloads == 1

    def test_failure_is_wrapped(self, tmp_path, repository, tar_payload):
        coordinator = _coordinator(tmp_path, async_http=FakeAsyncHttp(tar_payload, corrupt_downloads=5))

        with pytest.raises(InstallError):
            asyncio.run(coordinator.ensure_installed_async(VERSION, repository))
        assert not coordinator.is_installed(VERSION, repository)
