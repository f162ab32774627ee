"""Archive builders, fake clients and lifecycle doubles shared by the test modules."""

import hashlib
import io
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import semantic_version

from pglocal.archive.cache import InstallDirectory
from pglocal.archive.platform import Platform
from pglocal.errors import CommandError, HttpError

LINUX = Platform(os="linux", arch="x86_64", libc="gnu")

# (name, kind, payload-or-linkname, mode)
Entry = Tuple[str, str, object, int]


def tar_bytes(entries: List[Entry], compression: str) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=f"w:{compression}") as tar:
        for name, kind, payload, mode in entries:
            info = tarfile.TarInfo(name)
            info.mode = mode
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = str(payload)
                tar.addfile(info)
            else:
                data = payload if isinstance(payload, bytes) else str(payload).encode()
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def zip_bytes(entries: List[Entry]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, kind, payload, mode in entries:
            if kind == "dir":
                info = zipfile.ZipInfo(name.rstrip("/") + "/")
                info.external_attr = (0o40000 | mode) << 16
                zf.writestr(info, b"")
            elif kind == "symlink":
                info = zipfile.ZipInfo(name)
                info.external_attr = (0o120000 | 0o777) << 16
                zf.writestr(info, str(payload))
            else:
                info = zipfile.ZipInfo(name)
                info.external_attr = (0o100000 | mode) << 16
                data = payload if isinstance(payload, bytes) else str(payload).encode()
                zf.writestr(info, data)
    return buf.getvalue()


def postgres_entries(prefix: str = "postgresql-16.4.0-x86_64-unknown-linux-gnu/") -> List[Entry]:
    """A tiny tree shaped like a PostgreSQL binary distribution."""
    entries: List[Entry] = [(prefix, "dir", None, 0o755)] if prefix else []
    return entries + [
        (f"{prefix}bin", "dir", None, 0o755),
        (f"{prefix}bin/postgres", "file", b"#!/bin/sh\necho postgres\n", 0o755),
        (f"{prefix}bin/initdb", "file", b"#!/bin/sh\necho initdb\n", 0o755),
        (f"{prefix}lib", "dir", None, 0o755),
        (f"{prefix}lib/libpq.so.5", "file", b"\x7fELF", 0o644),
        (f"{prefix}lib/libpq.so", "symlink", "libpq.so.5", 0o777),
        (f"{prefix}share/postgresql.conf.sample", "file", b"# sample\n", 0o644),
    ]


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeHttp:
    """Stand-in for HttpClient serving one archive and its checksum.

    The first ``corrupt_downloads`` downloads deliver tampered bytes.
    """

    def __init__(self, payload: bytes, checksum: Optional[str] = "auto", corrupt_downloads: int = 0):
        self.payload = payload
        self.checksum = sha256(payload) if checksum == "auto" else checksum
        self.corrupt_downloads = corrupt_downloads
        self.downloads = 0
        self.checksum_requests = 0
        self.urls: List[str] = []

    def get_text(self, url: str, *, params=None, headers=None, allow_missing: bool = False):
        self.checksum_requests += 1
        if self.checksum is None:
            if allow_missing:
                return None
            raise HttpError(404, url)
        return f"{self.checksum}  archive.tar.gz\n"

    def _body(self) -> bytes:
        self.downloads += 1
        if self.downloads <= self.corrupt_downloads:
            return b"tampered" + self.payload[8:]
        return self.payload

    def download(self, url: str, dest: Path, *, headers=None) -> int:
        self.urls.append(url)
        body = self._body()
        Path(dest).write_bytes(body)
        return len(body)

    def close(self) -> None:
        pass


class FakeAsyncHttp(FakeHttp):
    """Async flavour of :class:`FakeHttp`."""

    async def get_text(self, url: str, *, params=None, headers=None, allow_missing: bool = False):
        return FakeHttp.get_text(self, url, params=params, headers=headers, allow_missing=allow_missing)

    async def download(self, url: str, dest: Path, *, headers=None) -> int:
        return FakeHttp.download(self, url, dest, headers=headers)


def release(tag: str, assets: Dict[str, str] = None) -> dict:
    """GitHub API release object."""
    return {
        "tag_name": tag,
        "assets": [
            {"name": name, "browser_download_url": url} for name, url in (assets or {}).items()
        ],
    }


def jar_bytes(entries: List[Entry]) -> bytes:
    """A zonky style jar: a zip holding one .txz."""
    inner = tar_bytes(entries, "xz")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("META-INF/MANIFEST.MF", "Manifest-Version: 1.0\n")
        zf.writestr("postgres-linux-x86_64.txz", inner)
    return buf.getvalue()


SLEEPER = "import time; time.sleep(60)"


class FakeResolver:
    """Resolver returning a fixed version."""

    def __init__(self, version: str = "16.4.0"):
        self.version = semantic_version.Version(version)
        self.calls = 0

    def resolve(self, constraint, repository):
        self.calls += 1
        return self.version

    async def resolve_async(self, constraint, repository):
        return self.resolve(constraint, repository)


class FakeCoordinator:
    """Coordinator handing out a pre-built install directory."""

    def __init__(self, root: Path, platform: Platform = LINUX):
        self.root = root
        self.platform = platform
        self.calls = 0

    def ensure_installed(self, version, repository, platform=None):
        self.calls += 1
        return InstallDirectory(
            path=self.root / "install",
            version=version,
            platform=self.platform,
            repository=repository.identity,
            files=["bin/initdb", "bin/postgres"],
        )

    async def ensure_installed_async(self, version, repository, platform=None):
        return self.ensure_installed(version, repository, platform)


class FakeAdmin:
    """Admin client double shared by every connection of one test.

    ``ping`` succeeds from its ``ready_after``-th call on; ``ping_error`` is
    raised from ``ping`` instead when set.
    """

    def __init__(self, ready_after: int = 1, ping_error: Optional[BaseException] = None):
        self.ready_after = ready_after
        self.ping_error = ping_error
        self.pings = 0
        self.databases = {"postgres"}
        self.connections: List[dict] = []

    def factory(self, **params):
        self.connections.append(params)
        return self

    def ping(self) -> bool:
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error
        return self.pings >= self.ready_after

    def create_database(self, name: str) -> None:
        self.databases.add(name)

    def drop_database(self, name: str) -> None:
        self.databases.discard(name)

    def database_exists(self, name: str) -> bool:
        return name in self.databases


class FakeAsyncAdmin(FakeAdmin):
    """Async flavour of :class:`FakeAdmin`."""

    async def ping(self) -> bool:
        return FakeAdmin.ping(self)

    async def create_database(self, name: str) -> None:
        FakeAdmin.create_database(self, name)

    async def drop_database(self, name: str) -> None:
        FakeAdmin.drop_database(self, name)

    async def database_exists(self, name: str) -> bool:
        return FakeAdmin.database_exists(self, name)


def initdb_effect(args, fail: bool = False) -> dict:
    """Mimic initdb: create the data directory and report what it was given."""
    data_dir = Path(args[args.index("-D") + 1])
    data_dir.mkdir(parents=True, exist_ok=True)
    pwfile = Path(next(a for a in args if a.startswith("--pwfile=")).split("=", 1)[1])
    seen = {"args": list(args), "password": pwfile.read_text(), "mode": pwfile.stat().st_mode & 0o777}
    if fail:
        (data_dir / "base").mkdir()
        raise CommandError(["initdb", *args], 1, "", "initdb: could not create directory")
    (data_dir / "postgresql.conf").write_text("# generated\n")
    return seen
