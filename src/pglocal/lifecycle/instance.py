"""Lifecycle of one PostgreSQL server: install, initialize, start, stop.

States move strictly ``STOPPED -> STARTING -> STARTED -> STOPPING -> STOPPED``
and an instance may be started again after stopping. Only :meth:`status` is
valid in every state. Operations on one instance must not overlap; the
manager does not serialize concurrent callers.
"""
from __future__ import annotations

import logging
import os
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

from pglocal.archive.cache import InstallCacheCoordinator, InstallDirectory
from pglocal.archive.fetcher import ArchiveFetcher
from pglocal.archive.platform import Platform
from pglocal.constants import Constants
from pglocal.errors import (
    InvalidState,
    NotRunning,
    PortUnavailable,
    ProcessSpawnFailure,
    StartupTimeout,
)
from pglocal.common.logging_utils import extra_context
from pglocal.lifecycle.admin import AdminClient
from pglocal.lifecycle.launcher import ProcessLauncher
from pglocal.lifecycle.settings import Settings
from pglocal.repository.base import Repository
from pglocal.repository.registry import get_repository
from pglocal.versioning.models import ResolvedVersion
from pglocal.versioning.resolver import VersionResolver

logger = logging.getLogger(__name__)


class State(Enum):
    """Lifecycle states of an instance."""
    STOPPED = "stopped"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"


def _loopback(host: str) -> str:
    return "127.0.0.1" if host in ("localhost", "", "*", "0.0.0.0") else host


def allocate_port(host: str = Constants.DEFAULT_HOST) -> int:
    """Ask the OS for a free TCP port on ``host``."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((_loopback(host), 0))
            return sock.getsockname()[1]
    except OSError as exc:
        raise PortUnavailable(f"no free port on {host}: {exc}") from exc


def check_port(host: str, port: int) -> None:
    """Raise PortUnavailable if ``port`` cannot be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((_loopback(host), port))
        except OSError as exc:
            raise PortUnavailable(f"port {port} on {host} is not available: {exc}") from exc


class InstanceBase:
    """State, settings and command construction shared by both execution modes."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        repository: Optional[Repository] = None,
        resolver: Optional[VersionResolver] = None,
        coordinator: Optional[InstallCacheCoordinator] = None,
        platform: Optional[Platform] = None,
    ):
        self.settings = settings or Settings()
        self.repository = repository or get_repository(self.settings.releases_url, platform)
        self.resolver = resolver or VersionResolver()
        self.coordinator = coordinator or InstallCacheCoordinator(
            fetcher=ArchiveFetcher(self.settings.cache_dir, platform=platform)
        )
        self._state = State.STOPPED
        self._version: Optional[ResolvedVersion] = None
        self._install: Optional[InstallDirectory] = None
        self._port: Optional[int] = None
        self._process: Any = None

    @property
    def state(self) -> State:
        return self._state

    @property
    def port(self) -> Optional[int]:
        """Port the running server is bound to; None unless started."""
        return self._port

    @property
    def version(self) -> Optional[ResolvedVersion]:
        return self._version

    @property
    def install_dir(self) -> Optional[Path]:
        return self._install.path if self._install else None

    @property
    def data_dir(self) -> Path:
        return self.settings.data_dir

    def url(self, database: str = Constants.DEFAULT_DATABASE) -> str:
        return self.settings.url(database, port=self._port)

    def is_initialized(self) -> bool:
        return (self.data_dir / Constants.PG_CONF_FILE).is_file()

    def _require(self, state: State, operation: str) -> None:
        if self._state != state:
            raise InvalidState(f"cannot {operation} while {self._state.value}")

    def _require_started(self, operation: str) -> None:
        if self.status() != State.STARTED:
            raise NotRunning(f"cannot {operation}: server is {self._state.value}")

    def _transition(self, state: State) -> None:
        logger.debug(
            "Instance %s -> %s",
            self._state.value,
            state.value,
            extra=extra_context(event="state", component="instance", outcome=state.value),
        )
        self._state = state

    def _executable(self, name: str) -> Path:
        if self._install is None:
            raise InvalidState("PostgreSQL is not installed; call setup() first")
        if self._install.platform.is_windows:
            name += ".exe"
        return Settings.binary_dir(self._install.path) / name

    def _initdb_args(self, password_file: Path) -> List[str]:
        return [
            "-D",
            str(self.data_dir),
            "--auth=password",
            f"--username={self.settings.username}",
            f"--pwfile={password_file}",
            "--encoding=UTF8",
        ]

    def _server_args(self, port: int) -> List[str]:
        args = ["-D", str(self.data_dir), "-p", str(port), "-h", self.settings.host, "-F"]
        for name, value in self.settings.startup_options():
            args.extend(["-c", f"{name}={value}"])
        return args

    def _choose_port(self) -> int:
        if self.settings.port:
            check_port(self.settings.host, self.settings.port)
            return self.settings.port
        return allocate_port(self.settings.host)

    def _write_password_file(self) -> Path:
        fd, path = tempfile.mkstemp(prefix="pglocal-pw-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self.settings.password)
        os.chmod(path, 0o600)
        return Path(path)

    @property
    def log_path(self) -> Path:
        return self.data_dir / Constants.SERVER_LOG_FILE

    def _log_tail(self) -> str:
        try:
            lines = self.log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            return ""
        return "\n".join(lines[-Constants.LOG_TAIL_LINES:])

    def _early_exit_error(self, returncode: int) -> ProcessSpawnFailure:
        tail = self._log_tail()
        message = f"postgres exited with status {returncode} during startup"
        return ProcessSpawnFailure(f"{message}:\n{tail}" if tail else message)

    def _startup_timeout_error(self) -> StartupTimeout:
        tail = self._log_tail()
        message = f"PostgreSQL did not accept connections within {self.settings.timeout}s"
        return StartupTimeout(f"{message}:\n{tail}" if tail else message)

    @staticmethod
    def _ready_delay(attempt: int) -> float:
        return min(
            Constants.READY_POLL_MAX_DELAY_SEC,
            Constants.READY_POLL_BASE_DELAY_SEC * (2 ** (attempt - 1)),
        )

    def _remove_data_dir(self) -> None:
        if self.data_dir.exists():
            logger.info("Removing data directory %s", self.data_dir)
            shutil.rmtree(self.data_dir)

    def _forget_process(self) -> None:
        self._process = None
        self._port = None


AdminFactory = Callable[..., Any]


class PostgreSQL(InstanceBase):
    """Thread-blocking PostgreSQL instance.

    >>> with PostgreSQL(Settings(version="16")) as pg:
    ...     pg.create_database("app")

    Leaving the ``with`` block stops the server; temporary instances also
    remove their data directory.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        repository: Optional[Repository] = None,
        resolver: Optional[VersionResolver] = None,
        coordinator: Optional[InstallCacheCoordinator] = None,
        platform: Optional[Platform] = None,
        launcher: Optional[ProcessLauncher] = None,
        admin_factory: AdminFactory = AdminClient,
    ):
        super().__init__(
            settings,
            repository=repository,
            resolver=resolver,
            coordinator=coordinator,
            platform=platform,
        )
        self.launcher = launcher or ProcessLauncher()
        self._admin_factory = admin_factory

    def setup(self) -> None:
        """Install binaries and initialize the data directory if needed.

        A second call is a no-op once the data directory exists.
        """
        self._require(State.STOPPED, "setup")
        if self._install is None:
            self._version = self.resolver.resolve(self.settings.version_constraint, self.repository)
            self._install = self.coordinator.ensure_installed(self._version, self.repository)
        if self.is_initialized():
            return
        created = not self.data_dir.exists()
        password_file = self._write_password_file()
        logger.info("Initializing data directory %s", self.data_dir)
        try:
            self.launcher.run(self._executable("initdb"), self._initdb_args(password_file))
        except BaseException:
            if created:
                shutil.rmtree(self.data_dir, ignore_errors=True)
            raise
        finally:
            password_file.unlink()

    def start(self) -> None:
        """Start the server and wait until it accepts connections.

        Runs :meth:`setup` first when needed. On timeout, failure or
        interruption the spawned process is killed and the state returns to
        STOPPED.

        Raises:
            InvalidState: If not STOPPED.
            PortUnavailable: If the configured port is in use.
            StartupTimeout: If readiness is not reached within ``settings.timeout``.
            ProcessSpawnFailure: If the server cannot be launched or exits early.
        """
        self._require(State.STOPPED, "start")
        self.setup()
        self._transition(State.STARTING)
        process = None
        try:
            port = self._choose_port()
            process = self.launcher.spawn(
                self._executable("postgres"), self._server_args(port), log_path=self.log_path
            )
            self._process = process
            self._port = port
            self._wait_ready(process, port)
        except BaseException:
            if process is not None:
                self._kill(process)
            self._forget_process()
            self._transition(State.STOPPED)
            raise
        self._transition(State.STARTED)
        logger.info("PostgreSQL %s started on port %s", self._version, self._port)

    def _wait_ready(self, process: subprocess.Popen, port: int) -> None:
        admin = self._admin(port)
        deadline = time.monotonic() + self.settings.timeout
        attempt = 0
        while True:
            returncode = process.poll()
            if returncode is not None:
                raise self._early_exit_error(returncode)
            if admin.ping():
                return
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise self._startup_timeout_error()
            time.sleep(min(self._ready_delay(attempt), remaining))

    def stop(self) -> None:
        """Shut the server down; a no-op when already stopped."""
        if self.status() == State.STOPPED:
            return
        self._require(State.STARTED, "stop")
        self._transition(State.STOPPING)
        try:
            self._shutdown(self._process)
        finally:
            self._forget_process()
            self._transition(State.STOPPED)
        logger.info("PostgreSQL stopped")

    def status(self) -> State:
        """Current state; notices a server that died behind our back."""
        if self._state == State.STARTED and self._process is not None:
            returncode = self._process.poll()
            if returncode is not None:
                logger.warning(
                    "PostgreSQL (pid %s) exited unexpectedly with status %s",
                    self._process.pid,
                    returncode,
                )
                self._forget_process()
                self._state = State.STOPPED
        return self._state

    def create_database(self, name: str) -> None:
        self._require_started("create database")
        self._admin(self._port).create_database(name)

    def drop_database(self, name: str) -> None:
        self._require_started("drop database")
        self._admin(self._port).drop_database(name)

    def database_exists(self, name: str) -> bool:
        self._require_started("check database")
        return self._admin(self._port).database_exists(name)

    def cleanup(self) -> None:
        """Remove the data directory of a stopped instance."""
        self._require(State.STOPPED, "cleanup")
        self._remove_data_dir()

    def __enter__(self) -> "PostgreSQL":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
        if self.settings.temporary:
            self.cleanup()

    def __del__(self) -> None:
        process = getattr(self, "_process", None)
        if process is not None and process.poll() is None:
            process.kill()

    def _admin(self, port: Optional[int]) -> Any:
        return self._admin_factory(
            host=self.settings.host,
            port=port,
            username=self.settings.username,
            password=self.settings.password,
        )

    @staticmethod
    def _shutdown(process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        if sys.platform == "win32":
            process.terminate()
        else:
            # SIGINT is PostgreSQL's fast shutdown
            process.send_signal(signal.SIGINT)
        try:
            process.wait(timeout=Constants.STOP_TIMEOUT_SEC)
        except subprocess.TimeoutExpired:
            logger.warning("PostgreSQL did not stop within %ss; killing it", Constants.STOP_TIMEOUT_SEC)
            process.kill()
            process.wait()

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.kill()
        process.wait()
