"""Cooperative PostgreSQL instance with the same state machine as :class:`PostgreSQL`."""
from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sys
import time
from typing import Any, Optional

from pglocal.archive.cache import InstallCacheCoordinator
from pglocal.archive.platform import Platform
from pglocal.constants import Constants
from pglocal.lifecycle.admin import AsyncAdminClient
from pglocal.lifecycle.instance import AdminFactory, InstanceBase, State
from pglocal.lifecycle.launcher import AsyncProcessLauncher
from pglocal.lifecycle.settings import Settings
from pglocal.repository.base import Repository
from pglocal.versioning.resolver import VersionResolver

logger = logging.getLogger(__name__)


class AsyncPostgreSQL(InstanceBase):
    """PostgreSQL instance driven from an event loop.

    Cancelling :meth:`start` before the server is ready kills the spawned
    process and leaves the instance STOPPED.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        repository: Optional[Repository] = None,
        resolver: Optional[VersionResolver] = None,
        coordinator: Optional[InstallCacheCoordinator] = None,
        platform: Optional[Platform] = None,
        launcher: Optional[AsyncProcessLauncher] = None,
        admin_factory: AdminFactory = AsyncAdminClient,
    ):
        super().__init__(
            settings,
            repository=repository,
            resolver=resolver,
            coordinator=coordinator,
            platform=platform,
        )
        self.launcher = launcher or AsyncProcessLauncher()
        self._admin_factory = admin_factory

    async def setup(self) -> None:
        self._require(State.STOPPED, "setup")
        if self._install is None:
            self._version = await self.resolver.resolve_async(
                self.settings.version_constraint, self.repository
            )
            self._install = await self.coordinator.ensure_installed_async(
                self._version, self.repository
            )
        if self.is_initialized():
            return
        created = not self.data_dir.exists()
        password_file = self._write_password_file()
        logger.info("Initializing data directory %s", self.data_dir)
        try:
            await self.launcher.run(self._executable("initdb"), self._initdb_args(password_file))
        except BaseException:
            if created:
                shutil.rmtree(self.data_dir, ignore_errors=True)
            raise
        finally:
            password_file.unlink()

    async def start(self) -> None:
        self._require(State.STOPPED, "start")
        await self.setup()
        self._transition(State.STARTING)
        process = None
        try:
            port = self._choose_port()
            process = await self.launcher.spawn(
                self._executable("postgres"), self._server_args(port), log_path=self.log_path
            )
            self._process = process
            self._port = port
            await self._wait_ready(process, port)
        except BaseException:
            if process is not None:
                await self._kill(process)
            self._forget_process()
            self._transition(State.STOPPED)
            raise
        self._transition(State.STARTED)
        logger.info("PostgreSQL %s started on port %s", self._version, self._port)

    async def _wait_ready(self, process: asyncio.subprocess.Process, port: int) -> None:
        admin = self._admin(port)
        deadline = time.monotonic() + self.settings.timeout
        attempt = 0
        while True:
            if process.returncode is not None:
                raise self._early_exit_error(process.returncode)
            if await admin.ping():
                return
            attempt += 1
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise self._startup_timeout_error()
            await asyncio.sleep(min(self._ready_delay(attempt), remaining))

    async def stop(self) -> None:
        if self.status() == State.STOPPED:
            return
        self._require(State.STARTED, "stop")
        self._transition(State.STOPPING)
        try:
            await self._shutdown(self._process)
        finally:
            self._forget_process()
            self._transition(State.STOPPED)
        logger.info("PostgreSQL stopped")

    def status(self) -> State:
        if self._state == State.STARTED and self._process is not None:
            returncode = self._process.returncode
            if returncode is not None:
                logger.warning(
                    "PostgreSQL (pid %s) exited unexpectedly with status %s",
                    self._process.pid,
                    returncode,
                )
                self._forget_process()
                self._state = State.STOPPED
        return self._state

    async def create_database(self, name: str) -> None:
        self._require_started("create database")
        await self._admin(self._port).create_database(name)

    async def drop_database(self, name: str) -> None:
        self._require_started("drop database")
        await self._admin(self._port).drop_database(name)

    async def database_exists(self, name: str) -> bool:
        self._require_started("check database")
        return await self._admin(self._port).database_exists(name)

    async def cleanup(self) -> None:
        self._require(State.STOPPED, "cleanup")
        await asyncio.to_thread(self._remove_data_dir)

    async def __aenter__(self) -> "AsyncPostgreSQL":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
        if self.settings.temporary:
            await self.cleanup()

    def _admin(self, port: Optional[int]) -> Any:
        return self._admin_factory(
            host=self.settings.host,
            port=port,
            username=self.settings.username,
            password=self.settings.password,
        )

    @staticmethod
    async def _shutdown(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if sys.platform == "win32":
                process.terminate()
            else:
                process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), Constants.STOP_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning("PostgreSQL did not stop within %ss; killing it", Constants.STOP_TIMEOUT_SEC)
            process.kill()
            await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
