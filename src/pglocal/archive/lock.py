"""Cross-process install lock backed by an OS file lock.

The lock is held through ``fcntl.flock`` (POSIX) or ``msvcrt.locking``
(Windows) on ``<key dir>/.lock``. The operating system drops the lock when
its owner dies, so a crashed installer never blocks later installs; the owner
record written into the file identifies who held it last, and a new holder
logs when it reclaims a lock whose recorded owner is gone.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Union

from pglocal.common.logging_utils import extra_context
from pglocal.constants import Constants
from pglocal.errors import Timeout

logger = logging.getLogger(__name__)

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


@dataclass(frozen=True)
class LockOwner:
    """Record of the process that last acquired a lock."""
    pid: int
    hostname: str
    acquired_at: float

    def is_alive(self) -> Optional[bool]:
        """Whether the owner still runs; None when it cannot be determined."""
        if self.hostname != socket.gethostname():
            return None
        return pid_alive(self.pid)


def pid_alive(pid: int) -> Optional[bool]:
    if pid <= 0:
        return False
    if sys.platform == "win32":
        # os.kill would terminate the process on Windows
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_owner(path: Union[str, Path]) -> Optional[LockOwner]:
    """Parse the owner record of a lock file; None if absent or unreadable."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8") or "null")
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return LockOwner(
            pid=int(data["pid"]),
            hostname=str(data.get("hostname", "")),
            acquired_at=float(data.get("acquired_at", 0.0)),
        )
    except (KeyError, TypeError, ValueError):
        return None


class InstallLock:
    """Exclusive lock on one cache key, usable from threads, processes and coroutines."""

    def __init__(
        self,
        path: Union[str, Path],
        timeout: float = Constants.LOCK_TIMEOUT_SEC,
        poll_interval: float = Constants.LOCK_POLL_INTERVAL_SEC,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fh: Optional[IO[str]] = None

    @property
    def locked(self) -> bool:
        return self._fh is not None

    def try_acquire(self) -> bool:
        """Take the lock if it is free; never blocks."""
        if self._fh is not None:
            raise RuntimeError(f"lock {self.path} already held by this object")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")  # pylint: disable=consider-using-with
        try:
            fh.seek(0)
            if sys.platform == "win32":
                msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False
        self._fh = fh
        self._write_owner()
        return True

    def acquire(self) -> None:
        """Block until the lock is held.

        Raises:
            Timeout: If the lock is not obtained within ``timeout`` seconds.
        """
        deadline = time.monotonic() + self.timeout
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise self._timeout_error()
            time.sleep(self.poll_interval)

    async def acquire_async(self) -> None:
        """Cooperative variant of :meth:`acquire`."""
        deadline = time.monotonic() + self.timeout
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise self._timeout_error()
            await asyncio.sleep(self.poll_interval)

    def release(self) -> None:
        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            if sys.platform == "win32":
                fh.seek(0)
                msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    def __enter__(self) -> "InstallLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    async def __aenter__(self) -> "InstallLock":
        await self.acquire_async()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def _write_owner(self) -> None:
        assert self._fh is not None
        previous = read_owner(self.path)
        if previous is not None and previous.pid != os.getpid() and previous.is_alive() is False:
            logger.warning(
                "Reclaimed install lock %s left by dead process %s",
                self.path,
                previous.pid,
                extra=extra_context(
                    event="lock_reclaimed", component="install_lock", pid=previous.pid
                ),
            )
        record = {"pid": os.getpid(), "hostname": socket.gethostname(), "acquired_at": time.time()}
        self._fh.seek(0)
        self._fh.truncate()
        self._fh.write(json.dumps(record))
        self._fh.flush()

    def _timeout_error(self) -> Timeout:
        owner = read_owner(self.path)
        holder = f" (held by pid {owner.pid} on {owner.hostname})" if owner else ""
        return Timeout(f"timed out after {self.timeout}s waiting for {self.path}{holder}")
