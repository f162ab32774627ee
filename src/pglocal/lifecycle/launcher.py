"""Launch PostgreSQL utilities and the server process.

``run`` executes a utility to completion and captures its output; ``spawn``
starts the long-lived server with output appended to a log file. Both have a
thread-blocking and a cooperative implementation.
"""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from pglocal.common.logging_utils import extra_context, is_debug_enabled, redact, Timer
from pglocal.constants import Constants
from pglocal.errors import CommandError, ProcessSpawnFailure, Timeout

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a finished utility."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str


def _command(program: PathLike, args: Sequence[str]) -> List[str]:
    return [str(program), *[str(a) for a in args]]


def _environment(env: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = os.environ.copy()
    if env:
        merged.update(env)
    return merged


def _log_command(command: List[str], returncode: int, duration_ms: int) -> None:
    if is_debug_enabled(logger):
        logger.debug(
            "Command finished: %s",
            redact(" ".join(command)),
            extra=extra_context(
                event="command",
                component="launcher",
                action=os.path.basename(command[0]),
                outcome="success" if returncode == 0 else "failure",
                duration_ms=duration_ms,
            ),
        )


def _open_log(log_path: Optional[PathLike]):
    if log_path is None:
        return subprocess.DEVNULL
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
    return open(log_path, "ab")  # pylint: disable=consider-using-with


def _spawn_kwargs() -> Dict[str, object]:
    # keep terminal signals (Ctrl+C) away from the server; shutdown is explicit
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class ProcessLauncher:
    """Thread-blocking process launcher built on :mod:`subprocess`."""

    def run(
        self,
        program: PathLike,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: float = Constants.COMMAND_TIMEOUT_SEC,
        check: bool = True,
    ) -> CommandResult:
        """Run ``program`` to completion.

        Raises:
            ProcessSpawnFailure: If the executable cannot be started.
            Timeout: If it runs longer than ``timeout`` seconds.
            CommandError: If ``check`` and it exits non-zero.
        """
        command = _command(program, args)
        with Timer() as t:
            try:
                completed = subprocess.run(  # noqa: S603
                    command,
                    capture_output=True,
                    text=True,
                    env=_environment(env),
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise Timeout(f"{os.path.basename(command[0])} did not finish within {timeout}s") from exc
            except OSError as exc:
                raise ProcessSpawnFailure(f"cannot execute {command[0]}: {exc}") from exc
        _log_command(command, completed.returncode, t.duration_ms())
        result = CommandResult(command, completed.returncode, completed.stdout, completed.stderr)
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result

    def spawn(
        self,
        program: PathLike,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        log_path: Optional[PathLike] = None,
    ) -> subprocess.Popen:
        """Start ``program`` in the background; its output goes to ``log_path``.

        Raises:
            ProcessSpawnFailure: If the executable cannot be started.
        """
        command = _command(program, args)
        log = _open_log(log_path)
        try:
            process = subprocess.Popen(  # noqa: S603  pylint: disable=consider-using-with
                command,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env=_environment(env),
                **_spawn_kwargs(),
            )
        except OSError as exc:
            raise ProcessSpawnFailure(f"cannot execute {command[0]}: {exc}") from exc
        finally:
            if log is not subprocess.DEVNULL:
                log.close()
        logger.debug("Spawned %s (pid %s)", redact(" ".join(command)), process.pid)
        return process


class AsyncProcessLauncher:
    """Cooperative process launcher built on :mod:`asyncio.subprocess`."""

    async def run(
        self,
        program: PathLike,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        timeout: float = Constants.COMMAND_TIMEOUT_SEC,
        check: bool = True,
    ) -> CommandResult:
        command = _command(program, args)
        with Timer() as t:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=_environment(env),
                )
            except OSError as exc:
                raise ProcessSpawnFailure(f"cannot execute {command[0]}: {exc}") from exc
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
            except asyncio.TimeoutError as exc:
                process.kill()
                await process.wait()
                raise Timeout(f"{os.path.basename(command[0])} did not finish within {timeout}s") from exc
            except BaseException:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
        returncode = process.returncode if process.returncode is not None else -1
        _log_command(command, returncode, t.duration_ms())
        result = CommandResult(
            command,
            returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result

    async def spawn(
        self,
        program: PathLike,
        args: Sequence[str] = (),
        *,
        env: Optional[Dict[str, str]] = None,
        log_path: Optional[PathLike] = None,
    ) -> asyncio.subprocess.Process:
        command = _command(program, args)
        log = _open_log(log_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log,
                stderr=asyncio.subprocess.STDOUT,
                env=_environment(env),
                **_spawn_kwargs(),
            )
        except OSError as exc:
            raise ProcessSpawnFailure(f"cannot execute {command[0]}: {exc}") from exc
        finally:
            if log is not subprocess.DEVNULL:
                log.close()
        logger.debug("Spawned %s (pid %s)", redact(" ".join(command)), process.pid)
        return process
