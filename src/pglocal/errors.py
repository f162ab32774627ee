"""Exception hierarchy for pglocal.

Library code raises these; only the command line turns them into exit codes.
"""
from __future__ import annotations

from typing import Optional, Sequence


class PgLocalError(Exception):
    """Base class for all pglocal errors."""


class Timeout(PgLocalError):
    """A wait (network, lock, process, readiness) exceeded its deadline."""


class StartupTimeout(Timeout):
    """The server did not accept connections within the configured timeout."""


class VersionNotFound(PgLocalError):
    """No catalog entry satisfies the requested version constraint."""

    def __init__(self, constraint: str, repository: str):
        super().__init__(f"no version matching '{constraint}' found in {repository}")
        self.constraint = constraint
        self.repository = repository


class CatalogUnavailable(PgLocalError):
    """The release catalog could not be read after retries were exhausted."""


class HttpError(PgLocalError):
    """A request failed with a status that is not worth retrying."""

    def __init__(self, status: int, url: str):
        super().__init__(f"HTTP {status} for {url}")
        self.status = status
        self.url = url


class UnsupportedRepository(PgLocalError):
    """No repository implementation handles the configured URL."""


class AssetNotFound(PgLocalError):
    """A release has no archive for the requested platform."""


class HashMismatch(PgLocalError):
    """Downloaded archive does not match the published checksum."""

    def __init__(self, name: str, algorithm: str, expected: str, actual: str):
        super().__init__(
            f"{algorithm} mismatch for {name}: expected {expected}, got {actual}"
        )
        self.name = name
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual


class UnsupportedFormat(PgLocalError):
    """Archive packaging convention is not one the extractor understands."""


class ExtractionError(PgLocalError):
    """Archive is malformed, unsafe, or could not be written to disk."""


class InstallError(PgLocalError):
    """Installation of a cache key failed; the cause is chained."""

    def __init__(self, key: str, message: str):
        super().__init__(f"failed to install {key}: {message}")
        self.key = key


class InvalidSettings(PgLocalError):
    """A configuration value is missing or malformed."""


class InvalidState(PgLocalError):
    """A lifecycle operation was invoked in a state that does not allow it."""


class NotRunning(InvalidState):
    """A database operation was invoked while the server is not started."""


class PortUnavailable(PgLocalError):
    """The requested port cannot be bound, or no free port could be found."""


class ProcessSpawnFailure(PgLocalError):
    """An executable could not be launched or exited during startup."""


class CommandError(PgLocalError):
    """A utility exited with a non-zero status."""

    def __init__(
        self,
        args: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        message: Optional[str] = None,
    ):
        detail = (stderr or stdout).strip()
        text = message or f"{args[0] if args else 'command'} exited with status {returncode}"
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)
        self.command = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class DatabaseError(PgLocalError):
    """An administrative statement failed on the server."""


class NetworkError(PgLocalError):
    """A transport failure persisted after retries were exhausted."""
