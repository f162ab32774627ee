"""Command line interface for pglocal.

    pglocal resolve --version 16
    pglocal install --version 16.4.0
    pglocal run --port 5432 -c max_connections=50
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from pglocal.archive.cache import InstallCacheCoordinator
from pglocal.archive.fetcher import ArchiveFetcher
from pglocal.common.logging_utils import configure_logging, extra_context, is_debug_enabled
from pglocal.constants import ExitCodes
from pglocal.errors import (
    CatalogUnavailable,
    InstallError,
    InvalidSettings,
    NetworkError,
    PgLocalError,
    UnsupportedRepository,
    VersionNotFound,
)
from pglocal.lifecycle.instance import PostgreSQL, State
from pglocal.lifecycle.settings import Settings, ordered_options
from pglocal.repository.registry import get_repository
from pglocal.versioning.resolver import VersionResolver

logger = logging.getLogger(__name__)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config",
                        dest="CONFIG",
                        help="YAML settings file",
                        action="store", type=str)
    parser.add_argument("--url",
                        dest="URL",
                        help="Settings as a postgresql:// URL",
                        action="store", type=str)
    parser.add_argument("--version",
                        dest="VERSION",
                        help="Version constraint, e.g. 16, >=15,<17 or 16.4.0 (default: latest)",
                        action="store", type=str)
    parser.add_argument("--releases-url",
                        dest="RELEASES_URL",
                        help="Repository publishing PostgreSQL binaries",
                        action="store", type=str)
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help="Install cache root (default: $PGLOCAL_CACHE_DIR or ~/.cache/pglocal)",
                        action="store", type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store", type=str)


def _add_instance_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--data-dir",
                        dest="DATA_DIR",
                        help="Data directory (default: a temporary directory)",
                        action="store", type=str)
    parser.add_argument("--host",
                        dest="HOST",
                        help="Listen address (default: localhost)",
                        action="store", type=str)
    parser.add_argument("--port",
                        dest="PORT",
                        help="Listen port; 0 picks a free port (default: 0)",
                        action="store", type=int)
    parser.add_argument("--username",
                        dest="USERNAME",
                        help="Superuser name (default: postgres)",
                        action="store", type=str)
    parser.add_argument("--password",
                        dest="PASSWORD",
                        help="Superuser password (default: random)",
                        action="store", type=str)
    parser.add_argument("--timeout",
                        dest="TIMEOUT",
                        help="Seconds to wait for the server to accept connections",
                        action="store", type=float)
    parser.add_argument("--keep",
                        dest="KEEP",
                        help="Keep the data directory after shutdown",
                        action="store_true")
    parser.add_argument("-c", "--set",
                        dest="OPTIONS",
                        help="Server option NAME=VALUE (repeatable)",
                        action="append", type=str,
                        default=[])


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="pglocal",
        description="Download, cache and run local PostgreSQL servers",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    resolve = subparsers.add_parser("resolve", help="Print the version a constraint resolves to")
    _add_common_arguments(resolve)

    install = subparsers.add_parser("install", help="Install binaries into the cache")
    _add_common_arguments(install)

    run = subparsers.add_parser("run", help="Run a server until interrupted")
    _add_common_arguments(run)
    _add_instance_arguments(run)

    return parser.parse_args(argv)


def _parse_options(values: List[str]) -> Dict[str, str]:
    pairs = []
    for value in values:
        name, sep, option = value.partition("=")
        if not sep:
            raise InvalidSettings(f"expected NAME=VALUE, got {value!r}")
        pairs.append((name, option))
    return ordered_options(pairs)


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Build settings: file or URL first, then explicit CLI overrides."""
    if getattr(args, "CONFIG", None):
        settings = Settings.from_file(args.CONFIG)
    elif getattr(args, "URL", None):
        settings = Settings.from_url(args.URL)
    else:
        settings = Settings()

    overrides: Dict[str, Any] = {}
    for dest, name in (
        ("VERSION", "version"),
        ("RELEASES_URL", "releases_url"),
        ("CACHE_DIR", "cache_dir"),
        ("DATA_DIR", "data_dir"),
        ("HOST", "host"),
        ("PORT", "port"),
        ("USERNAME", "username"),
        ("PASSWORD", "password"),
        ("TIMEOUT", "timeout"),
    ):
        value = getattr(args, dest, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "KEEP", False):
        overrides["temporary"] = False
    options = getattr(args, "OPTIONS", None)
    if options:
        merged = dict(settings.configuration)
        merged.update(_parse_options(options))
        overrides["configuration"] = merged
    return settings.replace(**overrides) if overrides else settings


def resolve_command(args: argparse.Namespace) -> None:
    settings = settings_from_args(args)
    repository = get_repository(settings.releases_url)
    version = VersionResolver().resolve(settings.version_constraint, repository)
    print(version)


def install_command(args: argparse.Namespace) -> None:
    settings = settings_from_args(args)
    repository = get_repository(settings.releases_url)
    version = VersionResolver().resolve(settings.version_constraint, repository)
    coordinator = InstallCacheCoordinator(fetcher=ArchiveFetcher(settings.cache_dir))
    install = coordinator.ensure_installed(version, repository)
    print(install.path)


def run_command(args: argparse.Namespace) -> None:
    """Start a server, print its URL and block until SIGINT/SIGTERM.

    Ctrl+C during startup raises KeyboardInterrupt so a long download or
    initdb can be aborted; the handlers that turn signals into a clean stop
    are only installed once the server is up.
    """
    settings = settings_from_args(args)
    stop_requested = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("Received signal %s, shutting down", signum)
        stop_requested.set()

    previous = {}
    postgresql = PostgreSQL(settings)
    try:
        postgresql.start()
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _handle_signal)
        print(postgresql.url(), flush=True)
        while not stop_requested.wait(timeout=1.0):
            if postgresql.status() != State.STARTED:
                logger.error("PostgreSQL exited unexpectedly; see %s", postgresql.log_path)
                sys.exit(ExitCodes.RUNTIME_ERROR.value)
    finally:
        postgresql.stop()
        if settings.temporary:
            postgresql.cleanup()
        for sig, handler in previous.items():
            signal.signal(sig, handler)


_COMMANDS = {
    "resolve": resolve_command,
    "install": install_command,
    "run": run_command,
}


def _exit_code(exc: PgLocalError) -> ExitCodes:
    if isinstance(exc, (CatalogUnavailable, NetworkError)):
        return ExitCodes.CONNECTION_ERROR
    if isinstance(exc, InstallError) and isinstance(exc.__cause__, (CatalogUnavailable, NetworkError)):
        return ExitCodes.CONNECTION_ERROR
    if isinstance(exc, (InvalidSettings, UnsupportedRepository, VersionNotFound, InstallError)):
        return ExitCodes.FILE_ERROR
    return ExitCodes.RUNTIME_ERROR


def main(argv: Optional[List[str]] = None) -> None:
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(getattr(args, "LOG_LEVEL", None), getattr(args, "LOG_FILE", None))
    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )
    try:
        _COMMANDS[args.COMMAND](args)
    except PgLocalError as exc:
        logger.error("%s", exc)
        sys.exit(_exit_code(exc).value)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(ExitCodes.INTERRUPTED.value)
    sys.exit(ExitCodes.SUCCESS.value)


if __name__ == "__main__":
    main()
