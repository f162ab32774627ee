"""Provision, cache and run local PostgreSQL servers from published binaries."""

from pglocal.archive.cache import InstallCacheCoordinator, InstallDirectory
from pglocal.lifecycle.async_instance import AsyncPostgreSQL
from pglocal.lifecycle.instance import PostgreSQL, State
from pglocal.lifecycle.settings import Settings
from pglocal.versioning.resolver import VersionResolver

__version__ = "0.1.0"

__all__ = [
    "AsyncPostgreSQL",
    "InstallCacheCoordinator",
    "InstallDirectory",
    "PostgreSQL",
    "Settings",
    "State",
    "VersionResolver",
    "__version__",
]
