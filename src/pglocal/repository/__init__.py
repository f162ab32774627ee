"""Release repositories: catalog formats, asset naming and packaging conventions."""

from pglocal.repository.base import Repository
from pglocal.repository.registry import get_repository, register

__all__ = ["Repository", "get_repository", "register"]
