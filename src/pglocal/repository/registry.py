"""Select a repository implementation for a releases URL."""
from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from pglocal.archive.platform import Platform
from pglocal.errors import UnsupportedRepository
from pglocal.repository.base import Repository
from pglocal.repository.github import GitHubRepository
from pglocal.repository.maven import MavenRepository

Predicate = Callable[[str], bool]
Factory = Callable[..., Repository]

# first match wins; zonky lives on github.com but publishes through Maven
_REGISTRY: List[Tuple[Predicate, Factory]] = [
    (MavenRepository.supports, MavenRepository),
    (GitHubRepository.supports, GitHubRepository),
]


def register(predicate: Predicate, factory: Factory) -> None:
    """Register a repository implementation ahead of the built-in ones."""
    _REGISTRY.insert(0, (predicate, factory))


def get_repository(url: str, platform: Optional[Platform] = None) -> Repository:
    """Build the repository that understands ``url``.

    Raises:
        UnsupportedRepository: If no registered implementation matches.
    """
    for predicate, factory in _REGISTRY:
        if predicate(url):
            return factory(url, platform=platform)
    raise UnsupportedRepository(f"unsupported releases URL: {url}")
