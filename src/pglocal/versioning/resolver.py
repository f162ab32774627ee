"""Resolve version constraints against a repository's release catalog."""
from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pglocal.common.async_http import AsyncHttpClient
from pglocal.common.http_client import HttpClient
from pglocal.common.logging_utils import extra_context, is_debug_enabled, Timer
from pglocal.errors import CatalogUnavailable, HttpError, NetworkError, VersionNotFound
from pglocal.repository.base import Repository
from pglocal.repository.models import CatalogEntry
from pglocal.versioning.models import ResolutionMode, ResolvedVersion, VersionConstraint
from pglocal.versioning.parser import parse_constraint

logger = logging.getLogger(__name__)

ConstraintLike = Union[str, VersionConstraint, None]


def _as_constraint(constraint: ConstraintLike) -> VersionConstraint:
    if isinstance(constraint, VersionConstraint):
        return constraint
    return parse_constraint(constraint)


class VersionResolver:
    """Turn a constraint into the highest matching published version.

    Exact pins are returned without touching the network. Other constraints
    list the catalog and pick the maximum satisfying entry; the answer is
    memoized per (repository, constraint) for the lifetime of this resolver,
    so a "latest" lookup is a lazily resolved value scoped to one resolver
    rather than a process-wide constant. Use :meth:`clear_cache` to re-query.
    """

    def __init__(
        self,
        http: Optional[HttpClient] = None,
        async_http: Optional[AsyncHttpClient] = None,
    ):
        self._http = http
        self._async_http = async_http
        self._memo: Dict[Tuple[str, str], ResolvedVersion] = {}
        self._lock = threading.Lock()

    def resolve(self, constraint: ConstraintLike, repository: Repository) -> ResolvedVersion:
        """Resolve ``constraint`` against ``repository``.

        Raises:
            VersionNotFound: If no catalog entry satisfies the constraint.
            CatalogUnavailable: If the catalog cannot be read after retries.
            Timeout: If catalog requests keep timing out.
        """
        spec = _as_constraint(constraint)
        if spec.mode == ResolutionMode.EXACT:
            return spec.exact_version

        key = (repository.url, spec.normalized)
        with self._lock:
            cached = self._memo.get(key)
        if cached is not None:
            return cached

        entries = self._list_catalog(repository)
        version = self.select(spec, (e.version for e in entries), repository.url)
        with self._lock:
            self._memo[key] = version
        return version

    async def resolve_async(
        self, constraint: ConstraintLike, repository: Repository
    ) -> ResolvedVersion:
        """Cooperative variant of :meth:`resolve` with identical semantics."""
        spec = _as_constraint(constraint)
        if spec.mode == ResolutionMode.EXACT:
            return spec.exact_version

        key = (repository.url, spec.normalized)
        cached = self._memo.get(key)
        if cached is not None:
            return cached

        entries = await self._list_catalog_async(repository)
        version = self.select(spec, (e.version for e in entries), repository.url)
        self._memo[key] = version
        return version

    def latest(self, repository: Repository) -> ResolvedVersion:
        """Newest stable release in ``repository``; resolved on first use."""
        return self.resolve(None, repository)

    def clear_cache(self) -> None:
        with self._lock:
            self._memo.clear()

    @staticmethod
    def select(
        constraint: ConstraintLike,
        versions: Iterable[ResolvedVersion],
        repository_name: str = "catalog",
    ) -> ResolvedVersion:
        """Pick the maximum version satisfying ``constraint``; pure function."""
        spec = _as_constraint(constraint)
        matching = [v for v in versions if spec.matches(v)]
        if not matching:
            raise VersionNotFound(str(spec), repository_name)
        return max(matching)

    def list_catalog(self, repository: Repository) -> List[CatalogEntry]:
        """Fetch and parse every catalog page of ``repository``."""
        return self._list_catalog(repository)

    def _list_catalog(self, repository: Repository) -> List[CatalogEntry]:
        if self._http is not None:
            return self._collect(self._http, repository)
        with HttpClient() as http:
            return self._collect(http, repository)

    def _collect(self, http: HttpClient, repository: Repository) -> List[CatalogEntry]:
        entries: List[CatalogEntry] = []
        page = 1
        with Timer() as t:
            while True:
                request = repository.catalog_request(page)
                if request is None:
                    break
                try:
                    text = http.get_text(request.url, params=request.params, headers=request.headers)
                except (HttpError, NetworkError) as exc:
                    raise CatalogUnavailable(
                        f"cannot read release catalog of {repository.url}: {exc}"
                    ) from exc
                page_entries = repository.parse_catalog(text or "")
                if not page_entries and not (text or "").strip("[] \n"):
                    break
                entries.extend(page_entries)
                page += 1
        self._record(repository, entries, t)
        return entries

    async def _list_catalog_async(self, repository: Repository) -> List[CatalogEntry]:
        if self._async_http is not None:
            return await self._collect_async(self._async_http, repository)
        async with AsyncHttpClient() as http:
            return await self._collect_async(http, repository)

    async def _collect_async(
        self, http: AsyncHttpClient, repository: Repository
    ) -> List[CatalogEntry]:
        entries: List[CatalogEntry] = []
        page = 1
        with Timer() as t:
            while True:
                request = repository.catalog_request(page)
                if request is None:
                    break
                try:
                    text = await http.get_text(
                        request.url, params=request.params, headers=request.headers
                    )
                except (HttpError, NetworkError) as exc:
                    raise CatalogUnavailable(
                        f"cannot read release catalog of {repository.url}: {exc}"
                    ) from exc
                page_entries = repository.parse_catalog(text or "")
                if not page_entries and not (text or "").strip("[] \n"):
                    break
                entries.extend(page_entries)
                page += 1
        self._record(repository, entries, t)
        return entries

    @staticmethod
    def _record(repository: Repository, entries: List[CatalogEntry], timer: Timer) -> None:
        repository.remember(entries)
        if is_debug_enabled(logger):
            logger.debug(
                "Catalog listed",
                extra=extra_context(
                    event="catalog_listed",
                    component="version_resolver",
                    action="list",
                    outcome="success",
                    target=repository.url,
                    duration_ms=timer.duration_ms(),
                ),
            )
