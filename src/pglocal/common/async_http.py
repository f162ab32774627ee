"""Cooperative HTTP client with the same surface as :class:`HttpClient`."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from pglocal.constants import Constants
from pglocal.common.http_client import is_transient_status
from pglocal.common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from pglocal.common.retry import RetryPolicy
from pglocal.errors import HttpError, NetworkError, Timeout

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HttpError):
        return is_transient_status(exc.status)
    return isinstance(
        exc,
        (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError),
    )


class AsyncHttpClient:
    """aiohttp session wrapper; use as ``async with AsyncHttpClient() as http``."""

    def __init__(
        self,
        *,
        retry: Optional[RetryPolicy] = None,
        timeout: float = Constants.REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._retry = retry or RetryPolicy()
        self._timeout_sec = timeout
        # per socket operation, so large downloads are not cut off
        self._timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout, sock_read=timeout)
        self._headers = {"User-Agent": Constants.USER_AGENT}
        if headers:
            self._headers.update(headers)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "AsyncHttpClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def get_text(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_missing: bool = False,
    ) -> Optional[str]:
        async def _attempt() -> str:
            async with self._open(url, params=params, headers=headers) as response:
                await self._check(response, url)
                return await response.text()

        try:
            return await self._with_retry(_attempt, url)
        except HttpError as exc:
            if allow_missing and exc.status == 404:
                return None
            raise

    async def download(
        self,
        url: str,
        dest: Path,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        """Stream ``url`` into ``dest``; partial files never survive a failure."""
        async def _attempt() -> int:
            written = 0
            async with self._open(url, headers=headers) as response:
                await self._check(response, url)
                with open(dest, "wb") as fh:
                    async for chunk in response.content.iter_chunked(Constants.DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
                        written += len(chunk)
            return written

        try:
            return await self._with_retry(_attempt, url)
        except BaseException:
            try:
                os.unlink(dest)
            except FileNotFoundError:
                pass
            raise

    def _open(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if self._session is None:
            raise RuntimeError("AsyncHttpClient used before start()")
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="async_http",
                    action="GET",
                    target=safe_url(url),
                ),
            )
        return self._session.get(url, params=params, headers=headers)

    @staticmethod
    async def _check(response: aiohttp.ClientResponse, url: str) -> None:
        if response.status >= 400:
            raise HttpError(response.status, safe_url(url))

    async def _with_retry(self, func, url: str):
        with Timer() as t:
            try:
                return await self._retry.acall(
                    func, retry_on=_is_transient, description=f"GET {safe_url(url)}"
                )
            except asyncio.TimeoutError as exc:
                raise Timeout(
                    f"request to {safe_url(url)} timed out after {self._timeout_sec}s"
                ) from exc
            except aiohttp.ClientError as exc:
                raise NetworkError(f"request to {safe_url(url)} failed: {exc}") from exc
            finally:
                if is_debug_enabled(logger):
                    logger.debug(
                        "HTTP exchange finished",
                        extra=extra_context(
                            event="http_response",
                            component="async_http",
                            action="GET",
                            duration_ms=t.duration_ms(),
                            target=safe_url(url),
                        ),
                    )
