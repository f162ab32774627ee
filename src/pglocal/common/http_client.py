"""Thread-blocking HTTP client used for catalog queries and archive downloads.

Every request goes through :class:`~pglocal.common.retry.RetryPolicy`; after
retries are exhausted transport failures surface as
:class:`~pglocal.errors.Timeout` or :class:`~pglocal.errors.NetworkError` and
error statuses as :class:`~pglocal.errors.HttpError`.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from pglocal.constants import Constants
from pglocal.common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from pglocal.common.retry import RetryPolicy
from pglocal.errors import HttpError, NetworkError, Timeout

logger = logging.getLogger(__name__)


def is_transient_status(status: int) -> bool:
    return status in (408, 429) or status >= 500


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HttpError):
        return is_transient_status(exc.status)
    # a body cut short mid-stream surfaces from iter_content as ChunkedEncodingError
    return isinstance(
        exc,
        (
            requests.ConnectionError,
            requests.Timeout,
            requests.exceptions.ChunkedEncodingError,
            requests.exceptions.ContentDecodingError,
        ),
    )


class HttpClient:
    """Small wrapper around a ``requests.Session`` with retries and DEBUG traces."""

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = Constants.REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._session = session or requests.Session()
        self._retry = retry or RetryPolicy()
        self._timeout = timeout
        self._headers = {"User-Agent": Constants.USER_AGENT}
        if headers:
            self._headers.update(headers)

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._session.close()

    def get_text(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allow_missing: bool = False,
    ) -> Optional[str]:
        """GET ``url`` and return the body as text.

        Args:
            url: Target URL.
            params: Optional query parameters.
            headers: Extra request headers.
            allow_missing: Return None instead of raising on HTTP 404.

        Returns:
            Response text, or None for a missing resource when allowed.
        """
        def _attempt() -> str:
            response = self._send(url, params=params, headers=headers)
            try:
                return response.text
            finally:
                response.close()

        try:
            return self._with_retry(_attempt, url)
        except HttpError as exc:
            if allow_missing and exc.status == 404:
                return None
            raise

    def download(
        self,
        url: str,
        dest: Path,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        """Stream ``url`` into ``dest`` and return the number of bytes written.

        Each attempt rewrites ``dest`` from the beginning; on final failure the
        partial file is removed.
        """
        def _attempt() -> int:
            response = self._send(url, headers=headers, stream=True)
            written = 0
            try:
                with open(dest, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
            finally:
                response.close()
            return written

        try:
            return self._with_retry(_attempt, url)
        except BaseException:
            try:
                os.unlink(dest)
            except FileNotFoundError:
                pass
            raise

    def _with_retry(self, func, url: str):
        try:
            return self._retry.call(func, retry_on=_is_transient, description=f"GET {safe_url(url)}")
        except requests.Timeout as exc:
            raise Timeout(f"request to {safe_url(url)} timed out after {self._timeout}s") from exc
        except requests.RequestException as exc:
            raise NetworkError(f"request to {safe_url(url)} failed: {exc}") from exc

    def _send(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        merged = dict(self._headers)
        if headers:
            merged.update(headers)
        safe_target = safe_url(url)
        with Timer() as t:
            response = self._session.get(
                url, params=params, headers=merged, timeout=self._timeout, stream=stream
            )
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action="GET",
                    outcome="success" if response.status_code < 400 else "error",
                    status_code=response.status_code,
                    duration_ms=t.duration_ms(),
                    target=safe_target,
                ),
            )
        if response.status_code >= 400:
            response.close()
            raise HttpError(response.status_code, safe_target)
        return response
