"""Bounded exponential backoff shared by catalog queries and downloads."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from pglocal.constants import Constants
from pglocal.common.logging_utils import extra_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry a callable while ``retry_on`` classifies its failure as transient.

    Attempts are counted from 1; the delay before attempt ``n + 1`` is
    ``min(max_delay, base_delay * 2 ** (n - 1))`` plus up to ``jitter`` seconds.
    The final failure is re-raised unchanged.
    """

    max_attempts: int = Constants.HTTP_RETRY_MAX
    base_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    max_delay: float = Constants.HTTP_RETRY_MAX_DELAY_SEC
    jitter: float = Constants.HTTP_RETRY_JITTER_SEC

    def delay(self, attempt: int) -> float:
        backoff = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter > 0:
            backoff += random.uniform(0, self.jitter)
        return backoff

    def call(
        self,
        func: Callable[[], T],
        *,
        retry_on: Callable[[BaseException], bool],
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        attempt = 1
        while True:
            try:
                return func()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if attempt >= self.max_attempts or not retry_on(exc):
                    raise
                wait = self.delay(attempt)
                self._log_retry(description, attempt, wait, exc)
            sleep(wait)
            attempt += 1

    async def acall(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        retry_on: Callable[[BaseException], bool],
        description: str = "operation",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """Async variant of :meth:`call`; ``func`` returns a fresh awaitable per attempt."""
        attempt = 1
        while True:
            try:
                return await func()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                if attempt >= self.max_attempts or not retry_on(exc):
                    raise
                wait = self.delay(attempt)
                self._log_retry(description, attempt, wait, exc)
            await sleep(wait)
            attempt += 1

    @staticmethod
    def _log_retry(description: str, attempt: int, wait: float, exc: BaseException) -> None:
        logger.debug(
            "%s failed (%s), retrying in %.2fs",
            description,
            exc,
            wait,
            extra=extra_context(
                event="retry",
                component="retry",
                action=description,
                outcome="transient_failure",
                attempt=attempt,
            ),
        )
