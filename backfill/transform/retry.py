"""Retry wrapper for transient LLM failures.

Classification is textual: provider SDKs and gateways surface the same
conditions with very different exception types, but the message almost
always mentions a timeout, a 429, a 5xx or a reset connection.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from backfill.transform.decode import MalformedOutputError
from backfill.utils.metrics import record_llm_retry

logger = logging.getLogger("backfill.transform.retry")

_RETRYABLE_PATTERN = re.compile(
    r"timeout|timed out|ETIMEDOUT|\b429\b|rate.?limit|temporar|unavailable"
    r"|ECONNRESET|connection reset|overloaded|\bHTTP 5\d\d\b",
    re.IGNORECASE,
)


def is_retryable(exc: BaseException) -> bool:
    """True for timeouts, rate limits, 5xx/unavailable and reset connections."""
    if isinstance(exc, MalformedOutputError):
        return False
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, ConnectionResetError)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        # status wins over message text
        return status == 429 or status >= 500
    return bool(_RETRYABLE_PATTERN.search(f"{type(exc).__name__}: {exc}"))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    backoff: str = "linear"  # linear | exponential

    def delay_for(self, attempt: int) -> float:
        """Sleep before attempt ``attempt + 1`` (attempt counts from 1)."""
        if self.backoff == "exponential":
            return self.base_delay * (2 ** (attempt - 1))
        return self.base_delay * attempt


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    label: str = "llm",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Await ``fn()``; on a retryable error back off and try again.

    Non-retryable errors propagate immediately.  After ``policy.max_attempts``
    the last error propagates.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            record_llm_retry(label)
            logger.warning(
                "%s call failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, policy.max_attempts, delay, exc,
            )
            await sleep(delay)
            attempt += 1
