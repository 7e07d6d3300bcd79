"""Retry helpers for flaky network calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TransientFetchError(Exception):
    """A response status that is worth retrying."""

    def __init__(self, status_code: int, url: str) -> None:
        super().__init__(f"HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url


RETRY_EXCEPTIONS = (OSError, asyncio.TimeoutError, httpx.TransportError, TransientFetchError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    min_delay: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        delay = min(self.max_delay, self.min_delay * (2**attempt))
        return delay + random.uniform(0, delay * 0.1)


def retry_async(func: Callable[..., Awaitable], policy: RetryPolicy | None = None):
    policy = policy or RetryPolicy()

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        for attempt in range(policy.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except RETRY_EXCEPTIONS as exc:
                if attempt == policy.max_retries:
                    raise
                delay = policy.delay_for(attempt)
                logger.debug("Retrying after %s (attempt %s, sleeping %.2fs)", exc, attempt + 1, delay)
                await asyncio.sleep(delay)

    return wrapper
