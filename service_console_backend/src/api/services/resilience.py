from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from src.api.config import BackendConfig
from src.api.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for transient network failures only."""

    max_attempts: int = 3
    backoff_sec: float = 1.0

    @classmethod
    def from_config(cls, config: BackendConfig) -> "RetryPolicy":
        return cls(max_attempts=config.http_retry_attempts, backoff_sec=config.http_retry_backoff_sec)


def _default_retryable(exc: Exception) -> bool:
    return isinstance(exc, TransientNetworkError)


# PUBLIC_INTERFACE
async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: Optional[RetryPolicy] = None,
    retryable: Optional[Callable[[Exception], bool]] = None,
    what: str = "request",
) -> T:
    """
    Call `func` until it succeeds, a non-retryable error is raised, or attempts run out.

    Backoff is linear: attempt N waits `backoff_sec * N` before attempt N+1.
    """
    policy = policy or RetryPolicy()
    retryable = retryable or _default_retryable
    attempts = max(1, int(policy.max_attempts))
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:
            if attempt >= attempts or not retryable(exc):
                raise
            delay = policy.backoff_sec * attempt
            logger.warning("Retrying %s after transient failure (attempt %s/%s, sleep=%.2fs): %s", what, attempt, attempts, delay, exc)
            await asyncio.sleep(delay)
            attempt += 1
