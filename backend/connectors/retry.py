"""
Retry/backoff policy applied uniformly by connectors.

Every outbound provider call goes through :meth:`RetryPolicy.run`:

- ``RateLimited``: sleep at least the provider's ``Retry-After``
- ``TransientError``: exponential backoff ``base_delay * 2**(attempt-1)``,
  capped at ``max_delay``
- ``AuthError`` / ``PermanentError``: raised immediately (auth recovery is
  the connector's job, not the policy's)

Attempts are capped at ``max_attempts`` in total, after which the last
error propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from config import settings
from connectors.errors import RateLimited, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    # Refuse to block a worker longer than this on a single 429
    max_rate_limit_wait: float = 120.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False, compare=False)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.SYNC_RETRY_MAX_ATTEMPTS,
            base_delay=settings.SYNC_RETRY_BASE_DELAY,
            max_delay=settings.SYNC_RETRY_MAX_DELAY,
            max_rate_limit_wait=settings.SYNC_RATE_LIMIT_MAX_WAIT,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "request") -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except RateLimited as exc:
                if attempt >= self.max_attempts or exc.retry_after > self.max_rate_limit_wait:
                    raise
                delay = exc.retry_after
                logger.warning(
                    "Rate limited on %s, retrying in %.1fs (attempt %d/%d)",
                    description, delay, attempt, self.max_attempts,
                )
            except TransientError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Transient failure on %s: %s - retrying in %.1fs (attempt %d/%d)",
                    description, exc.message, delay, attempt, self.max_attempts,
                )
            await self.sleep(delay)
