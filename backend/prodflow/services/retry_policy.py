"""Backoff policy shared by every outbound MercadoLibre call.

One ``RetryPolicy`` instance is built per invocation and handed to the API
client; nothing else implements its own backoff.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Optional

from prodflow.config import settings


Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    retryable_status_codes: FrozenSet[int] = frozenset({409, 429})
    sleep: Sleeper = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, sleep: Optional[Sleeper] = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            sleep=sleep or asyncio.sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1))

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def should_retry(self, status_code: int, attempt: int) -> bool:
        return self.is_retryable_status(status_code) and self.has_attempts_left(attempt)

    async def backoff(self, attempt: int) -> float:
        delay = self.delay_for(attempt)
        await self.sleep(delay)
        return delay
