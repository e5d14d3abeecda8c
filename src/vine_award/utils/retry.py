# src/vine_award/utils/retry.py
"""Bounded retry combinator with capped exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from vine_award.core.errors import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with ±25% jitter."""

    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    jitter: float = 0.25

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        if self.jitter <= 0:
            return delay
        return delay * random.uniform(1 - self.jitter, 1 + self.jitter)  # nosec B311


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    policy: BackoffPolicy | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientIOError,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. A ``retry_after`` attribute on the raised error
    overrides the computed backoff when it is larger.
    """
    backoff = policy or BackoffPolicy()
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = backoff.delay_for(attempt)
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = min(max(delay, float(retry_after)), backoff.max_delay_seconds * 4)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                delay,
                exc,
            )
            await sleep(delay)
    raise RuntimeError("retry_async exhausted without result")  # pragma: no cover
