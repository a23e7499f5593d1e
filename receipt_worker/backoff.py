"""Bounded retry with exponential backoff.

Delays are deterministic: ``base_delay * 2**attempt`` seconds, raised to
``RATE_LIMIT_FLOOR`` when the failure looks like provider throttling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_TOKENS = ("429", "rate", "quota")
RATE_LIMIT_FLOOR = 10.0

Sleep = Callable[[float], Awaitable[None]]


def is_rate_limited(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(token in message for token in RATE_LIMIT_TOKENS)


def compute_delay(attempt: int, rate_limited: bool, base_delay: float = 2.0) -> float:
    """Seconds to wait after the failed attempt number *attempt* (0-based)."""
    delay = base_delay * (2 ** attempt)
    if rate_limited:
        delay = max(delay, RATE_LIMIT_FLOOR)
    return delay


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay: float = 2.0,
    *,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds or *max_attempts* are used.

    The last error is re-raised unchanged once attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt == max_attempts - 1:
                raise
            rate_limited = is_rate_limited(exc)
            delay = compute_delay(attempt, rate_limited, base_delay)
            if rate_limited:
                logger.warning(
                    "Rate limited. Attempt %d/%d. Waiting %.1fs...",
                    attempt + 1,
                    max_attempts,
                    delay,
                )
            else:
                logger.warning(
                    "Attempt %d/%d failed. Retrying in %.1fs: %s",
                    attempt + 1,
                    max_attempts,
                    delay,
                    exc,
                )
            await sleep(delay)

    raise AssertionError("unreachable")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters handed to each collaborator that talks to the network."""

    max_attempts: int = 5
    base_delay: float = 2.0
    sleep: Sleep = field(default=asyncio.sleep, compare=False)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await run_with_retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )
