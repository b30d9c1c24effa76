"""Retry with exponential backoff for transport calls."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from tether.core.cancellation import CancellationToken, race
from tether.core.errors import RateLimitError, TransportError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Attempt budget shared by transient failures and rate limits.

    Delay before retry ``n`` (1-based) is ``base_delay * 2 ** (n - 1)``,
    capped at ``max_delay``. A 429 carrying ``Retry-After`` waits exactly
    that long instead.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False

    def delay_for(self, attempt: int, error: TransportError | None = None) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return max(0.0, error.retry_after)
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


async def _sleep(delay: float, token: CancellationToken | None) -> None:
    """Backoff sleep that wakes up on cancellation."""
    await race(asyncio.sleep(delay), token)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    token: CancellationToken | None = None,
    label: str = "request",
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt budget is spent.

    Parameters
    ----------
    operation
        Zero-argument factory returning a fresh awaitable per attempt.
    policy
        Attempt budget and backoff schedule.
    token
        Checked before every attempt; also races the in-flight attempt.
    label
        Used in log lines.

    Returns
    -------
    T
        Whatever ``operation`` returned.

    Raises
    ------
    TransportError
        Immediately for non-retryable errors, or the last error once the
        budget is exhausted.
    CancellationError
        When the token fires before or during an attempt or backoff.
    """
    attempt = 0
    while True:
        attempt += 1
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await race(operation(), token)
        except TransportError as e:
            if not e.retryable:
                raise
            if attempt >= policy.max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay_for(attempt, e)
            logger.warning(
                f"{label} failed (attempt {attempt}/{policy.max_attempts}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await _sleep(delay, token)
