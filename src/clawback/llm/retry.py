"""Bounded exponential backoff for rate-limited completion calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from clawback.llm.provider import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 15.0
DEFAULT_MAX_DELAY_SECONDS = 120.0


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""

    return min(base_delay * (2**attempt), max_delay)


def call_with_rate_limit_retry(
    fn: Callable[[], T],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying only on RateLimitError.

    Every other exception propagates on the first occurrence.
    """

    attempt = 0
    while True:
        try:
            return fn()
        except RateLimitError:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.warning(
                "Rate limited by completion service, backing off",
                extra={"attempt": attempt + 1, "delay_seconds": delay},
            )
            sleep(delay)
            attempt += 1
