"""Bounded exponential-backoff retry around a single provider call."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from config.config_loader import RetryConfig
from hivemind.errors import categorize_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

_sleep = asyncio.sleep


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    label: str,
    policy: RetryConfig | None = None,
) -> T:
    """Await fn(), retrying retryable failures with exponential backoff.

    Non-retryable errors and the error from the final attempt are re-raised
    unchanged.
    """
    policy = policy or RetryConfig()
    attempts = max(1, policy.max_attempts)

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            classification = categorize_error(exc)
            if not classification.retryable or attempt == attempts:
                if classification.retryable:
                    logger.warning("%s failed after %d attempts: %s", label, attempts, exc)
                raise
            delay = policy.base_delay_sec * policy.multiplier ** (attempt - 1)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs: %s",
                label, attempt, attempts, classification.category, delay, exc,
            )
            await _sleep(delay)
            attempt += 1
