"""
Retry with exponential backoff for reasoning-oracle calls.

Only transient failures are retried: rate limits, overloaded or failing
servers, and network-level errors. Anything else (a malformed request, a bad
API key) is raised on the first attempt. A ``retry-after`` header from the
server overrides the computed delay.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import anthropic
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 529})


class RetryConfig:
    """Backoff parameters for ``with_retries``."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        """Build from a ``ClaudeConfig``-shaped object."""
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            exponential_base=settings.retry_exponential_base,
            jitter_range=settings.retry_jitter_range,
        )


def is_retryable_error(error: BaseException) -> bool:
    """True for errors worth another attempt."""
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """Server-provided retry hint, if the error carries one."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before retry number ``attempt + 1``.

        delay = min(max_delay, base_delay * exponential_base ** attempt)
        delay += uniform(-jitter_range, +jitter_range) * delay

    A positive ``retry_after`` wins, but is still capped at ``max_delay``.
    """
    if retry_after is not None and retry_after > 0:
        return min(retry_after, config.max_delay)

    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Await ``func()`` until it succeeds, a non-retryable error is raised,
    or ``config.max_retries`` retries have been spent.

    ``func`` takes no arguments; wrap the real call in a closure.
    ``on_retry`` receives ``(attempt, error, delay)`` before each sleep.
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:
            if not is_retryable_error(exc):
                logger.warning(
                    "retry.non_retryable_error",
                    error_type=type(exc).__name__,
                    attempt=attempt,
                )
                raise
            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(exc).__name__,
                    error=str(exc)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, retry_after_seconds(exc))
            attempt += 1
            logger.warning(
                "retry.attempt",
                error_type=type(exc).__name__,
                attempt=attempt,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await asyncio.sleep(delay)
