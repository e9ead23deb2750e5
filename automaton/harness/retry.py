"""
Retry Logic — resilience against transient upstream failures.

Network calls fail. Rate limits hit. This module retries the transient ones
(429, 5xx, connection errors, timeouts) with exponential backoff and jitter,
and lets everything else surface immediately. The turn loop adds its own
consecutive-failure accounting on top: a call that still fails after these
retries counts as one inference failure.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

import anthropic
import httpx
import structlog

from automaton.errors import InferenceError, SandboxError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 529})


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 2,
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


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable: rate limits, server errors, connection failures, timeouts.
    Not retryable: bad requests, auth failures, policy violations, parse errors.
    """
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(error, (InferenceError, SandboxError)):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        value = float(headers.get("retry-after", 0))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

        delay = min(max_delay, base_delay * (exponential_base ^ attempt)) +/- jitter

    A server-provided Retry-After wins (never less than 1 second).
    """
    if retry_after is not None:
        return max(1.0, retry_after)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


async def with_retries(
    func: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> Any:
    """
    Execute an async function with retry logic.

    Args:
        func: The async function to execute taking no arguments; wrap calls in a lambda or closure
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback when a retry occurs (receives attempt, error, delay)

    Raises:
        The last error if it is not retryable or all retries are exhausted.
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.debug(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    attempt=attempt,
                )
                raise

            if attempt >= config.max_retries:
                logger.warning(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise RuntimeError("with_retries exited without a result")  # pragma: no cover
