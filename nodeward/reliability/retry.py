"""Retry executor with exponential backoff and jitter.

Runs an async operation up to ``max_retries + 1`` times, classifying each
failure with a retryability predicate and sleeping between attempts. The
sleep races an optional cancellation event so shutdown never waits out a
backoff.

Example:
    from nodeward.reliability import RetryConfig, execute

    # Default predicate: transient network errors, 429 and 5xx
    servers = await execute(RetryConfig(), lambda: client.list_servers())

    # Retry on everything, at most 3 times
    config = RetryConfig(max_retries=3, retryable=lambda e: True)
    await execute(config, flaky_operation, cancel=shutdown_event)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from nodeward.core.exceptions import ConfigurationError

from .backoff import RandomSource, jittered_backoff, next_backoff
from .errors import (
    CircuitOpenError,
    MaxRetriesExceededError,
    NonRetryableError,
    OperationCancelledError,
)

type RetryPredicate = Callable[[BaseException], bool]
type Operation[T] = Callable[[], Awaitable[T]]

log = logger.bind(component="retry")

RETRYABLE_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "timeout",
    "temporary failure",
    "rate limit",
    "too many requests",
    "429",
    "503",
    "502",
    "504",
)


# =============================================================================
# Predicates
# =============================================================================


def on_status_code(*codes: int) -> RetryPredicate:
    """Create a predicate that retries on specific HTTP status codes.

    Works with HttpError and any exception exposing a ``status`` attribute.
    """

    def predicate(e: BaseException) -> bool:
        return getattr(e, "status", None) in codes

    return predicate


_TRANSIENT_STATUS = on_status_code(429, 502, 503, 504)


def is_retryable_error(error: BaseException) -> bool:
    """Default classification: transient infrastructure errors only.

    Deadline and cancellation errors are never retried; once the caller's
    own deadline has passed another attempt cannot help.
    """
    if isinstance(
        error,
        (TimeoutError, asyncio.CancelledError, OperationCancelledError, ConfigurationError),
    ):
        return False
    if _TRANSIENT_STATUS(error):
        return True
    msg = str(error).lower()
    return any(pattern in msg for pattern in RETRYABLE_PATTERNS)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Immutable retry policy, safe to share across calls.

    Attributes:
        max_retries: Retries after the first attempt (total = max_retries + 1).
        initial_backoff: Seconds to wait before the first retry.
        max_backoff: Ceiling for any single wait, jitter included.
        multiplier: Growth factor between consecutive waits.
        retryable: Error classifier. ``None`` retries every error.
    """

    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    multiplier: float = 2.0
    retryable: RetryPredicate | None = is_retryable_error


# =============================================================================
# Executor
# =============================================================================


async def _wait(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds; return False if ``cancel`` fired first."""
    if cancel is None:
        await asyncio.sleep(delay)
        return True
    if cancel.is_set():
        return False
    try:
        async with asyncio.timeout(delay):
            await cancel.wait()
    except TimeoutError:
        return True
    return False


async def execute[T](
    config: RetryConfig,
    operation: Operation[T],
    *,
    cancel: asyncio.Event | None = None,
    rand: RandomSource = random.random,
) -> T:
    """Run ``operation`` under ``config``'s retry schedule.

    Backoff state lives only for the duration of this call.

    Raises:
        NonRetryableError: The predicate rejected an error (no sleep, no retry).
        MaxRetriesExceededError: Every allowed attempt failed.
        OperationCancelledError: ``cancel`` was set before or during a wait.
    """
    backoff = config.initial_backoff
    last_error: BaseException | None = None
    total = config.max_retries + 1

    for attempt in range(total):
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(attempts=attempt, last_error=last_error)
        try:
            return await operation()
        except Exception as e:
            last_error = e

            if config.retryable is not None and not config.retryable(e):
                raise NonRetryableError(e, attempts=attempt + 1) from e

            if attempt == config.max_retries:
                break

            # Breaker rejections return instantly, waiting would not close it.
            if isinstance(e, CircuitOpenError):
                log.debug("Attempt {n}/{total} rejected by open circuit", n=attempt + 1, total=total)
                continue

            delay = jittered_backoff(backoff, config.max_backoff, rand)
            log.warning(
                "Retry {n}/{total} after {kind}: {err}. Waiting {delay:.2f}s...",
                n=attempt + 1, total=total, kind=type(e).__name__, err=e, delay=delay,
            )
            if not await _wait(delay, cancel):
                raise OperationCancelledError(attempts=attempt + 1, last_error=e) from e

            backoff = next_backoff(backoff, config.multiplier, config.max_backoff)

    assert last_error is not None
    raise MaxRetriesExceededError(attempts=total, last_error=last_error) from last_error
