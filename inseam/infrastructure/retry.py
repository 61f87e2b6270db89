"""
Retry helpers for calls to external services (email connector, LLM).

with_exponential_backoff() grows the delay exponentially with jitter and
honours provider retry-after hints; with_retry() is the plain fixed-delay
variant. Both are built on tenacity's AsyncRetrying so the sleep between
attempts is an await, never a blocking call.
"""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from inseam.config import (
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY_MS,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_MS,
)
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event

T = TypeVar("T")

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({502, 503, 504})
_RETRY_AFTER_PATTERN = re.compile(r"retry.*?(\d+)\s*seconds?", re.IGNORECASE)
_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
_NETWORK_MARKERS = ("network", "timeout", "econnrefused")


class AdapterError(RuntimeError):
    """Failure reported by an external service adapter.

    status_code is the HTTP(-like) status when known; retry_after is the
    provider's hint in seconds.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


def is_retryable_error(error: BaseException) -> bool:
    """Rate limits, network/timeouts and 502/503/504 are retryable."""
    message = str(error).lower()

    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return True
    if any(marker in message for marker in _NETWORK_MARKERS):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 429:
        return True
    return status in RETRYABLE_STATUS_CODES


def extract_retry_after(error: BaseException) -> float | None:
    """Seconds the provider asked us to wait, from a retry_after attribute or the message."""
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and not isinstance(retry_after, bool):
        return float(retry_after)

    match = _RETRY_AFTER_PATTERN.search(str(error))
    if match:
        return float(match.group(1))

    return None


def _default_jitter() -> float:
    return random.uniform(0.5, 1.0)


@dataclass
class RetryOptions:
    """Knobs for with_exponential_backoff (delays in milliseconds)."""

    max_attempts: int = RETRY_MAX_ATTEMPTS
    initial_delay_ms: float = RETRY_INITIAL_DELAY_MS
    max_delay_ms: float = RETRY_MAX_DELAY_MS
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER
    should_retry: Callable[[BaseException], bool] = is_retryable_error
    name: str = "external"
    jitter: Callable[[], float] = field(default=_default_jitter)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def compute_delay(self, retry_state: RetryCallState) -> float:
        """Seconds to wait before the next attempt.

        A positive retry-after hint on the failure wins over the computed
        backoff; a zero or negative hint is ignored.
        """
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if error is not None:
            hint = extract_retry_after(error)
            if hint is not None and hint > 0:
                return hint

        attempt = retry_state.attempt_number - 1
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier**attempt) * self.jitter()
        return min(self.max_delay_ms, delay_ms) / 1000.0


def _before_sleep(name: str) -> Callable[[RetryCallState], None]:
    def log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        counter(f"retry.{name}.attempt")
        log_event(
            "retry.attempt",
            operation=name,
            attempt=retry_state.attempt_number,
            delay_seconds=round(delay, 3),
            error_type=type(error).__name__ if error else None,
        )

    return log_retry


async def with_exponential_backoff(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
) -> T:
    """
    Run operation, retrying retryable failures with exponential backoff.

    delay = min(max_delay, initial_delay * multiplier**attempt * jitter),
    jitter in [0.5, 1.0]. Non-retryable failures and the failure of the last
    attempt propagate unchanged.

    Side Effects:
        - Suspends (awaits options.sleep) between attempts
        - Increments retry.<name>.attempt counter per retry
    """
    options = options or RetryOptions()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(options.max_attempts),
        wait=options.compute_delay,
        retry=retry_if_exception(options.should_retry),
        before_sleep=_before_sleep(options.name),
        sleep=options.sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay_ms: float = 1000,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Retry any failure up to `retries` attempts at a constant delay."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries),
        wait=wait_fixed(delay_ms / 1000.0),
        retry=retry_if_exception_type(Exception),
        before_sleep=_before_sleep("fixed"),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
