"""
Per-user, per-endpoint rate limiting for calls to the email connector.

Fixed-window counters keyed by (user_id, endpoint), persisted in the
rate_limits table so the limit holds across workers sharing the database.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from inseam.config import USER_RATE_LIMITS
from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event

logger = get_logger(__name__)


class RateLimitExceededError(RuntimeError):
    def __init__(self, retry_after_seconds: int):
        super().__init__(
            f"Rate limit exceeded. Please try again in {retry_after_seconds} seconds."
        )
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: float


def _limit_for(endpoint: str) -> tuple[int, int]:
    return USER_RATE_LIMITS.get(endpoint, USER_RATE_LIMITS["default"])


class RateLimiter:
    """Fixed-window limiter. `clock` is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def check(self, user_id: str, endpoint: str) -> RateLimitStatus:
        """Read-only view of the caller's current window."""
        max_requests, window_seconds = _limit_for(endpoint)
        now = self.clock()

        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT window_start, count FROM rate_limits WHERE user_id = ? AND endpoint = ?",
                (user_id, endpoint),
            ).fetchone()

        if not row or row["window_start"] + window_seconds <= now:
            return RateLimitStatus(True, max_requests - 1, now + window_seconds)

        allowed = row["count"] < max_requests
        return RateLimitStatus(
            allowed,
            max(0, max_requests - row["count"] - 1),
            row["window_start"] + window_seconds,
        )

    @retry_on_db_lock()
    def check_and_record(self, user_id: str, endpoint: str) -> RateLimitStatus:
        """
        Count one request against the window, or refuse it.

        Raises:
            RateLimitExceededError: When the window is already full

        Side Effects:
            - Inserts/updates the rate_limits row for (user_id, endpoint)
        """
        max_requests, window_seconds = _limit_for(endpoint)
        now = self.clock()

        with db_transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT window_start, count FROM rate_limits WHERE user_id = ? AND endpoint = ?",
                (user_id, endpoint),
            ).fetchone()

            if not row or row["window_start"] + window_seconds <= now:
                conn.execute(
                    """
                    INSERT INTO rate_limits (user_id, endpoint, window_start, count)
                    VALUES (?, ?, ?, 1)
                    ON CONFLICT(user_id, endpoint)
                    DO UPDATE SET window_start = excluded.window_start, count = 1
                    """,
                    (user_id, endpoint, now),
                )
                return RateLimitStatus(True, max_requests - 1, now + window_seconds)

            reset_at = row["window_start"] + window_seconds
            if row["count"] >= max_requests:
                retry_after = max(1, math.ceil(reset_at - now))
                counter(f"rate_limit.{endpoint}.exceeded")
                log_event("rate_limit.exceeded", endpoint=endpoint, retry_after=retry_after)
                raise RateLimitExceededError(retry_after)

            conn.execute(
                "UPDATE rate_limits SET count = count + 1 WHERE user_id = ? AND endpoint = ?",
                (user_id, endpoint),
            )
            return RateLimitStatus(True, max_requests - row["count"] - 1, reset_at)
