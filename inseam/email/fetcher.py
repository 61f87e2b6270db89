"""
Email fetcher - unseen emails for a user since the last checkpoint.

The checkpoint is the user's processed_emails set: anything already
recorded there is skipped. Results are newest-first.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from inseam.config import DEFAULT_EMAIL_FETCH_LIMIT, MAX_EMAIL_FETCH_LIMIT
from inseam.email.grants import GrantRepository
from inseam.email.models import FetchResult, FetchStatus
from inseam.email.nylas_client import NylasClient
from inseam.infrastructure.rate_limit import RateLimiter
from inseam.infrastructure.retry import AdapterError, RetryOptions, with_exponential_backoff
from inseam.observability.logging import get_logger
from inseam.observability.telemetry import counter, log_event
from inseam.storage import processed_emails

logger = get_logger(__name__)

FETCH_ENDPOINT = "nylas.fetchEmails"

# Connector statuses that mean the grant is gone rather than a transient failure
_DISCONNECTED_STATUSES = (401, 404)


def clamp_limit(limit: int | None) -> int:
    if not limit:
        return DEFAULT_EMAIL_FETCH_LIMIT
    return max(1, min(limit, MAX_EMAIL_FETCH_LIMIT))


class EmailFetcher:
    def __init__(
        self,
        nylas: NylasClient | None = None,
        rate_limiter: RateLimiter | None = None,
        retry_options: RetryOptions | None = None,
    ):
        self.nylas = nylas or NylasClient()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry_options = retry_options or RetryOptions(name="email_fetch")

    async def fetch_new_emails(
        self,
        user_id: str,
        limit: int | None = DEFAULT_EMAIL_FETCH_LIMIT,
        since: datetime | None = None,
    ) -> FetchResult:
        """
        Fetch up to `limit` emails this user's pipeline has not processed.

        `since`, when given, additionally drops emails dated before it.

        Raises:
            RateLimitExceededError: Fetch quota for this user is used up
            AdapterError: Connector still failing after retries

        Side Effects:
            - Counts one request against nylas.fetchEmails
        """
        limit = clamp_limit(limit)

        grant = await asyncio.to_thread(GrantRepository.get, user_id)
        if grant is None:
            log_event("fetch.not_connected", reason="no_grant")
            return FetchResult(status=FetchStatus.NOT_CONNECTED)

        # Outside the backoff wrapper: a local quota refusal must not be retried
        await asyncio.to_thread(self.rate_limiter.check_and_record, user_id, FETCH_ENDPOINT)

        try:
            emails = await with_exponential_backoff(
                lambda: self.nylas.fetch_recent_emails(grant.grant_id, limit),
                self.retry_options,
            )
        except AdapterError as e:
            if e.status_code in _DISCONNECTED_STATUSES:
                log_event("fetch.not_connected", reason=f"http_{e.status_code}")
                return FetchResult(status=FetchStatus.NOT_CONNECTED)
            counter("fetch.failed")
            raise

        fetched_count = len(emails)
        if since is not None:
            emails = [e for e in emails if e.date >= since]

        already = await asyncio.to_thread(
            processed_emails.filter_processed, user_id, [e.id for e in emails]
        )
        fresh = [e for e in emails if e.id not in already]
        fresh.sort(key=lambda e: e.date, reverse=True)
        fresh = fresh[:limit]

        counter("fetch.emails_new", len(fresh))
        logger.info(
            "Fetched %d emails for user %s (%d new)", fetched_count, user_id, len(fresh)
        )

        return FetchResult(
            status=FetchStatus.OK if fresh else FetchStatus.NO_NEW,
            emails=fresh,
            new_checkpoint=[e.id for e in fresh],
            fetched_count=fetched_count,
        )
