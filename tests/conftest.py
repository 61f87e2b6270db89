"""
Shared fixtures for Inseam tests.

Every test that touches storage uses `temp_db`, which points the pool at a
fresh SQLite file. External services (email connector, Gemini) are replaced
by the small fakes below and passed in through constructors.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from inseam.email.grants import GrantRepository
from inseam.email.models import Email, EmailGrant, EmailSender
from inseam.infrastructure.database import close_pool, init_database
from inseam.infrastructure.retry import RetryOptions
from inseam.observability.telemetry import reset_counters, reset_latencies
from inseam.trackers.models import Column, Tracker, TrackerCreate
from inseam.trackers.service import create_tracker

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Fresh database file for one test."""
    db_path = tmp_path / "inseam-test.db"
    monkeypatch.setenv("INSEAM_DB_PATH", str(db_path))
    close_pool()
    init_database()
    reset_counters()
    reset_latencies()
    yield db_path
    close_pool()


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fast_retry() -> RetryOptions:
    """Retry options that never actually wait."""
    return RetryOptions(name="test", initial_delay_ms=1, max_delay_ms=2, sleep=_no_sleep)


def make_email(
    email_id: str = "msg-1",
    subject: str = "Order ORD-1 has shipped",
    body: str = "Your order ORD-1 shipped today. Tracking number 1Z999.",
    minutes_ago: int = 0,
    sender_email: str = "orders@shop.example.com",
) -> Email:
    return Email(
        id=email_id,
        thread_id=f"thread-{email_id}",
        subject=subject,
        sender=EmailSender(name="Shop", email=sender_email),
        date=datetime.now(UTC) - timedelta(minutes=minutes_ago),
        snippet=body[:100],
        body=body,
    )


def order_columns() -> list[Column]:
    return [
        Column(id="c1", name="Order", key="order_id", order=0, ai_enabled=True),
        Column(
            id="c2",
            name="Status",
            key="status",
            type="select",
            options=["ordered", "shipped", "delivered"],
            order=1,
            ai_enabled=True,
        ),
        Column(id="c3", name="Tracking", key="tracking", order=2, ai_enabled=True),
        Column(id="c4", name="Cost", key="cost", type="number", order=3),
    ]


def make_tracker(user_id: str = USER_ID, name: str = "Orders", columns: list[Column] | None = None) -> Tracker:
    """Create an orders tracker (primary key order_id) in the current temp_db."""
    return create_tracker(
        user_id,
        TrackerCreate(
            name=name,
            color="#3366ff",
            columns=columns or order_columns(),
            primary_key_column="order_id",
        ),
    )


def connect_user(user_id: str = USER_ID, grant_id: str = "grant-1") -> EmailGrant:
    grant = EmailGrant(user_id=user_id, grant_id=grant_id, email="me@gmail.com", provider="google")
    GrantRepository.save(grant)
    return grant


class FakeNylas:
    """Stand-in for NylasClient. `failures` are raised (in order) before emails are returned."""

    def __init__(self, emails: list[Email] | None = None, failures: list[Exception] | None = None):
        self.emails = emails or []
        self.failures = list(failures or [])
        self.fetch_calls = 0
        self.revoked: list[str] = []
        self.exchange_result = {"grant_id": "grant-new", "email": "me@gmail.com"}
        self.grant_info: dict[str, Any] = {"email": "me@gmail.com", "provider": "google"}

    async def fetch_recent_emails(self, grant_id: str, count: int, offset: int = 0) -> list[Email]:
        self.fetch_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.emails[offset : offset + count]

    def build_auth_url(self, redirect_uri: str, state: str, provider: str | None = None) -> str:
        return f"https://connector.example.com/auth?state={state}"

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, str]:
        return self.exchange_result

    async def get_grant_info(self, grant_id: str) -> dict[str, Any]:
        return self.grant_info

    async def revoke_grant(self, grant_id: str) -> bool:
        self.revoked.append(grant_id)
        return True


class FakeLLM:
    """
    Stand-in for GeminiClient.

    `respond(prompt)` returns the response text, or raises to simulate a
    provider failure.
    """

    def __init__(self, respond: Callable[[str], str] | str):
        self.respond = respond if callable(respond) else (lambda _prompt: respond)
        self.prompts: list[str] = []

    async def complete(self, prompt: str, system_instruction: str | None = None, response_schema: Any = None) -> str:
        self.prompts.append(prompt)
        return self.respond(prompt)


def match_json(tracker_id: str, confidence: float = 90, **extracted: Any) -> str:
    return json.dumps(
        {"matches": [{"tracker_id": tracker_id, "confidence": confidence, "extracted": extracted}]}
    )
