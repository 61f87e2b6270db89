"""
Persistence for email grants and pending OAuth states.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from inseam.config import OAUTH_STATE_EXPIRY_SECONDS
from inseam.email.models import EmailGrant
from inseam.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from inseam.observability.logging import get_logger
from inseam.trackers.models import parse_dt, utc_now

logger = get_logger(__name__)


class GrantRepository:
    @staticmethod
    def get(user_id: str) -> EmailGrant | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM email_grants WHERE user_id = ?", (user_id,)
            ).fetchone()
        return EmailGrant.from_db_row(dict(row)) if row else None

    @staticmethod
    @retry_on_db_lock()
    def save(grant: EmailGrant) -> EmailGrant:
        """
        Side Effects:
            - Inserts or replaces the user's email_grants row
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO email_grants (user_id, grant_id, email, provider, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    grant_id = excluded.grant_id,
                    email = excluded.email,
                    provider = excluded.provider,
                    updated_at = excluded.updated_at
                """,
                (
                    grant.user_id,
                    grant.grant_id,
                    grant.email,
                    grant.provider,
                    grant.created_at.isoformat(),
                    grant.updated_at.isoformat(),
                ),
            )
        logger.info("Stored email grant for user %s (provider=%s)", grant.user_id, grant.provider)
        return grant

    @staticmethod
    @retry_on_db_lock()
    def delete(user_id: str) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute("DELETE FROM email_grants WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0


class OAuthStateRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(state: str, user_id: str, redirect_uri: str, now: datetime | None = None) -> None:
        now = now or utc_now()
        expires_at = now + timedelta(seconds=OAUTH_STATE_EXPIRY_SECONDS)
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO oauth_states (state, user_id, redirect_uri, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (state, user_id, redirect_uri, expires_at.isoformat(), now.isoformat()),
            )

    @staticmethod
    @retry_on_db_lock()
    def consume(state: str, now: datetime | None = None) -> dict[str, str] | None:
        """
        Delete and return the state's {user_id, redirect_uri}.

        Returns None for unknown or expired states. Expired rows are
        removed either way, so a state can be used at most once.
        """
        now = now or utc_now()
        with db_transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM oauth_states WHERE state = ?", (state,)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM oauth_states WHERE state = ?", (state,))

        expires_at = parse_dt(row["expires_at"])
        if expires_at is None or expires_at < now:
            return None
        return {"user_id": row["user_id"], "redirect_uri": row["redirect_uri"]}

    @staticmethod
    @retry_on_db_lock()
    def delete_expired(now: datetime | None = None) -> int:
        now = now or utc_now()
        with db_transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM oauth_states WHERE expires_at < ?", (now.isoformat(),)
            )
        return cursor.rowcount
