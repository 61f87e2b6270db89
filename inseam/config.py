"""Centralized configuration for the Inseam backend.

Re-exports everything from inseam.infrastructure.settings so callers have a
single import point, then adds typed constants for database, email fetch,
retry, pipeline, rate-limiting, and API settings.  Environment variable
overrides use safe defaults so the app starts without extra env configuration.
"""

from __future__ import annotations

import os

from inseam.infrastructure.settings import *  # noqa: F401, F403


def _env(key: str, default: str) -> str:
    """Read an INSEAM_* env var with a string default."""
    return os.getenv(key, default)


# --- App ---
APP_VERSION: str = "1.0.0"

# --- Database ---
DB_POOL_SIZE: int = int(_env("INSEAM_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(_env("INSEAM_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(_env("INSEAM_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(_env("INSEAM_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(_env("INSEAM_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(_env("INSEAM_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(_env("INSEAM_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(_env("INSEAM_DB_RETRY_JITTER", "0.1"))

# --- Retry / backoff (external APIs) ---
RETRY_MAX_ATTEMPTS: int = int(_env("INSEAM_RETRY_MAX_ATTEMPTS", "3"))
RETRY_INITIAL_DELAY_MS: int = int(_env("INSEAM_RETRY_INITIAL_DELAY_MS", "1000"))
RETRY_MAX_DELAY_MS: int = int(_env("INSEAM_RETRY_MAX_DELAY_MS", "32000"))
RETRY_BACKOFF_MULTIPLIER: float = float(_env("INSEAM_RETRY_BACKOFF_MULTIPLIER", "2"))

# --- Email connector ---
DEFAULT_EMAIL_FETCH_LIMIT: int = 5
MAX_EMAIL_FETCH_LIMIT: int = 100
MAX_EMAIL_SUMMARY_COUNT: int = 50
EMAIL_HTTP_TIMEOUT_SECONDS: float = float(_env("INSEAM_EMAIL_HTTP_TIMEOUT", "15.0"))
EMAIL_BODY_MAX_CHARS: int = 10000
OAUTH_STATE_EXPIRY_SECONDS: int = 10 * 60

# --- Processed email checkpoint ---
PROCESSED_EMAIL_LOOKBACK_DAYS: int = 90
PROCESSED_EMAIL_RETENTION_DAYS: int = 30
PROCESSED_EMAIL_CLEANUP_BATCH: int = 100

# --- Pipeline ---
BATCH_CONCURRENCY: int = int(_env("INSEAM_BATCH_CONCURRENCY", "5"))
PIPELINE_BODY_TRUNCATION: int = 4000
SOURCE_QUOTE_MAX_CHARS: int = 500
SUMMARY_TITLE_MAX_CHARS: int = 50

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(_env("INSEAM_LLM_TIMEOUT", "30"))

# --- Trackers ---
ALIAS_MAX_LENGTH: int = 100
TEXT_VALUE_MAX_LENGTH: int = 1000

# --- Rate Limiting ---
RATE_LIMIT_RPM: int = 60
RATE_LIMIT_RPH: int = 1000
RATE_LIMIT_MAX_IPS: int = 10000

# Per-user endpoint limits: endpoint -> (requests, window seconds)
USER_RATE_LIMITS: dict[str, tuple[int, int]] = {
    "nylas.fetchEmails": (10, 60),
    "nylas.auth": (5, 10 * 60),
    "emails.summarize": (20, 60 * 60),
    "default": (30, 60),
}

# --- API ---
API_LIST_LIMIT_DEFAULT: int = 100
API_LIST_LIMIT_MAX: int = 500
MARK_ALL_VIEWED_LIMIT: int = 500
