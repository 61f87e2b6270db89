"""
Database schema initialization for Inseam.

All timestamps are stored as ISO-8601 UTC text; nested structures
(columns, row data, proposals) are stored as JSON text.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from inseam.observability.logging import get_logger

logger = get_logger(__name__)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates the parent directory and database file if needed
    - Creates tables and indexes that don't exist yet
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS trackers (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            slug TEXT NOT NULL,
            description TEXT,
            color TEXT,
            columns TEXT NOT NULL,          -- JSON array of Column
            primary_key_column TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, slug)
        );

        CREATE INDEX IF NOT EXISTS idx_trackers_user_active
        ON trackers(user_id, is_active);

        CREATE TABLE IF NOT EXISTS tracker_rows (
            id TEXT PRIMARY KEY,
            tracker_id TEXT NOT NULL,
            row_id TEXT NOT NULL,           -- primary key value of the row
            data TEXT NOT NULL,             -- JSON object keyed by column key
            created_at TEXT NOT NULL,
            created_by TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            updated_by TEXT NOT NULL,
            UNIQUE(tracker_id, row_id),
            FOREIGN KEY (tracker_id) REFERENCES trackers(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS tracker_row_aliases (
            id TEXT PRIMARY KEY,
            tracker_id TEXT NOT NULL,
            row_id TEXT NOT NULL,
            alias TEXT NOT NULL,            -- normalized lower/trim
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(tracker_id, alias),
            FOREIGN KEY (tracker_id) REFERENCES trackers(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS centralized_updates (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            source TEXT NOT NULL,
            source_id TEXT NOT NULL,
            tracker_matches TEXT NOT NULL,  -- JSON array of TrackerMatch
            tracker_proposals TEXT NOT NULL, -- JSON array of TrackerProposal
            type TEXT NOT NULL,
            category TEXT NOT NULL,
            title TEXT NOT NULL,
            summary TEXT,
            urgency TEXT,
            from_name TEXT,
            from_id TEXT,
            source_subject TEXT,
            source_quote TEXT,
            source_date TEXT,
            processed INTEGER NOT NULL DEFAULT 0,
            processed_at TEXT,
            approved INTEGER NOT NULL DEFAULT 0,
            approved_at TEXT,
            approved_by TEXT,
            rejected INTEGER NOT NULL DEFAULT 0,
            rejected_at TEXT,
            archived_at TEXT,
            viewed_at TEXT,
            viewed_by TEXT,
            created_at TEXT NOT NULL,
            UNIQUE(user_id, source, source_id)
        );

        CREATE INDEX IF NOT EXISTS idx_updates_user_created
        ON centralized_updates(user_id, created_at);

        CREATE TABLE IF NOT EXISTS processed_emails (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            email_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(user_id, email_id)
        );

        CREATE INDEX IF NOT EXISTS idx_processed_emails_created
        ON processed_emails(created_at);

        CREATE TABLE IF NOT EXISTS email_grants (
            user_id TEXT PRIMARY KEY,
            grant_id TEXT NOT NULL,
            email TEXT NOT NULL,
            provider TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS oauth_states (
            state TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            redirect_uri TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS rate_limits (
            user_id TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            window_start REAL NOT NULL,     -- epoch seconds
            count INTEGER NOT NULL,
            PRIMARY KEY (user_id, endpoint)
        );

        CREATE TABLE IF NOT EXISTS batch_jobs (
            workflow_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            status TEXT NOT NULL,
            steps_completed INTEGER NOT NULL DEFAULT 0,
            email_statuses TEXT NOT NULL,   -- JSON object email_id -> sub-status
            statistics TEXT,                -- JSON BatchStatistics once aggregated
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_batch_jobs_user
        ON batch_jobs(user_id, created_at);
    """)

    conn.commit()
    validate_schema(conn)
    conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    required_tables = {
        "trackers": ["id", "user_id", "slug", "columns", "primary_key_column"],
        "tracker_rows": ["id", "tracker_id", "row_id", "data"],
        "tracker_row_aliases": ["id", "tracker_id", "row_id", "alias"],
        "centralized_updates": ["id", "user_id", "source", "source_id", "tracker_proposals"],
        "processed_emails": ["id", "user_id", "email_id", "created_at"],
        "email_grants": ["user_id", "grant_id", "email"],
        "oauth_states": ["state", "user_id", "expires_at"],
        "rate_limits": ["user_id", "endpoint", "window_start", "count"],
        "batch_jobs": ["workflow_id", "user_id", "status", "email_statuses"],
    }

    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(required_tables) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in required_tables.items():
        # Identifiers come from the dict above; PRAGMA cannot be parameterized
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
