"""
SQLite schema and database initialization.

Defines the tables for subscriptions and their episodes. Provides
functions to create and inspect the database.
"""

import sqlite3
from pathlib import Path


SCHEMA_SQL = """
-- ============================================================
-- SUBSCRIPTIONS: Followed feeds
-- ============================================================
CREATE TABLE IF NOT EXISTS subscriptions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_url        TEXT    NOT NULL UNIQUE,
    title           TEXT    NOT NULL DEFAULT '',
    artwork_url     TEXT    NOT NULL DEFAULT '',
    auto_download   INTEGER CHECK (auto_download IN (0, 1)),          -- NULL = global setting
    initial_download_count INTEGER CHECK (initial_download_count >= 0),
    append_date_to_filename INTEGER CHECK (append_date_to_filename IN (0, 1)),
    append_episode_number_to_filename INTEGER CHECK (append_episode_number_to_filename IN (0, 1)),
    created_at      TEXT    NOT NULL,  -- ISO-8601 UTC
    deleted_at      TEXT               -- soft-deletion marker
);

-- ============================================================
-- EPISODES: One row per feed item, owned by a subscription
-- ============================================================
CREATE TABLE IF NOT EXISTS episodes (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    subscription_id INTEGER NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
    guid            TEXT    NOT NULL,  -- feed GUID, or enclosure URL when absent
    title           TEXT    NOT NULL,
    publish_date    TEXT    NOT NULL,  -- ISO-8601 UTC
    enclosure_url   TEXT    NOT NULL,
    local_path      TEXT    NOT NULL DEFAULT '',
    status          TEXT    NOT NULL DEFAULT 'not_downloaded'
                    CHECK (status IN ('not_downloaded', 'queued', 'downloading', 'downloaded', 'failed')),
    played          INTEGER NOT NULL DEFAULT 0 CHECK (played IN (0, 1)),
    bookmarked      INTEGER NOT NULL DEFAULT 0 CHECK (bookmarked IN (0, 1)),
    artwork_url     TEXT    NOT NULL DEFAULT '',
    created_at      TEXT    DEFAULT (datetime('now')),
    updated_at      TEXT    DEFAULT (datetime('now')),
    UNIQUE (subscription_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_episodes_subscription ON episodes(subscription_id, publish_date);
CREATE INDEX IF NOT EXISTS idx_episodes_status ON episodes(status);
"""


def create_all_tables(db_path: Path) -> None:
    """
    Create database and all tables with indexes.

    This function is idempotent - safe to call multiple times.

    Args:
        db_path: Path to the SQLite database file to create/initialize
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA encoding = 'UTF-8'")
    conn.execute("PRAGMA foreign_keys = ON")
    # WAL lets download workers read while another thread writes
    conn.execute("PRAGMA journal_mode = WAL")

    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()


def get_table_names(db_path: Path) -> list[str]:
    """
    Get list of all tables in the database.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        List of table names
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' "
            "AND name != 'sqlite_sequence' ORDER BY name"
        )
        return [row[0] for row in cursor.fetchall()]
    finally:
        conn.close()
