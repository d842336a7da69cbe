"""
SQLite-backed repository.

Provides a Database class that implements the Repository interface on top
of SQLite. Each method opens its own short-lived connection, so the class
is safe to share between refresh and download threads. Status changes
that must not race are single conditional UPDATE statements.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from podcatcher.exceptions import DuplicateSubscriptionError
from podcatcher.models.entities import (
    DownloadStatus,
    Episode,
    EpisodeFilter,
    FilterMode,
    Subscription,
    SubscriptionSort,
)
from podcatcher.models.repository import Repository, check_override_fields
from podcatcher.models.schema import create_all_tables

logger = logging.getLogger(__name__)

# Seconds a connection waits on a locked database before failing
BUSY_TIMEOUT = 30.0

_SUBSCRIPTION_SELECT = """
    SELECT s.*,
           (SELECT MAX(e.publish_date) FROM episodes e WHERE e.subscription_id = s.id)
               AS last_episode_date
    FROM subscriptions s
"""

_SORT_COLUMNS = {
    SubscriptionSort.DATE_ADDED: "s.created_at",
    SubscriptionSort.NAME: "s.title COLLATE NOCASE",
    SubscriptionSort.LAST_EPISODE: "last_episode_date",
}


def _to_db_time(value: datetime) -> str:
    """Normalize a datetime to a sortable UTC ISO-8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Database(Repository):
    """
    Database connection and query management.

    Example:
        >>> db = Database(Path("data/podcatcher.db"))
        >>> db.initialize()
        >>> sub = db.add_subscription("https://example.com/feed.xml", title="Example")
    """

    def __init__(self, db_path: Path):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        """
        Initialize database schema.

        Safe to call multiple times (idempotent).
        """
        create_all_tables(self.db_path)

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.

        Commits on success, rolls back on error, always closes.

        Yields:
            sqlite3.Connection: Database connection with row factory set
        """
        conn = sqlite3.connect(str(self.db_path), timeout=BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -------------------------------------------------------------------
    #  Subscriptions
    # -------------------------------------------------------------------

    def add_subscription(
        self, feed_url: str, title: str = "", artwork_url: str = ""
    ) -> Subscription:
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO subscriptions (feed_url, title, artwork_url, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (feed_url, title, artwork_url, _to_db_time(datetime.now(timezone.utc))),
                )
                subscription_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateSubscriptionError(feed_url) from exc
        return self.get_subscription(subscription_id)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self.get_connection() as conn:
            row = conn.execute(
                _SUBSCRIPTION_SELECT + " WHERE s.id = ?", (subscription_id,)
            ).fetchone()
        return Subscription.model_validate(dict(row)) if row else None

    def list_subscriptions(
        self,
        sort: SubscriptionSort = SubscriptionSort.DATE_ADDED,
        descending: bool = False,
        include_deleted: bool = False,
    ) -> List[Subscription]:
        direction = "DESC" if descending else "ASC"
        query = _SUBSCRIPTION_SELECT
        if not include_deleted:
            query += " WHERE s.deleted_at IS NULL"
        query += f" ORDER BY {_SORT_COLUMNS[sort]} {direction}, s.id {direction}"

        with self.get_connection() as conn:
            rows = conn.execute(query).fetchall()
        return [Subscription.model_validate(dict(row)) for row in rows]

    def update_subscription_feed_info(
        self, subscription_id: int, title: str, artwork_url: str
    ) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE subscriptions SET title = ?, artwork_url = ? WHERE id = ?",
                (title, artwork_url, subscription_id),
            )

    def update_subscription_overrides(
        self, subscription_id: int, overrides: Dict[str, Optional[Any]]
    ) -> bool:
        check_override_fields(overrides)
        if not overrides:
            return self.get_subscription(subscription_id) is not None
        # Reject out-of-range values before writing
        Subscription.model_validate(
            {"id": subscription_id, "feed_url": "", "created_at": datetime.now(timezone.utc), **overrides}
        )
        assignments = ", ".join(f"{name} = ?" for name in overrides)
        values = [
            int(value) if isinstance(value, bool) else value
            for value in overrides.values()
        ]
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE subscriptions SET {assignments} WHERE id = ?",
                (*values, subscription_id),
            )
            return cursor.rowcount == 1

    def mark_subscription_deleted(self, subscription_id: int) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE subscriptions SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_to_db_time(datetime.now(timezone.utc)), subscription_id),
            )

    def delete_subscription(self, subscription_id: int) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))

    # -------------------------------------------------------------------
    #  Episodes
    # -------------------------------------------------------------------

    def insert_episode(
        self,
        subscription_id: int,
        guid: str,
        title: str,
        enclosure_url: str,
        publish_date: datetime,
        artwork_url: str = "",
    ) -> Optional[Episode]:
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO episodes (
                        subscription_id, guid, title, publish_date, enclosure_url, artwork_url
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        subscription_id,
                        guid,
                        title,
                        _to_db_time(publish_date),
                        enclosure_url,
                        artwork_url,
                    ),
                )
                if cursor.rowcount == 0:
                    return None
                episode_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            # Subscription removed between fetch and insert
            logger.debug("Episode %s not inserted: %s", guid, exc)
            return None
        return self.get_episode(episode_id)

    def known_guids(self, subscription_id: int) -> Set[str]:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "SELECT guid FROM episodes WHERE subscription_id = ?", (subscription_id,)
            )
            return {row[0] for row in cursor.fetchall()}

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone()
        return Episode.model_validate(dict(row)) if row else None

    def list_episodes(
        self, subscription_id: int, episode_filter: Optional[EpisodeFilter] = None
    ) -> List[Episode]:
        episode_filter = episode_filter or EpisodeFilter()
        clauses = ["subscription_id = ?"]
        params: list = [subscription_id]

        if episode_filter.downloaded is FilterMode.ONLY:
            clauses.append("status = ?")
            params.append(DownloadStatus.DOWNLOADED.value)
        elif episode_filter.downloaded is FilterMode.EXCLUDE:
            clauses.append("status != ?")
            params.append(DownloadStatus.DOWNLOADED.value)

        if episode_filter.played is FilterMode.ONLY:
            clauses.append("played = 1")
        elif episode_filter.played is FilterMode.EXCLUDE:
            clauses.append("played = 0")

        if episode_filter.from_date is not None:
            clauses.append("publish_date >= ?")
            params.append(_to_db_time(episode_filter.from_date))

        query = (
            "SELECT * FROM episodes WHERE "
            + " AND ".join(clauses)
            + " ORDER BY publish_date DESC, id DESC"
        )
        if episode_filter.count is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([episode_filter.count, (episode_filter.page - 1) * episode_filter.count])

        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Episode.model_validate(dict(row)) for row in rows]

    def has_episodes(self, subscription_id: int) -> bool:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM episodes WHERE subscription_id = ? LIMIT 1",
                (subscription_id,),
            ).fetchone()
        return row is not None

    def transition_status(
        self,
        episode_id: int,
        from_statuses: Iterable[DownloadStatus],
        to_status: DownloadStatus,
    ) -> bool:
        allowed = [DownloadStatus(s).value for s in from_statuses]
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE episodes SET status = ?, updated_at = datetime('now')
                WHERE id = ? AND status IN ({placeholders})
                """,
                (to_status.value, episode_id, *allowed),
            )
            return cursor.rowcount == 1

    def complete_download(self, episode_id: int, local_path: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE episodes
                SET status = ?, local_path = ?, updated_at = datetime('now')
                WHERE id = ? AND status = ?
                """,
                (
                    DownloadStatus.DOWNLOADED.value,
                    local_path,
                    episode_id,
                    DownloadStatus.DOWNLOADING.value,
                ),
            )
            return cursor.rowcount == 1

    def reset_download(self, episode_id: int) -> Optional[Episode]:
        with self.get_connection() as conn:
            # Hold the write lock across read and update so a worker cannot
            # complete the download in between
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE episodes SET status = ?, local_path = '', updated_at = datetime('now')
                WHERE id = ?
                """,
                (DownloadStatus.NOT_DOWNLOADED.value, episode_id),
            )
        return Episode.model_validate(dict(row))

    def set_played(self, episode_id: int, played: bool) -> bool:
        return self._set_flag(episode_id, "played", played)

    def set_bookmarked(self, episode_id: int, bookmarked: bool) -> bool:
        return self._set_flag(episode_id, "bookmarked", bookmarked)

    def _set_flag(self, episode_id: int, column: str, value: bool) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE episodes SET {column} = ?, updated_at = datetime('now') WHERE id = ?",
                (1 if value else 0, episode_id),
            )
            return cursor.rowcount == 1
