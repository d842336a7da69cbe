"""
Data models and storage.

Provides the SQLite schema, Pydantic record models, the Repository
interface and its SQLite and in-memory implementations.
"""

from podcatcher.models.database import Database
from podcatcher.models.entities import (
    DownloadStatus,
    Episode,
    EpisodeFilter,
    FilterMode,
    Subscription,
    SubscriptionSort,
)
from podcatcher.models.repository import InMemoryRepository, Repository
from podcatcher.models.schema import SCHEMA_SQL, create_all_tables, get_table_names

__all__ = [
    "Database",
    "InMemoryRepository",
    "Repository",
    "create_all_tables",
    "get_table_names",
    "SCHEMA_SQL",
    "DownloadStatus",
    "Episode",
    "EpisodeFilter",
    "FilterMode",
    "Subscription",
    "SubscriptionSort",
]
