"""
Pydantic data models for subscriptions and episodes.

Defines type-safe data models with validation for the records the
repository stores, plus the enumerations used for download status,
listing filters and subscription sorting.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DownloadStatus(str, Enum):
    """Per-episode download state."""
    NOT_DOWNLOADED = "not_downloaded"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


# States from which an episode may be (re)queued
ENQUEUEABLE_STATUSES = frozenset({DownloadStatus.NOT_DOWNLOADED, DownloadStatus.FAILED})

# States in which a download is pending or running
ACTIVE_STATUSES = frozenset({DownloadStatus.QUEUED, DownloadStatus.DOWNLOADING})


class FilterMode(str, Enum):
    """
    Filter on a boolean episode property.

    ANY ignores the property, ONLY keeps episodes where it holds,
    EXCLUDE keeps episodes where it does not.
    """
    ANY = "any"
    ONLY = "only"
    EXCLUDE = "exclude"

    def accepts(self, value: bool) -> bool:
        if self is FilterMode.ONLY:
            return value
        if self is FilterMode.EXCLUDE:
            return not value
        return True


class SubscriptionSort(str, Enum):
    """Sort keys for subscription listings."""
    DATE_ADDED = "dateadded"
    NAME = "name"
    LAST_EPISODE = "lastepisode"


class Subscription(BaseModel):
    """
    Subscription data model.

    A followed feed. Policy override fields left as None fall back to
    the global DownloadSettings.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    feed_url: str
    title: str = ""
    artwork_url: str = ""
    auto_download: Optional[bool] = None
    initial_download_count: Optional[int] = Field(default=None, ge=0)
    append_date_to_filename: Optional[bool] = None
    append_episode_number_to_filename: Optional[bool] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    last_episode_date: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Episode(BaseModel):
    """
    Episode data model.

    One media item of a subscription's feed, identified within the
    subscription by ``guid`` (feed GUID or, failing that, enclosure URL).
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    guid: str
    title: str
    publish_date: datetime
    enclosure_url: str
    local_path: str = ""
    status: DownloadStatus = DownloadStatus.NOT_DOWNLOADED
    played: bool = False
    bookmarked: bool = False
    artwork_url: str = ""

    @property
    def is_downloaded(self) -> bool:
        return self.status == DownloadStatus.DOWNLOADED


class EpisodeFilter(BaseModel):
    """Filters and paging for episode listings (newest first)."""

    downloaded: FilterMode = FilterMode.ANY
    played: FilterMode = FilterMode.ANY
    from_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    count: Optional[int] = Field(default=None, ge=1)

    @field_validator("from_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, episode: Episode) -> bool:
        if not self.downloaded.accepts(episode.is_downloaded):
            return False
        if not self.played.accepts(episode.played):
            return False
        if self.from_date is not None and episode.publish_date < self.from_date:
            return False
        return True
