"""
Repository interface over subscription and episode storage.

Every component of the refresh/download pipeline receives a Repository
instead of reaching for a global database handle. Each method is a single
atomic record operation; ``transition_status`` and ``complete_download``
are compare-and-swap updates so that concurrent callers cannot both win
the same state change.

Two implementations exist:

- ``podcatcher.models.database.Database`` -- SQLite, used in production
- ``InMemoryRepository`` -- lock-guarded dicts, used by tests
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from podcatcher.exceptions import DuplicateSubscriptionError
from podcatcher.models.entities import (
    DownloadStatus,
    Episode,
    EpisodeFilter,
    Subscription,
    SubscriptionSort,
)


# Subscription columns that override the global download settings
OVERRIDE_FIELDS = (
    "auto_download",
    "initial_download_count",
    "append_date_to_filename",
    "append_episode_number_to_filename",
)


def check_override_fields(overrides: Dict[str, Any]) -> None:
    unknown = set(overrides) - set(OVERRIDE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown subscription settings: {', '.join(sorted(unknown))}")


def paginate(episodes: List[Episode], episode_filter: EpisodeFilter) -> List[Episode]:
    """Apply the filter's page/count window to an already-sorted list."""
    if episode_filter.count is None:
        return episodes
    start = (episode_filter.page - 1) * episode_filter.count
    return episodes[start:start + episode_filter.count]


class Repository(ABC):
    """Storage for Subscription and Episode records."""

    # -------------------------------------------------------------------
    #  Subscriptions
    # -------------------------------------------------------------------

    @abstractmethod
    def add_subscription(
        self, feed_url: str, title: str = "", artwork_url: str = ""
    ) -> Subscription:
        """
        Insert a new subscription.

        Raises:
            DuplicateSubscriptionError: If feed_url is already subscribed
        """

    @abstractmethod
    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        """Return the subscription, or None if it does not exist."""

    @abstractmethod
    def list_subscriptions(
        self,
        sort: SubscriptionSort = SubscriptionSort.DATE_ADDED,
        descending: bool = False,
        include_deleted: bool = False,
    ) -> List[Subscription]:
        """List subscriptions in the requested order."""

    @abstractmethod
    def update_subscription_feed_info(
        self, subscription_id: int, title: str, artwork_url: str
    ) -> None:
        """Record the title and artwork most recently seen in the feed."""

    @abstractmethod
    def update_subscription_overrides(
        self, subscription_id: int, overrides: Dict[str, Optional[Any]]
    ) -> bool:
        """
        Write download-policy overrides; None clears an override.

        Keys must be names from OVERRIDE_FIELDS.

        Returns:
            False if the subscription is unknown
        """

    @abstractmethod
    def mark_subscription_deleted(self, subscription_id: int) -> None:
        """Set the soft-deletion marker observed by in-flight downloads."""

    @abstractmethod
    def delete_subscription(self, subscription_id: int) -> None:
        """Remove the subscription and all of its episodes."""

    # -------------------------------------------------------------------
    #  Episodes
    # -------------------------------------------------------------------

    @abstractmethod
    def insert_episode(
        self,
        subscription_id: int,
        guid: str,
        title: str,
        enclosure_url: str,
        publish_date: datetime,
        artwork_url: str = "",
    ) -> Optional[Episode]:
        """
        Insert an episode unless (subscription_id, guid) already exists.

        Returns:
            The new Episode, or None if it was already stored
        """

    @abstractmethod
    def known_guids(self, subscription_id: int) -> Set[str]:
        """Identifiers of all stored episodes of a subscription."""

    @abstractmethod
    def get_episode(self, episode_id: int) -> Optional[Episode]:
        """Return the episode, or None if it does not exist."""

    @abstractmethod
    def list_episodes(
        self, subscription_id: int, episode_filter: Optional[EpisodeFilter] = None
    ) -> List[Episode]:
        """List a subscription's episodes, newest first."""

    @abstractmethod
    def has_episodes(self, subscription_id: int) -> bool:
        """True if any episode of the subscription is stored, whatever its status."""

    @abstractmethod
    def transition_status(
        self,
        episode_id: int,
        from_statuses: Iterable[DownloadStatus],
        to_status: DownloadStatus,
    ) -> bool:
        """
        Atomically move an episode to to_status if it is in from_statuses.

        Returns:
            True if this call performed the transition
        """

    @abstractmethod
    def complete_download(self, episode_id: int, local_path: str) -> bool:
        """
        Atomically move DOWNLOADING -> DOWNLOADED and record local_path.

        Returns:
            False if the episode is gone or no longer DOWNLOADING
        """

    @abstractmethod
    def reset_download(self, episode_id: int) -> Optional[Episode]:
        """
        Clear local_path and set NOT_DOWNLOADED.

        Returns:
            The episode as it was before the reset, or None if not found
        """

    @abstractmethod
    def set_played(self, episode_id: int, played: bool) -> bool:
        """Write the played flag. Returns False if the episode is unknown."""

    @abstractmethod
    def set_bookmarked(self, episode_id: int, bookmarked: bool) -> bool:
        """Write the bookmarked flag. Returns False if the episode is unknown."""


class InMemoryRepository(Repository):
    """
    Repository held in process memory.

    All reads and writes happen under a single lock, which makes each
    method atomic with respect to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._episodes: Dict[int, Episode] = {}
        self._episode_keys: Dict[Tuple[int, str], int] = {}
        self._next_subscription_id = 1
        self._next_episode_id = 1

    def add_subscription(
        self, feed_url: str, title: str = "", artwork_url: str = ""
    ) -> Subscription:
        with self._lock:
            if any(s.feed_url == feed_url for s in self._subscriptions.values()):
                raise DuplicateSubscriptionError(feed_url)
            subscription = Subscription(
                id=self._next_subscription_id,
                feed_url=feed_url,
                title=title,
                artwork_url=artwork_url,
                created_at=datetime.now(timezone.utc),
            )
            self._subscriptions[subscription.id] = subscription
            self._next_subscription_id += 1
            return subscription.model_copy()

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return None
            return self._with_last_episode(subscription)

    def list_subscriptions(
        self,
        sort: SubscriptionSort = SubscriptionSort.DATE_ADDED,
        descending: bool = False,
        include_deleted: bool = False,
    ) -> List[Subscription]:
        with self._lock:
            subscriptions = [
                self._with_last_episode(s)
                for s in self._subscriptions.values()
                if include_deleted or not s.is_deleted
            ]

        if sort == SubscriptionSort.NAME:
            key = lambda s: (s.title.lower(), s.id)
        elif sort == SubscriptionSort.LAST_EPISODE:
            oldest = datetime.min.replace(tzinfo=timezone.utc)
            key = lambda s: (s.last_episode_date or oldest, s.id)
        else:
            key = lambda s: (s.created_at, s.id)
        return sorted(subscriptions, key=key, reverse=descending)

    def update_subscription_feed_info(
        self, subscription_id: int, title: str, artwork_url: str
    ) -> None:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None:
                self._subscriptions[subscription_id] = subscription.model_copy(
                    update={"title": title, "artwork_url": artwork_url}
                )

    def update_subscription_overrides(
        self, subscription_id: int, overrides: Dict[str, Optional[Any]]
    ) -> bool:
        check_override_fields(overrides)
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return False
            merged = {**subscription.model_dump(), **overrides}
            self._subscriptions[subscription_id] = Subscription.model_validate(merged)
            return True

    def mark_subscription_deleted(self, subscription_id: int) -> None:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is not None and not subscription.is_deleted:
                self._subscriptions[subscription_id] = subscription.model_copy(
                    update={"deleted_at": datetime.now(timezone.utc)}
                )

    def delete_subscription(self, subscription_id: int) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)
            doomed = [e.id for e in self._episodes.values() if e.subscription_id == subscription_id]
            for episode_id in doomed:
                episode = self._episodes.pop(episode_id)
                self._episode_keys.pop((episode.subscription_id, episode.guid), None)

    def insert_episode(
        self,
        subscription_id: int,
        guid: str,
        title: str,
        enclosure_url: str,
        publish_date: datetime,
        artwork_url: str = "",
    ) -> Optional[Episode]:
        with self._lock:
            if subscription_id not in self._subscriptions:
                return None
            key = (subscription_id, guid)
            if key in self._episode_keys:
                return None
            episode = Episode(
                id=self._next_episode_id,
                subscription_id=subscription_id,
                guid=guid,
                title=title,
                enclosure_url=enclosure_url,
                publish_date=publish_date,
                artwork_url=artwork_url,
            )
            self._episodes[episode.id] = episode
            self._episode_keys[key] = episode.id
            self._next_episode_id += 1
            return episode.model_copy()

    def known_guids(self, subscription_id: int) -> Set[str]:
        with self._lock:
            return {guid for (sub_id, guid) in self._episode_keys if sub_id == subscription_id}

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        with self._lock:
            episode = self._episodes.get(episode_id)
            return episode.model_copy() if episode is not None else None

    def list_episodes(
        self, subscription_id: int, episode_filter: Optional[EpisodeFilter] = None
    ) -> List[Episode]:
        episode_filter = episode_filter or EpisodeFilter()
        with self._lock:
            episodes = [
                e.model_copy()
                for e in self._episodes.values()
                if e.subscription_id == subscription_id and episode_filter.matches(e)
            ]
        episodes.sort(key=lambda e: (e.publish_date, e.id), reverse=True)
        return paginate(episodes, episode_filter)

    def has_episodes(self, subscription_id: int) -> bool:
        with self._lock:
            return any(e.subscription_id == subscription_id for e in self._episodes.values())

    def transition_status(
        self,
        episode_id: int,
        from_statuses: Iterable[DownloadStatus],
        to_status: DownloadStatus,
    ) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None or episode.status not in allowed:
                return False
            self._episodes[episode_id] = episode.model_copy(update={"status": to_status})
            return True

    def complete_download(self, episode_id: int, local_path: str) -> bool:
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None or episode.status != DownloadStatus.DOWNLOADING:
                return False
            self._episodes[episode_id] = episode.model_copy(
                update={"status": DownloadStatus.DOWNLOADED, "local_path": local_path}
            )
            return True

    def reset_download(self, episode_id: int) -> Optional[Episode]:
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None:
                return None
            self._episodes[episode_id] = episode.model_copy(
                update={"status": DownloadStatus.NOT_DOWNLOADED, "local_path": ""}
            )
            return episode.model_copy()

    def set_played(self, episode_id: int, played: bool) -> bool:
        return self._set_flag(episode_id, "played", played)

    def set_bookmarked(self, episode_id: int, bookmarked: bool) -> bool:
        return self._set_flag(episode_id, "bookmarked", bookmarked)

    def _set_flag(self, episode_id: int, name: str, value: bool) -> bool:
        with self._lock:
            episode = self._episodes.get(episode_id)
            if episode is None:
                return False
            self._episodes[episode_id] = episode.model_copy(update={name: value})
            return True

    def _with_last_episode(self, subscription: Subscription) -> Subscription:
        # Caller holds the lock
        dates = [
            e.publish_date for e in self._episodes.values()
            if e.subscription_id == subscription.id
        ]
        return subscription.model_copy(
            update={"last_episode_date": max(dates) if dates else None}
        )
