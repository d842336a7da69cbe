"""
Podcast service: the operations exposed to callers.

Wires the repository, feed fetcher, download scheduler and refresh
coordinator together and exposes the subscription, refresh, download and
episode-state operations used by the CLI (or any other front end).

Example:
    >>> with PodcastService.from_config(get_config()) as service:
    ...     sub = service.add_subscription("https://example.com/feed.xml", wait=True)
    ...     for episode in service.list_episodes(sub.id):
    ...         print(episode.title, episode.status.value)
"""

import logging
import shutil
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from podcatcher.config import Config, DownloadSettings, SettingsStore, load_podcatcher_yaml
from podcatcher.downloads.downloader import EpisodeDownloader, remove_quietly, subscription_dir
from podcatcher.downloads.scheduler import DownloadScheduler
from podcatcher.exceptions import DuplicateSubscriptionError, NotFoundError
from podcatcher.ingestion.rss_parser import FeedFetcher
from podcatcher.models.database import Database
from podcatcher.models.entities import (
    ENQUEUEABLE_STATUSES,
    DownloadStatus,
    Episode,
    EpisodeFilter,
    Subscription,
    SubscriptionSort,
)
from podcatcher.models.repository import Repository
from podcatcher.triggers.refresh import RefreshCoordinator, RefreshResult

logger = logging.getLogger(__name__)


class PodcastService:
    """
    Subscription and episode operations over a shared repository.

    Owns the two long-lived worker pools (refresh and download); call
    ``close()`` or use the service as a context manager to stop them.
    """

    def __init__(
        self,
        repository: Repository,
        settings_store: SettingsStore,
        fetcher: FeedFetcher,
        scheduler: DownloadScheduler,
        coordinator: RefreshCoordinator,
        refresh_interval_minutes: float = 0,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.refresh_interval_minutes = refresh_interval_minutes

    @classmethod
    def from_config(
        cls,
        config: Config,
        repository: Optional[Repository] = None,
        yaml_config: Optional[Dict[str, Any]] = None,
    ) -> "PodcastService":
        """
        Build a service from application configuration.

        Uses the SQLite database at ``config.db_path`` unless a repository
        is given, seeds the download settings from podcatcher.yaml, and
        re-queues downloads interrupted by a previous run.
        """
        if repository is None:
            database = Database(config.db_path)
            database.initialize()
            repository = database
        if yaml_config is None:
            yaml_config = load_podcatcher_yaml()

        settings_store = SettingsStore(config.download_settings(yaml_config))
        fetcher = FeedFetcher(
            timeout=config.fetch_timeout_seconds,
            max_redirects=config.max_redirects,
            user_agent=config.user_agent,
        )
        downloader = EpisodeDownloader(
            chunk_size=config.download_chunk_size,
            connect_timeout=config.fetch_timeout_seconds,
            read_timeout=config.download_read_timeout,
            max_redirects=config.max_redirects,
            user_agent=config.user_agent,
        )
        scheduler = DownloadScheduler(
            repository,
            settings_store,
            config.download_dir,
            downloader=downloader,
            workers=config.download_workers,
            queue_size=config.download_queue_size,
            max_attempts=config.download_max_attempts,
            backoff_seconds=config.download_backoff_seconds,
        )
        coordinator = RefreshCoordinator(
            repository,
            fetcher,
            scheduler,
            settings_store,
            workers=config.refresh_workers,
            max_attempts=config.refresh_max_attempts,
            backoff_seconds=config.refresh_backoff_seconds,
        )
        scheduler.requeue_interrupted()
        return cls(
            repository,
            settings_store,
            fetcher,
            scheduler,
            coordinator,
            refresh_interval_minutes=config.refresh_interval_minutes,
        )

    # -------------------------------------------------------------------
    #  Subscriptions
    # -------------------------------------------------------------------

    def add_subscription(self, url: str, wait: bool = False) -> Subscription:
        """
        Subscribe to a feed.

        The feed is fetched once to validate it and to take its title and
        artwork; its episodes are then reconciled by a background refresh
        that reuses the fetched document.

        Args:
            url: Feed URL
            wait: Block until the initial refresh has finished

        Raises:
            DuplicateSubscriptionError: If the URL is already subscribed
            FetchError: If the feed cannot be fetched or parsed
        """
        url = url.strip()
        if any(s.feed_url == url for s in self.repository.list_subscriptions(include_deleted=True)):
            raise DuplicateSubscriptionError(url)

        document = self.coordinator.fetch(url)
        subscription = self.repository.add_subscription(
            url, title=document.title, artwork_url=document.artwork_url
        )
        logger.info("Subscribed to '%s' (%s) as %d", subscription.title, url, subscription.id)

        future = self.coordinator.refresh_one(subscription.id, document=document)
        if wait:
            future.result()
            subscription = self.get_subscription(subscription.id)
        return subscription

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None or subscription.is_deleted:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def list_subscriptions(
        self,
        sort: Union[SubscriptionSort, str] = SubscriptionSort.DATE_ADDED,
        descending: bool = False,
    ) -> List[Subscription]:
        return self.repository.list_subscriptions(SubscriptionSort(sort), descending)

    def update_subscription_settings(self, subscription_id: int, **overrides: Any) -> Subscription:
        """
        Set per-subscription download-policy overrides.

        Pass None to fall back to the global setting. Only future
        decisions are affected.
        """
        self.get_subscription(subscription_id)
        if not self.repository.update_subscription_overrides(subscription_id, overrides):
            raise NotFoundError(f"Subscription {subscription_id} not found")
        logger.info("Subscription %d settings updated: %s", subscription_id, overrides)
        return self.get_subscription(subscription_id)

    def delete_subscription(self, subscription_id: int, delete_files: bool = True) -> None:
        """
        Remove a subscription and its episodes.

        In-flight downloads observe the deletion marker and stop without
        writing state.

        Args:
            subscription_id: Subscription to remove
            delete_files: Also remove the subscription's storage directory
        """
        subscription = self.get_subscription(subscription_id)
        self.repository.mark_subscription_deleted(subscription_id)

        if delete_files:
            for episode in self.repository.list_episodes(subscription_id):
                if episode.local_path:
                    remove_quietly(Path(episode.local_path))
            directory = subscription_dir(self.scheduler.download_dir, subscription)
            if directory.exists():
                shutil.rmtree(directory, ignore_errors=True)

        self.repository.delete_subscription(subscription_id)
        logger.info(
            "Removed subscription %d '%s'%s",
            subscription_id,
            subscription.title,
            " and its files" if delete_files else "",
        )

    def delete_subscription_files(self, subscription_id: int) -> int:
        """
        Delete every downloaded file of a subscription, keeping the subscription.

        Queued and in-flight downloads are cancelled as well.

        Returns:
            Number of episodes reset to not_downloaded
        """
        self.get_subscription(subscription_id)
        reset = 0
        for episode in self.repository.list_episodes(subscription_id):
            if episode.status in (DownloadStatus.NOT_DOWNLOADED, DownloadStatus.FAILED):
                continue
            self.delete_downloaded_file(episode.id)
            reset += 1
        return reset

    # -------------------------------------------------------------------
    #  Refresh
    # -------------------------------------------------------------------

    def refresh_all(self, wait: bool = False) -> Union[List[Future], List[RefreshResult]]:
        """Refresh every subscription; with wait, return their results."""
        if wait:
            return self.coordinator.refresh_all_and_wait()
        return self.coordinator.refresh_all()

    def refresh_one(self, subscription_id: int, wait: bool = False) -> Union[Future, RefreshResult]:
        """Refresh one subscription; with wait, return its result."""
        future = self.coordinator.refresh_one(subscription_id)
        return future.result() if wait else future

    def start_periodic_refresh(self, interval_minutes: Optional[float] = None) -> None:
        interval = self.refresh_interval_minutes if interval_minutes is None else interval_minutes
        self.coordinator.start_periodic(interval)

    # -------------------------------------------------------------------
    #  Downloads
    # -------------------------------------------------------------------

    def enqueue_all_undownloaded(self, subscription_id: int) -> List[Future]:
        """Queue every not-downloaded or failed episode of a subscription."""
        self.get_subscription(subscription_id)
        episode_ids = [
            e.id for e in self.repository.list_episodes(subscription_id)
            if e.status in ENQUEUEABLE_STATUSES
        ]
        futures = self.scheduler.enqueue_many(episode_ids)
        logger.info("Queued %d episodes of subscription %d", len(futures), subscription_id)
        return futures

    def enqueue_one(self, episode_id: int) -> Optional[Future]:
        """
        Queue one episode.

        Returns:
            Future of the download, or None if it is already queued,
            downloading or downloaded

        Raises:
            NotFoundError: If the episode does not exist
        """
        self.get_episode(episode_id)
        return self.scheduler.enqueue(episode_id)

    def delete_downloaded_file(self, episode_id: int) -> Episode:
        """
        Delete an episode's file and return it to not_downloaded.

        A queued or in-flight download of the episode is cancelled.
        """
        previous = self.repository.reset_download(episode_id)
        if previous is None:
            raise NotFoundError(f"Episode {episode_id} not found")
        if previous.local_path:
            remove_quietly(Path(previous.local_path))
        logger.info("Deleted download of episode %d (was %s)", episode_id, previous.status.value)
        return self.get_episode(episode_id)

    # -------------------------------------------------------------------
    #  Episode state
    # -------------------------------------------------------------------

    def get_episode(self, episode_id: int) -> Episode:
        episode = self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")
        return episode

    def list_episodes(
        self, subscription_id: int, episode_filter: Optional[EpisodeFilter] = None
    ) -> List[Episode]:
        self.get_subscription(subscription_id)
        return self.repository.list_episodes(subscription_id, episode_filter)

    def set_played(self, episode_id: int, played: bool) -> None:
        if not self.repository.set_played(episode_id, played):
            raise NotFoundError(f"Episode {episode_id} not found")

    def set_bookmarked(self, episode_id: int, bookmarked: bool) -> None:
        if not self.repository.set_bookmarked(episode_id, bookmarked):
            raise NotFoundError(f"Episode {episode_id} not found")

    # -------------------------------------------------------------------
    #  Settings and lifecycle
    # -------------------------------------------------------------------

    def settings(self) -> DownloadSettings:
        return self.settings_store.snapshot()

    def update_settings(self, **changes: Any) -> DownloadSettings:
        return self.settings_store.update(**changes)

    def close(self, wait: bool = True) -> None:
        """Stop refreshing, then stop the download workers."""
        self.coordinator.shutdown(wait=wait)
        self.scheduler.shutdown(wait=wait)

    def __enter__(self) -> "PodcastService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
