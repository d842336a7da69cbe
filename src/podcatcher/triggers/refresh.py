"""
Refresh coordinator for subscribed feeds.

Fetches each subscription's feed, reconciles new entries into episodes,
applies the download policy and hands the selected episodes to the
download scheduler. Refreshes run on a dedicated thread pool, one task
per subscription, and are single-flight: asking for a subscription that
is already being refreshed returns the Future of the refresh in flight.

This module is designed to be used in three ways:

1. **Programmatic** -- call ``refresh_one()`` / ``refresh_all()``.
2. **CLI** -- invoked via ``podcatcher refresh``.
3. **Periodic** -- ``start_periodic()`` refreshes every subscription on
   an interval until shutdown (``podcatcher watch``).

Example:
    >>> coordinator = RefreshCoordinator(repo, FeedFetcher(), scheduler, settings)
    >>> for result in coordinator.refresh_all_and_wait():
    ...     print(result.subscription_id, len(result.new_episode_ids), result.error)
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from podcatcher.config import SettingsStore
from podcatcher.downloads.policy import decide
from podcatcher.downloads.scheduler import DownloadScheduler
from podcatcher.exceptions import FetchError, FetchTransientError, NotFoundError
from podcatcher.ingestion.reconciler import reconcile
from podcatcher.ingestion.rss_parser import FeedDocument, FeedFetcher
from podcatcher.models.repository import Repository
from podcatcher.retry import build_retrying

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Data models
# ---------------------------------------------------------------------------

@dataclass
class RefreshResult:
    """
    Outcome of refreshing one subscription.

    Attributes:
        subscription_id: Subscription that was refreshed
        feed_title: Channel title seen in the feed
        new_episode_ids: Episodes inserted by this refresh
        queued_episode_ids: New episodes handed to the download scheduler
        error: Failure description; empty on success
        checked_at: ISO-8601 timestamp of when the refresh started
    """

    subscription_id: int
    feed_title: str = ""
    new_episode_ids: List[int] = field(default_factory=list)
    queued_episode_ids: List[int] = field(default_factory=list)
    error: str = ""
    checked_at: str = ""

    @property
    def ok(self) -> bool:
        return not self.error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["ok"] = self.ok
        return data

    def to_json(self, indent: int = 2) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


# ---------------------------------------------------------------------------
#  Coordinator
# ---------------------------------------------------------------------------

class RefreshCoordinator:
    """
    Runs subscription refreshes on a bounded thread pool.

    A failed refresh is recorded in its RefreshResult and logged; it never
    prevents other subscriptions from refreshing.
    """

    def __init__(
        self,
        repository: Repository,
        fetcher: FeedFetcher,
        scheduler: DownloadScheduler,
        settings_store: SettingsStore,
        workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.settings_store = settings_store
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="refresh")
        self._in_flight: Dict[int, Future] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._periodic: Optional[threading.Thread] = None

    def refresh_one(
        self, subscription_id: int, document: Optional[FeedDocument] = None
    ) -> Future:
        """
        Refresh a subscription in the background.

        Args:
            subscription_id: Subscription to refresh
            document: Already-fetched feed to reconcile instead of fetching

        Returns:
            Future resolving to a RefreshResult. If a refresh of the same
            subscription is in flight, its Future is returned instead.

        Raises:
            NotFoundError: If the subscription does not exist
        """
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None or subscription.is_deleted:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        with self._lock:
            current = self._in_flight.get(subscription_id)
            if current is not None and not current.done():
                logger.debug("Refresh of subscription %d already in flight", subscription_id)
                return current
            future = self._executor.submit(self._run, subscription_id, document)
            self._in_flight[subscription_id] = future

        future.add_done_callback(lambda f: self._forget(subscription_id, f))
        return future

    def refresh_all(self) -> List[Future]:
        """Refresh every live subscription; returns one Future per subscription."""
        futures = []
        for subscription in self.repository.list_subscriptions():
            try:
                futures.append(self.refresh_one(subscription.id))
            except NotFoundError:
                # Deleted between listing and submission
                continue
        logger.info("Started refresh of %d subscriptions", len(futures))
        return futures

    def refresh_all_and_wait(self, timeout: Optional[float] = None) -> List[RefreshResult]:
        """Refresh every subscription and block until all refreshes finish."""
        futures = self.refresh_all()
        wait_for_futures(futures, timeout=timeout)
        return [f.result() for f in futures if f.done()]

    def start_periodic(self, interval_minutes: float) -> None:
        """
        Refresh all subscriptions now and then every interval_minutes.

        Does nothing if the interval is 0 or a periodic refresh is running.
        """
        if interval_minutes <= 0 or self._periodic is not None:
            return
        self._periodic = threading.Thread(
            target=self._periodic_loop,
            args=(interval_minutes * 60.0,),
            name="refresh-timer",
            daemon=True,
        )
        self._periodic.start()
        logger.info("Periodic refresh every %s minutes", interval_minutes)

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested; True if it was."""
        return self._stop.wait(timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the periodic refresh and the refresh pool."""
        self._stop.set()
        if self._periodic is not None and wait:
            self._periodic.join()
        self._executor.shutdown(wait=wait)

    # -------------------------------------------------------------------
    #  Internals
    # -------------------------------------------------------------------

    def _forget(self, subscription_id: int, future: Future) -> None:
        with self._lock:
            if self._in_flight.get(subscription_id) is future:
                del self._in_flight[subscription_id]

    def _periodic_loop(self, interval_seconds: float) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_all()
            except RuntimeError:
                # Pool shut down underneath us
                return
            self._stop.wait(interval_seconds)

    def fetch(self, feed_url: str) -> FeedDocument:
        """Fetch a feed, retrying transient failures with backoff."""
        retrying = build_retrying(self.max_attempts, self.backoff_seconds, (FetchTransientError,))
        return retrying(self.fetcher.fetch, feed_url)

    def _run(self, subscription_id: int, document: Optional[FeedDocument]) -> RefreshResult:
        try:
            return self._refresh(subscription_id, document)
        except Exception as exc:
            logger.exception("Unexpected error refreshing subscription %d", subscription_id)
            return RefreshResult(
                subscription_id=subscription_id,
                error=f"{type(exc).__name__}: {exc}",
                checked_at=datetime.now(timezone.utc).isoformat(),
            )

    def _refresh(
        self, subscription_id: int, document: Optional[FeedDocument] = None
    ) -> RefreshResult:
        """Fetch, reconcile, decide and enqueue for one subscription."""
        fetched_at = datetime.now(timezone.utc)
        result = RefreshResult(subscription_id=subscription_id, checked_at=fetched_at.isoformat())

        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None or subscription.is_deleted:
            result.error = "subscription was removed"
            return result

        try:
            if document is None:
                document = self.fetch(subscription.feed_url)
        except FetchError as exc:
            result.error = str(exc)
            logger.error("Refresh of subscription %d failed: %s", subscription_id, exc)
            return result

        result.feed_title = document.title
        if document.title or document.artwork_url:
            self.repository.update_subscription_feed_info(
                subscription_id,
                document.title or subscription.title,
                document.artwork_url or subscription.artwork_url,
            )

        # Read before reconciling so this refresh's inserts do not count
        has_episodes = self.repository.has_episodes(subscription_id)
        new_episodes = reconcile(self.repository, subscription_id, document, fetched_at)
        result.new_episode_ids = [e.id for e in new_episodes]

        selected = decide(subscription, new_episodes, self.settings_store.snapshot(), has_episodes)
        for episode in selected:
            try:
                future = self.scheduler.enqueue(episode.id)
            except RuntimeError:
                logger.warning("Download scheduler stopped; not queuing episode %d", episode.id)
                break
            if future is not None:
                result.queued_episode_ids.append(episode.id)

        logger.info(
            "Refreshed subscription %d '%s': %d new, %d queued",
            subscription_id,
            result.feed_title,
            len(result.new_episode_ids),
            len(result.queued_episode_ids),
        )
        return result
