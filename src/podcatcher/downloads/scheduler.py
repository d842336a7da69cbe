"""
Download scheduler and worker pool.

Accepts episode ids, moves them to ``queued`` with a compare-and-swap on
the stored record, and hands them to a fixed pool of worker threads over
a bounded queue. Each worker streams the enclosure to a temporary file,
retries transient failures with backoff, and publishes the finished file
with an atomic rename followed by a second compare-and-swap.

An episode that is reset, deleted, or whose subscription is being
removed while its download is in flight is abandoned: the worker drops
its partial output and writes no state.
"""

import logging
import os
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from podcatcher.config import DownloadSettings, SettingsStore
from podcatcher.downloads.downloader import (
    TEMP_SUFFIX,
    EpisodeDownloader,
    build_filename,
    remove_quietly,
    subscription_dir,
    temp_path_for,
)
from podcatcher.downloads.policy import effective_settings
from podcatcher.exceptions import (
    DownloadCancelled,
    DownloadError,
    DownloadPermanentError,
    DownloadTransientError,
)
from podcatcher.models.entities import (
    ACTIVE_STATUSES,
    ENQUEUEABLE_STATUSES,
    DownloadStatus,
    Episode,
    Subscription,
)
from podcatcher.models.repository import Repository
from podcatcher.retry import build_retrying

logger = logging.getLogger(__name__)

# Queue sentinel that stops one worker
_STOP = object()


@dataclass
class DownloadOutcome:
    """
    Result of one scheduled download, delivered through its Future.

    Attributes:
        episode_id: Episode the download was for
        status: Status the worker left the episode in, or None if it
            abandoned the episode without writing state
        local_path: Final file path on success
        error: Failure description when status is FAILED
        cancelled: True if the episode was reset or deleted mid-flight
    """

    episode_id: int
    status: Optional[DownloadStatus] = None
    local_path: str = ""
    error: str = ""
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == DownloadStatus.DOWNLOADED


class DownloadScheduler:
    """
    Bounded download queue drained by long-lived worker threads.

    Workers start in the constructor and run until ``shutdown``. Enqueue
    blocks when the queue is full.

    Example:
        >>> scheduler = DownloadScheduler(repo, SettingsStore(), Path("data/podcasts"))
        >>> future = scheduler.enqueue(42)
        >>> if future is not None:
        ...     print(future.result().status)
        >>> scheduler.shutdown()
    """

    def __init__(
        self,
        repository: Repository,
        settings_store: SettingsStore,
        download_dir: Path,
        downloader: Optional[EpisodeDownloader] = None,
        workers: int = 4,
        queue_size: int = 100,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self.download_dir = Path(download_dir)
        self.downloader = downloader or EpisodeDownloader()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        # Serializes the closed check and queue put against shutdown's sentinels
        self._enqueue_lock = threading.Lock()
        # Episode id -> token of the worker currently allowed to write it
        self._claims: Dict[int, object] = {}
        self._claims_lock = threading.Lock()
        # Final path -> token of the worker that will publish a file there
        self._reserved_targets: Dict[Path, object] = {}

        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"download-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()
        logger.debug("Started %d download workers (queue size %d)", workers, queue_size)

    # -------------------------------------------------------------------
    #  Public API
    # -------------------------------------------------------------------

    def enqueue(self, episode_id: int) -> Optional[Future]:
        """
        Queue an episode for download.

        Only episodes in ``not_downloaded`` or ``failed`` are accepted; the
        status change to ``queued`` is a single compare-and-swap, so
        concurrent calls for the same episode queue it exactly once.

        Returns:
            Future resolving to a DownloadOutcome, or None if the episode
            is unknown or already queued, downloading or downloaded

        Raises:
            RuntimeError: If the scheduler has been shut down
        """
        with self._enqueue_lock:
            if self._closed.is_set():
                raise RuntimeError("Download scheduler is shut down")

            if not self.repository.transition_status(
                episode_id, ENQUEUEABLE_STATUSES, DownloadStatus.QUEUED
            ):
                logger.debug("Episode %d not enqueued (unknown or not idle)", episode_id)
                return None

            future: Future = Future()
            self._queue.put((episode_id, future))
        logger.info("Queued episode %d for download", episode_id)
        return future

    def enqueue_many(self, episode_ids: List[int]) -> List[Future]:
        """Enqueue several episodes, returning the Futures of those accepted."""
        futures = []
        for episode_id in episode_ids:
            future = self.enqueue(episode_id)
            if future is not None:
                futures.append(future)
        return futures

    def pending(self) -> int:
        """Approximate number of queued, not yet started downloads."""
        return self._queue.qsize()

    def join(self) -> None:
        """Block until every queued download has been processed."""
        self._queue.join()

    def requeue_interrupted(self) -> List[Future]:
        """
        Recover downloads interrupted by a previous shutdown or crash.

        Episodes left ``queued`` or ``downloading`` are reset and queued
        again; leftover temporary files are removed. Call once at start-up
        before any other work is queued.
        """
        for stale in self.download_dir.glob(f"**/*{TEMP_SUFFIX}"):
            logger.info("Removing stale partial download %s", stale)
            remove_quietly(stale)

        futures = []
        for subscription in self.repository.list_subscriptions():
            for episode in self.repository.list_episodes(subscription.id):
                if episode.status not in ACTIVE_STATUSES:
                    continue
                if self.repository.transition_status(
                    episode.id, ACTIVE_STATUSES, DownloadStatus.NOT_DOWNLOADED
                ):
                    future = self.enqueue(episode.id)
                    if future is not None:
                        futures.append(future)
        if futures:
            logger.info("Re-queued %d interrupted downloads", len(futures))
        return futures

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Stop accepting work and stop the workers.

        Args:
            wait: Block until the workers have exited
            cancel_pending: Drop downloads that have not started yet and
                return their episodes to ``not_downloaded``
        """
        with self._enqueue_lock:
            if self._closed.is_set():
                return
            self._closed.set()

            if cancel_pending:
                self._drain_pending()

            for _ in self._threads:
                self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()
        logger.debug("Download scheduler shut down")

    # -------------------------------------------------------------------
    #  Workers
    # -------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                episode_id, future = item
                if not future.set_running_or_notify_cancel():
                    self.repository.transition_status(
                        episode_id, {DownloadStatus.QUEUED}, DownloadStatus.NOT_DOWNLOADED
                    )
                    continue
                try:
                    outcome = self._process(episode_id)
                except Exception as exc:
                    logger.exception("Unexpected error downloading episode %d", episode_id)
                    self.repository.transition_status(
                        episode_id, ACTIVE_STATUSES, DownloadStatus.FAILED
                    )
                    future.set_exception(exc)
                else:
                    future.set_result(outcome)
            finally:
                self._queue.task_done()

    def _drain_pending(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if item is _STOP:
                    continue
                episode_id, future = item
                future.cancel()
                self.repository.transition_status(
                    episode_id, {DownloadStatus.QUEUED}, DownloadStatus.NOT_DOWNLOADED
                )
            finally:
                self._queue.task_done()

    def _process(self, episode_id: int) -> DownloadOutcome:
        """Download one queued episode and record the result."""
        if not self.repository.transition_status(
            episode_id, {DownloadStatus.QUEUED}, DownloadStatus.DOWNLOADING
        ):
            logger.info("Episode %d was cancelled before its download started", episode_id)
            return DownloadOutcome(episode_id, cancelled=True)

        token = object()
        with self._claims_lock:
            self._claims[episode_id] = token

        target: Optional[Path] = None
        temp_path: Optional[Path] = None
        try:
            context = self._load(episode_id, token)
            if context is None:
                return DownloadOutcome(episode_id, cancelled=True)
            episode, subscription = context

            settings = effective_settings(subscription, self.settings_store.snapshot())
            target = self._reserve_target(episode, subscription, settings, token)
            temp_path = temp_path_for(target, str(threading.get_ident()))

            logger.info("Downloading episode %d '%s' to %s", episode.id, episode.title, target)
            retrying = build_retrying(
                self.max_attempts, self.backoff_seconds, (DownloadTransientError,)
            )
            retrying(self._attempt, episode, temp_path, token)

            if not self._still_wanted(episode_id, token):
                raise DownloadCancelled(episode.enclosure_url)
            try:
                os.replace(temp_path, target)
            except OSError as exc:
                raise DownloadPermanentError(f"Cannot move download into {target}: {exc}") from exc
            temp_path = None

            if not self.repository.complete_download(episode_id, str(target)):
                logger.info("Episode %d was cancelled while finishing; removing %s", episode_id, target)
                remove_quietly(target)
                return DownloadOutcome(episode_id, cancelled=True)

            logger.info("Downloaded episode %d to %s", episode_id, target)
            return DownloadOutcome(episode_id, DownloadStatus.DOWNLOADED, local_path=str(target))

        except DownloadCancelled:
            logger.info("Download of episode %d cancelled", episode_id)
            remove_quietly(temp_path)
            return DownloadOutcome(episode_id, cancelled=True)

        except DownloadError as exc:
            remove_quietly(temp_path)
            if not self._still_wanted(episode_id, token):
                return DownloadOutcome(episode_id, cancelled=True)
            if not self.repository.transition_status(
                episode_id, {DownloadStatus.DOWNLOADING}, DownloadStatus.FAILED
            ):
                return DownloadOutcome(episode_id, cancelled=True)
            logger.error("Download of episode %d failed: %s", episode_id, exc)
            return DownloadOutcome(episode_id, DownloadStatus.FAILED, error=str(exc))

        finally:
            with self._claims_lock:
                if self._claims.get(episode_id) is token:
                    del self._claims[episode_id]
                if target is not None and self._reserved_targets.get(target) is token:
                    del self._reserved_targets[target]

    def _attempt(self, episode: Episode, temp_path: Path, token: object) -> Path:
        if not self._still_wanted(episode.id, token):
            raise DownloadCancelled(episode.enclosure_url)
        return self.downloader.stream_to_file(
            episode.enclosure_url,
            temp_path,
            lambda: self._still_wanted(episode.id, token),
        )

    def _load(self, episode_id: int, token: object) -> Optional[Tuple[Episode, Subscription]]:
        if not self._still_wanted(episode_id, token):
            return None
        episode = self.repository.get_episode(episode_id)
        subscription = self.repository.get_subscription(episode.subscription_id) if episode else None
        if episode is None or subscription is None:
            return None
        return episode, subscription

    def _still_wanted(self, episode_id: int, token: object) -> bool:
        """True while the episode is ours, downloading, and its subscription is live."""
        with self._claims_lock:
            if self._claims.get(episode_id) is not token:
                return False
        episode = self.repository.get_episode(episode_id)
        if episode is None or episode.status != DownloadStatus.DOWNLOADING:
            return False
        subscription = self.repository.get_subscription(episode.subscription_id)
        return subscription is not None and not subscription.is_deleted

    def _reserve_target(
        self,
        episode: Episode,
        subscription: Subscription,
        settings: DownloadSettings,
        token: object,
    ) -> Path:
        """
        Pick the final path for an episode and hold it until the worker finishes.

        A name already on disk or reserved by another in-flight download gets
        the episode id appended, so two episodes never publish to one file.
        """
        number = None
        if settings.append_episode_number_to_filename:
            number = self._episode_number(episode)
        directory = subscription_dir(self.download_dir, subscription)
        base = directory / build_filename(episode, settings, number)

        with self._claims_lock:
            target = base
            attempt = 1
            while target.exists() or target in self._reserved_targets:
                suffix = f"-{episode.id}" if attempt == 1 else f"-{episode.id}-{attempt}"
                target = base.with_name(f"{base.stem}{suffix}{base.suffix}")
                attempt += 1
            self._reserved_targets[target] = token
        return target

    def _episode_number(self, episode: Episode) -> int:
        """1-based position of the episode in publication order."""
        oldest_first = list(reversed(self.repository.list_episodes(episode.subscription_id)))
        for index, candidate in enumerate(oldest_first, start=1):
            if candidate.id == episode.id:
                return index
        return len(oldest_first) + 1
