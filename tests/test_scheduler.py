"""
Tests for the download scheduler and worker pool.

Covers:
- Successful download: file placed atomically, status and path recorded
- Idempotent enqueue under concurrency (one download per episode)
- Retry of transient failures, failure after exhaustion or permanent error
- Cancellation when the episode is reset or its subscription deleted
- Shutdown, recovery of interrupted downloads, filename collisions
"""

import threading
import time
from pathlib import Path

import pytest

from podcatcher.downloads.downloader import subscription_dir
from podcatcher.downloads.scheduler import DownloadScheduler
from podcatcher.exceptions import DownloadPermanentError, DownloadTransientError
from podcatcher.ingestion.reconciler import reconcile
from podcatcher.ingestion.rss_parser import FeedDocument, FeedEntry
from podcatcher.models.entities import DownloadStatus

TIMEOUT = 5


@pytest.fixture
def subscription(memory_repo, make_document):
    sub = memory_repo.add_subscription("https://example.com/feed.xml", title="Example Show")
    reconcile(memory_repo, sub.id, make_document(3))
    return memory_repo.get_subscription(sub.id)


def _episodes(repo, sub):
    """Episodes oldest first."""
    return list(reversed(repo.list_episodes(sub.id)))


def _files(directory):
    return sorted(p.name for p in directory.rglob("*") if p.is_file())


class TestEnqueue:

    def test_download_succeeds(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]

        outcome = scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert outcome.succeeded
        stored = memory_repo.get_episode(episode.id)
        assert stored.status == DownloadStatus.DOWNLOADED
        expected = subscription_dir(scheduler.download_dir, subscription) / "episode-1.mp3"
        assert stored.local_path == str(expected)
        assert expected.read_bytes() == fake_downloader.payload
        assert _files(scheduler.download_dir) == ["episode-1.mp3"]

    def test_concurrent_enqueue_downloads_once(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        barrier = threading.Barrier(8)
        futures = []

        def request():
            barrier.wait()
            futures.append(scheduler.enqueue(episode.id))

        threads = [threading.Thread(target=request) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        accepted = [f for f in futures if f is not None]
        assert len(accepted) == 1
        accepted[0].result(timeout=TIMEOUT)
        assert fake_downloader.calls == [episode.enclosure_url]

    def test_already_downloaded_is_not_requeued(self, scheduler, memory_repo, subscription):
        episode = _episodes(memory_repo, subscription)[0]
        scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert scheduler.enqueue(episode.id) is None

    def test_unknown_episode(self, scheduler):
        assert scheduler.enqueue(12345) is None

    def test_enqueue_many(self, scheduler, memory_repo, subscription):
        ids = [e.id for e in _episodes(memory_repo, subscription)]

        futures = scheduler.enqueue_many(ids + ids)
        outcomes = [f.result(timeout=TIMEOUT) for f in futures]

        assert len(outcomes) == 3
        assert all(o.succeeded for o in outcomes)


class TestFailures:

    def test_transient_failure_retried(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.failures[episode.enclosure_url] = [
            DownloadTransientError("reset"),
            DownloadTransientError("timeout"),
        ]

        outcome = scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert outcome.succeeded
        assert len(fake_downloader.calls) == 3

    def test_exhausted_retries_mark_failed(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.failures[episode.enclosure_url] = [
            DownloadTransientError(f"attempt {i}") for i in range(3)
        ]

        outcome = scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert outcome.status == DownloadStatus.FAILED
        assert "attempt 2" in outcome.error
        assert memory_repo.get_episode(episode.id).status == DownloadStatus.FAILED
        assert len(fake_downloader.calls) == 3
        assert _files(scheduler.download_dir) == []

    def test_permanent_failure_not_retried(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.failures[episode.enclosure_url] = [DownloadPermanentError("HTTP 404")]

        outcome = scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert outcome.status == DownloadStatus.FAILED
        assert len(fake_downloader.calls) == 1

    def test_failed_episode_can_be_requeued(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.failures[episode.enclosure_url] = [DownloadPermanentError("HTTP 404")]
        scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        outcome = scheduler.enqueue(episode.id).result(timeout=TIMEOUT)

        assert outcome.succeeded


class TestCancellation:

    def test_reset_while_downloading(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.gate = threading.Event()

        future = scheduler.enqueue(episode.id)
        assert fake_downloader.started.wait(TIMEOUT)
        memory_repo.reset_download(episode.id)
        outcome = future.result(timeout=TIMEOUT)

        assert outcome.cancelled
        assert outcome.status is None
        assert memory_repo.get_episode(episode.id).status == DownloadStatus.NOT_DOWNLOADED
        assert _files(scheduler.download_dir) == []

    def test_subscription_deleted_while_downloading(self, scheduler, memory_repo, subscription, fake_downloader):
        episode = _episodes(memory_repo, subscription)[0]
        fake_downloader.gate = threading.Event()

        future = scheduler.enqueue(episode.id)
        assert fake_downloader.started.wait(TIMEOUT)
        memory_repo.mark_subscription_deleted(subscription.id)
        outcome = future.result(timeout=TIMEOUT)

        assert outcome.cancelled
        # Worker wrote no state of its own
        assert memory_repo.get_episode(episode.id).status == DownloadStatus.DOWNLOADING
        assert _files(scheduler.download_dir) == []

    def test_reset_before_start(self, memory_repo, subscription, settings_store, fake_downloader, temp_dir):
        # No workers: the item stays queued until we look at it
        idle = DownloadScheduler(memory_repo, settings_store, temp_dir, fake_downloader, workers=0)
        episode = _episodes(memory_repo, subscription)[0]
        idle.enqueue(episode.id)
        memory_repo.reset_download(episode.id)

        outcome = idle._process(episode.id)

        assert outcome.cancelled
        assert fake_downloader.calls == []
        idle.shutdown(wait=False)


class TestLifecycle:

    def test_enqueue_after_shutdown_raises(self, scheduler, memory_repo, subscription):
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.enqueue(_episodes(memory_repo, subscription)[0].id)

    def test_shutdown_cancel_pending(self, memory_repo, subscription, settings_store, fake_downloader, temp_dir):
        idle = DownloadScheduler(memory_repo, settings_store, temp_dir, fake_downloader, workers=0)
        episode = _episodes(memory_repo, subscription)[0]
        future = idle.enqueue(episode.id)

        idle.shutdown(wait=False, cancel_pending=True)

        assert future.cancelled()
        assert memory_repo.get_episode(episode.id).status == DownloadStatus.NOT_DOWNLOADED

    def test_requeue_interrupted(self, scheduler, memory_repo, subscription):
        episode = _episodes(memory_repo, subscription)[0]
        memory_repo.transition_status(
            episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.DOWNLOADING
        )
        stale = subscription_dir(scheduler.download_dir, subscription) / "episode-1.mp3.part"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"half")

        futures = scheduler.requeue_interrupted()

        assert len(futures) == 1
        assert futures[0].result(timeout=TIMEOUT).succeeded
        assert not stale.exists()

    def test_same_title_gets_distinct_file(self, scheduler, memory_repo):
        sub = memory_repo.add_subscription("https://example.com/reruns.xml", title="Reruns")
        document = FeedDocument(
            entries=[
                FeedEntry(guid=f"r-{i}", title="Same Title", enclosure_url=f"https://cdn.example.com/r{i}.mp3")
                for i in (1, 2)
            ]
        )
        first, second = reconcile(memory_repo, sub.id, document)

        a = scheduler.enqueue(first.id).result(timeout=TIMEOUT)
        b = scheduler.enqueue(second.id).result(timeout=TIMEOUT)

        assert a.local_path.endswith("same-title.mp3")
        assert b.local_path.endswith(f"same-title-{second.id}.mp3")

    def test_same_title_downloading_together_gets_distinct_files(
        self, scheduler, memory_repo, fake_downloader
    ):
        sub = memory_repo.add_subscription("https://example.com/reruns.xml", title="Reruns")
        document = FeedDocument(
            entries=[
                FeedEntry(guid=f"r-{i}", title="Same Title", enclosure_url=f"https://cdn.example.com/r{i}.mp3")
                for i in (1, 2)
            ]
        )
        first, second = reconcile(memory_repo, sub.id, document)
        fake_downloader.gate = threading.Event()

        futures = [scheduler.enqueue(first.id), scheduler.enqueue(second.id)]
        deadline = time.monotonic() + TIMEOUT
        while len(fake_downloader.calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        fake_downloader.gate.set()
        a, b = (f.result(timeout=TIMEOUT) for f in futures)

        assert a.succeeded and b.succeeded
        assert a.local_path != b.local_path
        assert memory_repo.get_episode(first.id).local_path == a.local_path
        assert memory_repo.get_episode(second.id).local_path == b.local_path
        assert _files(scheduler.download_dir) == sorted(
            Path(p).name for p in (a.local_path, b.local_path)
        )

    def test_episode_number_in_filename(self, scheduler, memory_repo, subscription, settings_store):
        settings_store.update(append_episode_number_to_filename=True)
        newest = _episodes(memory_repo, subscription)[-1]

        outcome = scheduler.enqueue(newest.id).result(timeout=TIMEOUT)

        assert outcome.local_path.endswith("3-episode-3.mp3")

    def test_enqueue_racing_shutdown_leaves_nothing_queued(
        self, memory_repo, settings_store, fake_downloader, temp_dir, make_document
    ):
        sub = memory_repo.add_subscription("https://example.com/busy.xml", title="Busy")
        episodes = reconcile(memory_repo, sub.id, make_document(20, prefix="busy"))
        busy = DownloadScheduler(
            memory_repo, settings_store, temp_dir, fake_downloader, workers=2, queue_size=4, backoff_seconds=0
        )
        barrier = threading.Barrier(5)
        futures = []

        def request(batch):
            barrier.wait()
            for episode in batch:
                try:
                    future = busy.enqueue(episode.id)
                except RuntimeError:
                    return
                if future is not None:
                    futures.append(future)

        threads = [threading.Thread(target=request, args=(episodes[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        barrier.wait()
        busy.shutdown(wait=True)
        for t in threads:
            t.join()

        assert all(f.done() for f in futures)
        statuses = {memory_repo.get_episode(e.id).status for e in episodes}
        assert DownloadStatus.QUEUED not in statuses
        assert DownloadStatus.DOWNLOADING not in statuses

    def test_rejected_enqueue_leaves_episode_idle(self, scheduler, memory_repo, subscription):
        episode = _episodes(memory_repo, subscription)[0]
        scheduler.shutdown()

        with pytest.raises(RuntimeError):
            scheduler.enqueue(episode.id)

        assert memory_repo.get_episode(episode.id).status == DownloadStatus.NOT_DOWNLOADED
