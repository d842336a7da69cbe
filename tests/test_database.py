"""
Tests for the Repository implementations (SQLite and in-memory).

Covers:
- Duplicate subscription rejection
- Subscription sorting and soft deletion
- Episode insert-or-ignore, filtering and paging
- Compare-and-swap status transitions
- Download reset, played/bookmarked flags, per-subscription overrides
- Cascade delete of a subscription's episodes
"""

import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from podcatcher.exceptions import DuplicateSubscriptionError
from podcatcher.ingestion.reconciler import reconcile
from podcatcher.models.entities import (
    DownloadStatus,
    Episode,
    EpisodeFilter,
    FilterMode,
    SubscriptionSort,
)
from podcatcher.models.schema import get_table_names

FEED = "https://example.com/feed.xml"


@pytest.fixture
def populated(repository, sample_document):
    """Repository with one subscription and ten episodes."""
    sub = repository.add_subscription(FEED, title="Example Show")
    reconcile(repository, sub.id, sample_document)
    return repository, sub


# ===================================================================
# Subscriptions
# ===================================================================

class TestSubscriptions:

    def test_add_and_get(self, repository):
        sub = repository.add_subscription(FEED, title="Example Show", artwork_url="https://x/a.jpg")

        fetched = repository.get_subscription(sub.id)
        assert fetched.feed_url == FEED
        assert fetched.title == "Example Show"
        assert fetched.artwork_url == "https://x/a.jpg"
        assert fetched.created_at.tzinfo is not None
        assert fetched.auto_download is None

    def test_duplicate_feed_url_rejected(self, repository):
        repository.add_subscription(FEED)
        with pytest.raises(DuplicateSubscriptionError):
            repository.add_subscription(FEED)
        assert len(repository.list_subscriptions()) == 1

    def test_get_unknown_is_none(self, repository):
        assert repository.get_subscription(999) is None

    def test_sort_by_name(self, repository):
        for title in ("beta", "Alpha", "gamma"):
            repository.add_subscription(f"https://example.com/{title}.xml", title=title)

        ascending = [s.title for s in repository.list_subscriptions(SubscriptionSort.NAME)]
        descending = [
            s.title for s in repository.list_subscriptions(SubscriptionSort.NAME, descending=True)
        ]

        assert ascending == ["Alpha", "beta", "gamma"]
        assert descending == ["gamma", "beta", "Alpha"]

    def test_sort_by_date_added(self, repository):
        ids = [repository.add_subscription(f"https://example.com/{i}.xml").id for i in range(3)]
        listed = [s.id for s in repository.list_subscriptions(SubscriptionSort.DATE_ADDED)]
        assert listed == ids

    def test_sort_by_last_episode(self, repository, make_document):
        old = repository.add_subscription("https://example.com/old.xml", title="old")
        new = repository.add_subscription("https://example.com/new.xml", title="new")
        reconcile(repository, old.id, make_document(2))
        reconcile(repository, new.id, make_document(5))

        listed = repository.list_subscriptions(SubscriptionSort.LAST_EPISODE, descending=True)

        assert [s.title for s in listed] == ["new", "old"]
        assert listed[0].last_episode_date > listed[1].last_episode_date

    def test_soft_delete_hides_from_listing(self, repository):
        sub = repository.add_subscription(FEED)
        repository.mark_subscription_deleted(sub.id)

        assert repository.list_subscriptions() == []
        assert len(repository.list_subscriptions(include_deleted=True)) == 1
        assert repository.get_subscription(sub.id).is_deleted

    def test_delete_cascades_to_episodes(self, populated):
        repository, sub = populated
        episode_id = repository.list_episodes(sub.id)[0].id

        repository.delete_subscription(sub.id)

        assert repository.get_subscription(sub.id) is None
        assert repository.get_episode(episode_id) is None
        assert repository.list_episodes(sub.id) == []

    def test_update_feed_info(self, repository):
        sub = repository.add_subscription(FEED)
        repository.update_subscription_feed_info(sub.id, "Renamed", "https://x/new.jpg")

        fetched = repository.get_subscription(sub.id)
        assert fetched.title == "Renamed"
        assert fetched.artwork_url == "https://x/new.jpg"

    def test_overrides_set_and_cleared(self, repository):
        sub = repository.add_subscription(FEED)

        assert repository.update_subscription_overrides(
            sub.id, {"auto_download": True, "initial_download_count": 2}
        )
        fetched = repository.get_subscription(sub.id)
        assert fetched.auto_download is True
        assert fetched.initial_download_count == 2

        repository.update_subscription_overrides(sub.id, {"auto_download": None})
        assert repository.get_subscription(sub.id).auto_download is None

    def test_unknown_override_rejected(self, repository):
        sub = repository.add_subscription(FEED)
        with pytest.raises(ValueError):
            repository.update_subscription_overrides(sub.id, {"feed_url": "https://evil"})

    def test_overrides_for_unknown_subscription(self, repository):
        assert repository.update_subscription_overrides(42, {"auto_download": True}) is False


# ===================================================================
# Episodes
# ===================================================================

class TestEpisodes:

    def test_insert_or_ignore(self, repository):
        sub = repository.add_subscription(FEED)
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)

        first = repository.insert_episode(sub.id, "g", "Title", "https://x/e.mp3", when)
        second = repository.insert_episode(sub.id, "g", "Other", "https://x/e2.mp3", when)

        assert first is not None
        assert first.status == DownloadStatus.NOT_DOWNLOADED
        assert second is None
        assert repository.known_guids(sub.id) == {"g"}

    def test_same_guid_in_two_subscriptions(self, repository):
        a = repository.add_subscription("https://example.com/a.xml")
        b = repository.add_subscription("https://example.com/b.xml")
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert repository.insert_episode(a.id, "g", "A", "https://x/a.mp3", when) is not None
        assert repository.insert_episode(b.id, "g", "B", "https://x/b.mp3", when) is not None

    def test_list_newest_first(self, populated):
        repository, sub = populated
        guids = [e.guid for e in repository.list_episodes(sub.id)]
        assert guids == [f"ep-{i}" for i in range(10, 0, -1)]

    def test_paging(self, populated):
        repository, sub = populated
        page_two = repository.list_episodes(sub.id, EpisodeFilter(page=2, count=3))
        assert [e.guid for e in page_two] == ["ep-7", "ep-6", "ep-5"]

    def test_paging_past_end(self, populated):
        repository, sub = populated
        assert repository.list_episodes(sub.id, EpisodeFilter(page=5, count=3)) == []

    def test_filter_played(self, populated):
        repository, sub = populated
        episodes = repository.list_episodes(sub.id)
        repository.set_played(episodes[0].id, True)

        played = repository.list_episodes(sub.id, EpisodeFilter(played=FilterMode.ONLY))
        unplayed = repository.list_episodes(sub.id, EpisodeFilter(played=FilterMode.EXCLUDE))

        assert [e.id for e in played] == [episodes[0].id]
        assert len(unplayed) == 9

    def test_filter_downloaded(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]
        repository.transition_status(episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.DOWNLOADING)
        repository.complete_download(episode.id, "/tmp/ep.mp3")

        downloaded = repository.list_episodes(sub.id, EpisodeFilter(downloaded=FilterMode.ONLY))

        assert [e.id for e in downloaded] == [episode.id]
        assert downloaded[0].local_path == "/tmp/ep.mp3"

    def test_filter_from_date(self, populated):
        repository, sub = populated
        cutoff = datetime(2024, 1, 9, 12, 0, tzinfo=timezone.utc)
        episodes = repository.list_episodes(sub.id, EpisodeFilter(from_date=cutoff))
        assert [e.guid for e in episodes] == ["ep-10", "ep-9", "ep-8"]

    def test_naive_from_date_treated_as_utc(self, populated):
        repository, sub = populated
        cutoff = datetime(2024, 1, 11, 12, 0)
        assert [e.guid for e in repository.list_episodes(sub.id, EpisodeFilter(from_date=cutoff))] == ["ep-10"]

    def test_has_episodes(self, repository):
        sub = repository.add_subscription(FEED)
        assert repository.has_episodes(sub.id) is False

        repository.insert_episode(
            sub.id, "g", "Title", "https://x/e.mp3", datetime(2024, 1, 1, tzinfo=timezone.utc)
        )

        assert repository.has_episodes(sub.id) is True

    def test_has_episodes_ignores_download_state(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]
        repository.transition_status(episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.DOWNLOADING)
        repository.complete_download(episode.id, "/tmp/ep.mp3")
        repository.reset_download(episode.id)

        assert repository.has_episodes(sub.id) is True


# ===================================================================
# Status transitions and flags
# ===================================================================

class TestStatusTransitions:

    def test_cas_succeeds_once(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]
        idle = {DownloadStatus.NOT_DOWNLOADED, DownloadStatus.FAILED}

        assert repository.transition_status(episode.id, idle, DownloadStatus.QUEUED) is True
        assert repository.transition_status(episode.id, idle, DownloadStatus.QUEUED) is False
        assert repository.get_episode(episode.id).status == DownloadStatus.QUEUED

    def test_cas_unknown_episode(self, repository):
        assert repository.transition_status(
            404, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.QUEUED
        ) is False

    def test_concurrent_cas_has_single_winner(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]
        barrier = threading.Barrier(8)
        wins = []

        def attempt():
            barrier.wait()
            wins.append(
                repository.transition_status(
                    episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.QUEUED
                )
            )

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert wins.count(True) == 1

    def test_complete_requires_downloading(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]

        assert repository.complete_download(episode.id, "/tmp/x.mp3") is False
        repository.transition_status(episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.DOWNLOADING)
        assert repository.complete_download(episode.id, "/tmp/x.mp3") is True
        assert repository.get_episode(episode.id).status == DownloadStatus.DOWNLOADED

    def test_reset_download_returns_previous(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]
        repository.transition_status(episode.id, {DownloadStatus.NOT_DOWNLOADED}, DownloadStatus.DOWNLOADING)
        repository.complete_download(episode.id, "/tmp/x.mp3")

        previous = repository.reset_download(episode.id)

        assert previous.status == DownloadStatus.DOWNLOADED
        assert previous.local_path == "/tmp/x.mp3"
        current = repository.get_episode(episode.id)
        assert current.status == DownloadStatus.NOT_DOWNLOADED
        assert current.local_path == ""

    def test_reset_unknown_episode(self, repository):
        assert repository.reset_download(404) is None

    def test_flags_are_idempotent(self, populated):
        repository, sub = populated
        episode = repository.list_episodes(sub.id)[0]

        assert repository.set_bookmarked(episode.id, True)
        assert repository.set_bookmarked(episode.id, True)
        assert repository.get_episode(episode.id).bookmarked is True
        assert repository.set_played(episode.id, False)
        assert repository.get_episode(episode.id).played is False

    def test_flags_on_unknown_episode(self, repository):
        assert repository.set_played(404, True) is False
        assert repository.set_bookmarked(404, True) is False


class TestSchema:

    def test_tables_created(self, test_db):
        assert {"subscriptions", "episodes"} <= set(get_table_names(test_db.db_path))

    def test_initialize_is_idempotent(self, test_db):
        test_db.initialize()
        test_db.add_subscription(FEED)
        test_db.initialize()
        assert len(test_db.list_subscriptions()) == 1

    def test_episode_columns_match_model(self, test_db):
        with sqlite3.connect(test_db.db_path) as conn:
            columns = {row[1] for row in conn.execute("PRAGMA table_info(episodes)")}

        assert columns - {"created_at", "updated_at"} == set(Episode.model_fields)
