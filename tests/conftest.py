"""
Shared test fixtures.

Provides pytest fixtures for common test resources including:
- Test configuration with temporary paths
- In-memory and SQLite repositories
- Sample feed documents
- Fake feed fetcher and episode downloader
- A running download scheduler, refresh coordinator and service
"""

import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from podcatcher.config import Config, DownloadSettings, SettingsStore
from podcatcher.downloads.scheduler import DownloadScheduler
from podcatcher.exceptions import DownloadCancelled
from podcatcher.ingestion.rss_parser import FeedDocument, FeedEntry
from podcatcher.models.database import Database
from podcatcher.models.repository import InMemoryRepository, Repository
from podcatcher.service import PodcastService
from podcatcher.triggers.refresh import RefreshCoordinator

FEED_URL = "https://example.com/feed.xml"
BASE_DATE = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
#  Fakes
# ---------------------------------------------------------------------------

class FakeFetcher:
    """FeedFetcher stand-in serving canned documents or errors per URL."""

    def __init__(self) -> None:
        self.documents: Dict[str, object] = {}
        self.calls: List[str] = []
        self.entered = threading.Event()
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def fetch(self, url: str) -> FeedDocument:
        with self._lock:
            self.calls.append(url)
            result = self.documents[url]
            if isinstance(result, list):
                result = result.pop(0) if len(result) > 1 else result[0]
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(result, Exception):
            raise result
        return result


class FakeDownloader:
    """
    EpisodeDownloader stand-in.

    Writes ``payload`` to the temporary path. ``failures`` maps a URL to
    exceptions raised by successive attempts. While ``gate`` is set to an
    unset Event, downloads block and keep polling should_continue.
    """

    def __init__(self, payload: bytes = b"ID3-audio-bytes") -> None:
        self.payload = payload
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def stream_to_file(self, url: str, temp_path: Path, should_continue: Callable[[], bool]) -> Path:
        with self._lock:
            self.calls.append(url)
            pending = self.failures.get(url)
            error = pending.pop(0) if pending else None
        self.started.set()
        if error is not None:
            raise error
        temp_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_bytes(self.payload[:4])
        if self.gate is not None:
            while not self.gate.wait(0.01):
                if not should_continue():
                    raise DownloadCancelled(url)
        if not should_continue():
            raise DownloadCancelled(url)
        temp_path.write_bytes(self.payload)
        return temp_path


# ---------------------------------------------------------------------------
#  Paths and configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def temp_dir():
    """
    Create temporary directory for test files.

    Yields:
        Path: Temporary directory path
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Configuration pointing at temporary paths, with no backoff waits."""
    return Config(
        db_path=temp_dir / "podcatcher.db",
        download_dir=temp_dir / "podcasts",
        download_workers=2,
        download_backoff_seconds=0,
        refresh_backoff_seconds=0,
        refresh_interval_minutes=0,
    )


@pytest.fixture
def settings_store() -> SettingsStore:
    return SettingsStore(DownloadSettings())


# ---------------------------------------------------------------------------
#  Repositories
# ---------------------------------------------------------------------------

@pytest.fixture
def memory_repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def test_db(temp_dir: Path) -> Database:
    """
    Create test database with schema.

    Returns:
        Database: Initialized test database
    """
    db = Database(temp_dir / "test.db")
    db.initialize()
    return db


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, temp_dir: Path) -> Repository:
    """Each Repository implementation in turn."""
    if request.param == "memory":
        return InMemoryRepository()
    db = Database(temp_dir / "repo.db")
    db.initialize()
    return db


# ---------------------------------------------------------------------------
#  Feed documents
# ---------------------------------------------------------------------------

def build_document(count: int, prefix: str = "ep", title: str = "Example Show") -> FeedDocument:
    """Feed with count entries, one day apart, newest last."""
    return FeedDocument(
        title=title,
        artwork_url="https://example.com/cover.jpg",
        entries=[
            FeedEntry(
                guid=f"{prefix}-{i}",
                title=f"Episode {i}",
                enclosure_url=f"https://cdn.example.com/{prefix}-{i}.mp3",
                publish_date=BASE_DATE + timedelta(days=i),
            )
            for i in range(1, count + 1)
        ],
    )


@pytest.fixture
def make_document() -> Callable[..., FeedDocument]:
    return build_document


@pytest.fixture
def sample_document() -> FeedDocument:
    return build_document(10)


# ---------------------------------------------------------------------------
#  Pipeline components
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def scheduler(memory_repo, settings_store, fake_downloader, temp_dir):
    """Running DownloadScheduler over the in-memory repository."""
    scheduler = DownloadScheduler(
        memory_repo,
        settings_store,
        temp_dir / "podcasts",
        downloader=fake_downloader,
        workers=2,
        queue_size=10,
        max_attempts=3,
        backoff_seconds=0,
    )
    yield scheduler
    if fake_downloader.gate is not None:
        fake_downloader.gate.set()
    scheduler.shutdown(wait=True)


@pytest.fixture
def coordinator(memory_repo, fake_fetcher, scheduler, settings_store):
    coordinator = RefreshCoordinator(
        memory_repo,
        fake_fetcher,
        scheduler,
        settings_store,
        workers=2,
        max_attempts=3,
        backoff_seconds=0,
    )
    yield coordinator
    if fake_fetcher.gate is not None:
        fake_fetcher.gate.set()
    coordinator.shutdown(wait=True)


@pytest.fixture
def service(memory_repo, settings_store, fake_fetcher, scheduler, coordinator) -> PodcastService:
    return PodcastService(memory_repo, settings_store, fake_fetcher, scheduler, coordinator)
