"""
Configuration management for podcatcher.

Provides centralized configuration using Pydantic for validation and
environment variable support. Supports podcatcher.yaml for seeding the
download policy settings.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


# Default data paths relative to the working directory
DATA_DIR = Path.cwd() / "data"
DB_PATH = DATA_DIR / "podcatcher.db"
DOWNLOAD_DIR = DATA_DIR / "podcasts"


def load_podcatcher_yaml(search_dir: Optional[Path] = None) -> dict:
    """
    Load podcatcher.yaml configuration file.

    Searches for podcatcher.yaml starting from search_dir (or the current
    working directory) and walking up to 3 parent directories.

    Args:
        search_dir: Directory to start searching from

    Returns:
        Dictionary with podcatcher.yaml contents, or empty dict if not found
    """
    start = search_dir or Path.cwd()
    for parent in [start] + list(start.parents)[:3]:
        candidate = parent / "podcatcher.yaml"
        if candidate.exists():
            with open(candidate, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
    return {}


class DownloadSettings(BaseModel):
    """
    Process-wide download policy settings.

    Instances are treated as immutable snapshots; use
    ``SettingsStore.update`` to change the live values.
    """

    model_config = {"frozen": True}

    auto_download: bool = False
    download_on_add: bool = True
    initial_download_count: int = Field(default=5, ge=0)
    append_date_to_filename: bool = False
    append_episode_number_to_filename: bool = False


class SettingsStore:
    """Thread-safe holder for the current DownloadSettings snapshot."""

    def __init__(self, settings: Optional[DownloadSettings] = None) -> None:
        self._settings = settings or DownloadSettings()
        self._lock = threading.Lock()

    def snapshot(self) -> DownloadSettings:
        with self._lock:
            return self._settings

    def update(self, **changes: Any) -> DownloadSettings:
        """
        Replace the current settings with a copy carrying the given changes.

        Already-made decisions are unaffected; the next snapshot sees the
        new values.

        Raises:
            pydantic.ValidationError: If a changed value is invalid
        """
        with self._lock:
            merged = {**self._settings.model_dump(), **changes}
            self._settings = DownloadSettings(**merged)
            logger.info("Download settings updated: %s", changes)
            return self._settings


class Config(BaseSettings):
    """
    Application configuration with environment variable support.

    Configuration can be provided via:
    1. Environment variables (prefixed with PODCATCHER_)
    2. .env file
    3. Default values

    Example:
        export PODCATCHER_DOWNLOAD_WORKERS=8
        export PODCATCHER_DB_PATH="/custom/path/db.sqlite"
    """

    model_config = SettingsConfigDict(
        env_prefix="PODCATCHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage paths
    db_path: Path = Field(
        default=DB_PATH,
        description="Path to SQLite database file"
    )
    download_dir: Path = Field(
        default=DOWNLOAD_DIR,
        description="Root directory for downloaded episodes (one folder per subscription)"
    )

    # Download worker pool
    download_workers: int = Field(
        default=4, ge=1,
        description="Number of concurrent download workers"
    )
    download_queue_size: int = Field(
        default=100, ge=1,
        description="Capacity of the pending download queue"
    )
    download_max_attempts: int = Field(
        default=3, ge=1,
        description="Attempts per episode before it is marked failed"
    )
    download_backoff_seconds: float = Field(
        default=2.0, ge=0,
        description="Initial backoff between download attempts"
    )
    download_chunk_size: int = Field(
        default=256 * 1024, ge=1024,
        description="Bytes read per streamed chunk"
    )
    download_read_timeout: float = Field(
        default=60.0, gt=0,
        description="Seconds to wait for each streamed chunk"
    )

    # Refresh pool
    refresh_workers: int = Field(
        default=4, ge=1,
        description="Number of subscriptions refreshed concurrently"
    )
    refresh_max_attempts: int = Field(
        default=3, ge=1,
        description="Fetch attempts per refresh before it is reported failed"
    )
    refresh_backoff_seconds: float = Field(
        default=5.0, ge=0,
        description="Initial backoff between fetch attempts"
    )
    refresh_interval_minutes: int = Field(
        default=30, ge=0,
        description="Periodic refresh interval (0 disables)"
    )

    # Feed fetching
    fetch_timeout_seconds: float = Field(
        default=30.0, gt=0,
        description="Timeout for connecting to and reading a feed"
    )
    max_redirects: int = Field(
        default=5, ge=0,
        description="Maximum redirect hops followed for feeds and enclosures"
    )
    user_agent: str = Field(
        default="podcatcher/0.1",
        description="User-Agent header sent with every request"
    )

    # Initial download policy (overridden by podcatcher.yaml downloads:)
    auto_download: bool = False
    download_on_add: bool = True
    initial_download_count: int = Field(default=5, ge=0)
    append_date_to_filename: bool = False
    append_episode_number_to_filename: bool = False

    log_level: str = Field(
        default="INFO",
        description="Root log level for the CLI"
    )

    def download_settings(self, yaml_config: Optional[Dict[str, Any]] = None) -> DownloadSettings:
        """
        Build the initial DownloadSettings.

        Values from the ``downloads`` section of podcatcher.yaml win over
        the environment defaults.
        """
        values = {
            "auto_download": self.auto_download,
            "download_on_add": self.download_on_add,
            "initial_download_count": self.initial_download_count,
            "append_date_to_filename": self.append_date_to_filename,
            "append_episode_number_to_filename": self.append_episode_number_to_filename,
        }
        section = (yaml_config or {}).get("downloads") or {}
        values.update({k: v for k, v in section.items() if k in values})
        return DownloadSettings(**values)

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.download_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)


def get_config() -> Config:
    """
    Get the application configuration instance.

    Returns:
        Config: Application configuration
    """
    config = Config()
    config.ensure_directories()
    return config
