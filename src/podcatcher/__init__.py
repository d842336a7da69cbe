"""
podcatcher

Podcast subscription manager: refreshes subscribed feeds, reconciles
new episodes and downloads them on a bounded worker pool.
"""

__version__ = "0.1.0"
__author__ = "podcatcher Team"

from podcatcher.config import Config, DownloadSettings, SettingsStore
from podcatcher.service import PodcastService

__all__ = ["Config", "DownloadSettings", "PodcastService", "SettingsStore", "__version__"]
