"""
Downloads module.

Provides the download policy, the streaming episode downloader and the
scheduler that runs downloads on a bounded worker pool.
"""

from podcatcher.downloads.downloader import EpisodeDownloader, build_filename, subscription_dir
from podcatcher.downloads.policy import decide, effective_settings
from podcatcher.downloads.scheduler import DownloadOutcome, DownloadScheduler

__all__ = [
    "DownloadOutcome",
    "DownloadScheduler",
    "EpisodeDownloader",
    "build_filename",
    "decide",
    "effective_settings",
    "subscription_dir",
]
