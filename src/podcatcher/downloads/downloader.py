"""
Episode file download and placement.

Streams an enclosure into a temporary ``.part`` file next to its final
location and classifies failures as transient (retry) or permanent. The
caller renames the temporary file into place once it has confirmed the
episode is still wanted.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from slugify import slugify

from podcatcher.config import DownloadSettings
from podcatcher.exceptions import (
    DownloadCancelled,
    DownloadPermanentError,
    DownloadTransientError,
)
from podcatcher.models.entities import Episode, Subscription

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp3"
TEMP_SUFFIX = ".part"
DOWNLOAD_CHUNK_SIZE = 256 * 1024
# Chunks streamed between checks that the episode is still wanted
CANCEL_CHECK_INTERVAL = 16
RETRYABLE_STATUS_CODES = frozenset({408, 429})


def subscription_dir(root: Path, subscription: Subscription) -> Path:
    """Storage directory for a subscription's episodes."""
    slug = slugify(subscription.title, max_length=80) or "podcast"
    return root / f"{slug}-{subscription.id}"


def enclosure_extension(url: str) -> str:
    """File extension of the enclosure URL, or .mp3 when it has none."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    if 1 < len(suffix) <= 5 and suffix[1:].isalnum():
        return suffix
    return DEFAULT_EXTENSION


def build_filename(
    episode: Episode,
    settings: DownloadSettings,
    episode_number: Optional[int] = None,
) -> str:
    """
    Build the on-disk filename for an episode.

    The slugified title, optionally prefixed by the publish date
    (YYYY-MM-DD) and the 1-based episode number, with the enclosure's
    extension.

    Example:
        >>> build_filename(episode, DownloadSettings(append_date_to_filename=True))
        '2024-01-15-the-pilot.mp3'
    """
    parts = []
    if settings.append_date_to_filename:
        parts.append(episode.publish_date.strftime("%Y-%m-%d"))
    if settings.append_episode_number_to_filename and episode_number:
        parts.append(str(episode_number))
    parts.append(slugify(episode.title, max_length=120) or f"episode-{episode.id}")
    return "-".join(parts) + enclosure_extension(episode.enclosure_url)


def temp_path_for(target: Path, tag: str = "") -> Path:
    """Temporary sibling of target; tag keeps concurrent writers apart."""
    name = f"{target.name}.{tag}" if tag else target.name
    return target.with_name(name + TEMP_SUFFIX)


def remove_quietly(path: Optional[Path]) -> None:
    """Delete a file if it exists, logging instead of raising."""
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


class EpisodeDownloader:
    """
    Streams enclosures to disk.

    Example:
        >>> downloader = EpisodeDownloader(read_timeout=30)
        >>> part = downloader.stream_to_file(url, Path("data/show-1/ep.mp3.part"), lambda: True)
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        max_redirects: int = 5,
        user_agent: str = "podcatcher/0.1",
    ) -> None:
        self.session = session or requests.Session()
        self.session.max_redirects = max_redirects
        self.chunk_size = chunk_size
        self.timeout = (connect_timeout, read_timeout)
        self.user_agent = user_agent

    def stream_to_file(
        self,
        url: str,
        temp_path: Path,
        should_continue: Callable[[], bool],
    ) -> Path:
        """
        Download url into temp_path.

        Args:
            url: Enclosure URL
            temp_path: File to write; created along with its parent directory
            should_continue: Polled while streaming; returning False aborts

        Returns:
            Path of the completed temporary file

        Raises:
            DownloadTransientError: Network failure, timeout, 5xx, short read
            DownloadPermanentError: 4xx, filesystem error
            DownloadCancelled: should_continue returned False
        """
        try:
            response = self.session.get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
                stream=True,
                allow_redirects=True,
            )
        except requests.exceptions.TooManyRedirects as exc:
            raise DownloadPermanentError(f"Too many redirects for {url}") from exc
        except (
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ) as exc:
            raise DownloadTransientError(f"Network error for {url}: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise DownloadPermanentError(f"Request for {url} failed: {exc}") from exc

        with response:
            status = response.status_code
            if status >= 500 or status in RETRYABLE_STATUS_CODES:
                raise DownloadTransientError(f"HTTP {status} for {url}")
            if not 200 <= status < 300:
                raise DownloadPermanentError(f"HTTP {status} for {url}")

            expected = _content_length(response)
            written = 0
            try:
                temp_path.parent.mkdir(parents=True, exist_ok=True)
                with open(temp_path, "wb") as f:
                    for index, chunk in enumerate(response.iter_content(chunk_size=self.chunk_size)):
                        if index % CANCEL_CHECK_INTERVAL == 0 and not should_continue():
                            raise DownloadCancelled(url)
                        if chunk:
                            f.write(chunk)
                            written += len(chunk)
            # requests errors subclass OSError, so they must be caught first
            except (
                requests.exceptions.Timeout,
                requests.exceptions.ConnectionError,
                requests.exceptions.ChunkedEncodingError,
            ) as exc:
                raise DownloadTransientError(f"Stream interrupted for {url}: {exc}") from exc
            except requests.exceptions.RequestException as exc:
                raise DownloadPermanentError(f"Stream failed for {url}: {exc}") from exc
            except OSError as exc:
                raise DownloadPermanentError(f"Cannot write {temp_path}: {exc}") from exc

        if expected is not None and written < expected:
            raise DownloadTransientError(
                f"Short read for {url}: got {written} of {expected} bytes"
            )

        logger.debug("Streamed %d bytes from %s to %s", written, url, temp_path)
        return temp_path


def _content_length(response: requests.Response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    try:
        return int(value) if value else None
    except (TypeError, ValueError):
        return None
