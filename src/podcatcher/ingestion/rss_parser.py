"""
Feed fetching and parsing.

Retrieves a podcast feed over HTTP and normalizes it into a FeedDocument:
the channel title and artwork plus the ordered list of raw entries. RSS and
Atom are both handled by feedparser. Every failure surfaces as a typed
FetchError so that callers can decide whether to retry.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

import feedparser
import requests
from dateutil import parser as date_parser

from podcatcher.exceptions import FetchPermanentError, FetchTransientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_USER_AGENT = "podcatcher/0.1"

# Status codes worth retrying besides 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 429})

# Content types that can never be a feed
_REJECTED_CONTENT_TYPES = ("text/html", "application/json")
_REJECTED_CONTENT_PREFIXES = ("audio/", "video/", "image/")


# ---------------------------------------------------------------------------
#  Data models
# ---------------------------------------------------------------------------

@dataclass
class FeedEntry:
    """
    One item of a feed, as published.

    Attributes:
        guid: Feed-provided unique identifier, if any
        title: Episode title
        enclosure_url: Media URL, if any
        publish_date: Publication time in UTC, if the feed gives one
        artwork_url: Episode-specific artwork, if any
    """

    guid: Optional[str]
    title: str
    enclosure_url: Optional[str]
    publish_date: Optional[datetime] = None
    artwork_url: str = ""

    @property
    def identifier(self) -> Optional[str]:
        """Stable identifier: the GUID, or the enclosure URL when absent."""
        return self.guid or self.enclosure_url


@dataclass
class FeedDocument:
    """Normalized feed: channel metadata plus entries in feed order."""

    title: str = ""
    artwork_url: str = ""
    entries: List[FeedEntry] = field(default_factory=list)


# ---------------------------------------------------------------------------
#  Fetcher
# ---------------------------------------------------------------------------

class FeedFetcher:
    """
    Fetches and parses podcast feeds.

    Network timeouts, connection failures and 5xx responses raise
    FetchTransientError. Other 4xx responses, redirect loops, non-feed
    content types and unparseable documents raise FetchPermanentError.

    Example:
        >>> fetcher = FeedFetcher(timeout=10)
        >>> document = fetcher.fetch("https://example.com/feed.xml")
        >>> print(document.title, len(document.entries))
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()
        self.session.max_redirects = max_redirects

    def fetch(self, url: str) -> FeedDocument:
        """
        Download and parse the feed at url.

        Raises:
            FetchTransientError: Retryable network or server failure
            FetchPermanentError: Client error or invalid document
        """
        logger.debug("Fetching feed %s", url)
        try:
            response = self.session.get(
                url,
                headers={"User-Agent": self.user_agent},
                timeout=(self.timeout, self.timeout),
                allow_redirects=True,
            )
        except requests.exceptions.TooManyRedirects as exc:
            raise FetchPermanentError(url, f"too many redirects: {exc}") from exc
        except (
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ) as exc:
            raise FetchTransientError(url, f"network error: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise FetchPermanentError(url, f"request failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise FetchTransientError(url, f"HTTP {status}")
        if not 200 <= status < 300:
            raise FetchPermanentError(url, f"HTTP {status}")

        content_type = response.headers.get("Content-Type", "")
        if not is_feed_content_type(content_type):
            raise FetchPermanentError(url, f"unsupported content type '{content_type}'")

        return parse_feed_document(response.content, url)


def is_feed_content_type(content_type: str) -> bool:
    """Return False for content types that cannot hold an RSS/Atom feed."""
    media_type = content_type.split(";", 1)[0].strip().lower()
    if not media_type:
        return True
    if media_type in _REJECTED_CONTENT_TYPES:
        return False
    return not media_type.startswith(_REJECTED_CONTENT_PREFIXES)


def parse_feed_document(content: Any, url: str = "") -> FeedDocument:
    """
    Parse raw feed content into a FeedDocument.

    Args:
        content: Feed body (bytes or str)
        url: Source URL, used in error messages

    Returns:
        FeedDocument with entries in feed order

    Raises:
        FetchPermanentError: If the content is not a usable feed
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    # A stream keeps feedparser from treating the body as a path or URL
    parsed = feedparser.parse(io.BytesIO(content))
    entries = list(getattr(parsed, "entries", []) or [])
    channel = getattr(parsed, "feed", {}) or {}

    if not entries and getattr(parsed, "bozo", False):
        raise FetchPermanentError(
            url, f"malformed feed: {getattr(parsed, 'bozo_exception', 'parse error')}"
        )
    if not entries and not getattr(parsed, "version", "") and not channel.get("title"):
        raise FetchPermanentError(url, "document is not an RSS or Atom feed")

    document = FeedDocument(
        title=channel.get("title", "") or "",
        artwork_url=_extract_image_url(channel),
        entries=[extract_entry(entry) for entry in entries],
    )
    logger.debug("Parsed %d entries from %s", len(document.entries), url or "feed")
    return document


# ---------------------------------------------------------------------------
#  Entry helpers
# ---------------------------------------------------------------------------

def extract_entry(entry: Any) -> FeedEntry:
    """
    Normalize a feedparser entry.

    Missing fields are left empty; the reconciler decides whether the
    entry is usable.

    Args:
        entry: feedparser entry object

    Returns:
        FeedEntry
    """
    guid = entry.get("id") or entry.get("guid") or None
    return FeedEntry(
        guid=guid.strip() if isinstance(guid, str) and guid.strip() else None,
        title=(entry.get("title") or "").strip(),
        enclosure_url=_extract_enclosure_url(entry),
        publish_date=_extract_publish_date(entry),
        artwork_url=_extract_image_url(entry),
    )


def _extract_enclosure_url(entry: Any) -> Optional[str]:
    """
    Extract the media URL from a feedparser entry's enclosures or links.

    Audio and video enclosures win over untyped ones.

    Args:
        entry: feedparser entry object

    Returns:
        Media URL string or None if not found
    """
    enclosures = entry.get("enclosures") or []
    fallback = None
    for enc in enclosures:
        url = enc.get("href") or enc.get("url")
        if not url:
            continue
        if enc.get("type", "").startswith(("audio/", "video/")):
            return url
        fallback = fallback or url
    if fallback:
        return fallback

    for link in entry.get("links") or []:
        if link.get("rel") == "enclosure" or link.get("type", "").startswith(("audio/", "video/")):
            url = link.get("href")
            if url:
                return url

    return None


def _extract_publish_date(entry: Any) -> Optional[datetime]:
    """
    Extract the publication time as an aware UTC datetime.

    Prefers feedparser's parsed struct (already UTC) and falls back to
    dateutil for formats feedparser could not handle.
    """
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            return datetime(*parsed[:6], tzinfo=timezone.utc)

    raw_date = entry.get("published") or entry.get("updated") or ""
    if raw_date:
        try:
            value = date_parser.parse(raw_date)
        except (ValueError, OverflowError):
            logger.warning("Failed to parse date '%s'", raw_date)
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    return None


def _extract_image_url(node: Any) -> str:
    """Return the image href of a feed channel or entry, or ''."""
    image = node.get("image") or {}
    if isinstance(image, dict):
        return image.get("href") or image.get("url") or ""
    return ""
