"""Custom exceptions for podcatcher."""


class PodcatcherError(Exception):
    """Base exception for all podcatcher errors."""

    pass


class NotFoundError(PodcatcherError):
    """Unknown subscription or episode id."""

    pass


class DuplicateSubscriptionError(PodcatcherError):
    """A subscription with the same feed URL already exists."""

    def __init__(self, feed_url: str) -> None:
        super().__init__(f"Subscription for '{feed_url}' already exists")
        self.feed_url = feed_url


class FetchError(PodcatcherError):
    """Feed could not be fetched or parsed."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class FetchTransientError(FetchError):
    """Retryable fetch failure (timeout, 5xx, connection reset)."""

    pass


class FetchPermanentError(FetchError):
    """Non-retryable fetch failure (4xx, malformed document)."""

    pass


class DownloadError(PodcatcherError):
    """Episode download failed."""

    pass


class DownloadTransientError(DownloadError):
    """Retryable download failure (network, timeout, partial write)."""

    pass


class DownloadPermanentError(DownloadError):
    """Non-retryable download failure (disk full, invalid path, 4xx)."""

    pass


class DownloadCancelled(PodcatcherError):
    """The episode was deleted or reset while its download was in flight."""

    pass
