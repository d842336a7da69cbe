"""
Download policy.

Decides which newly discovered episodes are queued automatically. Pure
functions only: the caller supplies the subscription, its new episodes,
a settings snapshot and whether the subscription already has downloads.
"""

from typing import List, Sequence

from podcatcher.config import DownloadSettings
from podcatcher.models.entities import Episode, Subscription
from podcatcher.models.repository import OVERRIDE_FIELDS


def effective_settings(subscription: Subscription, settings: DownloadSettings) -> DownloadSettings:
    """Merge a subscription's non-null overrides onto the global settings."""
    overrides = {
        name: getattr(subscription, name)
        for name in OVERRIDE_FIELDS
        if getattr(subscription, name) is not None
    }
    return settings.model_copy(update=overrides) if overrides else settings


def newest_first(episodes: Sequence[Episode]) -> List[Episode]:
    """Order by publish date, newest first; ties broken by identifier."""
    return sorted(episodes, key=lambda e: (e.publish_date, e.guid), reverse=True)


def decide(
    subscription: Subscription,
    new_episodes: Sequence[Episode],
    settings: DownloadSettings,
    has_episodes: bool,
) -> List[Episode]:
    """
    Select the new episodes to queue for download.

    Rules:
    - auto-download on: every new episode
    - otherwise, on the first refresh that finds episodes for the
      subscription and with download-on-add enabled: the N newest new episodes, where N is
      the initial download count
    - otherwise: nothing

    Args:
        subscription: Owner of the episodes
        new_episodes: Episodes inserted by the latest reconciliation
        settings: Global settings snapshot
        has_episodes: Whether the subscription already had stored episodes
            before this reconciliation

    Returns:
        Episodes to enqueue, newest first
    """
    if not new_episodes:
        return []

    policy = effective_settings(subscription, settings)

    if policy.auto_download:
        return newest_first(new_episodes)

    if policy.download_on_add and not has_episodes and policy.initial_download_count > 0:
        return newest_first(new_episodes)[:policy.initial_download_count]

    return []
