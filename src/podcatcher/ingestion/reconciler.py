"""
Episode reconciliation.

Diffs a fetched FeedDocument against the episodes already stored for a
subscription and inserts the new ones. Running it twice against the same
document inserts nothing the second time.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from podcatcher.ingestion.rss_parser import FeedDocument
from podcatcher.models.entities import Episode
from podcatcher.models.repository import Repository

logger = logging.getLogger(__name__)


def reconcile(
    repository: Repository,
    subscription_id: int,
    document: FeedDocument,
    fetched_at: Optional[datetime] = None,
) -> List[Episode]:
    """
    Insert feed entries not yet stored for the subscription.

    Entries are keyed by GUID, or by enclosure URL when the feed has no
    GUID. Entries with neither, or with no enclosure to download, are
    skipped with a warning. Entries without a publish date are stamped
    with fetched_at.

    Args:
        repository: Episode storage
        subscription_id: Owning subscription
        document: Parsed feed
        fetched_at: Fallback publish date (default: now)

    Returns:
        Newly inserted episodes, in feed order
    """
    fetched_at = fetched_at or datetime.now(timezone.utc)
    known = repository.known_guids(subscription_id)
    inserted: List[Episode] = []
    skipped = 0

    for entry in document.entries:
        identifier = entry.identifier
        if not identifier or not entry.enclosure_url:
            logger.warning(
                "Skipping malformed entry '%s' in subscription %d (guid=%s, enclosure=%s)",
                entry.title,
                subscription_id,
                entry.guid,
                entry.enclosure_url,
            )
            skipped += 1
            continue

        if identifier in known:
            continue
        known.add(identifier)

        episode = repository.insert_episode(
            subscription_id=subscription_id,
            guid=identifier,
            title=entry.title or identifier,
            enclosure_url=entry.enclosure_url,
            publish_date=entry.publish_date or fetched_at,
            artwork_url=entry.artwork_url,
        )
        # None means a concurrent insert got there first
        if episode is not None:
            inserted.append(episode)

    logger.info(
        "Reconciled subscription %d: %d new, %d malformed, %d entries total",
        subscription_id,
        len(inserted),
        skipped,
        len(document.entries),
    )
    return inserted
