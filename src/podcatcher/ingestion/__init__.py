"""
Ingestion module for feed fetching and episode reconciliation.

Provides the feed fetcher that normalizes RSS/Atom documents and the
reconciler that turns new feed entries into stored episodes.
"""

from podcatcher.ingestion.reconciler import reconcile
from podcatcher.ingestion.rss_parser import FeedDocument, FeedEntry, FeedFetcher, parse_feed_document

__all__ = ["FeedDocument", "FeedEntry", "FeedFetcher", "parse_feed_document", "reconcile"]
