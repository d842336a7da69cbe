"""
Triggers module for refreshing subscribed feeds.

Provides the refresh coordinator that fetches feeds, reconciles new
episodes and queues the ones the download policy selects.
"""

from podcatcher.triggers.refresh import RefreshCoordinator, RefreshResult

__all__ = ["RefreshCoordinator", "RefreshResult"]
