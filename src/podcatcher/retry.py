"""
Retry helpers built on tenacity.

Both the feed refresh and the episode download retry their transient
failures with exponential backoff; this module builds the shared
``Retrying`` controller so the two behave alike.
"""

import logging
from typing import Tuple, Type

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

# Upper bound on a single backoff sleep
MAX_BACKOFF_SECONDS = 300.0


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log a WARNING before tenacity sleeps ahead of the next attempt."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Attempt %d failed (%s: %s); retrying in %.1fs",
        retry_state.attempt_number,
        type(exc).__name__,
        exc,
        sleep,
    )


def build_retrying(
    max_attempts: int,
    backoff_seconds: float,
    retry_on: Tuple[Type[BaseException], ...],
) -> Retrying:
    """
    Create a Retrying controller.

    Args:
        max_attempts: Total attempts, including the first
        backoff_seconds: Wait before the second attempt; doubles afterwards.
            Zero disables waiting (tests).
        retry_on: Exception types worth another attempt. Anything else
            propagates immediately.

    Returns:
        tenacity.Retrying that re-raises the last exception on exhaustion
    """
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=backoff_seconds,
            min=backoff_seconds,
            max=max(backoff_seconds, MAX_BACKOFF_SECONDS) if backoff_seconds else 0,
        ),
        retry=retry_if_exception_type(retry_on),
        before_sleep=log_retry_attempt,
        reraise=True,
    )
