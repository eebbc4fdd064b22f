"""
jerkyrank.engine.retry - Backoff for Transient Store Errors
============================================================

Only :class:`~jerkyrank.errors.TransientStoreError` is retried; every
other error propagates on the first attempt.  Delays follow
``base_delay * 2**k`` (100 / 200 / 400 ms with the defaults).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from jerkyrank.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, base_delay: float) -> list[float]:
    """Delays slept between *attempts* tries (one fewer than attempts)."""
    return [base_delay * (2 ** k) for k in range(max(0, attempts - 1))]


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 0.1,
    operation: str = "store operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or *attempts* transient failures occur.

    Parameters
    ----------
    fn:
        Zero-argument callable performing the store work.
    attempts:
        Total tries, including the first.
    base_delay:
        Seconds slept after the first failure; doubled each retry.
    sleep:
        Injected for tests.

    Raises
    ------
    TransientStoreError
        The last transient failure once attempts are exhausted.
    """
    delays = backoff_delays(attempts, base_delay)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientStoreError as exc:
            if attempt >= attempts:
                logger.error(
                    "%s failed after %d attempts: %s", operation, attempts, exc,
                )
                raise
            wait = delays[attempt - 1]
            logger.warning(
                "%s hit a transient error (attempt %d/%d), retrying in %.0fms: %s",
                operation, attempt, attempts, wait * 1000, exc,
            )
            sleep(wait)
    raise AssertionError("unreachable")  # pragma: no cover
