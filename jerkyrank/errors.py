"""
jerkyrank.errors - Error Taxonomy
==================================

Every failure that crosses a service boundary is one of five classes:

* :class:`TransientStoreError` - connection reset, timeout, refused
  connection, pool acquisition timeout.  The only class that is retried.
* :class:`ConflictError` - uniqueness violation; "another writer won".
* :class:`ValidationError` - rejected at the boundary without side effects.
* :class:`NotFoundError` - user or achievement code absent.
* :class:`FatalError` - anything else.

Store code wraps its session work in :func:`translate_db_errors` so raw
SQLAlchemy exceptions never leak past the service layer.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)

# Substrings (lower-cased) that mark a DBAPI error as transient
TRANSIENT_MARKERS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "enetunreach",
    "eai_again",
    "epipe",
    "connection reset",
    "connection refused",
    "could not connect",
    "server closed the connection",
    "terminating connection",
    "timeout",
    "timed out",
    "database is locked",
)


class EngagementError(Exception):
    """Base class for all engine errors."""


class TransientStoreError(EngagementError):
    """Retryable store failure."""


class ConflictError(EngagementError):
    """A uniqueness constraint rejected the write."""


class ValidationError(EngagementError):
    """Input rejected before any side effect."""


class NotFoundError(EngagementError):
    """The referenced user or achievement does not exist."""


class FatalError(EngagementError):
    """Unclassified failure; propagated and logged at error level."""


def is_transient(error: BaseException) -> bool:
    """Return True if *error* looks like a retryable connectivity failure."""
    if isinstance(error, TransientStoreError):
        return True
    if isinstance(error, (sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def classify_db_error(error: BaseException) -> EngagementError:
    """Map a low-level exception onto the taxonomy (does not raise)."""
    if isinstance(error, EngagementError):
        return error
    if isinstance(error, sa_exc.IntegrityError):
        return ConflictError(str(error.orig) if error.orig is not None else str(error))
    if is_transient(error):
        return TransientStoreError(str(error))
    return FatalError(str(error))


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy / connectivity errors as taxonomy errors.

    Usage::

        with translate_db_errors("score increment"):
            with get_session(engine) as session:
                ...
    """
    try:
        yield
    except EngagementError:
        raise
    except (sa_exc.SQLAlchemyError, ConnectionError, TimeoutError) as exc:
        mapped = classify_db_error(exc)
        if isinstance(mapped, FatalError):
            logger.error("%s failed: %s", operation, exc)
        raise mapped from exc
