"""
jerkyrank.services.activity_ingestor - ActivityIngestor
========================================================

Accepts typed activity events and persists them to ``activity_events``.

* ``ranking_saved``, ``coin_earned``, ``login`` and ``purchase`` (or any
  event tracked with ``immediate=True``) are written on the caller's
  thread.
* Everything else is buffered and flushed when the buffer reaches
  ``batch_size`` or ``batch_interval_seconds`` after the first enqueue.
* A failed flush puts the batch back at the head of the buffer in its
  original order; the next flush retries it.
* Events carrying an ``event_key`` are inserted under a SAVEPOINT so a
  replay of the same key is skipped instead of stored twice.
* Score increments (searches, page views) happen in the same transaction
  as the event insert; cache invalidation and classification
  notifications run after the commit.

One instance per process, created at startup and drained by
:meth:`ActivityIngestor.shutdown`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jerkyrank.constants import CLASSIFICATION_TRIGGERS, IMMEDIATE_TYPES, ActivityType
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import ActivityEvent
from jerkyrank.engine.clock import Clock, SystemClock, ensure_utc
from jerkyrank.engine.retry import retry_with_backoff
from jerkyrank.errors import EngagementError, ValidationError, translate_db_errors

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.config import EngineConfig
    from jerkyrank.services.score_store import EngagementScoreStore

logger = logging.getLogger(__name__)

# Rollup counters bumped by each persisted event type
SCORE_EFFECTS: dict[str, dict[str, int]] = {
    ActivityType.SEARCH: {"searches": 1},
    ActivityType.PRODUCT_VIEW: {"page_views": 1},
    ActivityType.PROFILE_VIEW: {"page_views": 1},
}


@dataclass(frozen=True, slots=True)
class PendingEvent:
    user_id: int
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
    event_key: str | None = None


@dataclass(slots=True)
class IngestStats:
    queued: int = 0
    persisted: int = 0
    duplicates: int = 0
    flushes: int = 0
    failed_flushes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "persisted": self.persisted,
            "duplicates": self.duplicates,
            "flushes": self.flushes,
            "failed_flushes": self.failed_flushes,
        }


@dataclass(slots=True)
class _PersistResult:
    stored: list[PendingEvent] = field(default_factory=list)
    duplicates: int = 0


def validate_event(user_id: Any, event_type: Any, payload: Any) -> ActivityType:
    """Boundary checks; raises :class:`ValidationError` before any side effect."""
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise ValidationError(f"user_id must be a positive integer, got {user_id!r}")
    try:
        activity = ActivityType(event_type)
    except ValueError:
        raise ValidationError(f"Unknown activity type: {event_type!r}") from None
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("payload must be a mapping")
    return activity


class ActivityIngestor:
    """Batching writer for activity events.

    Parameters
    ----------
    engine:
        Pool the inserts run on.
    scores:
        Rollup store; counters are bumped in the insert transaction.
    notify:
        ``(user_id, trigger_type)`` callback, normally
        ``ClassificationQueue.notify``.
    timer_factory:
        ``(interval, fn) → timer`` with ``start()`` / ``cancel()``;
        ``threading.Timer`` by default.
    """

    def __init__(
        self,
        engine: Engine,
        scores: EngagementScoreStore,
        *,
        notify: Callable[[int, str], None] | None = None,
        clock: Clock | None = None,
        cfg: EngineConfig | None = None,
        timer_factory: Callable[[float, Callable[[], None]], Any] | None = None,
    ) -> None:
        self.engine = engine
        self.scores = scores
        self.notify = notify
        self.clock = clock or SystemClock()
        self.batch_size = cfg.batch_size if cfg else 10
        self.batch_interval = cfg.batch_interval_seconds if cfg else 5.0
        self._retry_attempts = cfg.retry_attempts if cfg else 3
        self._retry_base_delay = cfg.retry_base_delay_seconds if cfg else 0.1
        self._timer_factory = timer_factory or threading.Timer

        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._buffer: list[PendingEvent] = []
        self._timer: Any = None
        self._closed = False
        self._stats = IngestStats()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def track(
        self,
        user_id: int,
        event_type: str,
        payload: dict[str, Any] | None = None,
        immediate: bool = False,
        *,
        event_key: str | None = None,
        timestamp: datetime | None = None,
    ) -> int:
        """Record one activity event.

        Returns the number of rows written now: ``1`` for a stored
        immediate event, ``0`` when buffered or when ``event_key`` was
        already stored.

        Raises
        ------
        ValidationError
            Unknown type, bad user id or payload (nothing persisted).
        """
        activity = validate_event(user_id, event_type, payload)
        event = PendingEvent(
            user_id=user_id,
            event_type=activity.value,
            payload=dict(payload or {}),
            created_at=ensure_utc(timestamp) if timestamp else self.clock.now(),
            event_key=event_key,
        )

        if immediate or activity in IMMEDIATE_TYPES or self._closed:
            return len(self._after_commit(self._store([event])))

        flush_now = False
        with self._lock:
            self._buffer.append(event)
            self._stats.queued += 1
            if len(self._buffer) >= self.batch_size:
                flush_now = True
            elif self._timer is None:
                self._start_timer()
        if flush_now:
            try:
                self.flush()
            except EngagementError:
                # Batch is back in the buffer; the next flush retries it
                return 0
        return 0

    def flush(self) -> int:
        """Persist everything buffered; returns rows written.

        On failure the batch goes back to the head of the buffer and the
        error propagates.
        """
        with self._flush_lock:
            with self._lock:
                batch, self._buffer = self._buffer, []
                self._cancel_timer()
            if not batch:
                return 0

            started = time.perf_counter()
            try:
                result = self._store(batch)
            except EngagementError:
                with self._lock:
                    self._buffer[:0] = batch
                    self._stats.failed_flushes += 1
                    if not self._closed and self._timer is None:
                        self._start_timer()
                logger.exception("Activity flush of %d events failed; re-queued", len(batch))
                raise

            with self._lock:
                self._stats.flushes += 1
            stored = self._after_commit(result)
            logger.debug(
                "Flushed %d activity events (%d stored) in %.1fms",
                len(batch), len(stored), (time.perf_counter() - started) * 1000,
            )
            return len(stored)

    def shutdown(self) -> int:
        """Stop batching and write whatever is still buffered."""
        with self._lock:
            self._closed = True
            self._cancel_timer()
        written = self.flush()
        logger.info("ActivityIngestor stopped (%d events flushed on shutdown)", written)
        return written

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def stats(self) -> dict[str, int]:
        with self._lock:
            data = self._stats.to_dict()
            data["pending"] = len(self._buffer)
            return data

    # -------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------
    def _start_timer(self) -> None:
        """Caller holds ``self._lock``."""
        timer = self._timer_factory(self.batch_interval, self._on_timer)
        if hasattr(timer, "daemon"):
            timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        """Caller holds ``self._lock``."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self.flush()
        except EngagementError:
            logger.warning("Timed activity flush failed; %d events pending", self.pending)

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    @staticmethod
    def _insert_keyed(session: Session, event: PendingEvent) -> bool:
        row = ActivityEvent(
            user_id=event.user_id,
            event_type=event.event_type,
            event_key=event.event_key,
            payload=event.payload,
            created_at=event.created_at,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(row)
                session.flush()
        except IntegrityError:
            # Same event_key already stored
            return False
        return True

    def _persist(self, batch: list[PendingEvent]) -> _PersistResult:
        result = _PersistResult()
        with translate_db_errors("activity insert"):
            with get_session(self.engine) as session:
                plain: list[ActivityEvent] = []
                for event in batch:
                    if event.event_key is not None:
                        if not self._insert_keyed(session, event):
                            result.duplicates += 1
                            continue
                    else:
                        plain.append(ActivityEvent(
                            user_id=event.user_id,
                            event_type=event.event_type,
                            payload=event.payload,
                            created_at=event.created_at,
                        ))
                    result.stored.append(event)
                session.add_all(plain)
                session.flush()

                for event in result.stored:
                    delta = SCORE_EFFECTS.get(event.event_type)
                    if delta:
                        self.scores.increment_in_session(
                            session, event.user_id, delta, event.created_at,
                        )
        return result

    def _store(self, batch: list[PendingEvent]) -> _PersistResult:
        return retry_with_backoff(
            lambda: self._persist(batch),
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            operation="activity insert",
        )

    def _after_commit(self, result: _PersistResult) -> list[PendingEvent]:
        with self._lock:
            self._stats.persisted += len(result.stored)
            self._stats.duplicates += result.duplicates
        if result.duplicates:
            logger.info("Skipped %d already-stored activity events", result.duplicates)

        for event in result.stored:
            if event.event_type in SCORE_EFFECTS:
                self.scores.invalidate(event.user_id, event.created_at)
        self._publish(result.stored)
        return result.stored

    def _publish(self, stored: list[PendingEvent]) -> None:
        """Notify once per user with the first type seen for that user."""
        if self.notify is None:
            return
        dominant: dict[int, str] = {}
        for event in stored:
            dominant.setdefault(event.user_id, event.event_type)
        for user_id, event_type in dominant.items():
            if event_type in CLASSIFICATION_TRIGGERS:
                self.notify(user_id, event_type)
