"""
jerkyrank.services.score_store - EngagementScoreStore
======================================================

The rollup table ``engagement_scores``: one row per user, five counters
(achievements, page_views, rankings, searches, unique_products) in three
period buckets plus a derived score per bucket.

* :meth:`EngagementScoreStore.increment` is a single ``INSERT ... ON
  CONFLICT (user_id) DO UPDATE SET c = c + EXCLUDED.c`` statement, so
  concurrent increments on the same row never lose an update.  The week
  and month buckets only admit timestamps inside their rolling window.
* :meth:`EngagementScoreStore.recalculate` folds the source tables back
  into the row (rolling 7 / 30 day windows) and overwrites it.
* ``reset_weekly`` / ``reset_monthly`` zero a bucket and are invoked by an
  external scheduler.

Each bucket's score is the sum of achievements, page_views, rankings and
searches; ``unique_products`` is tracked but never summed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, bindparam, distinct, func, select, text, update
from sqlalchemy.orm import Session

from jerkyrank.constants import (
    PAGE_VIEW_TYPES,
    ROLLUP_COUNTERS,
    SCORE_COUNTERS,
    ActivityLogCategory,
    ActivityType,
    Period,
)
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import ActivityEvent, ActivityLog, EngagementScore, Ranking
from jerkyrank.engine.clock import Clock, SystemClock, admitted_periods, ensure_utc, window_start
from jerkyrank.engine.retry import retry_with_backoff
from jerkyrank.errors import ValidationError, translate_db_errors

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.config import EngineConfig
    from jerkyrank.engine.cache import CacheLayer

logger = logging.getLogger(__name__)

# Activity-log categories counted by the ``achievements`` counter
ACHIEVEMENT_LOG_CATEGORIES: tuple[str, ...] = (
    ActivityLogCategory.EARN_BADGE,
    ActivityLogCategory.TIER_UPGRADE,
)


# ---------------------------------------------------------------------------
# Column naming
# ---------------------------------------------------------------------------
def counter_column(counter: str, period: str) -> str:
    if period == Period.ALL_TIME:
        return f"{counter}_count"
    return f"{counter}_{period}"


def score_column(period: str) -> str:
    if period == Period.ALL_TIME:
        return "engagement_score"
    return f"engagement_score_{period}"


def validate_delta(delta: dict[str, int]) -> dict[str, int]:
    """Reject unknown counters and negative or non-integer amounts.

    Raises
    ------
    ValidationError
        On an unknown counter name or a bad amount.
    """
    clean: dict[str, int] = {}
    for counter, amount in delta.items():
        if counter not in ROLLUP_COUNTERS:
            raise ValidationError(f"Unknown score counter: {counter!r}")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError(f"Counter {counter!r} needs a non-negative int, got {amount!r}")
        if amount:
            clean[counter] = amount
    return clean


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ScoreSnapshot:
    """Detached copy of one rollup row."""

    user_id: int
    counters: dict[str, dict[str, int]] = field(default_factory=dict)
    scores: dict[str, int] = field(default_factory=dict)
    last_updated_at: datetime | None = None

    def counter(self, counter: str, period: str = Period.ALL_TIME) -> int:
        return self.counters.get(period, {}).get(counter, 0)

    def score(self, period: str = Period.ALL_TIME) -> int:
        return self.scores.get(period, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "counters": self.counters,
            "scores": self.scores,
            "last_updated_at": (
                self.last_updated_at.isoformat() if self.last_updated_at else None
            ),
        }

    @classmethod
    def from_row(cls, row: EngagementScore) -> ScoreSnapshot:
        counters = {
            period.value: {c: getattr(row, counter_column(c, period)) or 0 for c in ROLLUP_COUNTERS}
            for period in Period
        }
        scores = {period.value: getattr(row, score_column(period)) or 0 for period in Period}
        return cls(
            user_id=row.user_id,
            counters=counters,
            scores=scores,
            last_updated_at=ensure_utc(row.last_updated_at) if row.last_updated_at else None,
        )


# ---------------------------------------------------------------------------
# Raw upsert
# ---------------------------------------------------------------------------
def _upsert(
    session: Session,
    user_id: int,
    values: dict[str, int],
    now: datetime,
    *,
    accumulate: bool,
) -> None:
    """``INSERT ... ON CONFLICT (user_id) DO UPDATE`` over *values*.

    With ``accumulate`` each column is added to; otherwise overwritten.
    Column names come from :func:`counter_column` / :func:`score_column`
    only, never from callers.
    """
    columns = list(values)
    insert_cols = ", ".join(["user_id", *columns, "last_updated_at", "created_at"])
    insert_vals = ", ".join([":user_id", *(f":{c}" for c in columns), ":now", ":now"])
    if accumulate:
        assignments = [f"{c} = engagement_scores.{c} + EXCLUDED.{c}" for c in columns]
    else:
        assignments = [f"{c} = EXCLUDED.{c}" for c in columns]
    assignments.append("last_updated_at = EXCLUDED.last_updated_at")

    stmt = text(
        f"INSERT INTO engagement_scores ({insert_cols}) "
        f"VALUES ({insert_vals}) "
        f"ON CONFLICT (user_id) DO UPDATE SET {', '.join(assignments)}"
    ).bindparams(bindparam("now", type_=DateTime(timezone=True)))
    session.execute(stmt, {"user_id": user_id, "now": now, **values})


# ---------------------------------------------------------------------------
# EngagementScoreStore
# ---------------------------------------------------------------------------
class EngagementScoreStore:
    """Rollup writer and reader.

    All methods are synchronous; async callers use
    ``await run_db(store.increment, ...)``.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        cache: CacheLayer | None = None,
        clock: Clock | None = None,
        cfg: EngineConfig | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.clock = clock or SystemClock()
        self._retry_attempts = cfg.retry_attempts if cfg else 3
        self._retry_base_delay = cfg.retry_base_delay_seconds if cfg else 0.1

    def _retry(self, fn, operation: str):
        return retry_with_backoff(
            fn,
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            operation=operation,
        )

    # -------------------------------------------------------------------
    # Increment
    # -------------------------------------------------------------------
    def increment_in_session(
        self,
        session: Session,
        user_id: int,
        delta: dict[str, int],
        timestamp: datetime | None = None,
    ) -> list[str]:
        """Apply *delta* inside the caller's transaction.

        Returns the period buckets that were touched (empty when *delta*
        is all zeros).  Cache invalidation is the caller's job once the
        transaction has committed.
        """
        clean = validate_delta(delta)
        if not clean:
            return []
        now = self.clock.now()
        ts = ensure_utc(timestamp) if timestamp is not None else now
        periods = admitted_periods(ts, now)

        values: dict[str, int] = {}
        score_delta = sum(clean.get(c, 0) for c in SCORE_COUNTERS)
        for period in periods:
            for counter, amount in clean.items():
                values[counter_column(counter, period)] = amount
            values[score_column(period)] = score_delta

        _upsert(session, user_id, values, now, accumulate=True)
        return periods

    def increment(
        self,
        user_id: int,
        delta: dict[str, int],
        timestamp: datetime | None = None,
    ) -> list[str]:
        """Add *delta* to the user's row, then run cache invalidation.

        Parameters
        ----------
        user_id:
            Row owner; the row is created on first increment.
        delta:
            Counter name → non-negative amount, e.g. ``{"searches": 1}``.
        timestamp:
            When the activity happened; defaults to now.

        Raises
        ------
        ValidationError
            Unknown counter or bad amount (nothing written).
        TransientStoreError
            After retries are exhausted.
        """
        validate_delta(delta)
        ts = ensure_utc(timestamp) if timestamp is not None else self.clock.now()

        def _write() -> list[str]:
            with translate_db_errors("score increment"):
                with get_session(self.engine) as session:
                    return self.increment_in_session(session, user_id, delta, ts)

        periods = self._retry(_write, "score increment")
        if periods:
            self.invalidate(user_id, ts)
        return periods

    def invalidate(self, user_id: int, timestamp: datetime) -> None:
        if self.cache is not None:
            self.cache.invalidate_engagement(user_id, timestamp)

    # -------------------------------------------------------------------
    # Recalculate
    # -------------------------------------------------------------------
    def _fold(self, session: Session, user_id: int, now: datetime) -> dict[str, int]:
        """Recompute every counter and score from the source tables."""
        values: dict[str, int] = {}
        for period in Period:
            start = window_start(period, now)

            def windowed(stmt, column):
                return stmt.where(column >= start) if start is not None else stmt

            achievements = session.scalar(windowed(
                select(func.count(ActivityLog.id)).where(
                    ActivityLog.user_id == user_id,
                    ActivityLog.category.in_(ACHIEVEMENT_LOG_CATEGORIES),
                ),
                ActivityLog.timestamp,
            )) or 0
            page_views = session.scalar(windowed(
                select(func.count(ActivityEvent.id)).where(
                    ActivityEvent.user_id == user_id,
                    ActivityEvent.event_type.in_(PAGE_VIEW_TYPES),
                ),
                ActivityEvent.created_at,
            )) or 0
            searches = session.scalar(windowed(
                select(func.count(ActivityEvent.id)).where(
                    ActivityEvent.user_id == user_id,
                    ActivityEvent.event_type == ActivityType.SEARCH,
                ),
                ActivityEvent.created_at,
            )) or 0
            rankings = session.scalar(windowed(
                select(func.count(Ranking.id)).where(Ranking.user_id == user_id),
                Ranking.created_at,
            )) or 0
            unique_products = session.scalar(windowed(
                select(func.count(distinct(Ranking.product_id))).where(
                    Ranking.user_id == user_id
                ),
                Ranking.created_at,
            )) or 0

            counts = {
                "achievements": achievements,
                "page_views": page_views,
                "rankings": rankings,
                "searches": searches,
                "unique_products": unique_products,
            }
            for counter, amount in counts.items():
                values[counter_column(counter, period)] = int(amount)
            values[score_column(period)] = sum(int(counts[c]) for c in SCORE_COUNTERS)
        return values

    def recalculate_in_session(self, session: Session, user_id: int) -> dict[str, int]:
        now = self.clock.now()
        values = self._fold(session, user_id, now)
        _upsert(session, user_id, values, now, accumulate=False)
        return values

    def recalculate(self, user_id: int) -> ScoreSnapshot:
        """Rewrite the user's row from rankings, events and award logs.

        Idempotent: two consecutive calls leave identical counters.
        """
        def _write() -> ScoreSnapshot:
            with translate_db_errors("score recalculation"):
                with get_session(self.engine) as session:
                    self.recalculate_in_session(session, user_id)
                    session.flush()
                    return ScoreSnapshot.from_row(session.get(EngagementScore, user_id))

        snapshot = self._retry(_write, "score recalculation")
        logger.debug("Recalculated engagement score for user %d: %s", user_id, snapshot.scores)
        self.invalidate(user_id, self.clock.now())
        return snapshot

    # -------------------------------------------------------------------
    # Bucket resets
    # -------------------------------------------------------------------
    def _reset(self, period: str) -> int:
        columns = {counter_column(c, period): 0 for c in ROLLUP_COUNTERS}
        columns[score_column(period)] = 0

        def _write() -> int:
            with translate_db_errors(f"{period} reset"):
                with get_session(self.engine) as session:
                    result = session.execute(update(EngagementScore).values(**columns))
                    return result.rowcount or 0

        rows = self._retry(_write, f"{period} reset")
        if self.cache is not None:
            self.cache.invalidate_period(period)
        logger.info("Reset %s bucket on %d engagement rows", period, rows)
        return rows

    def reset_weekly(self) -> int:
        """Zero every ``*_week`` column.  Safe to call repeatedly."""
        return self._reset(Period.WEEK)

    def reset_monthly(self) -> int:
        """Zero every ``*_month`` column.  Safe to call repeatedly."""
        return self._reset(Period.MONTH)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get(self, user_id: int) -> ScoreSnapshot | None:
        def _read() -> ScoreSnapshot | None:
            with translate_db_errors("score read"):
                with get_session(self.engine) as session:
                    row = session.get(EngagementScore, user_id)
                    return ScoreSnapshot.from_row(row) if row is not None else None

        return self._retry(_read, "score read")
