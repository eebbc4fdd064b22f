"""
jerkyrank.services.metrics_service - MetricsAggregator
=======================================================

Builds the :class:`~jerkyrank.engine.stats.UserStats` snapshot the
achievement engine evaluates against.  Pure reads over rankings, events,
streaks, products and the rollup (for the leaderboard position).

Payload keys are read in Python rather than with JSON operators so the
same queries run on PostgreSQL and SQLite.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from jerkyrank.constants import (
    ANIMAL_CATEGORY_MIN_PRODUCTS,
    DEFAULT_TOTAL_RANKABLE_PRODUCTS,
    PAGE_VIEW_TYPES,
    TRENDING_TOP_N,
    UNRANKED_POSITION,
    ActivityType,
    Period,
    StreakType,
)
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import ActivityEvent, Product, Ranking, Streak, User
from jerkyrank.engine.clock import Clock, SystemClock, ensure_utc
from jerkyrank.engine.retry import retry_with_backoff
from jerkyrank.engine.stats import UserStats
from jerkyrank.engine.streaks import StreakState, effective_current
from jerkyrank.errors import ValidationError, translate_db_errors
from jerkyrank.services.leaderboard_service import compute_position

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.config import EngineConfig

logger = logging.getLogger(__name__)


def _count_events(session: Session, user_id: int, *types: str) -> int:
    return session.scalar(
        select(func.count(ActivityEvent.id)).where(
            ActivityEvent.user_id == user_id,
            ActivityEvent.event_type.in_(types),
        )
    ) or 0


def _payload_values(session: Session, user_id: int, event_type: str, key: str) -> list[Any]:
    """``payload[key]`` for each of the user's *event_type* events (missing keys skipped)."""
    payloads = session.scalars(
        select(ActivityEvent.payload).where(
            ActivityEvent.user_id == user_id,
            ActivityEvent.event_type == event_type,
        )
    ).all()
    return [p[key] for p in payloads if isinstance(p, dict) and p.get(key) is not None]


def _profile_views_received(session: Session, user_id: int) -> int:
    payloads = session.scalars(
        select(ActivityEvent.payload).where(
            ActivityEvent.event_type == ActivityType.PROFILE_VIEW,
            ActivityEvent.user_id != user_id,
        )
    ).all()
    target = str(user_id)
    return sum(
        1 for p in payloads
        if isinstance(p, dict) and str(p.get("profileUserId")) == target
    )


def _streak_state(session: Session, user_id: int, streak_type: str) -> StreakState:
    row = session.scalar(
        select(Streak).where(Streak.user_id == user_id, Streak.streak_type == streak_type)
    )
    if row is None:
        return StreakState()
    return StreakState(row.current_streak, row.longest_streak, row.last_activity_day)


def _ranked_products(session: Session, user_id: int) -> set[str]:
    return set(session.scalars(
        select(Ranking.product_id).where(Ranking.user_id == user_id).distinct()
    ).all())


def _completed_animal_categories(session: Session, ranked: set[str]) -> tuple[str, ...]:
    """Animal types with more than the minimum rankable products, all ranked."""
    rows = session.execute(
        select(Product.id, Product.animal_type).where(
            Product.rankable.is_(True), Product.animal_type.is_not(None),
        )
    ).all()
    groups: dict[str, set[str]] = {}
    for row in rows:
        groups.setdefault(row.animal_type, set()).add(row.id)
    return tuple(sorted(
        animal for animal, ids in groups.items()
        if len(ids) > ANIMAL_CATEGORY_MIN_PRODUCTS and ids <= ranked
    ))


def _trending_products(session: Session) -> set[str]:
    count = func.count(Ranking.id)
    return set(session.scalars(
        select(Ranking.product_id)
        .group_by(Ranking.product_id)
        .order_by(count.desc(), Ranking.product_id)
        .limit(TRENDING_TOP_N)
    ).all())


class MetricsAggregator:
    """Reads the per-user metrics the achievement engine needs.

    ``total_rankable_products`` comes from config when set, otherwise from
    the rankable product count (falling back to the catalogue default when
    the products table is empty).
    """

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock | None = None,
        cfg: EngineConfig | None = None,
    ) -> None:
        self.engine = engine
        self.clock = clock or SystemClock()
        self.cfg = cfg

    def _total_rankable(self, session: Session) -> int:
        if self.cfg is not None and self.cfg.total_rankable_products:
            return self.cfg.total_rankable_products
        count = session.scalar(
            select(func.count(Product.id)).where(Product.rankable.is_(True))
        ) or 0
        return count or DEFAULT_TOTAL_RANKABLE_PRODUCTS

    def snapshot_in_session(self, session: Session, user_id: int) -> UserStats:
        today = self.clock.now().date()
        ranked = _ranked_products(session, user_id)
        rank_streak = _streak_state(session, user_id, StreakType.DAILY_RANK)
        login_streak = _streak_state(session, user_id, StreakType.DAILY_LOGIN)
        product_views = _payload_values(session, user_id, ActivityType.PRODUCT_VIEW, "productId")
        profile_views = _payload_values(session, user_id, ActivityType.PROFILE_VIEW, "profileUserId")

        unique_brands = session.scalar(
            select(func.count(distinct(Product.vendor)))
            .join(Ranking, Ranking.product_id == Product.id)
            .where(Ranking.user_id == user_id, Product.vendor.is_not(None))
        ) or 0

        position = compute_position(session, user_id, Period.ALL_TIME)
        user = session.get(User, user_id)

        return UserStats(
            total_rankings=session.scalar(
                select(func.count(Ranking.id)).where(Ranking.user_id == user_id)
            ) or 0,
            unique_products=len(ranked),
            total_rankable_products=self._total_rankable(session),
            current_streak=effective_current(rank_streak, today),
            longest_streak=rank_streak.longest,
            current_login_streak=effective_current(login_streak, today),
            longest_login_streak=login_streak.longest,
            total_searches=_count_events(session, user_id, ActivityType.SEARCH),
            total_page_views=_count_events(session, user_id, *PAGE_VIEW_TYPES),
            total_product_views=len(product_views),
            unique_product_views=len({str(v) for v in product_views}),
            total_profile_views=len(profile_views),
            unique_profile_views=len({str(v) for v in profile_views}),
            profile_views_received=_profile_views_received(session, user_id),
            unique_brands=unique_brands,
            leaderboard_position=position.rank if position.rank is not None else UNRANKED_POSITION,
            completed_animal_categories=_completed_animal_categories(session, ranked),
            join_date=ensure_utc(user.created_at) if user is not None and user.created_at else None,
            trending_ranks=len(ranked & _trending_products(session)),
        )

    def snapshot(self, user_id: int) -> UserStats:
        """Return the current :class:`UserStats` for *user_id*."""
        def _read() -> UserStats:
            with translate_db_errors("stats snapshot"):
                with get_session(self.engine) as session:
                    return self.snapshot_in_session(session, user_id)

        attempts = self.cfg.retry_attempts if self.cfg else 3
        delay = self.cfg.retry_base_delay_seconds if self.cfg else 0.1
        return retry_with_backoff(
            _read, attempts=attempts, base_delay=delay, operation="stats snapshot",
        )

    def activity_summary(self, user_id: int, days: int = 7) -> dict[str, int]:
        """Events per activity type over the last *days* days.

        Raises
        ------
        ValidationError
            If *days* is not positive.
        """
        if days <= 0:
            raise ValidationError("days must be positive")
        since = self.clock.now() - timedelta(days=days)
        with translate_db_errors("activity summary"):
            with get_session(self.engine) as session:
                rows = session.execute(
                    select(ActivityEvent.event_type, func.count(ActivityEvent.id).label("cnt"))
                    .where(ActivityEvent.user_id == user_id, ActivityEvent.created_at >= since)
                    .group_by(ActivityEvent.event_type)
                ).all()

        summary = {t.value: 0 for t in ActivityType}
        for row in rows:
            summary[row.event_type] = row.cnt
        return summary
