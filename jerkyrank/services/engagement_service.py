"""
jerkyrank.services.engagement_service - Engagement Runtime
===========================================================

Owns one instance of every engine component and exposes the inbound
operations the HTTP and webhook layers call.

Wiring:

* ``interactive`` pool - request writes (rankings, logins, activity) and
  leaderboard / position reads.
* ``webhook`` pool     - order webhooks.
* ``background`` pool  - classification jobs, admin clears, resets,
  recalculations.

Every component shares one :class:`~jerkyrank.engine.cache.CacheLayer`
and one clock.

Usage::

    runtime = EngagementRuntime(pools, cfg)
    runtime.start()                       # workers + readiness + warm-up
    runtime.record_ranking(42, "beef-original", rank=1)
    runtime.get_leaderboard("week", 10)
    runtime.shutdown()                    # final flush, drain workers
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jerkyrank.constants import ActivityType, Period, StreakType
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import Ranking, User
from jerkyrank.engine.achievements import Update, update_to_dict
from jerkyrank.engine.cache import CacheBackend, CacheLayer
from jerkyrank.engine.clock import Clock, SystemClock
from jerkyrank.engine.retry import retry_with_backoff
from jerkyrank.errors import NotFoundError, ValidationError, translate_db_errors
from jerkyrank.services.achievement_service import AchievementEngine, AchievementProgress
from jerkyrank.services.activity_ingestor import ActivityIngestor, validate_event
from jerkyrank.services.classification_queue import ClassificationQueue
from jerkyrank.services.leaderboard_service import (
    LeaderboardEntry,
    LeaderboardView,
    Position,
    parse_period,
)
from jerkyrank.services.metrics_service import MetricsAggregator
from jerkyrank.services.progress_service import ProgressTracker
from jerkyrank.services.score_store import EngagementScoreStore, ScoreSnapshot
from jerkyrank.services.streak_service import record_streak
from jerkyrank.services.warmer import StoreReadiness, Warmer, WarmSummary

if TYPE_CHECKING:
    from jerkyrank.config import EngineConfig
    from jerkyrank.database.engine import EnginePools
    from jerkyrank.engine.progress import ClosestAchievement

logger = logging.getLogger(__name__)

PROFILE_FIELDS: frozenset[str] = frozenset({
    "first_name", "last_name", "handle", "hide_name_privacy", "avatar_url",
})

NotifyUser = Callable[[int, str, dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class RankingResult:
    user_id: int
    product_id: str
    list_id: str
    rank: int
    created: bool
    streak: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "product_id": self.product_id,
            "list_id": self.list_id,
            "rank": self.rank,
            "created": self.created,
            "streak": self.streak,
        }


class EngagementRuntime:
    """Process-wide engagement engine.

    Parameters
    ----------
    pools:
        The three logical connection pools.
    cfg:
        Engine tunables.
    clock:
        Time source shared by every component.
    cache_backend:
        Optional remote backend; in-process memory by default.
    notify_user:
        Optional ``(user_id, channel, payload)`` broadcast hook.
    """

    def __init__(
        self,
        pools: EnginePools,
        cfg: EngineConfig,
        *,
        clock: Clock | None = None,
        cache_backend: CacheBackend | None = None,
        notify_user: NotifyUser | None = None,
    ) -> None:
        self.pools = pools
        self.cfg = cfg
        self.clock = clock or SystemClock()
        self.notify_user = notify_user

        self.cache = CacheLayer(
            cache_backend,
            clock=self.clock,
            leaderboard_ttl=cfg.leaderboard_ttl_seconds,
            position_ttl=cfg.position_ttl_seconds,
            profile_ttl=cfg.profile_ttl_seconds,
        )
        self.scores = EngagementScoreStore(
            pools.interactive, cache=self.cache, clock=self.clock, cfg=cfg,
        )
        self.background_scores = EngagementScoreStore(
            pools.background, cache=self.cache, clock=self.clock, cfg=cfg,
        )
        self.metrics = MetricsAggregator(pools.background, clock=self.clock, cfg=cfg)
        self.achievements = AchievementEngine(
            pools.background,
            self.background_scores,
            clock=self.clock,
            cfg=cfg,
            on_update=self._record_coin_earned,
        )
        self.leaderboard = LeaderboardView(pools.interactive, self.cache)
        self.progress = ProgressTracker(
            self.achievements,
            MetricsAggregator(pools.interactive, clock=self.clock, cfg=cfg),
        )
        self.queue = ClassificationQueue(
            self.metrics,
            self.background_scores,
            self.achievements,
            cache=self.cache,
            clock=self.clock,
            cfg=cfg,
        )
        self.ingestor = ActivityIngestor(
            pools.interactive, self.scores, notify=self.queue.notify, clock=self.clock, cfg=cfg,
        )
        self.webhook_ingestor = ActivityIngestor(
            pools.webhook, self.scores, notify=self.queue.notify, clock=self.clock, cfg=cfg,
        )
        self.warmer = Warmer(pools.interactive, cfg=cfg)
        for period in Period:
            self.warmer.register(
                f"leaderboard:{period.value}",
                lambda p=period: self.leaderboard.get_leaderboard(p, cfg.leaderboard_default_limit),
            )

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self, *, warm: bool = True) -> WarmSummary | None:
        """Start workers, wait for the store and warm the caches."""
        self.queue.start()
        if not warm:
            return None
        readiness = self.warmer.wait_for_store_ready()
        if not readiness.ready:
            logger.error("Skipping cache warm-up: store not ready (%s)", readiness.error)
            return None
        return self.warmer.warm_all(is_cold_start=readiness.is_cold_start)

    def shutdown(self) -> None:
        """Flush buffered activity, then drain the classification workers."""
        self.ingestor.shutdown()
        self.webhook_ingestor.shutdown()
        self.queue.shutdown()
        logger.info("Engagement runtime stopped")

    def _retry(self, fn, operation: str):
        return retry_with_backoff(
            fn,
            attempts=self.cfg.retry_attempts,
            base_delay=self.cfg.retry_base_delay_seconds,
            operation=operation,
        )

    @staticmethod
    def _require_user(session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _record_coin_earned(self, user_id: int, update_: Update) -> None:
        self.ingestor.track(user_id, ActivityType.COIN_EARNED, update_to_dict(update_))

    # -------------------------------------------------------------------
    # Inbound writes
    # -------------------------------------------------------------------
    def ingest_activity(
        self,
        user_id: int,
        event_type: str,
        payload: dict[str, Any] | None = None,
        immediate: bool = False,
        *,
        event_key: str | None = None,
    ) -> int:
        """Validate and hand one activity event to the ingestor.

        Raises
        ------
        ValidationError
            Unknown activity type or malformed payload.
        NotFoundError
            Unknown user.
        """
        validate_event(user_id, event_type, payload)
        with translate_db_errors("user lookup"):
            with get_session(self.pools.interactive) as session:
                self._require_user(session, user_id)
        return self.ingestor.track(
            user_id, event_type, payload, immediate, event_key=event_key,
        )

    def _make_room(
        self, session: Session, user_id: int, list_id: str, rank: int, current: int | None,
    ) -> None:
        """Shift neighbours so ranks in one list stay ``1..n`` without gaps.

        *current* is the product's present rank, ``None`` for a new entry.

        Raises
        ------
        ValidationError
            *rank* would leave a gap after the last entry.
        """
        same_list = (Ranking.user_id == user_id, Ranking.list_id == list_id)
        size = session.scalar(select(func.count()).select_from(Ranking).where(*same_list)) or 0
        last = size if current is not None else size + 1
        if rank > last:
            raise ValidationError(
                f"rank {rank} leaves a gap in list {list_id!r}; highest allowed is {last}"
            )
        if current is None:
            shift = update(Ranking).where(*same_list, Ranking.rank >= rank).values(
                rank=Ranking.rank + 1,
            )
        elif rank < current:
            shift = update(Ranking).where(
                *same_list, Ranking.rank >= rank, Ranking.rank < current,
            ).values(rank=Ranking.rank + 1)
        elif rank > current:
            shift = update(Ranking).where(
                *same_list, Ranking.rank > current, Ranking.rank <= rank,
            ).values(rank=Ranking.rank - 1)
        else:
            return
        session.execute(shift)

    def _rerank(self, session: Session, row: Ranking, rank: int, now) -> None:
        if self.cfg.forbid_rank_gaps:
            self._make_room(session, row.user_id, row.list_id, rank, row.rank)
        row.rank = rank
        row.updated_at = now

    def _save_ranking(
        self, session: Session, user_id: int, product_id: str, list_id: str, rank: int,
    ) -> bool:
        """Insert or re-rank; returns True when a new ranking row was created."""
        now = self.clock.now()
        existing = session.scalar(
            select(Ranking).where(
                Ranking.user_id == user_id,
                Ranking.list_id == list_id,
                Ranking.product_id == product_id,
            )
        )
        if existing is not None:
            self._rerank(session, existing, rank, now)
            return False

        first_time = session.scalar(
            select(Ranking.id).where(
                Ranking.user_id == user_id, Ranking.product_id == product_id,
            ).limit(1)
        ) is None
        try:
            with session.begin_nested():   # SAVEPOINT
                if self.cfg.forbid_rank_gaps:
                    self._make_room(session, user_id, list_id, rank, None)
                session.add(Ranking(
                    user_id=user_id,
                    list_id=list_id,
                    product_id=product_id,
                    rank=rank,
                    created_at=now,
                    updated_at=now,
                ))
                session.flush()
        except IntegrityError:
            # A concurrent request inserted the same ranking; re-rank it
            winner = session.scalar(
                select(Ranking).where(
                    Ranking.user_id == user_id,
                    Ranking.list_id == list_id,
                    Ranking.product_id == product_id,
                )
            )
            if winner is None:
                raise
            self._rerank(session, winner, rank, now)
            return False

        delta = {"rankings": 1}
        if first_time:
            delta["unique_products"] = 1
        self.scores.increment_in_session(session, user_id, delta, now)
        return True

    def record_ranking(
        self,
        user_id: int,
        product_id: str,
        rank: int,
        list_id: str = "default",
    ) -> RankingResult:
        """Save a ranking, extend the ``daily_rank`` streak and classify.

        Raises
        ------
        ValidationError
            Bad rank or product id.
        NotFoundError
            Unknown user.
        """
        if isinstance(rank, bool) or not isinstance(rank, int) or rank < 1:
            raise ValidationError(f"rank must be an integer >= 1, got {rank!r}")
        if not product_id or not isinstance(product_id, str):
            raise ValidationError("product_id is required")
        list_id = list_id or "default"

        def _write() -> tuple[bool, int]:
            with translate_db_errors("ranking save"):
                with get_session(self.pools.interactive) as session:
                    self._require_user(session, user_id)
                    created = self._save_ranking(session, user_id, product_id, list_id, rank)
                    transition = record_streak(
                        session, user_id, StreakType.DAILY_RANK, self.clock.now(),
                    )
                    return created, transition.after.current

        created, streak = self._retry(_write, "ranking save")
        if created:
            self.scores.invalidate(user_id, self.clock.now())
        self.ingestor.track(
            user_id,
            ActivityType.RANKING_SAVED,
            {"productId": product_id, "listId": list_id, "rank": rank, "created": created},
        )
        return RankingResult(user_id, product_id, list_id, rank, created, streak)

    def record_login(self, user_id: int) -> int:
        """Extend the ``daily_login`` streak, log the login and classify.

        Returns the current login streak.
        """
        def _write() -> int:
            with translate_db_errors("login record"):
                with get_session(self.pools.interactive) as session:
                    self._require_user(session, user_id)
                    transition = record_streak(
                        session, user_id, StreakType.DAILY_LOGIN, self.clock.now(),
                    )
                    return transition.after.current

        streak = self._retry(_write, "login record")
        self.ingestor.track(user_id, ActivityType.LOGIN, {"streak": streak})
        # login is not a classification trigger on its own
        self.queue.notify(user_id, ActivityType.LOGIN)
        return streak

    def on_order_webhook(
        self,
        user_id: int,
        order_items: list[dict[str, Any]],
        order_id: str | None = None,
    ) -> int:
        """Record a purchase; the classification job refolds the rollup.

        Replaying the same *order_id* stores nothing new.
        """
        if not isinstance(order_items, list):
            raise ValidationError("order_items must be a list")
        with translate_db_errors("order webhook"):
            with get_session(self.pools.webhook) as session:
                self._require_user(session, user_id)

        product_ids = [
            str(item["productId"]) for item in order_items
            if isinstance(item, dict) and item.get("productId") is not None
        ]
        payload = {"orderId": order_id, "productIds": product_ids, "itemCount": len(order_items)}
        return self.webhook_ingestor.track(
            user_id,
            ActivityType.PURCHASE,
            payload,
            event_key=f"order:{order_id}" if order_id else None,
        )

    def update_profile(self, user_id: int, **fields: Any) -> dict[str, Any]:
        """Update identity fields, refresh caches and broadcast the change.

        Raises
        ------
        ValidationError
            Unknown field name.
        NotFoundError
            Unknown user.
        """
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown profile fields: {sorted(unknown)}")

        with translate_db_errors("profile update"):
            with get_session(self.pools.interactive) as session:
                user = self._require_user(session, user_id)
                changed = {k: v for k, v in fields.items() if getattr(user, k) != v}
                for key, value in changed.items():
                    setattr(user, key, value)

        if changed:
            self.cache.invalidate_profile(user_id)
            self.cache.invalidate_engagement(user_id, self.clock.now())
            profile = self.leaderboard.get_profile(user_id).to_dict()
            if self.notify_user is not None:
                self.notify_user(user_id, "profile", profile)
        return changed

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get_leaderboard(self, period: str, limit: int | None = None) -> list[LeaderboardEntry]:
        limit = self.cfg.leaderboard_default_limit if limit is None else limit
        return self.leaderboard.get_leaderboard(period, limit)

    def get_position(self, user_id: int, period: str) -> Position:
        return self.leaderboard.get_position(user_id, period)

    def get_closest_achievement(
        self, user_id: int, category: str | None = None,
    ) -> ClosestAchievement | None:
        with translate_db_errors("user lookup"):
            with get_session(self.pools.interactive) as session:
                self._require_user(session, user_id)
        return self.progress.closest_unearned(user_id, category=category)

    def list_achievements(self, user_id: int) -> list[AchievementProgress]:
        with translate_db_errors("user lookup"):
            with get_session(self.pools.interactive) as session:
                self._require_user(session, user_id)
        stats = self.progress.metrics.snapshot(user_id)
        return self.achievements.list_with_progress(user_id, stats)

    def activity_summary(self, user_id: int, days: int = 7) -> dict[str, int]:
        return self.progress.metrics.activity_summary(user_id, days)

    def get_scores(self, user_id: int) -> ScoreSnapshot | None:
        return self.scores.get(user_id)

    # -------------------------------------------------------------------
    # Administrative
    # -------------------------------------------------------------------
    def clear_user_achievements(self, user_id: int) -> dict[str, int]:
        return self.achievements.clear_for_user(user_id)

    def clear_all_achievements(self, admin_user_id: int) -> dict[str, int]:
        return self.achievements.clear_all(admin_user_id)

    def reset_scores(self, period: str) -> int:
        period = parse_period(period)
        if period is Period.WEEK:
            return self.background_scores.reset_weekly()
        if period is Period.MONTH:
            return self.background_scores.reset_monthly()
        raise ValidationError("The all_time bucket is never reset")

    def recalculate_user(self, user_id: int) -> ScoreSnapshot:
        return self.background_scores.recalculate(user_id)

    def health(self) -> dict[str, Any]:
        readiness: StoreReadiness = self.warmer.wait_for_store_ready(max_retries=1, retry_delay=0)
        return {
            "status": "ok" if readiness.ready else "degraded",
            "store": readiness.to_dict(),
            "cache": self.cache.stats(),
            "queue": self.queue.stats(),
            "ingestor": self.ingestor.stats(),
        }
