"""
jerkyrank.services.achievement_service - AchievementEngine
===========================================================

Persists what :func:`jerkyrank.engine.achievements.plan_evaluation`
decides.  In one transaction per evaluation:

1. Load active definitions and the user's awards.
2. Plan every award change (prerequisites before dependents).
3. Insert new awards under a SAVEPOINT; a uniqueness conflict means
   another writer won, so the conflicting row is re-read and treated as
   the existing award.
4. Raise tiers on existing awards (never lower them).
5. For each emitted update write an ``earn_badge`` / ``tier_upgrade``
   activity log and add ``{"achievements": 1}`` to the score rollup.

Cache invalidation runs after the commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jerkyrank.constants import ActivityLogCategory, Period
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import (
    AchievementDefinition,
    ActivityLog,
    EngagementScore,
    User,
    UserAchievement,
)
from jerkyrank.engine.achievements import (
    AchievementRule,
    Awarded,
    AwardPlan,
    AwardState,
    TierUpgraded,
    Update,
    plan_award,
    plan_evaluation,
    rule_from_row,
    tier_rank,
)
from jerkyrank.engine.clock import Clock, SystemClock, ensure_utc
from jerkyrank.engine.requirements import Progress, progress_of
from jerkyrank.engine.retry import retry_with_backoff
from jerkyrank.errors import NotFoundError, translate_db_errors
from jerkyrank.services.score_store import (
    ACHIEVEMENT_LOG_CATEGORIES,
    counter_column,
    score_column,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.config import EngineConfig
    from jerkyrank.engine.stats import UserStats
    from jerkyrank.services.score_store import EngagementScoreStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AchievementProgress:
    """One row of a user's achievement list."""

    code: str
    name: str
    description: str | None
    icon: str | None
    category: str
    collection_type: str
    has_tiers: bool
    points: int
    earned: bool
    current_tier: str | None
    points_awarded: int
    earned_at: datetime | None
    progress: Progress | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "category": self.category,
            "collection_type": self.collection_type,
            "has_tiers": self.has_tiers,
            "points": self.points,
            "earned": self.earned,
            "current_tier": self.current_tier,
            "points_awarded": self.points_awarded,
            "earned_at": self.earned_at.isoformat() if self.earned_at else None,
            "progress": self.progress.to_dict() if self.progress else None,
        }


def _log_entry(user_id: int, update_: Update, when: datetime) -> ActivityLog:
    if isinstance(update_, Awarded):
        return ActivityLog(
            user_id=user_id,
            category=ActivityLogCategory.EARN_BADGE,
            metadata_={
                "code": update_.code,
                "tier": update_.tier,
                "points": update_.points,
                "percentage": update_.percentage,
            },
            timestamp=when,
        )
    return ActivityLog(
        user_id=user_id,
        category=ActivityLogCategory.TIER_UPGRADE,
        metadata_={
            "code": update_.code,
            "from_tier": update_.from_tier,
            "to_tier": update_.to_tier,
            "points": update_.points,
            "percentage": update_.percentage,
        },
        timestamp=when,
    )


class AchievementEngine:
    """Achievement evaluation, listing and administrative clears.

    Parameters
    ----------
    engine:
        Pool used for every transaction (background pool for workers).
    scores:
        Rollup store; receives one ``achievements`` increment per update.
    on_update:
        Optional callback ``(user_id, update)`` run after commit for each
        emitted update (wired to a ``coin_earned`` activity event).
    """

    def __init__(
        self,
        engine: Engine,
        scores: EngagementScoreStore,
        *,
        clock: Clock | None = None,
        cfg: EngineConfig | None = None,
        on_update: Callable[[int, Update], None] | None = None,
    ) -> None:
        self.engine = engine
        self.scores = scores
        self.clock = clock or SystemClock()
        self.cfg = cfg
        self.on_update = on_update

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def _default_thresholds(self) -> dict[str, int] | None:
        return self.cfg.tier_thresholds if self.cfg is not None else None

    def load_rules(self, session: Session, *, active_only: bool = True) -> list[AchievementRule]:
        query = select(AchievementDefinition).order_by(AchievementDefinition.id)
        if active_only:
            query = query.where(AchievementDefinition.is_active.is_(True))
        defaults = self._default_thresholds()
        return [rule_from_row(row, defaults) for row in session.scalars(query).all()]

    @staticmethod
    def load_awards(session: Session, user_id: int) -> dict[str, AwardState]:
        rows = session.scalars(
            select(UserAchievement).where(UserAchievement.user_id == user_id)
        ).all()
        return {row.achievement_code: AwardState.from_row(row) for row in rows}

    # -------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------
    def _insert_award(
        self, session: Session, user_id: int, plan: AwardPlan, now: datetime,
    ) -> AwardPlan | None:
        """Insert a new award; on conflict re-plan against the winner's row."""
        row = UserAchievement(
            user_id=user_id,
            achievement_code=plan.rule.code,
            current_tier=plan.final_tier,
            percentage_complete=plan.progress.percentage,
            points_awarded=plan.points,
            progress=plan.progress.to_dict(),
            earned_at=now,
            last_tier_upgrade_at=now if len(plan.updates) > 1 else None,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(row)
                session.flush()
            return plan
        except IntegrityError:
            # Another writer won; the outer transaction is still alive
            winner = session.get(
                UserAchievement, (user_id, plan.rule.code), populate_existing=True,
            )
            if winner is None:
                raise
            logger.info(
                "Award %s for user %d already written by another worker", plan.rule.code, user_id,
            )
            replanned = plan_award(plan.rule, AwardState.from_row(winner), plan.progress)
            if replanned is None:
                return None
            self._update_award(session, user_id, replanned, now)
            return replanned

    @staticmethod
    def _update_award(session: Session, user_id: int, plan: AwardPlan, now: datetime) -> None:
        row = session.get(UserAchievement, (user_id, plan.rule.code))
        if row is None:
            raise NotFoundError(f"Award {plan.rule.code} for user {user_id} disappeared")
        row.percentage_complete = plan.progress.percentage
        row.progress = plan.progress.to_dict()
        if tier_rank(plan.final_tier) > tier_rank(row.current_tier):
            row.current_tier = plan.final_tier
            row.points_awarded = plan.points
            row.last_tier_upgrade_at = now

    def evaluate_in_session(
        self, session: Session, user_id: int, stats: UserStats,
    ) -> list[Update]:
        """Plan and persist awards inside the caller's transaction."""
        if session.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        now = self.clock.now()
        rules = self.load_rules(session)
        awards = self.load_awards(session, user_id)
        emitted: list[Update] = []

        for plan in plan_evaluation(rules, awards, stats):
            if plan.create:
                applied = self._insert_award(session, user_id, plan, now)
            else:
                self._update_award(session, user_id, plan, now)
                applied = plan
            if applied is None:
                continue
            for update_ in applied.updates:
                session.add(_log_entry(user_id, update_, now))
                self.scores.increment_in_session(session, user_id, {"achievements": 1}, now)
                emitted.append(update_)
        return emitted

    def evaluate(self, user_id: int, stats: UserStats) -> list[Update]:
        """Award and upgrade achievements for *user_id* against *stats*.

        Returns the emitted updates in order; repeating the call with the
        same *stats* returns an empty list.

        Raises
        ------
        NotFoundError
            If the user does not exist.
        """
        def _run() -> list[Update]:
            with translate_db_errors("achievement evaluation"):
                with get_session(self.engine) as session:
                    return self.evaluate_in_session(session, user_id, stats)

        attempts = self.cfg.retry_attempts if self.cfg else 3
        delay = self.cfg.retry_base_delay_seconds if self.cfg else 0.1
        updates = retry_with_backoff(
            _run, attempts=attempts, base_delay=delay, operation="achievement evaluation",
        )
        if updates:
            self.scores.invalidate(user_id, self.clock.now())
        for update_ in updates:
            if isinstance(update_, Awarded):
                logger.info("User %d earned %s (%s)", user_id, update_.code, update_.tier)
            elif isinstance(update_, TierUpgraded):
                logger.info(
                    "User %d upgraded %s: %s → %s",
                    user_id, update_.code, update_.from_tier, update_.to_tier,
                )
            if self.on_update is not None:
                self.on_update(user_id, update_)
        return updates

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def progress_of(self, definition: AchievementRule | str, stats: UserStats) -> Progress | None:
        """Progress toward one definition; None when it is not evaluable here.

        Raises
        ------
        NotFoundError
            If *definition* is a code that does not exist.
        """
        if isinstance(definition, AchievementRule):
            return progress_of(definition.requirement, stats)
        with translate_db_errors("definition read"):
            with get_session(self.engine) as session:
                row = session.scalar(
                    select(AchievementDefinition).where(AchievementDefinition.code == definition)
                )
                if row is None:
                    raise NotFoundError(f"Achievement {definition!r} not found")
                rule = rule_from_row(row, self._default_thresholds())
        return progress_of(rule.requirement, stats)

    def list_with_progress(self, user_id: int, stats: UserStats) -> list[AchievementProgress]:
        """Every achievement the user may see, with progress.

        Unearned hidden definitions are left out; earned ones always show.
        """
        with translate_db_errors("achievement list"):
            with get_session(self.engine) as session:
                rules = self.load_rules(session, active_only=False)
                rows = {
                    row.achievement_code: row
                    for row in session.scalars(
                        select(UserAchievement).where(UserAchievement.user_id == user_id)
                    ).all()
                }
                items: list[AchievementProgress] = []
                for rule in rules:
                    award = rows.get(rule.code)
                    if award is None and (rule.hidden or not rule.is_active):
                        continue
                    items.append(AchievementProgress(
                        code=rule.code,
                        name=rule.name,
                        description=rule.description,
                        icon=rule.icon,
                        category=rule.category,
                        collection_type=rule.collection_type,
                        has_tiers=rule.has_tiers,
                        points=rule.points,
                        earned=award is not None,
                        current_tier=award.current_tier if award else None,
                        points_awarded=award.points_awarded if award else 0,
                        earned_at=ensure_utc(award.earned_at) if award else None,
                        progress=progress_of(rule.requirement, stats),
                    ))
        return items

    # -------------------------------------------------------------------
    # Administrative clears
    # -------------------------------------------------------------------
    def clear_for_user(self, user_id: int) -> dict[str, int]:
        """Delete the user's awards and award logs, then refold their rollup.

        Raises
        ------
        NotFoundError
            If the user does not exist.
        """
        now = self.clock.now()
        with translate_db_errors("clear user achievements"):
            with get_session(self.engine) as session:
                if session.get(User, user_id) is None:
                    raise NotFoundError(f"User {user_id} not found")
                achievements = session.execute(
                    delete(UserAchievement).where(UserAchievement.user_id == user_id)
                ).rowcount or 0
                logs = session.execute(
                    delete(ActivityLog).where(
                        ActivityLog.user_id == user_id,
                        ActivityLog.category.in_(ACHIEVEMENT_LOG_CATEGORIES),
                    )
                ).rowcount or 0
                counts = {"achievements_deleted": achievements, "logs_deleted": logs}
                session.add(ActivityLog(
                    user_id=user_id,
                    category=ActivityLogCategory.ACHIEVEMENTS_CLEARED,
                    metadata_=counts,
                    timestamp=now,
                ))
                self.scores.recalculate_in_session(session, user_id)

        self.scores.invalidate(user_id, now)
        logger.info("Cleared achievements for user %d: %s", user_id, counts)
        return counts

    def clear_all(self, admin_user_id: int) -> dict[str, int]:
        """Delete every award and award log; zero every achievements counter."""
        now = self.clock.now()
        zeroed: dict[str, Any] = {}
        for period in Period:
            achievements_col = getattr(EngagementScore, counter_column("achievements", period))
            score_col = getattr(EngagementScore, score_column(period))
            # Both right-hand sides read pre-update values
            zeroed[score_col.key] = score_col - achievements_col
            zeroed[achievements_col.key] = 0

        with translate_db_errors("clear all achievements"):
            with get_session(self.engine) as session:
                users = session.scalar(
                    select(func.count(func.distinct(UserAchievement.user_id)))
                ) or 0
                achievements = session.execute(delete(UserAchievement)).rowcount or 0
                logs = session.execute(
                    delete(ActivityLog).where(
                        ActivityLog.category.in_(ACHIEVEMENT_LOG_CATEGORIES)
                    )
                ).rowcount or 0
                session.execute(update(EngagementScore).values(**zeroed))
                counts = {
                    "achievements_deleted": achievements,
                    "logs_deleted": logs,
                    "users_affected": users,
                }
                session.add(ActivityLog(
                    user_id=admin_user_id,
                    category=ActivityLogCategory.ALL_DATA_CLEARED,
                    metadata_={"admin_user_id": admin_user_id, **counts},
                    timestamp=now,
                ))

        if self.scores.cache is not None:
            self.scores.cache.invalidate_all()
        logger.warning("Admin %d cleared all achievements: %s", admin_user_id, counts)
        return counts

