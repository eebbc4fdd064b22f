"""
jerkyrank.services.leaderboard_service - LeaderboardView
=========================================================

Read side over ``engagement_scores``.  Every query here runs against the
rollup (joined to ``users`` for the active flag and display attributes)
and never touches the raw activity tables.

* ``top_n(period, limit)``   - active users with a positive score,
  highest first, each with up to three most recent badges.
* ``position(user, period)`` - ``rank = users strictly above + 1`` and a
  one-decimal percentile.  Zero-score or absent users get ``rank=None``.

The ``get_*`` variants read through :class:`~jerkyrank.engine.cache.CacheLayer`.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from jerkyrank.constants import Period
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import AchievementDefinition, EngagementScore, User, UserAchievement
from jerkyrank.engine.requirements import round_half_up
from jerkyrank.errors import NotFoundError, ValidationError, translate_db_errors
from jerkyrank.services.score_store import score_column

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.engine.cache import CacheLayer

logger = logging.getLogger(__name__)

BADGES_PER_ENTRY = 3
ANONYMOUS_NAME = "Anonymous User"


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Badge:
    code: str
    name: str
    icon: str | None
    tier: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "name": self.name, "icon": self.icon, "tier": self.tier}


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: int
    display_name: str
    avatar_url: str | None
    score: int
    badges: list[Badge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "score": self.score,
            "badges": [b.to_dict() for b in self.badges],
        }


@dataclass(frozen=True, slots=True)
class Position:
    user_id: int
    period: str
    rank: int | None
    score: int
    percentile: float | None
    total_users: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "period": self.period,
            "rank": self.rank,
            "score": self.score,
            "percentile": self.percentile,
            "total_users": self.total_users,
        }


@dataclass(frozen=True, slots=True)
class Profile:
    user_id: int
    display_name: str
    handle: str | None
    avatar_url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "handle": self.handle,
            "avatar_url": self.avatar_url,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def parse_period(period: str) -> Period:
    try:
        return Period(period)
    except ValueError:
        raise ValidationError(
            f"Unknown period {period!r}; expected one of {[p.value for p in Period]}"
        ) from None


def display_name(
    first_name: str | None,
    last_name: str | None,
    handle: str | None,
    hide_name_privacy: bool,
) -> str:
    """Privacy-aware public name.

    Hidden: ``@handle`` or ``Anonymous User``.  Otherwise ``First L.``,
    falling back to the first name alone, then the handle.
    """
    if hide_name_privacy:
        return f"@{handle}" if handle else ANONYMOUS_NAME
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    if first and last:
        return f"{first} {last[0].upper()}."
    if first:
        return first
    return f"@{handle}" if handle else ANONYMOUS_NAME


def percentile_of(rank: int, total: int) -> float:
    return round_half_up((total - rank + 1) / total * 1000) / 10


def compute_position(session: Session, user_id: int, period: str) -> Position:
    """Rank and percentile for *user_id* from the rollup alone."""
    score_col = getattr(EngagementScore, score_column(period))
    ranked = (
        select(func.count())
        .select_from(EngagementScore)
        .join(User, User.id == EngagementScore.user_id)
        .where(User.active.is_(True), score_col > 0)
    )
    total = session.scalar(ranked) or 0
    own = session.scalar(
        select(score_col)
        .join(User, User.id == EngagementScore.user_id)
        .where(EngagementScore.user_id == user_id, User.active.is_(True))
    ) or 0
    if own <= 0:
        return Position(user_id, period, None, 0, None, total)

    above = session.scalar(ranked.where(score_col > own)) or 0
    rank = above + 1
    return Position(user_id, period, rank, own, percentile_of(rank, total), total)


def recent_badges(
    session: Session, user_ids: list[int], per_user: int = BADGES_PER_ENTRY,
) -> dict[int, list[Badge]]:
    """Up to *per_user* most recently earned awards for each user."""
    if not user_ids:
        return {}
    rows = session.execute(
        select(
            UserAchievement.user_id,
            UserAchievement.achievement_code,
            UserAchievement.current_tier,
            AchievementDefinition.name,
            AchievementDefinition.icon,
        )
        .join(
            AchievementDefinition,
            AchievementDefinition.code == UserAchievement.achievement_code,
        )
        .where(UserAchievement.user_id.in_(user_ids))
        .order_by(
            UserAchievement.user_id,
            UserAchievement.earned_at.desc(),
            AchievementDefinition.id.desc(),
        )
    ).all()

    badges: dict[int, list[Badge]] = defaultdict(list)
    for row in rows:
        if len(badges[row.user_id]) < per_user:
            badges[row.user_id].append(
                Badge(row.achievement_code, row.name, row.icon, row.current_tier)
            )
    return dict(badges)


# ---------------------------------------------------------------------------
# LeaderboardView
# ---------------------------------------------------------------------------
class LeaderboardView:
    """Top-N and position queries, raw and cached."""

    def __init__(self, engine: Engine, cache: CacheLayer | None = None) -> None:
        self.engine = engine
        self.cache = cache

    def top_n(self, period: str, limit: int) -> list[LeaderboardEntry]:
        """Highest ``score_<period>`` first; ties share a rank.

        Raises
        ------
        ValidationError
            Unknown period or negative limit.
        """
        period = parse_period(period)
        if limit < 0:
            raise ValidationError("limit must be >= 0")
        if limit == 0:
            return []

        score_col = getattr(EngagementScore, score_column(period))
        with translate_db_errors("leaderboard read"):
            with get_session(self.engine) as session:
                rows = session.execute(
                    select(
                        EngagementScore.user_id,
                        score_col.label("score"),
                        User.first_name,
                        User.last_name,
                        User.handle,
                        User.hide_name_privacy,
                        User.avatar_url,
                    )
                    .join(User, User.id == EngagementScore.user_id)
                    .where(User.active.is_(True), score_col > 0)
                    .order_by(score_col.desc(), EngagementScore.user_id)
                    .limit(limit)
                ).all()
                badges = recent_badges(session, [r.user_id for r in rows])

        entries: list[LeaderboardEntry] = []
        previous_score: int | None = None
        rank = 0
        for index, row in enumerate(rows, start=1):
            if row.score != previous_score:
                rank = index
                previous_score = row.score
            entries.append(LeaderboardEntry(
                rank=rank,
                user_id=row.user_id,
                display_name=display_name(
                    row.first_name, row.last_name, row.handle, row.hide_name_privacy,
                ),
                avatar_url=row.avatar_url,
                score=row.score,
                badges=badges.get(row.user_id, []),
            ))
        return entries

    def position(self, user_id: int, period: str) -> Position:
        period = parse_period(period)
        with translate_db_errors("position read"):
            with get_session(self.engine) as session:
                return compute_position(session, user_id, period)

    def profile(self, user_id: int) -> Profile:
        with translate_db_errors("profile read"):
            with get_session(self.engine) as session:
                user = session.get(User, user_id)
                if user is None:
                    raise NotFoundError(f"User {user_id} not found")
                return Profile(
                    user_id=user.id,
                    display_name=display_name(
                        user.first_name, user.last_name, user.handle, user.hide_name_privacy,
                    ),
                    handle=user.handle,
                    avatar_url=user.avatar_url,
                )

    # -------------------------------------------------------------------
    # Cached reads
    # -------------------------------------------------------------------
    def get_leaderboard(self, period: str, limit: int) -> list[LeaderboardEntry]:
        period = parse_period(period)
        if self.cache is None or limit <= 0:
            return self.top_n(period, limit)
        return self.cache.get_or_load(
            self.cache.leaderboard_key(period, limit),
            lambda: self.cache.get_leaderboard(period, limit),
            lambda rows: self.cache.set_leaderboard(period, limit, rows),
            lambda: self.top_n(period, limit),
        )

    def get_position(self, user_id: int, period: str) -> Position:
        period = parse_period(period)
        if self.cache is None:
            return self.position(user_id, period)
        return self.cache.get_or_load(
            self.cache.position_key(user_id, period),
            lambda: self.cache.get_position(user_id, period),
            lambda pos: self.cache.set_position(user_id, period, pos),
            lambda: self.position(user_id, period),
        )

    def get_profile(self, user_id: int) -> Profile:
        if self.cache is None:
            return self.profile(user_id)
        return self.cache.get_or_load(
            self.cache.profile_key(user_id),
            lambda: self.cache.get_profile(user_id),
            lambda prof: self.cache.set_profile(user_id, prof),
            lambda: self.profile(user_id),
        )
