"""
jerkyrank.database.models - SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- users                   - Shopper identity (read-only for the engine except profile edits)
- products                - Catalogue rows used for brand / animal / rankable stats
- activity_events         - Append-only activity stream with optional idempotency key
- rankings                - A shopper's ordered product lists
- streaks                 - One row per (user, streak type)
- engagement_scores       - Period-bucketed rollup, one row per user
- achievement_definitions - Coin catalogue
- user_achievements       - Awarded coins with their current tier
- activity_log            - Append-only journal of awards, upgrades, streaks, clears
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all JerkyRank ORM models."""


# ---------------------------------------------------------------------------
# Users - owned by the identity subsystem
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String(100), default=None)
    last_name: Mapped[str | None] = mapped_column(String(100), default=None)
    handle: Mapped[str | None] = mapped_column(String(50), default=None)
    hide_name_privacy: Mapped[bool] = mapped_column(Boolean, default=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, default=None)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    achievements: Mapped[list[UserAchievement]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} handle={self.handle!r} active={self.active}>"


# ---------------------------------------------------------------------------
# Products - catalogue metadata consumed by the stats aggregator
# ---------------------------------------------------------------------------
class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor: Mapped[str | None] = mapped_column(String(100), default=None)
    animal_type: Mapped[str | None] = mapped_column(String(50), default=None)
    rankable: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<Product id={self.id!r} vendor={self.vendor!r} animal={self.animal_type!r}>"


# ---------------------------------------------------------------------------
# Activity events - append-only
# ---------------------------------------------------------------------------
class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "ix_activity_events_event_key",
            "event_key",
            unique=True,
            postgresql_where=event_key.isnot(None),
            sqlite_where=event_key.isnot(None),
        ),
        Index("ix_activity_events_user_type_time", "user_id", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEvent id={self.id} user={self.user_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------
class Ranking(Base):
    __tablename__ = "rankings"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    list_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "list_id", "product_id", name="uq_rankings_user_list_product"),
        CheckConstraint("rank >= 1", name="ck_rankings_rank_positive"),
        Index("ix_rankings_user", "user_id"),
        Index("ix_rankings_product", "product_id"),
    )

    def __repr__(self) -> str:
        return f"<Ranking user={self.user_id} product={self.product_id!r} rank={self.rank}>"


# ---------------------------------------------------------------------------
# Streaks - exactly one row per (user, type)
# ---------------------------------------------------------------------------
class Streak(Base):
    __tablename__ = "streaks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    streak_type: Mapped[str] = mapped_column(String(20), nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "streak_type", name="uq_streaks_user_type"),
        CheckConstraint(
            "streak_type IN ('daily_rank', 'daily_login')", name="ck_streaks_type"
        ),
        CheckConstraint(
            "current_streak >= 0 AND longest_streak >= current_streak",
            name="ck_streaks_lengths",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Streak user={self.user_id} type={self.streak_type} "
            f"current={self.current_streak} longest={self.longest_streak}>"
        )


# ---------------------------------------------------------------------------
# Engagement scores - the rollup
# ---------------------------------------------------------------------------
def _counter() -> Mapped[int]:
    return mapped_column(Integer, nullable=False, default=0, server_default="0")


class EngagementScore(Base):
    __tablename__ = "engagement_scores"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    achievements_count: Mapped[int] = _counter()
    page_views_count: Mapped[int] = _counter()
    rankings_count: Mapped[int] = _counter()
    searches_count: Mapped[int] = _counter()
    unique_products_count: Mapped[int] = _counter()
    engagement_score: Mapped[int] = _counter()

    achievements_week: Mapped[int] = _counter()
    page_views_week: Mapped[int] = _counter()
    rankings_week: Mapped[int] = _counter()
    searches_week: Mapped[int] = _counter()
    unique_products_week: Mapped[int] = _counter()
    engagement_score_week: Mapped[int] = _counter()

    achievements_month: Mapped[int] = _counter()
    page_views_month: Mapped[int] = _counter()
    rankings_month: Mapped[int] = _counter()
    searches_month: Mapped[int] = _counter()
    unique_products_month: Mapped[int] = _counter()
    engagement_score_month: Mapped[int] = _counter()

    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_engagement_scores_all_time", "engagement_score"),
        Index("ix_engagement_scores_week", "engagement_score_week"),
        Index("ix_engagement_scores_month", "engagement_score_month"),
    )

    def __repr__(self) -> str:
        return (
            f"<EngagementScore user={self.user_id} all={self.engagement_score} "
            f"week={self.engagement_score_week} month={self.engagement_score_month}>"
        )


# ---------------------------------------------------------------------------
# Achievement definitions
# ---------------------------------------------------------------------------
class AchievementDefinition(Base):
    __tablename__ = "achievement_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    icon: Mapped[str | None] = mapped_column(String(255), default=None)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="engagement")
    collection_type: Mapped[str] = mapped_column(String(30), nullable=False, default="legacy")
    requirement: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_tiers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tier_thresholds: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=None)
    prerequisite_code: Mapped[str | None] = mapped_column(String(100), nullable=True, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<AchievementDefinition code={self.code!r} points={self.points}>"


# ---------------------------------------------------------------------------
# User achievements - awarded coins
# ---------------------------------------------------------------------------
class UserAchievement(Base):
    __tablename__ = "user_achievements"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    achievement_code: Mapped[str] = mapped_column(String(100), primary_key=True)
    current_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    percentage_complete: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    earned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_tier_upgrade_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped[User] = relationship(back_populates="achievements")

    __table_args__ = (
        CheckConstraint(
            "percentage_complete >= 0 AND percentage_complete <= 100",
            name="ck_user_achievements_percentage",
        ),
        Index("ix_user_achievements_user_earned", "user_id", "earned_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserAchievement user={self.user_id} code={self.achievement_code!r} "
            f"tier={self.current_tier}>"
        )


# ---------------------------------------------------------------------------
# Activity log - append-only journal
# ---------------------------------------------------------------------------
class ActivityLog(Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_log_user_time", "user_id", "timestamp"),
        Index("ix_activity_log_category_time", "category", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ActivityLog id={self.id} user={self.user_id} category={self.category}>"
