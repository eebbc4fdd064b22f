"""Initial engagement schema

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e9a7d2b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer, nullable=False, server_default="0")


def upgrade() -> None:
    """Create users, catalogue, activity, streak, score and achievement tables."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("handle", sa.String(50), nullable=True),
        sa.Column("hide_name_privacy", sa.Boolean, nullable=True, server_default=sa.false()),
        sa.Column("avatar_url", sa.Text, nullable=True),
        sa.Column("active", sa.Boolean, nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- products ---
    op.create_table(
        "products",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("vendor", sa.String(100), nullable=True),
        sa.Column("animal_type", sa.String(50), nullable=True),
        sa.Column("rankable", sa.Boolean, nullable=True, server_default=sa.true()),
    )

    # --- activity_events ---
    op.create_table(
        "activity_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_key", sa.String(128), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    # Idempotency: unique partial index on event_key
    op.create_index(
        "ix_activity_events_event_key", "activity_events",
        ["event_key"],
        unique=True,
        postgresql_where=sa.text("event_key IS NOT NULL"),
    )
    op.create_index(
        "ix_activity_events_user_type_time", "activity_events",
        ["user_id", "event_type", "created_at"],
    )

    # --- rankings ---
    op.create_table(
        "rankings",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("list_id", sa.String(64), nullable=False, server_default="default"),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("rank", sa.Integer, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("user_id", "list_id", "product_id", name="uq_rankings_user_list_product"),
        sa.CheckConstraint("rank >= 1", name="ck_rankings_rank_positive"),
    )
    op.create_index("ix_rankings_user", "rankings", ["user_id"])
    op.create_index("ix_rankings_product", "rankings", ["product_id"])

    # --- streaks ---
    op.create_table(
        "streaks",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("streak_type", sa.String(20), nullable=False),
        sa.Column("current_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_activity_day", sa.Date, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "streak_type", name="uq_streaks_user_type"),
        sa.CheckConstraint("streak_type IN ('daily_rank', 'daily_login')", name="ck_streaks_type"),
        sa.CheckConstraint(
            "current_streak >= 0 AND longest_streak >= current_streak",
            name="ck_streaks_lengths",
        ),
    )

    # --- engagement_scores ---
    columns = [sa.Column("user_id", sa.BigInteger, primary_key=True)]
    for suffix in ("count", "week", "month"):
        for counter in ("achievements", "page_views", "rankings", "searches", "unique_products"):
            columns.append(_counter(f"{counter}_{suffix}"))
    columns += [
        _counter("engagement_score"),
        _counter("engagement_score_week"),
        _counter("engagement_score_month"),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    op.create_table("engagement_scores", *columns)
    op.create_index("ix_engagement_scores_all_time", "engagement_scores", ["engagement_score"])
    op.create_index("ix_engagement_scores_week", "engagement_scores", ["engagement_score_week"])
    op.create_index("ix_engagement_scores_month", "engagement_scores", ["engagement_score_month"])

    # --- achievement_definitions ---
    op.create_table(
        "achievement_definitions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("icon", sa.String(255), nullable=True),
        sa.Column("tier", sa.String(20), nullable=False, server_default="none"),
        sa.Column("category", sa.String(50), nullable=False, server_default="engagement"),
        sa.Column("collection_type", sa.String(30), nullable=False, server_default="legacy"),
        sa.Column("requirement", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("has_tiers", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("tier_thresholds", postgresql.JSONB, nullable=True),
        sa.Column("prerequisite_code", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_hidden", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- user_achievements ---
    op.create_table(
        "user_achievements",
        sa.Column(
            "user_id", sa.BigInteger,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("achievement_code", sa.String(100), primary_key=True),
        sa.Column("current_tier", sa.String(20), nullable=False),
        sa.Column("percentage_complete", sa.Integer, nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("progress", postgresql.JSONB, nullable=True),
        sa.Column(
            "earned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
        sa.Column("last_tier_upgrade_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "percentage_complete >= 0 AND percentage_complete <= 100",
            name="ck_user_achievements_percentage",
        ),
    )
    op.create_index(
        "ix_user_achievements_user_earned", "user_achievements", ["user_id", "earned_at"],
    )

    # --- activity_log ---
    op.create_table(
        "activity_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_activity_log_user_time", "activity_log", ["user_id", "timestamp"])
    op.create_index("ix_activity_log_category_time", "activity_log", ["category", "timestamp"])


def downgrade() -> None:
    op.drop_table("activity_log")
    op.drop_table("user_achievements")
    op.drop_table("achievement_definitions")
    op.drop_table("engagement_scores")
    op.drop_table("streaks")
    op.drop_table("rankings")
    op.drop_table("activity_events")
    op.drop_table("products")
    op.drop_table("users")
