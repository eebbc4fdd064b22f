"""
jerkyrank.constants - Shared Vocabularies & Defaults
=====================================================

Single source of truth for the string vocabularies stored in the database
(activity types, streak types, collection types, period buckets) and the
tunable defaults used when ``config.yaml`` is silent.
"""

from __future__ import annotations

import enum


# ---------------------------------------------------------------------------
# Activity events
# ---------------------------------------------------------------------------
class ActivityType(enum.StrEnum):
    """Every kind of event accepted by the ActivityIngestor."""
    SEARCH = "search"
    PRODUCT_VIEW = "product_view"
    PROFILE_VIEW = "profile_view"
    RANKING_SAVED = "ranking_saved"
    COIN_EARNED = "coin_earned"
    LOGIN = "login"
    PURCHASE = "purchase"


# Persisted on the caller's thread, never batched
IMMEDIATE_TYPES: frozenset[str] = frozenset({
    ActivityType.RANKING_SAVED,
    ActivityType.COIN_EARNED,
    ActivityType.LOGIN,
    ActivityType.PURCHASE,
})

# Activity types that wake the ClassificationQueue
CLASSIFICATION_TRIGGERS: frozenset[str] = frozenset({
    ActivityType.SEARCH,
    ActivityType.PRODUCT_VIEW,
    ActivityType.PROFILE_VIEW,
    ActivityType.RANKING_SAVED,
    ActivityType.PURCHASE,
})

# Triggers that may force a full rollup recalculation (throttled)
RECALC_TRIGGERS: frozenset[str] = frozenset({
    ActivityType.RANKING_SAVED,
    ActivityType.PURCHASE,
})

PAGE_VIEW_TYPES: tuple[str, ...] = (ActivityType.PRODUCT_VIEW, ActivityType.PROFILE_VIEW)


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------
class StreakType(enum.StrEnum):
    DAILY_RANK = "daily_rank"
    DAILY_LOGIN = "daily_login"


STREAK_MILESTONE_INTERVAL = 7
STREAK_BROKEN_MIN_LENGTH = 3


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------
class CollectionType(enum.StrEnum):
    ENGAGEMENT = "engagement_collection"
    STATIC = "static_collection"
    DYNAMIC = "dynamic_collection"
    FLAVOR_COIN = "flavor_coin"
    HIDDEN = "hidden_collection"
    LEGACY = "legacy"


class ActivityLogCategory(enum.StrEnum):
    """Categories written to ``activity_log`` by the engine."""
    EARN_BADGE = "earn_badge"
    TIER_UPGRADE = "tier_upgrade"
    ACHIEVEMENTS_CLEARED = "achievements_cleared"
    ALL_DATA_CLEARED = "all_data_cleared"
    STREAK_STARTED = "streak_started"
    STREAK_MILESTONE = "streak_milestone"
    STREAK_BROKEN = "streak_broken"


# Leaderboard position reported for users who are not ranked at all
UNRANKED_POSITION = 999

# Fallback when no rankable products exist yet
DEFAULT_TOTAL_RANKABLE_PRODUCTS = 89

# Animal groups need more than this many products to count as a category
ANIMAL_CATEGORY_MIN_PRODUCTS = 2

TRENDING_TOP_N = 10


# ---------------------------------------------------------------------------
# Period buckets
# ---------------------------------------------------------------------------
class Period(enum.StrEnum):
    ALL_TIME = "all_time"
    WEEK = "week"
    MONTH = "month"


# Rolling window length (days) admitted into each bucket by increment()
PERIOD_WINDOW_DAYS: dict[str, int | None] = {
    Period.ALL_TIME: None,
    Period.WEEK: 7,
    Period.MONTH: 30,
}

# Rollup counters in declaration order; the first four sum to the score
SCORE_COUNTERS: tuple[str, ...] = ("achievements", "page_views", "rankings", "searches")
ROLLUP_COUNTERS: tuple[str, ...] = SCORE_COUNTERS + ("unique_products",)
