"""
jerkyrank.database.seed - Default Achievement Catalogue
========================================================

The coin catalogue seeded on first startup so awards work out of the box.

Idempotent: only codes that don't already exist are inserted.  Rows
edited later by an admin are never overwritten.  Insertion order is the
catalogue order below, which is also the evaluation and tie-break order.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, select

from jerkyrank.constants import CollectionType
from jerkyrank.database.engine import get_session
from jerkyrank.database.models import AchievementDefinition

logger = logging.getLogger(__name__)


def _coin(
    code: str,
    name: str,
    description: str,
    icon: str,
    tier: str,
    category: str,
    requirement: dict[str, Any],
    points: int,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "code": code,
        "name": name,
        "description": description,
        "icon": icon,
        "tier": tier,
        "category": category,
        "requirement": requirement,
        "points": points,
        **extra,
    }


# ---------------------------------------------------------------------------
# Default catalogue
# ---------------------------------------------------------------------------
DEFAULT_ACHIEVEMENTS: list[dict[str, Any]] = [
    # Ranking
    _coin("first_rank", "First Steps", "Rank your first product", "🎯",
          "bronze", "ranking", {"type": "rank_count", "value": 1}, 10),
    _coin("rank_10", "Getting Started", "Rank 10 products", "📊",
          "bronze", "ranking", {"type": "rank_count", "value": 10}, 50),
    _coin("rank_25", "Quarter Century", "Rank 25 products", "🏅",
          "silver", "ranking", {"type": "rank_count", "value": 25}, 100),
    _coin("rank_50", "Half Century", "Rank 50 products", "⭐",
          "gold", "ranking", {"type": "rank_count", "value": 50}, 200),
    _coin("complete_collection", "Complete Collection", "Rank all available products", "💯",
          "platinum", "ranking", {"type": "rank_all_products", "value": 1}, 1000),

    # Streaks
    _coin("streak_3", "Getting Consistent", "Maintain a 3-day ranking streak", "🔥",
          "bronze", "streak", {"type": "streak_days", "value": 3}, 30),
    _coin("streak_7", "Week Warrior", "Maintain a 7-day ranking streak", "🔥",
          "silver", "streak", {"type": "streak_days", "value": 7}, 100),
    _coin("streak_30", "Monthly Master", "Maintain a 30-day ranking streak", "🔥",
          "gold", "streak", {"type": "streak_days", "value": 30}, 500),
    _coin("streak_100", "Unstoppable", "Maintain a 100-day ranking streak", "🔥",
          "platinum", "streak", {"type": "streak_days", "value": 100}, 1000),

    # Discovery
    _coin("explorer", "Taste Explorer", "Try ranking products from your first brand", "🗺️",
          "bronze", "discovery", {"type": "unique_brands", "value": 1}, 50),
    _coin("adventurer", "Flavor Adventurer", "Try ranking products from 2 different brands", "🌍",
          "silver", "discovery", {"type": "unique_brands", "value": 2}, 150),
    _coin("globe_trotter", "Global Taster", "Try ranking products from all 3 brands", "✈️",
          "gold", "discovery", {"type": "unique_brands", "value": 3}, 300),

    # Social
    _coin("top_10", "Top 10 Ranker", "Reach the top 10 on the leaderboard", "🏅",
          "gold", "social", {"type": "leaderboard_position", "value": 10}, 500),
    _coin("top_3", "Podium Finisher", "Reach the top 3 on the leaderboard", "🥇",
          "platinum", "social", {"type": "leaderboard_position", "value": 3}, 1000),
    _coin("community_leader", "Community Leader", "Have 10 or more people view your rankings",
          "👥", "silver", "social", {"type": "profile_views", "value": 10}, 200),

    # Special
    _coin("early_adopter", "Early Adopter", "Join the community in its first month", "🚀",
          "gold", "special", {"type": "join_before", "value": "2025-11-10"}, 250),
    _coin("taste_maker", "Taste Maker", "Rank a product that becomes top 10 most ranked", "👑",
          "platinum", "special", {"type": "trendsetter", "value": 10}, 500),

    # Tiered engagement coins
    _coin("searcher", "Seeker", "Search the catalogue 50 times", "🔎",
          "none", "engagement", {"type": "search_count", "value": 50}, 100,
          has_tiers=True, collection_type=CollectionType.ENGAGEMENT),
    _coin("product_scout", "Product Scout", "View 40 different products", "👀",
          "none", "engagement", {"type": "unique_product_view_count", "value": 40}, 150,
          has_tiers=True, collection_type=CollectionType.ENGAGEMENT),
    _coin("daily_regular", "Daily Regular", "Log in 30 days in a row", "📅",
          "none", "engagement", {"type": "daily_login_streak", "value": 30}, 300,
          has_tiers=True, collection_type=CollectionType.ENGAGEMENT),
]


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_achievements(engine: Engine, catalogue: list[dict[str, Any]] | None = None) -> int:
    """Insert catalogue entries whose code does not exist yet.

    Returns the number of definitions inserted.  Safe to call on every
    startup.
    """
    catalogue = DEFAULT_ACHIEVEMENTS if catalogue is None else catalogue
    inserted = 0
    with get_session(engine) as session:
        existing = set(session.scalars(select(AchievementDefinition.code)).all())
        for entry in catalogue:
            if entry["code"] in existing:
                continue
            session.add(AchievementDefinition(**entry))
            session.flush()   # keep ids in catalogue order
            existing.add(entry["code"])
            inserted += 1

    if inserted:
        logger.info("Seeded %d achievement definitions.", inserted)
    return inserted
