"""
jerkyrank.engine.stats - UserStats Snapshot
============================================

The read-only bundle of per-user metrics that every requirement handler
evaluates against.  Produced by
:class:`jerkyrank.services.metrics_service.MetricsAggregator`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime

from jerkyrank.constants import DEFAULT_TOTAL_RANKABLE_PRODUCTS, UNRANKED_POSITION


@dataclass(frozen=True, slots=True)
class UserStats:
    """Snapshot of one user's engagement metrics.

    Parameters
    ----------
    total_rankings : Ranking rows across all of the user's lists.
    unique_products : Distinct products the user has ranked.
    total_rankable_products : Size of the rankable catalogue.
    current_streak / longest_streak : ``daily_rank`` streak (effective today).
    current_login_streak / longest_login_streak : ``daily_login`` streak.
    total_searches : ``search`` events.
    total_page_views : ``product_view`` + ``profile_view`` events.
    total_product_views / unique_product_views : by ``payload.productId``.
    total_profile_views / unique_profile_views : profiles the user visited,
        by ``payload.profileUserId``.
    profile_views_received : ``profile_view`` events targeting this user.
    unique_brands : Distinct vendors among ranked products.
    leaderboard_position : All-time rank, ``999`` when unranked.
    completed_animal_categories : Animal types fully ranked by the user.
    join_date : Account creation time.
    trending_ranks : Ranked products that sit in the top 10 most ranked.
    """

    total_rankings: int = 0
    unique_products: int = 0
    total_rankable_products: int = DEFAULT_TOTAL_RANKABLE_PRODUCTS
    current_streak: int = 0
    longest_streak: int = 0
    current_login_streak: int = 0
    longest_login_streak: int = 0
    total_searches: int = 0
    total_page_views: int = 0
    total_product_views: int = 0
    unique_product_views: int = 0
    total_profile_views: int = 0
    unique_profile_views: int = 0
    profile_views_received: int = 0
    unique_brands: int = 0
    leaderboard_position: int = UNRANKED_POSITION
    completed_animal_categories: tuple[str, ...] = field(default_factory=tuple)
    join_date: datetime | None = None
    trending_ranks: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["completed_animal_categories"] = list(self.completed_animal_categories)
        data["join_date"] = self.join_date.isoformat() if self.join_date else None
        return data
