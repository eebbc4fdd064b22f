"""
jerkyrank.engine.requirements - Requirement Kinds & Progress Handlers
======================================================================

Handler-registry implementation for achievement requirements.  A stored
requirement ``{"type": "rank_count", "value": 10}`` is parsed into a
:class:`Requirement`; each :class:`RequirementKind` maps to a pure
handler ``(requirement, stats) → Progress``.

Kinds handled by the collection manager are recognised but have no
handler, and any unrecognised or malformed requirement parses to
``RequirementKind.UNKNOWN``.  Neither ever awards.

This module is pure calculation, no database I/O.
"""

from __future__ import annotations

import enum
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from jerkyrank.constants import DEFAULT_TOTAL_RANKABLE_PRODUCTS
from jerkyrank.engine.clock import ensure_utc
from jerkyrank.engine.stats import UserStats

logger = logging.getLogger(__name__)


class RequirementKind(enum.StrEnum):
    RANK_COUNT = "rank_count"
    RANK_ALL_PRODUCTS = "rank_all_products"
    STREAK_DAYS = "streak_days"
    DAILY_LOGIN_STREAK = "daily_login_streak"
    UNIQUE_BRANDS = "unique_brands"
    LEADERBOARD_POSITION = "leaderboard_position"
    PROFILE_VIEWS = "profile_views"
    TRENDSETTER = "trendsetter"
    COMPLETE_ANIMAL_CATEGORY = "complete_animal_category"
    SEARCH_COUNT = "search_count"
    PRODUCT_VIEW_COUNT = "product_view_count"
    UNIQUE_PRODUCT_VIEW_COUNT = "unique_product_view_count"
    PROFILE_VIEW_COUNT = "profile_view_count"
    UNIQUE_PROFILE_VIEW_COUNT = "unique_profile_view_count"
    PAGE_VIEW_COUNT = "page_view_count"
    JOIN_BEFORE = "join_before"
    # Owned by the collection manager
    COMPLETE_COLLECTION = "complete_collection"
    STATIC_COLLECTION = "static_collection"
    FLAVOR_COIN = "flavor_coin"
    COMPLETE_PROTEIN_CATEGORY_PERCENTAGE = "complete_protein_category_percentage"
    UNKNOWN = "unknown"


DELEGATED_KINDS: frozenset[RequirementKind] = frozenset({
    RequirementKind.COMPLETE_COLLECTION,
    RequirementKind.STATIC_COLLECTION,
    RequirementKind.FLAVOR_COIN,
    RequirementKind.COMPLETE_PROTEIN_CATEGORY_PERCENTAGE,
})

# Kinds whose value is not a count
_VALUELESS_KINDS: frozenset[RequirementKind] = DELEGATED_KINDS | {
    RequirementKind.RANK_ALL_PRODUCTS,
    RequirementKind.JOIN_BEFORE,
}


@dataclass(frozen=True, slots=True)
class Requirement:
    kind: RequirementKind
    value: Any = None
    raw_type: str = ""

    @property
    def evaluable(self) -> bool:
        return self.kind in PROGRESS_HANDLERS


@dataclass(frozen=True, slots=True)
class Progress:
    """``current`` / ``required`` with a 0-100 percentage.

    ``inverse`` marks rank-style progress where lower ``current`` is better.
    """

    current: int
    required: int
    percentage: int
    inverse: bool = False

    @property
    def remaining(self) -> int:
        if self.inverse:
            return max(0, self.current - self.required)
        return max(0, self.required - self.current)

    def to_dict(self) -> dict[str, int]:
        return {
            "current": self.current,
            "required": self.required,
            "percentage": self.percentage,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage_of(current: int, required: int) -> int:
    """``min(100, round(current / required * 100))``; 100 when nothing is required."""
    if required <= 0:
        return 100
    return max(0, min(100, round_half_up(current / required * 100)))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def parse_requirement(raw: dict | None) -> Requirement:
    """Parse a stored requirement mapping; malformed input becomes UNKNOWN."""
    if not isinstance(raw, dict):
        return Requirement(RequirementKind.UNKNOWN)
    raw_type = str(raw.get("type", ""))
    try:
        kind = RequirementKind(raw_type)
    except ValueError:
        return Requirement(RequirementKind.UNKNOWN, raw.get("value"), raw_type)
    if kind is RequirementKind.UNKNOWN:
        return Requirement(kind, raw.get("value"), raw_type)

    value = raw.get("value")
    if kind is RequirementKind.JOIN_BEFORE:
        try:
            value = date.fromisoformat(str(value)[:10])
        except ValueError:
            return Requirement(RequirementKind.UNKNOWN, raw.get("value"), raw_type)
    elif kind not in _VALUELESS_KINDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return Requirement(RequirementKind.UNKNOWN, value, raw_type)
        value = int(value)
    return Requirement(kind, value, raw_type)


# ---------------------------------------------------------------------------
# Progress handlers - pure functions (requirement, stats) → Progress
# ---------------------------------------------------------------------------
def _counter(attr: str) -> Callable[[Requirement, UserStats], Progress]:
    def handler(req: Requirement, stats: UserStats) -> Progress:
        current = int(getattr(stats, attr))
        return Progress(current, req.value, percentage_of(current, req.value))

    handler.__name__ = f"_progress_{attr}"
    return handler


def _progress_rank_all_products(req: Requirement, stats: UserStats) -> Progress:
    required = stats.total_rankable_products or DEFAULT_TOTAL_RANKABLE_PRODUCTS
    return Progress(stats.unique_products, required, percentage_of(stats.unique_products, required))


def _progress_complete_animal_category(req: Requirement, stats: UserStats) -> Progress:
    current = len(stats.completed_animal_categories)
    return Progress(current, req.value, percentage_of(current, req.value))


def _progress_leaderboard_position(req: Requirement, stats: UserStats) -> Progress:
    """Met when ``0 < position ≤ value``; all-or-nothing."""
    position = stats.leaderboard_position
    met = 0 < position <= req.value
    return Progress(position, req.value, 100 if met else 0, inverse=True)


def _progress_join_before(req: Requirement, stats: UserStats) -> Progress:
    if stats.join_date is None:
        return Progress(0, 1, 0)
    met = ensure_utc(stats.join_date).date() <= req.value
    return Progress(1 if met else 0, 1, 100 if met else 0)


PROGRESS_HANDLERS: dict[RequirementKind, Callable[[Requirement, UserStats], Progress]] = {
    RequirementKind.RANK_COUNT: _counter("total_rankings"),
    RequirementKind.RANK_ALL_PRODUCTS: _progress_rank_all_products,
    RequirementKind.STREAK_DAYS: _counter("current_streak"),
    RequirementKind.DAILY_LOGIN_STREAK: _counter("current_login_streak"),
    RequirementKind.UNIQUE_BRANDS: _counter("unique_brands"),
    RequirementKind.LEADERBOARD_POSITION: _progress_leaderboard_position,
    RequirementKind.PROFILE_VIEWS: _counter("profile_views_received"),
    RequirementKind.TRENDSETTER: _counter("trending_ranks"),
    RequirementKind.COMPLETE_ANIMAL_CATEGORY: _progress_complete_animal_category,
    RequirementKind.SEARCH_COUNT: _counter("total_searches"),
    RequirementKind.PRODUCT_VIEW_COUNT: _counter("total_product_views"),
    RequirementKind.UNIQUE_PRODUCT_VIEW_COUNT: _counter("unique_product_views"),
    RequirementKind.PROFILE_VIEW_COUNT: _counter("total_profile_views"),
    RequirementKind.UNIQUE_PROFILE_VIEW_COUNT: _counter("unique_profile_views"),
    RequirementKind.PAGE_VIEW_COUNT: _counter("total_page_views"),
    RequirementKind.JOIN_BEFORE: _progress_join_before,
    # DELEGATED_KINDS and UNKNOWN intentionally omitted - never awarded here
}


def progress_of(requirement: Requirement, stats: UserStats) -> Progress | None:
    """Return the progress for *requirement*, or None if it is not evaluable."""
    handler = PROGRESS_HANDLERS.get(requirement.kind)
    if handler is None:
        if requirement.kind is RequirementKind.UNKNOWN:
            logger.warning("No evaluator for requirement type: %r", requirement.raw_type)
        return None
    return handler(requirement, stats)
