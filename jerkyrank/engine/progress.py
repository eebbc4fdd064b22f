"""
jerkyrank.engine.progress - Closest Unearned Achievement
=========================================================

Picks the single achievement (or next tier of an earned one) a user is
closest to, and renders the short hint shown next to it.

Candidates:

* unearned, active, visible definitions with an evaluable requirement;
* earned tiered definitions below diamond, targeting the next tier's
  threshold ("tier-upgrade candidates").

``flavor_coin`` collections and date-gated ``join_before`` coins are
never candidates.  The winner has the highest percentage, then the
fewest remaining units, then the earliest definition.

This module is pure calculation, no database I/O.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from jerkyrank.constants import CollectionType
from jerkyrank.engine.achievements import (
    AchievementRule,
    AwardState,
    Tier,
    next_tier,
)
from jerkyrank.engine.requirements import RequirementKind, percentage_of, progress_of
from jerkyrank.engine.stats import UserStats


@dataclass(frozen=True, slots=True)
class ClosestAchievement:
    code: str
    name: str
    icon: str | None
    category: str
    current: int
    target: int
    remaining: int
    percentage: int
    is_tier_upgrade: bool
    action_text: str
    current_tier: str | None = None
    next_tier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "icon": self.icon,
            "category": self.category,
            "current": self.current,
            "target": self.target,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "is_tier_upgrade": self.is_tier_upgrade,
            "current_tier": self.current_tier,
            "next_tier": self.next_tier,
            "action_text": self.action_text,
        }


# ---------------------------------------------------------------------------
# Action text
# ---------------------------------------------------------------------------
_IRREGULAR_PLURALS: dict[str, str] = {"category": "categories"}

# kind → (verb phrase, noun, trailing phrase)
_ACTION_TEMPLATES: dict[RequirementKind, tuple[str, str, str]] = {
    RequirementKind.RANK_COUNT: ("Rank", "product", ""),
    RequirementKind.RANK_ALL_PRODUCTS: ("Rank", "product", " to complete the collection"),
    RequirementKind.STREAK_DAYS: ("Rank products", "day", " in a row"),
    RequirementKind.DAILY_LOGIN_STREAK: ("Log in", "day", " in a row"),
    RequirementKind.UNIQUE_BRANDS: ("Try", "brand", ""),
    RequirementKind.PROFILE_VIEWS: ("Get", "profile view", ""),
    RequirementKind.TRENDSETTER: ("Rank", "trending product", ""),
    RequirementKind.COMPLETE_ANIMAL_CATEGORY: ("Complete", "animal category", ""),
    RequirementKind.SEARCH_COUNT: ("Search", "time", ""),
    RequirementKind.PRODUCT_VIEW_COUNT: ("View", "product", ""),
    RequirementKind.UNIQUE_PRODUCT_VIEW_COUNT: ("View", "new product", ""),
    RequirementKind.PROFILE_VIEW_COUNT: ("Visit", "profile", ""),
    RequirementKind.UNIQUE_PROFILE_VIEW_COUNT: ("Visit", "new profile", ""),
    RequirementKind.PAGE_VIEW_COUNT: ("Visit", "page", ""),
    RequirementKind.LEADERBOARD_POSITION: ("Climb", "place", " on the leaderboard"),
}


def pluralize(noun: str, count: int) -> str:
    if count == 1:
        return noun
    head, _, last = noun.rpartition(" ")
    plural = _IRREGULAR_PLURALS.get(last, last + "s")
    return f"{head} {plural}" if head else plural


def action_text(kind: RequirementKind, remaining: int, name: str) -> str:
    """``"Rank 3 more products"`` style hint; falls back to the coin name."""
    template = _ACTION_TEMPLATES.get(kind)
    if template is None:
        return f"Keep going to earn {name}"
    if remaining <= 0:
        return f"You're ready to earn {name}!"
    verb, noun, tail = template
    return f"{verb} {remaining} more {pluralize(noun, remaining)}{tail}"


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------
def _excluded(rule: AchievementRule) -> bool:
    return (
        rule.collection_type == CollectionType.FLAVOR_COIN
        or rule.requirement.kind is RequirementKind.JOIN_BEFORE
        or not rule.is_active
    )


def _upgrade_candidate(
    rule: AchievementRule, award: AwardState, stats: UserStats,
) -> ClosestAchievement | None:
    upcoming = next_tier(award.tier)
    if not rule.has_tiers or upcoming is None:
        return None
    progress = progress_of(rule.requirement, stats)
    if progress is None or progress.inverse:
        return None
    threshold = rule.thresholds[upcoming]
    target = max(1, math.ceil(threshold / 100 * progress.required))
    remaining = max(0, target - progress.current)
    return ClosestAchievement(
        code=rule.code,
        name=rule.name,
        icon=rule.icon,
        category=rule.category,
        current=progress.current,
        target=target,
        remaining=remaining,
        percentage=percentage_of(progress.current, target),
        is_tier_upgrade=True,
        action_text=action_text(rule.requirement.kind, remaining, rule.name),
        current_tier=award.tier,
        next_tier=upcoming,
    )


def _unearned_candidate(rule: AchievementRule, stats: UserStats) -> ClosestAchievement | None:
    if rule.hidden:
        return None
    progress = progress_of(rule.requirement, stats)
    if progress is None:
        return None
    return ClosestAchievement(
        code=rule.code,
        name=rule.name,
        icon=rule.icon,
        category=rule.category,
        current=progress.current,
        target=progress.required,
        remaining=progress.remaining,
        percentage=progress.percentage,
        is_tier_upgrade=False,
        action_text=action_text(rule.requirement.kind, progress.remaining, rule.name),
        next_tier=Tier.BRONZE if rule.has_tiers else None,
    )


def closest_unearned(
    rules: list[AchievementRule],
    awards: dict[str, AwardState],
    stats: UserStats,
    category: str | None = None,
) -> ClosestAchievement | None:
    """Return the best candidate, or None when nothing is left to earn.

    Parameters
    ----------
    rules : Definitions in insertion order.
    awards : The user's existing awards keyed by code.
    stats : Current snapshot.
    category : Optional ``category`` filter (e.g. ``"ranking"``).
    """
    ranked: list[tuple[int, int, int, ClosestAchievement]] = []
    for order, rule in enumerate(sorted(rules, key=lambda s: s.position)):
        if _excluded(rule):
            continue
        if category is not None and rule.category != category:
            continue
        award = awards.get(rule.code)
        if award is None:
            candidate = _unearned_candidate(rule, stats)
        else:
            candidate = _upgrade_candidate(rule, award, stats)
        if candidate is not None:
            ranked.append((-candidate.percentage, candidate.remaining, order, candidate))

    if not ranked:
        return None
    ranked.sort(key=lambda item: item[:3])
    return ranked[0][3]
