"""
jerkyrank.engine.achievements - Tier Math & Award Planning
===========================================================

Given the active definitions, the user's existing awards and a
:class:`~jerkyrank.engine.stats.UserStats` snapshot, decide which awards
to create or raise and which updates to emit.  Persistence lives in
:mod:`jerkyrank.services.achievement_service`.

Rules:

* Non-tiered definitions reach ``complete`` at 100 %.
* Tiered definitions reach the highest tier whose threshold is met.
* A first award walks every tier from bronze up to the target, emitting
  ``Awarded`` then one ``TierUpgraded`` per step.
* An existing award jumps straight to the target with one
  ``TierUpgraded``.  Tiers never go down.
* Points for tier *k* are ``round(t_k / 100 * points)``; diamond and
  ``complete`` get the full points.

This module is pure calculation, no database I/O.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from itertools import pairwise
from typing import TYPE_CHECKING, Any

from jerkyrank.config import DEFAULT_TIER_THRESHOLDS
from jerkyrank.constants import CollectionType
from jerkyrank.engine.requirements import (
    Progress,
    Requirement,
    parse_requirement,
    progress_of,
    round_half_up,
)
from jerkyrank.errors import ValidationError

if TYPE_CHECKING:
    from jerkyrank.database.models import AchievementDefinition, UserAchievement
    from jerkyrank.engine.stats import UserStats

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------
class Tier(enum.StrEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"
    COMPLETE = "complete"
    NONE = "none"


TIER_ORDER: tuple[Tier, ...] = (
    Tier.BRONZE,
    Tier.SILVER,
    Tier.GOLD,
    Tier.PLATINUM,
    Tier.DIAMOND,
)


def tier_rank(tier: str) -> int:
    """Ordinal used for "strictly higher" comparisons (none=0 … complete=6)."""
    if tier == Tier.COMPLETE:
        return len(TIER_ORDER) + 1
    try:
        return TIER_ORDER.index(Tier(tier)) + 1
    except ValueError:
        return 0


def next_tier(tier: str) -> Tier | None:
    rank = tier_rank(tier)
    if 1 <= rank < len(TIER_ORDER):
        return TIER_ORDER[rank]
    return None


def resolve_thresholds(
    custom: dict[str, Any] | None,
    defaults: dict[str, int] | None = None,
) -> dict[Tier, int]:
    """Merge per-definition thresholds over *defaults* and validate them.

    Raises
    ------
    ValidationError
        If a tier is unknown or thresholds are not strictly increasing
        within 1..100.
    """
    merged: dict[str, int] = dict(defaults or DEFAULT_TIER_THRESHOLDS)
    for key, value in (custom or {}).items():
        if key not in DEFAULT_TIER_THRESHOLDS:
            raise ValidationError(f"Unknown tier in thresholds: {key!r}")
        merged[key] = int(value)

    resolved: dict[Tier, int] = {}
    previous = 0
    for tier in TIER_ORDER:
        value = merged[tier.value]
        if not previous < value <= 100:
            raise ValidationError(
                f"Tier thresholds must be strictly increasing within 1..100 "
                f"(got {tier.value}={value} after {previous})"
            )
        resolved[tier] = value
        previous = value
    return resolved


# ---------------------------------------------------------------------------
# Definition snapshot
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementRule:
    """Detached, parsed view of an :class:`AchievementDefinition` row."""

    code: str
    name: str
    requirement: Requirement
    points: int = 0
    has_tiers: bool = False
    thresholds: dict[Tier, int] = field(
        default_factory=lambda: resolve_thresholds(None)
    )
    prerequisite_code: str | None = None
    icon: str | None = None
    description: str | None = None
    tier: str = Tier.NONE
    category: str = "engagement"
    collection_type: str = CollectionType.LEGACY
    is_active: bool = True
    is_hidden: bool = False
    position: int = 0

    @property
    def hidden(self) -> bool:
        return self.is_hidden or self.collection_type == CollectionType.HIDDEN


def rule_from_row(
    row: AchievementDefinition,
    default_thresholds: dict[str, int] | None = None,
) -> AchievementRule:
    """Build a rule; invalid custom thresholds fall back to the defaults."""
    try:
        thresholds = resolve_thresholds(row.tier_thresholds, default_thresholds)
    except ValidationError as exc:
        logger.warning("Ignoring tier thresholds on %s: %s", row.code, exc)
        thresholds = resolve_thresholds(None, default_thresholds)
    return AchievementRule(
        code=row.code,
        name=row.name,
        requirement=parse_requirement(row.requirement),
        points=row.points or 0,
        has_tiers=bool(row.has_tiers),
        thresholds=thresholds,
        prerequisite_code=row.prerequisite_code,
        icon=row.icon,
        description=row.description,
        tier=row.tier,
        category=row.category,
        collection_type=row.collection_type,
        is_active=bool(row.is_active),
        is_hidden=bool(row.is_hidden),
        position=row.id or 0,
    )


@dataclass(frozen=True, slots=True)
class AwardState:
    """The persisted state of one user's award."""

    code: str
    tier: str
    percentage: int = 0
    points: int = 0

    @classmethod
    def from_row(cls, row: UserAchievement) -> AwardState:
        return cls(
            code=row.achievement_code,
            tier=row.current_tier,
            percentage=row.percentage_complete,
            points=row.points_awarded,
        )


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Awarded:
    code: str
    tier: str
    points: int
    percentage: int

    kind = "awarded"


@dataclass(frozen=True, slots=True)
class TierUpgraded:
    code: str
    from_tier: str
    to_tier: str
    points: int
    percentage: int

    kind = "tier_upgraded"


Update = Awarded | TierUpgraded


def update_to_dict(update: Update) -> dict[str, Any]:
    if isinstance(update, Awarded):
        return {
            "type": update.kind,
            "code": update.code,
            "tier": update.tier,
            "points": update.points,
            "percentage": update.percentage,
        }
    return {
        "type": update.kind,
        "code": update.code,
        "from_tier": update.from_tier,
        "to_tier": update.to_tier,
        "points": update.points,
        "percentage": update.percentage,
    }


@dataclass(slots=True)
class AwardPlan:
    """What to write for one definition."""

    rule: AchievementRule
    progress: Progress
    final_tier: str
    points: int
    create: bool
    updates: list[Update] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tier math
# ---------------------------------------------------------------------------
def target_tier(rule: AchievementRule, percentage: int) -> Tier:
    if not rule.has_tiers:
        return Tier.COMPLETE if percentage >= 100 else Tier.NONE
    reached = Tier.NONE
    for tier in TIER_ORDER:
        if rule.thresholds[tier] <= percentage:
            reached = tier
    return reached


def tier_points(rule: AchievementRule, tier: str) -> int:
    if tier in (Tier.COMPLETE, Tier.DIAMOND):
        return rule.points
    if tier_rank(tier) == 0:
        return 0
    threshold = rule.thresholds[Tier(tier)]
    return min(rule.points, round_half_up(threshold / 100 * rule.points))


def plan_award(
    rule: AchievementRule,
    existing: AwardState | None,
    progress: Progress,
) -> AwardPlan | None:
    """Decide the writes for one definition, or None when nothing changes."""
    percentage = progress.percentage
    target = target_tier(rule, percentage)

    if existing is None:
        if target is Tier.NONE:
            return None
        if not rule.has_tiers:
            updates: list[Update] = [
                Awarded(rule.code, Tier.COMPLETE, rule.points, percentage)
            ]
        else:
            path = TIER_ORDER[: TIER_ORDER.index(target) + 1]
            updates = [Awarded(rule.code, path[0], tier_points(rule, path[0]), percentage)]
            updates.extend(
                TierUpgraded(rule.code, lower, higher, tier_points(rule, higher), percentage)
                for lower, higher in pairwise(path)
            )
        return AwardPlan(
            rule=rule,
            progress=progress,
            final_tier=target,
            points=tier_points(rule, target),
            create=True,
            updates=updates,
        )

    if rule.has_tiers and target is not Tier.NONE and tier_rank(target) > tier_rank(existing.tier):
        return AwardPlan(
            rule=rule,
            progress=progress,
            final_tier=target,
            points=tier_points(rule, target),
            create=False,
            updates=[
                TierUpgraded(
                    rule.code, existing.tier, target, tier_points(rule, target), percentage,
                )
            ],
        )

    if percentage != existing.percentage:
        return AwardPlan(
            rule=rule,
            progress=progress,
            final_tier=existing.tier,
            points=existing.points,
            create=False,
        )
    return None


def plan_evaluation(
    rules: list[AchievementRule],
    awards: dict[str, AwardState],
    stats: UserStats,
) -> list[AwardPlan]:
    """Plan every award change for one user, in emission order.

    Definitions whose prerequisite is not yet earned are deferred and
    revisited as soon as the prerequisite is awarded in this same pass,
    so a prerequisite always precedes its dependents.
    """
    earned: set[str] = set(awards)
    deferred: dict[str, list[AchievementRule]] = {}
    plans: list[AwardPlan] = []

    def consider(rule: AchievementRule) -> None:
        if rule.prerequisite_code and rule.prerequisite_code not in earned:
            deferred.setdefault(rule.prerequisite_code, []).append(rule)
            return
        progress = progress_of(rule.requirement, stats)
        if progress is None:
            return
        plan = plan_award(rule, awards.get(rule.code), progress)
        if plan is None:
            return
        plans.append(plan)
        if plan.create:
            earned.add(rule.code)
            for dependent in deferred.pop(rule.code, []):
                consider(dependent)

    for rule in sorted(rules, key=lambda s: s.position):
        if rule.is_active:
            consider(rule)
    return plans
