"""
tests/test_progress.py - Closest Unearned Achievement
======================================================
"""

from __future__ import annotations

import pytest

from jerkyrank.constants import CollectionType
from jerkyrank.engine.achievements import AchievementRule, AwardState, Tier
from jerkyrank.engine.progress import action_text, closest_unearned, pluralize
from jerkyrank.engine.requirements import RequirementKind, parse_requirement
from jerkyrank.engine.stats import UserStats


def _rule(code: str, req_type: str, value, *, position: int = 0, **extra) -> AchievementRule:
    return AchievementRule(
        code=code,
        name=code.replace("_", " ").title(),
        requirement=parse_requirement({"type": req_type, "value": value}),
        points=100,
        position=position,
        **extra,
    )


class TestActionText:
    @pytest.mark.parametrize("noun,count,expected", [
        ("product", 1, "product"),
        ("product", 3, "products"),
        ("profile view", 2, "profile views"),
        ("animal category", 2, "animal categories"),
        ("day", 0, "days"),
    ])
    def test_pluralize(self, noun, count, expected):
        assert pluralize(noun, count) == expected

    def test_counter_hint(self):
        assert action_text(RequirementKind.RANK_COUNT, 3, "Ranker") == "Rank 3 more products"
        assert action_text(RequirementKind.STREAK_DAYS, 1, "Streaker") == (
            "Rank products 1 more day in a row"
        )

    def test_ready_hint(self):
        assert action_text(RequirementKind.SEARCH_COUNT, 0, "Searcher") == (
            "You're ready to earn Searcher!"
        )

    def test_unknown_kind_falls_back_to_name(self):
        assert action_text(RequirementKind.JOIN_BEFORE, 2, "Early Bird") == (
            "Keep going to earn Early Bird"
        )


# ===========================================================================
# Selection
# ===========================================================================
class TestClosestUnearned:
    def test_highest_percentage_wins(self):
        rules = [
            _rule("ranker", "rank_count", 10, position=1),
            _rule("searcher", "search_count", 5, position=2),
        ]
        best = closest_unearned(rules, {}, UserStats(total_rankings=4, total_searches=4))
        assert best.code == "searcher"
        assert (best.current, best.target, best.remaining, best.percentage) == (4, 5, 1, 80)
        assert best.action_text == "Search 1 more time"
        assert not best.is_tier_upgrade

    def test_fewest_remaining_breaks_ties(self):
        rules = [
            _rule("ranker", "rank_count", 10, position=1),
            _rule("searcher", "search_count", 4, position=2),
        ]
        best = closest_unearned(rules, {}, UserStats(total_rankings=5, total_searches=2))
        assert best.code == "searcher"

    def test_definition_order_breaks_full_ties(self):
        rules = [
            _rule("later", "rank_count", 10, position=2),
            _rule("earlier", "search_count", 10, position=1),
        ]
        best = closest_unearned(rules, {}, UserStats(total_rankings=5, total_searches=5))
        assert best.code == "earlier"

    def test_excluded_candidates(self):
        rules = [
            _rule("coin", "rank_count", 2, collection_type=CollectionType.FLAVOR_COIN),
            _rule("early", "join_before", "2030-01-01"),
            _rule("secret", "rank_count", 2, is_hidden=True),
            _rule("hidden_set", "rank_count", 2, collection_type=CollectionType.HIDDEN),
            _rule("retired", "rank_count", 2, is_active=False),
            _rule("collection", "complete_collection", {"products": ["a"]}),
        ]
        assert closest_unearned(rules, {}, UserStats(total_rankings=1)) is None

    def test_earned_untiered_is_not_a_candidate(self):
        rules = [_rule("ranker", "rank_count", 5)]
        awards = {"ranker": AwardState("ranker", Tier.COMPLETE, 100, 100)}
        assert closest_unearned(rules, awards, UserStats(total_rankings=5)) is None

    def test_tier_upgrade_targets_next_threshold(self):
        rules = [_rule("ranker", "rank_count", 10, has_tiers=True)]
        awards = {"ranker": AwardState("ranker", Tier.BRONZE, 50, 40)}
        best = closest_unearned(rules, awards, UserStats(total_rankings=5))
        assert best.is_tier_upgrade
        assert (best.current_tier, best.next_tier) == ("bronze", "silver")
        # silver at 60 % of 10 → 6
        assert (best.current, best.target, best.remaining, best.percentage) == (5, 6, 1, 83)
        assert best.action_text == "Rank 1 more product"

    def test_diamond_has_no_upgrade(self):
        rules = [_rule("ranker", "rank_count", 10, has_tiers=True)]
        awards = {"ranker": AwardState("ranker", Tier.DIAMOND, 100, 100)}
        assert closest_unearned(rules, awards, UserStats(total_rankings=10)) is None

    def test_unearned_tiered_points_at_bronze(self):
        best = closest_unearned(
            [_rule("ranker", "rank_count", 10, has_tiers=True)], {}, UserStats(total_rankings=1),
        )
        assert best.next_tier == "bronze"

    def test_category_filter(self):
        rules = [
            _rule("ranker", "rank_count", 10, category="ranking"),
            _rule("searcher", "search_count", 2, category="engagement"),
        ]
        stats = UserStats(total_rankings=1, total_searches=1)
        assert closest_unearned(rules, {}, stats, category="ranking").code == "ranker"
        assert closest_unearned(rules, {}, stats, category="social") is None

    def test_leaderboard_candidate_reports_places_to_climb(self):
        rules = [_rule("top_ten", "leaderboard_position", 10)]
        best = closest_unearned(rules, {}, UserStats(leaderboard_position=13))
        assert best.percentage == 0
        assert best.remaining == 3
        assert best.action_text == "Climb 3 more places on the leaderboard"

    def test_to_dict_shape(self):
        best = closest_unearned([_rule("ranker", "rank_count", 2)], {}, UserStats(total_rankings=1))
        payload = best.to_dict()
        assert payload["code"] == "ranker"
        assert payload["percentage"] == 50
        assert set(payload) >= {"current", "target", "remaining", "action_text", "next_tier"}
