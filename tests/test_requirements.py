"""
tests/test_requirements.py - Requirement Parsing & Progress Handlers
=====================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from jerkyrank.engine.requirements import (
    PROGRESS_HANDLERS,
    Progress,
    RequirementKind,
    parse_requirement,
    percentage_of,
    progress_of,
)
from jerkyrank.engine.stats import UserStats


def _stats(**kwargs) -> UserStats:
    return UserStats(**kwargs)


def _progress(raw: dict, **stats) -> Progress | None:
    return progress_of(parse_requirement(raw), _stats(**stats))


# ===========================================================================
# Parsing
# ===========================================================================
class TestParseRequirement:
    def test_count_kind(self):
        req = parse_requirement({"type": "rank_count", "value": 10})
        assert req.kind is RequirementKind.RANK_COUNT
        assert req.value == 10
        assert req.evaluable

    def test_float_value_truncated_to_int(self):
        assert parse_requirement({"type": "search_count", "value": 5.0}).value == 5

    def test_join_before_parses_date(self):
        req = parse_requirement({"type": "join_before", "value": "2025-11-10"})
        assert req.kind is RequirementKind.JOIN_BEFORE
        assert req.value.isoformat() == "2025-11-10"

    @pytest.mark.parametrize("raw", [
        None,
        "rank_count",
        {"type": "made_up", "value": 3},
        {"type": "rank_count", "value": "ten"},
        {"type": "rank_count", "value": -1},
        {"type": "rank_count", "value": True},
        {"type": "join_before", "value": "not-a-date"},
    ])
    def test_malformed_becomes_unknown(self, raw):
        assert parse_requirement(raw).kind is RequirementKind.UNKNOWN

    @pytest.mark.parametrize("kind", [
        "complete_collection", "static_collection", "flavor_coin",
        "complete_protein_category_percentage",
    ])
    def test_delegated_kinds_are_not_evaluable(self, kind):
        req = parse_requirement({"type": kind, "value": {"products": ["a"]}})
        assert req.kind.value == kind
        assert not req.evaluable
        assert progress_of(req, _stats()) is None

    def test_unknown_is_never_evaluated(self, caplog):
        with caplog.at_level("WARNING"):
            assert _progress({"type": "made_up", "value": 1}) is None
        assert "made_up" in caplog.text


# ===========================================================================
# Percentages
# ===========================================================================
class TestPercentage:
    @pytest.mark.parametrize("current,required,expected", [
        (0, 10, 0),
        (4, 10, 40),
        (1, 3, 33),
        (2, 3, 67),
        (1, 8, 13),       # 12.5 rounds half up
        (10, 10, 100),
        (15, 10, 100),
        (0, 0, 100),      # nothing required
    ])
    def test_percentage_of(self, current, required, expected):
        assert percentage_of(current, required) == expected


# ===========================================================================
# Handlers
# ===========================================================================
class TestHandlers:
    @pytest.mark.parametrize("kind,attr", [
        ("rank_count", "total_rankings"),
        ("streak_days", "current_streak"),
        ("daily_login_streak", "current_login_streak"),
        ("unique_brands", "unique_brands"),
        ("profile_views", "profile_views_received"),
        ("trendsetter", "trending_ranks"),
        ("search_count", "total_searches"),
        ("product_view_count", "total_product_views"),
        ("unique_product_view_count", "unique_product_views"),
        ("profile_view_count", "total_profile_views"),
        ("unique_profile_view_count", "unique_profile_views"),
        ("page_view_count", "total_page_views"),
    ])
    def test_counter_kinds(self, kind, attr):
        progress = _progress({"type": kind, "value": 4}, **{attr: 3})
        assert (progress.current, progress.required, progress.percentage) == (3, 4, 75)

    def test_zero_requirement_is_complete(self):
        assert _progress({"type": "rank_count", "value": 0}).percentage == 100

    def test_rank_all_products_uses_catalogue_size(self):
        progress = _progress(
            {"type": "rank_all_products", "value": 1},
            unique_products=20, total_rankable_products=40,
        )
        assert (progress.current, progress.required, progress.percentage) == (20, 40, 50)

    def test_animal_categories_counted(self):
        progress = _progress(
            {"type": "complete_animal_category", "value": 2},
            completed_animal_categories=("beef",),
        )
        assert progress.percentage == 50

    @pytest.mark.parametrize("position,expected", [(1, 100), (10, 100), (11, 0), (999, 0), (0, 0)])
    def test_leaderboard_position_is_all_or_nothing(self, position, expected):
        progress = _progress(
            {"type": "leaderboard_position", "value": 10}, leaderboard_position=position,
        )
        assert progress.percentage == expected
        assert progress.inverse

    def test_leaderboard_remaining_counts_places(self):
        progress = _progress(
            {"type": "leaderboard_position", "value": 10}, leaderboard_position=14,
        )
        assert progress.remaining == 4

    def test_join_before(self):
        req = {"type": "join_before", "value": "2025-11-10"}
        early = _progress(req, join_date=datetime(2025, 11, 10, 23, 0, tzinfo=UTC))
        late = _progress(req, join_date=datetime(2025, 11, 11, 0, 1, tzinfo=UTC))
        unknown = _progress(req)
        assert early.percentage == 100
        assert late.percentage == 0
        assert unknown.percentage == 0

    def test_every_non_delegated_kind_has_a_handler(self):
        missing = {
            k for k in RequirementKind
            if k not in PROGRESS_HANDLERS
        }
        assert missing == {
            RequirementKind.COMPLETE_COLLECTION,
            RequirementKind.STATIC_COLLECTION,
            RequirementKind.FLAVOR_COIN,
            RequirementKind.COMPLETE_PROTEIN_CATEGORY_PERCENTAGE,
            RequirementKind.UNKNOWN,
        }
