"""
tests/test_scenarios.py - End-to-End Engagement Scenarios
==========================================================

Whole-engine walkthroughs: tier jumps, rolling windows, leaderboard
invalidation, streak gaps, prerequisite ordering and concurrent
increments.
"""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from conftest import add_definition, make_user
from jerkyrank.database.models import ActivityEvent, ActivityLog, Base, Streak, UserAchievement
from jerkyrank.engine.achievements import Awarded, TierUpgraded
from jerkyrank.engine.cache import CacheLayer
from jerkyrank.engine.clock import FrozenClock
from jerkyrank.engine.stats import UserStats
from jerkyrank.services.achievement_service import AchievementEngine
from jerkyrank.services.leaderboard_service import LeaderboardView
from jerkyrank.services.score_store import EngagementScoreStore


# ===========================================================================
# 1. Fresh user tier jump
# ===========================================================================
class TestFreshUserTierJump:
    def test_ten_rankings_reach_diamond(self, runtime, db_engine):
        add_definition(db_engine, "rank_many", {"type": "rank_count", "value": 10},
                       points=100, has_tiers=True)
        make_user(db_engine, 1)
        for n in range(10):
            runtime.record_ranking(1, f"product-{n}", rank=n + 1)

        result = runtime.queue.classify(1, "ranking_saved")

        assert result.updates == [
            Awarded("rank_many", "bronze", 40, 100),
            TierUpgraded("rank_many", "bronze", "silver", 60, 100),
            TierUpgraded("rank_many", "silver", "gold", 75, 100),
            TierUpgraded("rank_many", "gold", "platinum", 90, 100),
            TierUpgraded("rank_many", "platinum", "diamond", 100, 100),
        ]
        with Session(db_engine) as session:
            award = session.get(UserAchievement, (1, "rank_many"))
            assert (award.current_tier, award.points_awarded) == ("diamond", 100)
            upgrades = session.scalars(
                select(ActivityLog).where(ActivityLog.category == "tier_upgrade")
            ).all()
            assert len(upgrades) == 4


# ===========================================================================
# 2. Rolling week window
# ===========================================================================
class TestRollingWeekWindow:
    DAY0 = datetime(2025, 3, 1, 0, 0, tzinfo=UTC)

    @pytest.fixture
    def setup(self, db_engine, cfg):
        clock = FrozenClock(self.DAY0)
        store = EngagementScoreStore(db_engine, clock=clock, cfg=cfg)
        for _ in range(5):
            store.increment(1, {"searches": 1})
        snap = store.get(1)
        assert (
            snap.counter("searches"),
            snap.counter("searches", "week"),
            snap.counter("searches", "month"),
        ) == (5, 5, 5)
        return clock, store

    def test_without_reset_week_keeps_old_counts(self, setup):
        clock, store = setup
        clock.set(self.DAY0 + timedelta(days=8, minutes=1))
        store.increment(1, {"searches": 1})
        snap = store.get(1)
        assert (
            snap.counter("searches"),
            snap.counter("searches", "week"),
            snap.counter("searches", "month"),
        ) == (6, 6, 6)

    def test_with_weekly_reset(self, setup):
        clock, store = setup
        clock.set(self.DAY0 + timedelta(days=7))
        store.reset_weekly()
        clock.set(self.DAY0 + timedelta(days=8, minutes=1))
        store.increment(1, {"searches": 1})
        snap = store.get(1)
        assert (
            snap.counter("searches"),
            snap.counter("searches", "week"),
            snap.counter("searches", "month"),
        ) == (6, 1, 6)

    def test_recalculation_uses_rolling_window(self, setup, db_engine):
        clock, store = setup
        day8 = self.DAY0 + timedelta(days=8, minutes=1)
        with Session(db_engine) as session:
            for when in [self.DAY0] * 5 + [day8]:
                session.add(ActivityEvent(
                    user_id=1, event_type="search", payload={}, created_at=when,
                ))
            session.commit()
        clock.set(day8)
        snap = store.recalculate(1)
        assert (
            snap.counter("searches"),
            snap.counter("searches", "week"),
            snap.counter("searches", "month"),
        ) == (6, 1, 6)


# ===========================================================================
# 3. Leaderboard invalidation
# ===========================================================================
class TestLeaderboardInvalidation:
    V = 42
    W = 55

    @pytest.fixture
    def world(self, db_engine, clock, cfg):
        cache = CacheLayer(clock=clock)
        store = EngagementScoreStore(db_engine, cache=cache, clock=clock, cfg=cfg)
        view = LeaderboardView(db_engine, cache)
        achievements = AchievementEngine(db_engine, store, clock=clock, cfg=cfg)
        add_definition(db_engine, "first_rank", {"type": "rank_count", "value": 1}, points=10)

        # user i scores 100 - i, so user i sits at rank i
        for user_id in range(1, 61):
            make_user(db_engine, user_id)
        direct = EngagementScoreStore(db_engine, clock=clock, cfg=cfg)
        for user_id in range(1, 61):
            direct.increment(user_id, {"searches": 100 - user_id})

        top = view.get_leaderboard("all_time", 50)
        assert top[self.V - 1].user_id == self.V
        assert self.W not in {e.user_id for e in top}
        view.get_position(self.V, "all_time")
        view.get_position(self.W, "all_time")
        return cache, view, achievements

    def test_member_change_drops_cached_top(self, world):
        cache, _, achievements = world
        achievements.evaluate(self.V, UserStats(total_rankings=1))
        assert cache.get_position(self.V, "all_time") is None
        assert cache.get_leaderboard("all_time", 50) is None

    def test_non_member_change_keeps_cached_top(self, world):
        cache, _, achievements = world
        achievements.evaluate(self.W, UserStats(total_rankings=1))
        assert cache.get_position(self.W, "all_time") is None
        assert cache.get_leaderboard("all_time", 50) is not None


# ===========================================================================
# 4. Streak boundary
# ===========================================================================
class TestStreakBoundary:
    def test_gap_day_restarts_streak(self, runtime, db_engine, clock):
        make_user(db_engine, 1)
        for day in (1, 2, 3, 5):
            clock.set(datetime(2025, 3, day, 15, 0, tzinfo=UTC))
            runtime.record_ranking(1, f"product-{day}", rank=1)

        with Session(db_engine) as session:
            row = session.scalar(select(Streak).where(Streak.streak_type == "daily_rank"))
            assert (row.current_streak, row.longest_streak, row.last_activity_day) == (
                1, 3, date(2025, 3, 5),
            )


# ===========================================================================
# 5. Prerequisite gating
# ===========================================================================
class TestPrerequisiteGating:
    def test_prerequisite_awarded_first(self, runtime, db_engine):
        add_definition(db_engine, "b", {"type": "rank_count", "value": 1}, prerequisite_code="a")
        add_definition(db_engine, "a", {"type": "rank_count", "value": 1})
        make_user(db_engine, 1)
        runtime.record_ranking(1, "product-1", rank=1)

        result = runtime.queue.classify(1, "ranking_saved")
        assert [u.code for u in result.updates] == ["a", "b"]


# ===========================================================================
# 6. Concurrent increments
# ===========================================================================
class TestConcurrentIncrement:
    def test_both_increments_land(self, tmp_path, cfg):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'scores.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(engine)
        cache = MagicMock()
        store = EngagementScoreStore(engine, cache=cache, clock=FrozenClock(), cfg=cfg)
        store.increment(1, {"searches": 1})
        before = store.get(1).counter("searches")

        barrier = threading.Barrier(2)
        errors: list[BaseException] = []

        def worker():
            try:
                barrier.wait(5)
                store.increment(1, {"searches": 1})
            except BaseException as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert errors == []
        assert store.get(1).counter("searches") == before + 2
        assert cache.invalidate_engagement.call_count >= 1
        engine.dispose()
