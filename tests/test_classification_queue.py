"""
tests/test_classification_queue.py - ClassificationQueue Workers
=================================================================

Collaborators are MagicMocks so worker threads never touch SQLite.
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, call

import pytest

from jerkyrank.engine.stats import UserStats
from jerkyrank.services.classification_queue import ClassificationQueue


@pytest.fixture
def collaborators():
    metrics = MagicMock()
    metrics.snapshot.return_value = UserStats()
    scores = MagicMock()
    achievements = MagicMock()
    achievements.evaluate.return_value = []
    cache = MagicMock()
    return metrics, scores, achievements, cache


@pytest.fixture
def queue(collaborators, clock, cfg):
    metrics, scores, achievements, cache = collaborators
    q = ClassificationQueue(metrics, scores, achievements, cache=cache, clock=clock, cfg=cfg)
    yield q
    q.shutdown(grace=1.0)


def _gate(mock: MagicMock, user_id: int) -> tuple[threading.Event, threading.Event]:
    """Block *mock* calls for *user_id* until released."""
    entered = threading.Event()
    release = threading.Event()

    def side_effect(uid, *args):
        if uid == user_id:
            entered.set()
            release.wait(5)
        return UserStats()

    mock.side_effect = side_effect
    return entered, release


# ===========================================================================
# Job body
# ===========================================================================
class TestClassify:
    def test_ranking_trigger_recalculates(self, queue, collaborators):
        metrics, scores, achievements, cache = collaborators
        result = queue.classify(1, "ranking_saved")
        assert result.recalculated
        scores.recalculate.assert_called_once_with(1)
        achievements.evaluate.assert_called_once_with(1, metrics.snapshot.return_value)
        cache.invalidate_engagement.assert_called_once()

    def test_search_trigger_never_recalculates(self, queue, collaborators):
        _, scores, _, _ = collaborators
        assert not queue.classify(1, "search").recalculated
        scores.recalculate.assert_not_called()

    def test_recalculation_throttled_per_user(self, queue, collaborators, clock):
        _, scores, _, _ = collaborators
        assert queue.classify(1, "purchase").recalculated
        assert not queue.classify(1, "ranking_saved").recalculated
        assert queue.classify(2, "ranking_saved").recalculated

        clock.advance(seconds=60)
        assert queue.classify(1, "ranking_saved").recalculated
        assert scores.recalculate.call_args_list == [call(1), call(2), call(1)]

    def test_throttle_entries_expire(self, queue, clock):
        for user_id in range(1, 101):
            queue.classify(user_id, "ranking_saved")
        assert queue.throttled_users() == 100

        clock.advance(seconds=30)
        queue.classify(101, "ranking_saved")
        assert queue.throttled_users() == 101

        clock.advance(seconds=30)
        assert queue.throttled_users() == 1
        queue.classify(102, "purchase")
        assert set(queue._last_recalc) == {101, 102}

    def test_updates_returned(self, queue, collaborators):
        _, _, achievements, _ = collaborators
        achievements.evaluate.return_value = ["update"]
        assert queue.classify(1, "search").updates == ["update"]


# ===========================================================================
# Queueing
# ===========================================================================
class TestNotify:
    def test_pending_notifications_coalesce(self, queue):
        queue.notify(1, "search")
        queue.notify(1, "ranking_saved")
        queue.notify(2, "product_view")
        stats = queue.stats()
        assert (stats["queued"], stats["coalesced"], stats["pending"]) == (2, 1, 2)

    def test_latest_trigger_wins(self, queue, collaborators):
        _, scores, _, _ = collaborators
        queue.notify(1, "search")
        queue.notify(1, "ranking_saved")
        queue.start()
        assert queue.wait_idle(5)
        scores.recalculate.assert_called_once_with(1)
        assert queue.stats()["completed"] == 1

    def test_workers_drain_queue(self, queue, collaborators):
        metrics, _, _, _ = collaborators
        queue.start()
        for user_id in range(1, 6):
            queue.notify(user_id, "search")
        assert queue.wait_idle(5)
        assert sorted(c.args[0] for c in metrics.snapshot.call_args_list) == [1, 2, 3, 4, 5]

    def test_running_user_gets_single_followup(self, queue, collaborators):
        metrics, _, _, _ = collaborators
        entered, release = _gate(metrics.snapshot, 1)
        queue.start()
        queue.notify(1, "search")
        assert entered.wait(5)

        queue.notify(1, "product_view")
        queue.notify(1, "ranking_saved")
        stats = queue.stats()
        assert stats["running"] == 1
        assert stats["coalesced"] == 1

        release.set()
        assert queue.wait_idle(5)
        # the original job plus one follow-up, never two concurrent jobs
        assert metrics.snapshot.call_count == 2
        assert queue.stats()["completed"] == 2

    def test_failed_job_is_counted_and_dropped(self, queue, collaborators):
        _, _, achievements, _ = collaborators
        achievements.evaluate.side_effect = RuntimeError("boom")
        queue.start()
        queue.notify(1, "search")
        assert queue.wait_idle(5)
        assert queue.stats()["failed"] == 1

        achievements.evaluate.side_effect = None
        queue.notify(1, "search")
        assert queue.wait_idle(5)
        assert queue.stats()["completed"] == 1


# ===========================================================================
# Shutdown
# ===========================================================================
class TestShutdown:
    def test_drops_queued_notifications(self, queue):
        queue.notify(1, "search")
        queue.notify(2, "search")
        assert queue.shutdown(grace=0.1)
        queue.notify(3, "search")
        stats = queue.stats()
        assert stats["dropped"] == 3
        assert stats["pending"] == 0

    def test_grace_expiry_reported(self, queue, collaborators):
        metrics, _, _, _ = collaborators
        entered, release = _gate(metrics.snapshot, 1)
        queue.start()
        queue.notify(1, "search")
        assert entered.wait(5)
        try:
            assert queue.shutdown(grace=0.05) is False
        finally:
            release.set()
