"""
jerkyrank.services.progress_service - ProgressTracker
======================================================

Store-backed wrapper around :func:`jerkyrank.engine.progress.closest_unearned`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from jerkyrank.database.engine import get_session
from jerkyrank.engine.progress import ClosestAchievement, closest_unearned
from jerkyrank.errors import translate_db_errors

if TYPE_CHECKING:
    from jerkyrank.engine.stats import UserStats
    from jerkyrank.services.achievement_service import AchievementEngine
    from jerkyrank.services.metrics_service import MetricsAggregator

logger = logging.getLogger(__name__)


class ProgressTracker:
    def __init__(self, achievements: AchievementEngine, metrics: MetricsAggregator) -> None:
        self.achievements = achievements
        self.metrics = metrics

    def closest_unearned(
        self,
        user_id: int,
        stats: UserStats | None = None,
        category: str | None = None,
    ) -> ClosestAchievement | None:
        """The achievement (or next tier) *user_id* is closest to.

        *stats* is read fresh when not supplied.
        """
        if stats is None:
            stats = self.metrics.snapshot(user_id)
        with translate_db_errors("closest achievement"):
            with get_session(self.achievements.engine) as session:
                rules = self.achievements.load_rules(session)
                awards = self.achievements.load_awards(session, user_id)
        return closest_unearned(rules, awards, stats, category)
