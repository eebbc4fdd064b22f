"""
jerkyrank.services.classification_queue - ClassificationQueue
==============================================================

A pool of worker threads draining ``(user_id, trigger)`` notifications.

* At most one job per user runs at a time.  Notifications for a user
  who is queued or running coalesce into one follow-up job carrying the
  latest trigger.
* A job snapshots the user's stats, recalculates the rollup when the
  trigger is ``ranking_saved`` / ``purchase`` and the last recalculation
  is older than the throttle, evaluates achievements, then runs the cache
  invalidation protocol.
* A failed job is logged, counted and dropped; the user's next activity
  drives a new one.
* :meth:`ClassificationQueue.shutdown` drops queued notifications and
  waits up to the grace period for running jobs.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from jerkyrank.constants import RECALC_TRIGGERS
from jerkyrank.engine.clock import Clock, SystemClock

if TYPE_CHECKING:
    from jerkyrank.config import EngineConfig
    from jerkyrank.engine.achievements import Update
    from jerkyrank.engine.cache import CacheLayer
    from jerkyrank.services.achievement_service import AchievementEngine
    from jerkyrank.services.metrics_service import MetricsAggregator
    from jerkyrank.services.score_store import EngagementScoreStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobResult:
    user_id: int
    trigger: str
    recalculated: bool
    updates: list[Update] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass(slots=True)
class QueueStats:
    queued: int = 0
    completed: int = 0
    failed: int = 0
    coalesced: int = 0
    dropped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "completed": self.completed,
            "failed": self.failed,
            "coalesced": self.coalesced,
            "dropped": self.dropped,
        }


class ClassificationQueue:
    """Per-user serialized classification workers."""

    def __init__(
        self,
        metrics: MetricsAggregator,
        scores: EngagementScoreStore,
        achievements: AchievementEngine,
        *,
        cache: CacheLayer | None = None,
        clock: Clock | None = None,
        cfg: EngineConfig | None = None,
    ) -> None:
        self.metrics = metrics
        self.scores = scores
        self.achievements = achievements
        self.cache = cache
        self.clock = clock or SystemClock()
        self.workers = cfg.classification_workers if cfg else 4
        self.recalc_throttle = cfg.recalc_throttle_seconds if cfg else 60.0
        self.shutdown_grace = cfg.shutdown_grace_seconds if cfg else 10.0

        self._cond = threading.Condition()
        self._pending: OrderedDict[int, str] = OrderedDict()
        self._running: set[int] = set()
        self._followups: dict[int, str] = {}
        self._threads: list[threading.Thread] = []
        self._stopping = False
        self._stats = QueueStats()

        self._recalc_lock = threading.Lock()
        # Oldest first; entries leave once the throttle window has passed
        self._last_recalc: OrderedDict[int, float] = OrderedDict()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._worker, name=f"classify-{index}", daemon=True,
                )
                self._threads.append(thread)
                thread.start()
        logger.info("ClassificationQueue started with %d workers", self.workers)

    def shutdown(self, grace: float | None = None) -> bool:
        """Drop queued notifications and wait for running jobs.

        Returns True when every worker finished within *grace* seconds.
        """
        grace = self.shutdown_grace if grace is None else grace
        with self._cond:
            self._stopping = True
            dropped = len(self._pending) + len(self._followups)
            self._stats.dropped += dropped
            self._pending.clear()
            self._followups.clear()
            self._cond.notify_all()
            threads, self._threads = self._threads, []

        deadline = time.monotonic() + grace
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in threads if t.is_alive()]
        if alive:
            logger.warning(
                "ClassificationQueue grace period expired; abandoning %s", ", ".join(alive),
            )
        logger.info("ClassificationQueue stopped (%d queued notifications dropped)", dropped)
        return not alive

    # -------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------
    def notify(self, user_id: int, trigger: str) -> None:
        """Queue classification for *user_id*; coalesces with pending work."""
        with self._cond:
            if self._stopping:
                self._stats.dropped += 1
                return
            if user_id in self._running:
                if user_id in self._followups:
                    self._stats.coalesced += 1
                self._followups[user_id] = trigger
            elif user_id in self._pending:
                self._stats.coalesced += 1
                self._pending[user_id] = trigger
            else:
                self._pending[user_id] = trigger
                self._stats.queued += 1
            self._cond.notify_all()

    def stats(self) -> dict[str, int]:
        with self._cond:
            data = self._stats.to_dict()
            data["pending"] = len(self._pending) + len(self._followups)
            data["running"] = len(self._running)
            return data

    def wait_idle(self, timeout: float = 10.0) -> bool:
        """Block until nothing is queued or running; False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._pending or self._running or self._followups:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    # -------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------
    def _next_job(self) -> tuple[int, str] | None:
        with self._cond:
            while not self._stopping and not self._pending:
                self._cond.wait()
            if self._stopping:
                return None
            user_id, trigger = self._pending.popitem(last=False)
            self._running.add(user_id)
            return user_id, trigger

    def _finish(self, user_id: int, ok: bool) -> None:
        with self._cond:
            self._running.discard(user_id)
            if ok:
                self._stats.completed += 1
            else:
                self._stats.failed += 1
            followup = self._followups.pop(user_id, None)
            if followup is not None and not self._stopping:
                self._pending[user_id] = followup
                self._stats.queued += 1
            self._cond.notify_all()

    def _worker(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            user_id, trigger = job
            ok = False
            try:
                self.classify(user_id, trigger)
                ok = True
            except Exception:
                logger.exception("Classification for user %d (%s) failed", user_id, trigger)
            finally:
                self._finish(user_id, ok)

    # -------------------------------------------------------------------
    # Job body
    # -------------------------------------------------------------------
    def _should_recalculate(self, user_id: int, trigger: str) -> bool:
        if trigger not in RECALC_TRIGGERS:
            return False
        now = self.clock.monotonic()
        with self._recalc_lock:
            self._prune_recalc(now)
            if user_id in self._last_recalc:
                return False
            self._last_recalc[user_id] = now
            return True

    def _prune_recalc(self, now: float) -> None:
        while self._last_recalc:
            user_id, last = next(iter(self._last_recalc.items()))
            if now - last < self.recalc_throttle:
                break
            del self._last_recalc[user_id]

    def throttled_users(self) -> int:
        """Users whose recalculation is still inside the throttle window."""
        now = self.clock.monotonic()
        with self._recalc_lock:
            self._prune_recalc(now)
            return len(self._last_recalc)

    def classify(self, user_id: int, trigger: str) -> JobResult:
        """Run one classification job synchronously on the calling thread."""
        started = time.perf_counter()
        stats = self.metrics.snapshot(user_id)
        recalculated = self._should_recalculate(user_id, trigger)
        if recalculated:
            self.scores.recalculate(user_id)
        updates = self.achievements.evaluate(user_id, stats)
        if self.cache is not None:
            self.cache.invalidate_engagement(user_id, self.clock.now())

        duration = (time.perf_counter() - started) * 1000
        logger.debug(
            "Classified user %d (%s): %d updates, recalc=%s, %.1fms",
            user_id, trigger, len(updates), recalculated, duration,
        )
        return JobResult(user_id, trigger, recalculated, updates, duration)
