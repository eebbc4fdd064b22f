"""
jerkyrank.services.warmer - Startup Cache Warm-Up
==================================================

1. :meth:`Warmer.wait_for_store_ready` pings the store with ``SELECT 1``
   until it answers, the retries run out or the deadline passes.  A
   ready store that took more than a second or more than one attempt is
   a *cold start*.
2. :meth:`Warmer.warm_all` runs every registered warmer: one after the
   other with a short spacing on a cold start (so a waking database is
   not stampeded), otherwise in parallel.  A failing warmer never stops
   the others.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from jerkyrank.errors import translate_db_errors

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from jerkyrank.config import EngineConfig

logger = logging.getLogger(__name__)

COLD_START_SECONDS = 1.0


@dataclass(frozen=True, slots=True)
class StoreReadiness:
    ready: bool
    attempts: int
    total_duration: float
    is_cold_start: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "attempts": self.attempts,
            "total_duration": round(self.total_duration, 3),
            "is_cold_start": self.is_cold_start,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class WarmResult:
    name: str
    success: bool
    duration: float
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class WarmSummary:
    total_duration: float
    success_count: int
    failure_count: int
    results: list[WarmResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_duration": round(self.total_duration, 3),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": [r.to_dict() for r in self.results],
        }


class Warmer:
    """Store readiness check and registry of cache warmers."""

    def __init__(
        self,
        engine: Engine,
        *,
        cfg: EngineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.spacing = cfg.warm_spacing_seconds if cfg else 0.25
        self.max_retries = cfg.ready_max_retries if cfg else 10
        self.retry_delay = cfg.ready_retry_delay_seconds if cfg else 1.0
        self.timeout = cfg.ready_timeout_seconds if cfg else 30.0
        self._sleep = sleep
        self._monotonic = monotonic
        self._warmers: list[tuple[str, Callable[[], Any]]] = []

    def register(self, name: str, fn: Callable[[], Any]) -> None:
        self._warmers.append((name, fn))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._warmers]

    # -------------------------------------------------------------------
    # Readiness
    # -------------------------------------------------------------------
    def _ping(self) -> None:
        with translate_db_errors("store ping"):
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

    def wait_for_store_ready(
        self,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
    ) -> StoreReadiness:
        """Ping until the store answers.

        Parameters
        ----------
        max_retries:
            Attempts after which the store is reported not ready.
        retry_delay:
            Seconds between attempts.
        timeout:
            Overall deadline in seconds.
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_delay = self.retry_delay if retry_delay is None else retry_delay
        timeout = self.timeout if timeout is None else timeout

        started = self._monotonic()
        attempts = 0
        last_error: str | None = None
        while attempts < max_retries:
            attempts += 1
            try:
                self._ping()
            except Exception as exc:
                last_error = str(exc)
                elapsed = self._monotonic() - started
                logger.warning(
                    "Store not ready (attempt %d/%d, %.0fms): %s",
                    attempts, max_retries, elapsed * 1000, exc,
                )
                if elapsed + retry_delay > timeout or attempts >= max_retries:
                    break
                self._sleep(retry_delay)
                continue

            total = self._monotonic() - started
            cold = total > COLD_START_SECONDS or attempts > 1
            logger.info(
                "Store ready after %d attempt(s) in %.0fms%s",
                attempts, total * 1000, " (cold start)" if cold else "",
            )
            return StoreReadiness(True, attempts, total, cold)

        total = self._monotonic() - started
        logger.error("Store not ready after %d attempts (%.0fms)", attempts, total * 1000)
        return StoreReadiness(False, attempts, total, True, last_error)

    # -------------------------------------------------------------------
    # Warm-up
    # -------------------------------------------------------------------
    def _run_one(self, name: str, fn: Callable[[], Any]) -> WarmResult:
        started = self._monotonic()
        try:
            fn()
        except Exception as exc:
            logger.warning("Warmer %r failed: %s", name, exc)
            return WarmResult(name, False, self._monotonic() - started, str(exc))
        return WarmResult(name, True, self._monotonic() - started)

    def warm_all(self, is_cold_start: bool = False) -> WarmSummary:
        """Run every registered warmer; failures are isolated."""
        started = self._monotonic()
        results: list[WarmResult] = []
        if is_cold_start:
            for index, (name, fn) in enumerate(self._warmers):
                if index:
                    self._sleep(self.spacing)
                results.append(self._run_one(name, fn))
        elif self._warmers:
            with ThreadPoolExecutor(
                max_workers=len(self._warmers), thread_name_prefix="warm",
            ) as pool:
                futures = [pool.submit(self._run_one, name, fn) for name, fn in self._warmers]
                results = [f.result() for f in futures]

        summary = WarmSummary(
            total_duration=self._monotonic() - started,
            success_count=sum(1 for r in results if r.success),
            failure_count=sum(1 for r in results if not r.success),
            results=results,
        )
        logger.info(
            "Cache warm-up (%s): %d ok, %d failed in %.0fms",
            "sequential" if is_cold_start else "parallel",
            summary.success_count, summary.failure_count, summary.total_duration * 1000,
        )
        return summary
