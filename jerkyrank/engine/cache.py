"""
jerkyrank.engine.cache - Leaderboard, Position & Profile Caches
================================================================

Three cooperating caches over one backend:

* ``leaderboard:{period}:{limit}`` - top rows plus their member ids.
* ``position:{user_id}:{period}``  - a user's rank / percentile.
* ``profile:{user_id}``            - display attributes.

Invalidation on an engagement change for ``user_id`` at ``timestamp``:

1. ``position(user, all_time)`` always; ``week`` / ``month`` only when
   ``timestamp`` falls inside the 7 / 30 day window.
2. For each period whose position was invalidated, a cached leaderboard
   is dropped if the user is one of its members, or if it holds fewer
   rows than its limit (the user may now qualify for an empty slot).

A read-through load that overlaps an invalidation of its key returns the
freshly loaded value but does not store it.

Backend failures never propagate: reads degrade to a miss, writes and
invalidations log a warning and fall back to deleting the key.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, TypeVar

from jerkyrank.constants import Period
from jerkyrank.engine.clock import Clock, SystemClock, admitted_periods

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str) -> list[str]: ...


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return self.ttl > 0 and now - self.stored_at >= self.ttl


class MemoryBackend:
    """Thread-safe in-process TTL store."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any | None:
        now = self._clock.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        entry = CacheEntry(key=key, value=value, stored_at=self._clock.monotonic(), ttl=ttl)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def keys(self, prefix: str) -> list[str]:
        now = self._clock.monotonic()
        with self._lock:
            return [
                k for k, e in self._entries.items()
                if k.startswith(prefix) and not e.expired(now)
            ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# ---------------------------------------------------------------------------
# Cached values
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CachedLeaderboard:
    """Stored leaderboard rows plus membership for cheap invalidation tests."""

    period: str
    limit: int
    rows: list[Any]
    member_ids: frozenset[int]

    def contains(self, user_id: int) -> bool:
        return user_id in self.member_ids


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "errors": self.errors,
        }


@dataclass(slots=True)
class PendingLoad:
    """A read-through load in flight; marked stale by an overlapping invalidation."""

    key: str
    stale: bool = False


@dataclass(slots=True)
class InvalidationReport:
    positions: list[str] = field(default_factory=list)
    leaderboards: list[tuple[str, int]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# CacheLayer
# ---------------------------------------------------------------------------
class CacheLayer:
    """The three engagement caches and their invalidation protocol.

    Usage::

        cache = CacheLayer(clock=clock)
        rows = cache.get_leaderboard("week", 50)
        if rows is None:
            rows = view.top_n("week", 50)
            cache.set_leaderboard("week", 50, rows)

        cache.invalidate_engagement(user_id, timestamp)
    """

    def __init__(
        self,
        backend: CacheBackend | None = None,
        *,
        clock: Clock | None = None,
        leaderboard_ttl: float = 300.0,
        position_ttl: float = 300.0,
        profile_ttl: float = 600.0,
    ) -> None:
        self._clock = clock or SystemClock()
        self._backend = backend if backend is not None else MemoryBackend(self._clock)
        self._ttl = {
            "leaderboard": leaderboard_ttl,
            "position": position_ttl,
            "profile": profile_ttl,
        }
        self._stats_lock = threading.Lock()
        # Re-entrant: a failed write inside a guarded set falls back to _drop
        self._load_lock = threading.RLock()
        self._pending: dict[str, list[PendingLoad]] = {}
        self._stats: dict[str, CacheStats] = {
            "leaderboard": CacheStats(),
            "position": CacheStats(),
            "profile": CacheStats(),
        }

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------
    @staticmethod
    def leaderboard_key(period: str, limit: int) -> str:
        return f"leaderboard:{period}:{limit}"

    @staticmethod
    def position_key(user_id: int, period: str) -> str:
        return f"position:{user_id}:{period}"

    @staticmethod
    def profile_key(user_id: int) -> str:
        return f"profile:{user_id}"

    # -------------------------------------------------------------------
    # Failure-tolerant backend access
    # -------------------------------------------------------------------
    def _bump(self, cache: str, counter: str) -> None:
        with self._stats_lock:
            stats = self._stats[cache]
            setattr(stats, counter, getattr(stats, counter) + 1)

    def _read(self, cache: str, key: str) -> Any | None:
        try:
            value = self._backend.get(key)
        except Exception as exc:
            self._bump(cache, "errors")
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        self._bump(cache, "hits" if value is not None else "misses")
        return value

    def _write(self, cache: str, key: str, value: Any) -> None:
        try:
            self._backend.set(key, value, self._ttl[cache])
        except Exception as exc:
            self._bump(cache, "errors")
            logger.warning("Cache write failed for %s: %s", key, exc)
            self._drop(cache, key)
            return
        self._bump(cache, "sets")

    def _drop(self, cache: str, key: str) -> bool:
        self._mark_stale(lambda k: k == key)
        try:
            self._backend.delete(key)
        except Exception as exc:
            self._bump(cache, "errors")
            logger.warning("Cache invalidation failed for %s: %s", key, exc)
            return False
        self._bump(cache, "invalidations")
        return True

    def _mark_stale(self, match: Callable[[str], bool]) -> None:
        with self._load_lock:
            for key, loads in self._pending.items():
                if match(key):
                    for load in loads:
                        load.stale = True

    def _keys(self, prefix: str) -> list[str]:
        try:
            return self._backend.keys(prefix)
        except Exception as exc:
            logger.warning("Cache key scan failed for %s*: %s", prefix, exc)
            return []

    # -------------------------------------------------------------------
    # Leaderboard rows
    # -------------------------------------------------------------------
    def get_leaderboard(self, period: str, limit: int) -> list[Any] | None:
        cached = self._read("leaderboard", self.leaderboard_key(period, limit))
        return list(cached.rows) if cached is not None else None

    def set_leaderboard(self, period: str, limit: int, rows: Iterable[Any]) -> None:
        rows = list(rows)
        cached = CachedLeaderboard(
            period=period,
            limit=limit,
            rows=rows,
            member_ids=frozenset(row.user_id for row in rows),
        )
        self._write("leaderboard", self.leaderboard_key(period, limit), cached)

    def cached_leaderboards(self, period: str) -> list[CachedLeaderboard]:
        """Every live cached row for *period* with its membership metadata."""
        found: list[CachedLeaderboard] = []
        for key in self._keys(f"leaderboard:{period}:"):
            try:
                cached = self._backend.get(key)
            except Exception as exc:
                logger.warning("Cache read failed for %s: %s", key, exc)
                continue
            if cached is not None:
                found.append(cached)
        return found

    def invalidate_leaderboard(self, period: str, limit: int) -> bool:
        return self._drop("leaderboard", self.leaderboard_key(period, limit))

    # -------------------------------------------------------------------
    # Positions
    # -------------------------------------------------------------------
    def get_position(self, user_id: int, period: str) -> Any | None:
        return self._read("position", self.position_key(user_id, period))

    def set_position(self, user_id: int, period: str, position: Any) -> None:
        self._write("position", self.position_key(user_id, period), position)

    def invalidate_position(self, user_id: int, period: str) -> bool:
        return self._drop("position", self.position_key(user_id, period))

    # -------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------
    def get_profile(self, user_id: int) -> Any | None:
        return self._read("profile", self.profile_key(user_id))

    def set_profile(self, user_id: int, profile: Any) -> None:
        self._write("profile", self.profile_key(user_id), profile)

    def invalidate_profile(self, user_id: int) -> bool:
        return self._drop("profile", self.profile_key(user_id))

    # -------------------------------------------------------------------
    # Read-through helper
    # -------------------------------------------------------------------
    def get_or_load(
        self,
        key: str,
        getter: Callable[[], T | None],
        setter: Callable[[T], None],
        loader: Callable[[], T],
    ) -> T:
        """Return the cached value for *key*, loading and storing it on a miss.

        The loaded value is not stored when *key* was invalidated while
        *loader* ran; the next read loads again.
        """
        cached = getter()
        if cached is not None:
            return cached
        load = PendingLoad(key)
        with self._load_lock:
            self._pending.setdefault(key, []).append(load)
        try:
            value = loader()
        finally:
            with self._load_lock:
                loads = self._pending[key]
                loads.remove(load)
                if not loads:
                    del self._pending[key]
        with self._load_lock:
            if value is not None and not load.stale:
                setter(value)
        if load.stale:
            logger.debug("Skipped caching %s: invalidated during load", key)
        return value

    def pending_loads(self) -> int:
        with self._load_lock:
            return sum(len(loads) for loads in self._pending.values())

    # -------------------------------------------------------------------
    # Invalidation protocol
    # -------------------------------------------------------------------
    def affected_periods(self, timestamp: datetime) -> list[str]:
        """Periods whose bucket a change at *timestamp* lands in."""
        return admitted_periods(timestamp, self._clock.now())

    def invalidate_engagement(self, user_id: int, timestamp: datetime) -> InvalidationReport:
        """Apply the invalidation protocol for one engagement change."""
        report = InvalidationReport()
        periods = self.affected_periods(timestamp)
        prefixes = tuple(f"leaderboard:{p}:" for p in periods)
        positions = {self.position_key(user_id, p) for p in periods}
        self._mark_stale(lambda k: k.startswith(prefixes) or k in positions)
        for period in periods:
            self.invalidate_position(user_id, period)
            report.positions.append(period)
            for cached in self.cached_leaderboards(period):
                if cached.contains(user_id) or len(cached.rows) < cached.limit:
                    self.invalidate_leaderboard(period, cached.limit)
                    report.leaderboards.append((period, cached.limit))
        if report.leaderboards:
            logger.debug(
                "Invalidated leaderboard rows %s for user %d", report.leaderboards, user_id,
            )
        return report

    def invalidate_period(self, period: str) -> int:
        """Drop every leaderboard row and position of *period* (bucket resets)."""
        self._mark_stale(
            lambda k: k.startswith(f"leaderboard:{period}:")
            or (k.startswith("position:") and k.endswith(f":{period}"))
        )
        dropped = 0
        for key in self._keys(f"leaderboard:{period}:"):
            dropped += self._drop("leaderboard", key)
        for key in self._keys("position:"):
            if key.endswith(f":{period}"):
                dropped += self._drop("position", key)
        return dropped

    def close(self) -> None:
        """Release the backend's connections, if it holds any."""
        close = getattr(self._backend, "close", None)
        if close is not None:
            close()

    def invalidate_all(self) -> None:
        for period in Period:
            self.invalidate_period(period)
        for key in self._keys("profile:"):
            self._drop("profile", key)

    def stats(self) -> dict[str, dict[str, int]]:
        with self._stats_lock:
            return {name: s.to_dict() for name, s in self._stats.items()}
