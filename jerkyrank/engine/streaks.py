"""
jerkyrank.engine.streaks - Calendar-Day Streak Transitions
===========================================================

Streaks count consecutive UTC calendar days with activity:

* same day again      → unchanged
* the very next day   → current + 1
* any gap             → restart at 1 (the missed day broke it)

Reads go through :func:`effective_current` so a streak that was not
extended yesterday or today reports ``0`` even before the next activity
rewrites the row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from jerkyrank.constants import (
    STREAK_BROKEN_MIN_LENGTH,
    STREAK_MILESTONE_INTERVAL,
    ActivityLogCategory,
)


@dataclass(frozen=True, slots=True)
class StreakState:
    current: int = 0
    longest: int = 0
    last_day: date | None = None


@dataclass(frozen=True, slots=True)
class StreakTransition:
    before: StreakState
    after: StreakState
    changed: bool
    # (category, metadata) pairs to journal
    events: list[tuple[str, dict]] = field(default_factory=list)


def advance(state: StreakState, today: date) -> StreakTransition:
    """Apply one activity on *today* to *state*."""
    last = state.last_day
    if last is not None and today <= last:
        # Same day (or a late, out-of-order event) never advances
        return StreakTransition(before=state, after=state, changed=False)

    events: list[tuple[str, dict]] = []
    gap = (today - last).days if last is not None else None

    if gap == 1:
        current = state.current + 1
    else:
        current = 1
        if last is not None and state.current >= STREAK_BROKEN_MIN_LENGTH:
            events.append((
                ActivityLogCategory.STREAK_BROKEN,
                {"previous_streak": state.current, "missed_days": gap - 1},
            ))
        events.append((ActivityLogCategory.STREAK_STARTED, {"streak": 1}))

    if current > 1 and current % STREAK_MILESTONE_INTERVAL == 0:
        events.append((ActivityLogCategory.STREAK_MILESTONE, {"streak": current}))

    after = StreakState(
        current=current,
        longest=max(state.longest, current),
        last_day=today,
    )
    return StreakTransition(before=state, after=after, changed=True, events=events)


def effective_current(state: StreakState, today: date) -> int:
    """Current streak as seen on *today* (0 once a day has been missed)."""
    if state.last_day is None:
        return 0
    if (today - state.last_day).days > 1:
        return 0
    return state.current
