"""
jerkyrank.services.streak_service - Streak Persistence
=======================================================

Applies :func:`jerkyrank.engine.streaks.advance` to the single
``streaks`` row for ``(user, type)`` and journals started / milestone /
broken events to ``activity_log``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jerkyrank.constants import StreakType
from jerkyrank.database.models import ActivityLog, Streak
from jerkyrank.engine.clock import ensure_utc, utc_day
from jerkyrank.engine.streaks import StreakState, StreakTransition, advance
from jerkyrank.errors import ValidationError

logger = logging.getLogger(__name__)


def _load_or_create(session: Session, user_id: int, streak_type: str) -> Streak:
    query = (
        select(Streak)
        .where(Streak.user_id == user_id, Streak.streak_type == streak_type)
        .with_for_update()
    )
    row = session.scalar(query)
    if row is not None:
        return row

    row = Streak(user_id=user_id, streak_type=streak_type, current_streak=0, longest_streak=0)
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(row)
            session.flush()
    except IntegrityError:
        # Another writer created the row first; use theirs
        row = session.scalar(query)
        if row is None:
            raise
    return row


def record_streak(
    session: Session,
    user_id: int,
    streak_type: str,
    when: datetime,
) -> StreakTransition:
    """Advance the user's *streak_type* streak for the UTC day of *when*.

    Runs inside the caller's transaction.

    Raises
    ------
    ValidationError
        If *streak_type* is not a known streak type.
    """
    try:
        streak_type = StreakType(streak_type)
    except ValueError:
        raise ValidationError(f"Unknown streak type: {streak_type!r}") from None

    row = _load_or_create(session, user_id, streak_type)
    state = StreakState(row.current_streak, row.longest_streak, row.last_activity_day)
    transition = advance(state, utc_day(when))
    if not transition.changed:
        return transition

    row.current_streak = transition.after.current
    row.longest_streak = transition.after.longest
    row.last_activity_day = transition.after.last_day
    row.updated_at = ensure_utc(when)

    for category, metadata in transition.events:
        session.add(ActivityLog(
            user_id=user_id,
            category=category,
            metadata_={"streak_type": streak_type.value, **metadata},
            timestamp=ensure_utc(when),
        ))
    if transition.events:
        logger.debug(
            "Streak %s for user %d: %s",
            streak_type.value, user_id, [c for c, _ in transition.events],
        )
    return transition
