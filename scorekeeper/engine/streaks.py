"""
scorekeeper.engine.streaks — Streak Transition Logic
=====================================================

Pure state machine for consecutive-day streaks.  The service layer loads
the stored state, calls :func:`advance`, and writes the result back.

Transitions, where *gap* is the number of local days since the last activity:

* gap == 0 — already counted today, nothing changes
* gap == 1 — streak continues (n + 1)
* gap == 2 and a grace day is left — one grace unit is spent, n + 1
* anything else — the streak restarts at 1
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True, slots=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: date | None = None
    grace_remaining: int = 0


@dataclass(frozen=True, slots=True)
class StreakOutcome:
    """What :meth:`StreakTracker.record_activity` reports back."""

    current_streak: int
    longest_streak: int
    is_new_milestone: bool = False
    bonus_points: int = 0
    grace_used: bool = False
    broken_from: int | None = None
    unchanged: bool = False


def advance(state: StreakState, today: date) -> tuple[StreakState, bool, int | None]:
    """Apply one day of activity.

    Returns ``(new_state, grace_used, broken_from)`` where *broken_from* is
    the length of a streak that just ended, if any.
    """
    last = state.last_activity_date
    if last is None:
        return _bump(state, 1, today), False, None

    gap = (today - last).days
    if gap <= 0:
        return state, False, None
    if gap == 1:
        return _bump(state, state.current_streak + 1, today), False, None
    if gap == 2 and state.grace_remaining > 0:
        bumped = _bump(state, state.current_streak + 1, today)
        return (
            StreakState(
                bumped.current_streak,
                bumped.longest_streak,
                today,
                state.grace_remaining - 1,
            ),
            True,
            None,
        )
    return _bump(state, 1, today), False, state.current_streak or None


def _bump(state: StreakState, value: int, today: date) -> StreakState:
    return StreakState(
        current_streak=value,
        longest_streak=max(state.longest_streak, value),
        last_activity_date=today,
        grace_remaining=state.grace_remaining,
    )


def crossed_bonus(previous: int, current: int, schedule: Mapping[int, int]) -> tuple[int, int] | None:
    """Return ``(threshold, bonus)`` for the highest threshold crossed by the move.

    A threshold is crossed when ``previous < threshold <= current``.
    """
    crossed = [t for t in schedule if previous < t <= current]
    if not crossed:
        return None
    top = max(crossed)
    return top, schedule[top]
