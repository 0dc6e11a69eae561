"""
scorekeeper.engine.badges — Badge Condition Evaluation
=======================================================

Handler-registry implementation for badge conditions.  Each condition tag
maps to a pure handler that receives the typed condition and a
:class:`BadgeHistory` read model and returns the user's raw progress.

This module is pure calculation — the history queries are supplied by
:mod:`scorekeeper.services.badge_service`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping
from datetime import date, timedelta
from typing import Any, Protocol

from scorekeeper.engine.rules import (
    BadgeDefinition,
    CircleContributionCondition,
    CircleHeroCondition,
    ComebackCondition,
    ConsecutiveWeeksCondition,
    CountCondition,
    CountInPeriodCondition,
    CountUniqueDaysCondition,
    CountUniqueUsersCondition,
    StreakCondition,
)

logger = logging.getLogger(__name__)


class BadgeHistory(Protocol):
    """Per-user history queries the handlers need."""

    def count_events(
        self, event_types: Collection[str], context_filter: Mapping[str, str] | None = None,
    ) -> int: ...

    def count_unique_days(self, event_type: str) -> int: ...

    def count_in_period(self, event_type: str, period_type: str) -> int: ...

    def event_weeks(self, event_type: str) -> list[date]:
        """Distinct Monday dates of weeks with the event, newest first."""
        ...

    def active_days(self, event_type: str, limit: int = 30) -> list[date]:
        """Distinct local dates with the event, newest first."""
        ...

    def current_streak(self, streak_type: str) -> int: ...

    def circle_task_shares(self) -> list[float]:
        """The user's percentage share of each circle task they contributed to."""
        ...

    def hero_shares(self, window_hours: int) -> list[float]:
        """Shares of circle tasks the user completed, counting only
        contributions made within *window_hours* before completion."""
        ...

    def count_unique_counterparts(self, event_types: Collection[str]) -> int: ...


# ---------------------------------------------------------------------------
# Handlers: pure functions (condition, history) → raw progress
# ---------------------------------------------------------------------------
def _count(cond: CountCondition, history: BadgeHistory) -> int:
    return history.count_events([cond.event], cond.context_filter or None)


def _count_unique_days(cond: CountUniqueDaysCondition, history: BadgeHistory) -> int:
    return history.count_unique_days(cond.event)


def _streak(cond: StreakCondition, history: BadgeHistory) -> int:
    return history.current_streak(cond.streak_type)


def _consecutive_weeks(cond: ConsecutiveWeeksCondition, history: BadgeHistory) -> int:
    """Length of the newest run of back-to-back weeks containing the event."""
    weeks = history.event_weeks(cond.event)
    run = 0
    previous: date | None = None
    for week in weeks:
        if previous is not None and previous - week != timedelta(days=7):
            break
        run += 1
        previous = week
    return run


def _count_in_period(cond: CountInPeriodCondition, history: BadgeHistory) -> int:
    return history.count_in_period(cond.event, cond.period)


def _comeback(cond: ComebackCondition, history: BadgeHistory) -> int:
    """Consecutive active days since the most recent long absence.

    Returns 0 when no absence of ``min_gap_days`` precedes the newest run.
    """
    days = history.active_days(cond.event, limit=30)
    if not days:
        return 0
    run = 1
    for newer, older in zip(days, days[1:]):
        gap = (newer - older).days
        if gap == 1:
            run += 1
            continue
        if gap >= cond.min_gap_days:
            return run
        return 0
    return 0


def _circle_contribution(cond: CircleContributionCondition, history: BadgeHistory) -> int:
    return sum(1 for share in history.circle_task_shares()
               if share >= cond.min_contribution_percent)


def _circle_hero(cond: CircleHeroCondition, history: BadgeHistory) -> int:
    shares = history.hero_shares(cond.completion_window_hours)
    return sum(1 for share in shares if share >= cond.min_contribution_percent)


def _count_unique_users(cond: CountUniqueUsersCondition, history: BadgeHistory) -> int:
    return history.count_unique_counterparts(cond.events)


CONDITION_HANDLERS: dict[str, Callable[[Any, BadgeHistory], int]] = {
    "COUNT": _count,
    "COUNT_UNIQUE_DAYS": _count_unique_days,
    "STREAK": _streak,
    "CONSECUTIVE_WEEKS": _consecutive_weeks,
    "COUNT_IN_PERIOD": _count_in_period,
    "COMEBACK": _comeback,
    "CIRCLE_CONTRIBUTION": _circle_contribution,
    "CIRCLE_HERO": _circle_hero,
    "COUNT_UNIQUE_USERS": _count_unique_users,
}


def evaluate(badge: BadgeDefinition, history: BadgeHistory) -> int:
    """Return the badge's progress, capped at its goal."""
    handler = CONDITION_HANDLERS.get(badge.condition.type)
    if handler is None:
        logger.warning("No handler for badge condition %s (%s)", badge.condition.type, badge.slug)
        return 0
    return min(handler(badge.condition, history), badge.goal)


def relevant_badges(
    badges: Collection[BadgeDefinition],
    event_types: Collection[str],
    earned: Collection[str],
) -> list[BadgeDefinition]:
    """Unearned badges whose condition can move on any of *event_types*."""
    return [
        b for b in badges
        if b.slug not in earned and any(b.matches(e) for e in event_types)
    ]
