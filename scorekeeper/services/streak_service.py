"""
scorekeeper.services.streak_service — Streak Persistence
=========================================================

Loads and stores :class:`~scorekeeper.database.models.Streak` rows around
the pure transition in :mod:`scorekeeper.engine.streaks`.  A newly crossed
bonus threshold is paid through the shared award path in the same
transaction, keyed per (streak type, value, day) so it can never be paid
twice.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.constants import STREAK_MILESTONE_EVENT
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import Streak
from scorekeeper.engine.events import Event
from scorekeeper.engine.idempotency import streak_bonus_key
from scorekeeper.engine.streaks import StreakOutcome, StreakState, advance, crossed_bonus
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.errors import PersistenceConflict
from scorekeeper.services.score_service import ScoreService

logger = logging.getLogger(__name__)

DEFAULT_WEEKLY_GRACE = 2


class StreakTracker:
    def __init__(
        self,
        engine: Engine,
        window: TimeWindow,
        score: ScoreService,
        bonus_schedule: dict[int, int],
        weekly_grace: int = DEFAULT_WEEKLY_GRACE,
    ) -> None:
        self.engine = engine
        self.window = window
        self.score = score
        self.bonus_schedule = bonus_schedule
        self.weekly_grace = weekly_grace

    def _load_for_update(self, session: Session, user_id: int, streak_type: str) -> Streak:
        stmt = (
            select(Streak)
            .where(Streak.user_id == user_id, Streak.streak_type == streak_type)
            .with_for_update()
        )
        row = session.scalar(stmt)
        if row is not None:
            return row
        try:
            with session.begin_nested():
                session.add(Streak(
                    user_id=user_id,
                    streak_type=streak_type,
                    current_streak=0,
                    longest_streak=0,
                    grace_remaining=self.weekly_grace,
                ))
                session.flush()
        except IntegrityError:
            logger.debug("Streak row for %s/%s created concurrently", user_id, streak_type)
        return session.scalar(stmt)

    def record_activity(
        self,
        user_id: int,
        streak_type: str,
        circle_id: int | None = None,
    ) -> StreakOutcome:
        """Count today's activity and pay any newly crossed bonus.

        Repeating the call on the same local day changes nothing.
        """
        today = self.window.today()
        with get_session(self.engine) as session:
            row = self._load_for_update(session, user_id, streak_type)
            before = StreakState(
                row.current_streak, row.longest_streak, row.last_activity_date, row.grace_remaining,
            )
            after, grace_used, broken_from = advance(before, today)
            if after == before:
                return StreakOutcome(before.current_streak, before.longest_streak, unchanged=True)

            row.current_streak = after.current_streak
            row.longest_streak = after.longest_streak
            row.last_activity_date = after.last_activity_date
            row.grace_remaining = after.grace_remaining
            if grace_used:
                logger.info("User %s used a grace day on %s streak", user_id, streak_type)

            bonus = 0
            crossed = None
            if broken_from is None:
                crossed = crossed_bonus(before.current_streak, after.current_streak, self.bonus_schedule)
            if crossed is not None:
                threshold, bonus = crossed
                event = Event(
                    event_type=STREAK_MILESTONE_EVENT,
                    user_id=user_id,
                    entity_type="streak",
                    entity_id=str(after.current_streak),
                    context={"streak_type": streak_type, "threshold": threshold},
                    timestamp=self.window.now(),
                )
                try:
                    self.score.award_in(
                        session, event, bonus,
                        streak_bonus_key(user_id, streak_type, threshold, today), circle_id,
                    )
                except PersistenceConflict:
                    bonus = 0

            return StreakOutcome(
                current_streak=after.current_streak,
                longest_streak=after.longest_streak,
                is_new_milestone=bonus > 0,
                bonus_points=bonus,
                grace_used=grace_used,
                broken_from=broken_from,
            )

    def get_streak(self, user_id: int, streak_type: str) -> StreakState:
        with get_session(self.engine) as session:
            row = session.scalar(
                select(Streak).where(Streak.user_id == user_id, Streak.streak_type == streak_type)
            )
            if row is None:
                return StreakState(grace_remaining=self.weekly_grace)
            return StreakState(
                row.current_streak, row.longest_streak, row.last_activity_date, row.grace_remaining,
            )

    def reset_weekly_grace(self) -> int:
        """Restore every streak's grace allotment.  Returns rows touched."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(Streak)
                .values(grace_remaining=self.weekly_grace)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Weekly grace reset for %d streaks", count)
        return count
