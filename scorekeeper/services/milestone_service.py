"""
scorekeeper.services.milestone_service — Cumulative Counter Milestones
=======================================================================

Records threshold crossings (e.g. a comment reaching 10 likes) and pays
the milestone bonus through the shared award path.  The unique constraint
on ``milestones`` plus the ledger key make each threshold pay at most once.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.constants import COMMENT_LIKE_MILESTONE_EVENT, COMMENT_LIKES_MILESTONE
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import Milestone
from scorekeeper.engine.events import Event
from scorekeeper.engine.idempotency import milestone_key
from scorekeeper.engine.milestones import MilestoneAward, next_award
from scorekeeper.engine.rules import MilestoneSchedule
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.errors import PersistenceConflict
from scorekeeper.services.score_service import ScoreService

logger = logging.getLogger(__name__)

# Synthetic event logged for each milestone type
MILESTONE_EVENTS: dict[str, str] = {
    COMMENT_LIKES_MILESTONE: COMMENT_LIKE_MILESTONE_EVENT,
}


class MilestoneEvaluator:
    def __init__(
        self,
        engine: Engine,
        window: TimeWindow,
        score: ScoreService,
        schedules: dict[str, MilestoneSchedule],
    ) -> None:
        self.engine = engine
        self.window = window
        self.score = score
        self.schedules = schedules

    @staticmethod
    def _highest(session: Session, user_id: int, milestone_type: str, target_entity_id: str) -> int | None:
        return session.scalar(
            select(func.max(Milestone.milestone_value)).where(
                Milestone.user_id == user_id,
                Milestone.milestone_type == milestone_type,
                Milestone.target_entity_id == target_entity_id,
            )
        )

    def highest_awarded(self, user_id: int, milestone_type: str, target_entity_id: str) -> int | None:
        with get_session(self.engine) as session:
            return self._highest(session, user_id, milestone_type, str(target_entity_id))

    def check_and_award(
        self,
        user_id: int,
        milestone_type: str,
        target_entity_id: str,
        current_value: int,
        circle_id: int | None = None,
    ) -> MilestoneAward | None:
        """Award the highest newly crossed threshold, if any.

        Only one threshold is paid per call even when *current_value* jumped
        past several.
        """
        schedule = self.schedules.get(milestone_type)
        if schedule is None:
            logger.warning("No milestone schedule for %s", milestone_type)
            return None
        target_entity_id = str(target_entity_id)

        with get_session(self.engine) as session:
            already = self._highest(session, user_id, milestone_type, target_entity_id)
            found = next_award(schedule, current_value, already)
            if found is None:
                return None
            threshold, points = found

            try:
                with session.begin_nested():
                    session.add(Milestone(
                        user_id=user_id,
                        milestone_type=milestone_type,
                        target_entity_id=target_entity_id,
                        milestone_value=threshold,
                        points_awarded=points,
                        awarded_at=self.window.now(),
                    ))
                    session.flush()
            except IntegrityError:
                logger.debug("Milestone %s/%s/%s already recorded",
                             milestone_type, target_entity_id, threshold)
                return None

            event = Event(
                event_type=MILESTONE_EVENTS.get(milestone_type, f"{milestone_type}_milestone"),
                user_id=user_id,
                entity_type="comment" if milestone_type == COMMENT_LIKES_MILESTONE else milestone_type,
                entity_id=target_entity_id,
                context={"like_count": current_value, "milestone_value": threshold},
                timestamp=self.window.now(),
            )
            try:
                self.score.award_in(
                    session, event, points,
                    milestone_key(target_entity_id, threshold, milestone_type), circle_id,
                )
            except PersistenceConflict:
                return None

        logger.info("Milestone %s=%d on %s for user %s (+%d)",
                    milestone_type, threshold, target_entity_id, user_id, points)
        return MilestoneAward(milestone_type, target_entity_id, threshold, points, user_id)
