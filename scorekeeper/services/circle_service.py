"""
scorekeeper.services.circle_service — Shared Circle Tasks
==========================================================

Circle tasks are weekly goals shared by every member of a circle.  Each
qualifying event adds a contribution row and bumps the shared counter;
the member whose contribution crosses the target is recorded as
``completed_by_user_id`` and every non-pro member receives the reward.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.collaborators import IdentityProvider
from scorekeeper.constants import CIRCLE_TASK_COMPLETED_EVENT
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import (
    CircleContribution,
    CircleTask,
    TaskDefinitionRecord,
    TaskStatus,
)
from scorekeeper.engine.events import Event
from scorekeeper.engine.idempotency import circle_task_reward_key
from scorekeeper.engine.timewindow import Period, TimeWindow
from scorekeeper.errors import PersistenceConflict
from scorekeeper.services import event_log
from scorekeeper.services.score_service import ScoreService
from scorekeeper.services.task_service import active_definitions, increment_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CircleProgress:
    circle_id: int
    task_slug: str
    period_key: str
    current_value: int
    target_value: int
    completed: bool = False
    rewarded_members: tuple[int, ...] = ()
    reward_points: int = 0  # paid to each rewarded member


class CircleContributionTracker:
    def __init__(
        self,
        engine: Engine,
        window: TimeWindow,
        score: ScoreService,
        identity: IdentityProvider,
    ) -> None:
        self.engine = engine
        self.window = window
        self.score = score
        self.identity = identity

    def _instance(
        self, session: Session, circle_id: int, definition: TaskDefinitionRecord, period: Period,
    ) -> CircleTask:
        stmt = select(CircleTask).where(
            CircleTask.circle_id == circle_id,
            CircleTask.task_definition_id == definition.id,
            CircleTask.period_key == period.key,
        )
        row = session.scalar(stmt)
        if row is not None:
            return row
        try:
            with session.begin_nested():
                session.add(CircleTask(
                    circle_id=circle_id,
                    task_definition_id=definition.id,
                    period_key=period.key,
                    period_start=period.start,
                    period_end=period.end,
                    current_value=0,
                    target_value=definition.target_value,
                    status=TaskStatus.IN_PROGRESS.value,
                ))
                session.flush()
        except IntegrityError:
            logger.debug("Circle task %s/%s created concurrently", circle_id, definition.slug)
        return session.scalar(stmt)

    def add_contribution(
        self,
        circle_id: int,
        user_id: int,
        task_definition: TaskDefinitionRecord,
        amount: int,
    ) -> CircleProgress | None:
        """Add *amount* to this week's instance of *task_definition*.

        Returns ``None`` when the instance is already completed.
        """
        if amount <= 0:
            return None
        period = self.window.period("weekly")
        now = self.window.now()
        with get_session(self.engine) as session:
            task = self._instance(session, circle_id, task_definition, period)
            if task.status != TaskStatus.IN_PROGRESS.value:
                return None

            session.add(CircleContribution(
                circle_task_id=task.id, circle_id=circle_id, user_id=user_id,
                amount=amount, created_at=now,
            ))
            session.execute(
                update(CircleTask)
                .where(CircleTask.id == task.id)
                .values(current_value=CircleTask.current_value + amount)
                .execution_options(synchronize_session=False)
            )
            current = session.scalar(select(CircleTask.current_value).where(CircleTask.id == task.id))

            rewarded: tuple[int, ...] = ()
            completed = False
            if current >= task.target_value:
                flipped = session.execute(
                    update(CircleTask)
                    .where(CircleTask.id == task.id, CircleTask.status == TaskStatus.IN_PROGRESS.value)
                    .values(
                        status=TaskStatus.COMPLETED.value,
                        completed_by_user_id=user_id,
                        completed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                completed = True
                if flipped.rowcount == 1:
                    rewarded = self._reward_members(session, task, task_definition, user_id)

            return CircleProgress(
                circle_id=circle_id,
                task_slug=task_definition.slug,
                period_key=period.key,
                current_value=current,
                target_value=task.target_value,
                completed=completed,
                rewarded_members=rewarded,
                reward_points=task_definition.reward_score if rewarded else 0,
            )

    def _reward_members(
        self,
        session: Session,
        task: CircleTask,
        definition: TaskDefinitionRecord,
        completed_by: int,
    ) -> tuple[int, ...]:
        members = set(self.identity.circle_members(task.circle_id)) | {completed_by}
        rewarded: list[int] = []
        for member in sorted(members):
            context = {"task_slug": definition.slug, "circle_task_id": task.id,
                       "circle_id": task.circle_id, "completed_by": completed_by}
            event = Event(CIRCLE_TASK_COMPLETED_EVENT, member, "circle_task", str(task.id),
                          context, self.window.now())
            if self.identity.is_pro(member) or definition.reward_score <= 0:
                event_log.append(session, event, 0, self.window.today())
                continue
            try:
                self.score.award_in(
                    session, event, definition.reward_score,
                    circle_task_reward_key(member, task.id), task.circle_id,
                )
                rewarded.append(member)
            except PersistenceConflict:
                logger.debug("Circle reward for %s on task %s already paid", member, task.id)
        logger.info("Circle %s completed %s (%s); %d members rewarded",
                    task.circle_id, definition.slug, task.period_key, len(rewarded))
        return tuple(rewarded)

    def process_event(
        self,
        circle_id: int,
        user_id: int,
        event_type: str,
        context: Mapping[str, Any] | None = None,
    ) -> list[CircleProgress]:
        """Contribute one event to every active circle task listening for it."""
        context = context or {}
        with get_session(self.engine) as session:
            definitions = active_definitions(session, event_type, circle=True)
            session.expunge_all()
        out: list[CircleProgress] = []
        for definition in definitions:
            progress = self.add_contribution(
                circle_id, user_id, definition, increment_for(definition, context),
            )
            if progress is not None:
                out.append(progress)
        return out

    def get_circle_tasks(self, circle_id: int) -> list[CircleProgress]:
        period = self.window.period("weekly")
        with get_session(self.engine) as session:
            rows = session.execute(
                select(CircleTask, TaskDefinitionRecord.slug)
                .join(TaskDefinitionRecord, TaskDefinitionRecord.id == CircleTask.task_definition_id)
                .where(CircleTask.circle_id == circle_id, CircleTask.period_key == period.key)
                .order_by(CircleTask.id)
            ).all()
            return [
                CircleProgress(
                    circle_id=circle_id,
                    task_slug=slug,
                    period_key=task.period_key,
                    current_value=task.current_value,
                    target_value=task.target_value,
                    completed=task.status == TaskStatus.COMPLETED.value,
                )
                for task, slug in rows
            ]

    def expire_old_tasks(self) -> int:
        """Expire unfinished circle tasks from earlier weeks."""
        current = self.window.period("weekly")
        with get_session(self.engine) as session:
            result = session.execute(
                update(CircleTask)
                .where(
                    CircleTask.status == TaskStatus.IN_PROGRESS.value,
                    CircleTask.period_end < current.start,
                )
                .values(status=TaskStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Expired %d circle tasks", count)
        return count
