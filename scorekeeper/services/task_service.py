"""
scorekeeper.services.task_service — Task Progress Tracking
===========================================================

Advances per-user progress on daily, weekly, monthly and mentor tasks.

How it works:
    1. Load every active, non-circle definition listening for the event.
    2. Lazily create the progress row for the current period.
    3. Increment with an atomic ``UPDATE``.  Tasks flagged
       ``count_unique_days`` move at most once per local day.
    4. When the target is reached, flip ``in_progress → completed`` with a
       compare-and-set; only the winner pays ``reward_score`` (ledger key
       per task instance) and applies the linked badge contribution.
    5. Completions are journalled as ``task_completed`` and
       ``{task_type}_task_completed`` and fed back through step 1 so tasks
       that count completed tasks advance too.

Increment unit: +1 per qualifying event, or the context value named by the
definition's ``magnitude_key`` (falling back to a generic ``magnitude``
context value) for quantity-based tasks.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.constants import MAX_TASK_CASCADE_DEPTH, TASK_COMPLETED_EVENT
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import TaskDefinitionRecord, TaskProgress, TaskStatus
from scorekeeper.database.seed import seed_task_definitions
from scorekeeper.engine.events import Event, TaskProgressView
from scorekeeper.engine.idempotency import task_reward_key
from scorekeeper.engine.rules import RuleStore
from scorekeeper.engine.timewindow import Period, TimeWindow
from scorekeeper.errors import PersistenceConflict
from scorekeeper.services import event_log
from scorekeeper.services.badge_service import BadgeRuleEngine
from scorekeeper.services.score_service import ScoreService

logger = logging.getLogger(__name__)

TASK_PERIODS: dict[str, str] = {
    "daily": "daily",
    "weekly": "weekly",
    "monthly": "monthly",
    "mentor": "monthly",
    "circle": "weekly",
}

EDITABLE_FIELDS = frozenset({
    "title", "description", "target_value", "scoring_event_types", "reward_score",
    "badge_progress_contribution", "reward_badge_slug", "magnitude_key",
    "count_unique_days", "is_active",
})


def increment_for(definition: TaskDefinitionRecord, context: Mapping[str, Any]) -> int:
    """Units one qualifying event adds to *definition*'s progress."""
    for key in (definition.magnitude_key, "magnitude"):
        if key and context.get(key) is not None:
            try:
                return max(0, int(context[key]))
            except (TypeError, ValueError):
                logger.warning("Non-numeric %s=%r for task %s", key, context[key], definition.slug)
                return 0
    return 1


def completion_events(task_type: str) -> list[str]:
    return [TASK_COMPLETED_EVENT, f"{task_type}_task_completed"]


def active_definitions(
    session: Session, event_type: str, *, circle: bool,
) -> list[TaskDefinitionRecord]:
    """Active definitions listening for *event_type* (circle or personal)."""
    stmt = select(TaskDefinitionRecord).where(TaskDefinitionRecord.is_active.is_(True))
    stmt = stmt.where(
        TaskDefinitionRecord.task_type == "circle" if circle
        else TaskDefinitionRecord.task_type != "circle"
    )
    return [
        d for d in session.scalars(stmt.order_by(TaskDefinitionRecord.id)).all()
        if event_type in (d.scoring_event_types or [])
    ]


class TaskProgressTracker:
    def __init__(
        self,
        engine: Engine,
        window: TimeWindow,
        score: ScoreService,
        badges: BadgeRuleEngine,
    ) -> None:
        self.engine = engine
        self.window = window
        self.score = score
        self.badges = badges

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------
    def _progress_row(
        self, session: Session, user_id: int, definition: TaskDefinitionRecord, period: Period,
    ) -> TaskProgress:
        stmt = select(TaskProgress).where(
            TaskProgress.user_id == user_id,
            TaskProgress.task_definition_id == definition.id,
            TaskProgress.period_key == period.key,
        )
        row = session.scalar(stmt)
        if row is not None:
            return row
        try:
            with session.begin_nested():
                session.add(TaskProgress(
                    user_id=user_id,
                    task_definition_id=definition.id,
                    period_key=period.key,
                    current_value=0,
                    target_value=definition.target_value,
                    status=TaskStatus.IN_PROGRESS.value,
                    period_start=period.start,
                    period_end=period.end,
                ))
                session.flush()
        except IntegrityError:
            logger.debug("Progress row for %s/%s created concurrently", user_id, definition.slug)
        return session.scalar(stmt)

    def _advance(
        self,
        session: Session,
        user_id: int,
        definition: TaskDefinitionRecord,
        context: Mapping[str, Any],
        circle_id: int | None,
    ) -> TaskProgressView | None:
        today = self.window.today()
        period = self.window.period(TASK_PERIODS[definition.task_type])
        row = self._progress_row(session, user_id, definition, period)
        if row.status != TaskStatus.IN_PROGRESS.value:
            return None

        amount = increment_for(definition, context)
        if amount <= 0:
            return None

        stmt = update(TaskProgress).where(
            TaskProgress.id == row.id,
            TaskProgress.status == TaskStatus.IN_PROGRESS.value,
        )
        if definition.count_unique_days:
            stmt = stmt.where(or_(
                TaskProgress.last_increment_day.is_(None),
                TaskProgress.last_increment_day != today,
            ))
        result = session.execute(
            stmt.values(
                current_value=TaskProgress.current_value + amount,
                last_increment_day=today,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        current = session.scalar(select(TaskProgress.current_value).where(TaskProgress.id == row.id))
        status = TaskStatus.IN_PROGRESS.value
        just_completed = False
        reward = 0
        if current >= row.target_value:
            flipped = session.execute(
                update(TaskProgress)
                .where(TaskProgress.id == row.id, TaskProgress.status == TaskStatus.IN_PROGRESS.value)
                .values(status=TaskStatus.COMPLETED.value, completed_at=self.window.now())
                .execution_options(synchronize_session=False)
            )
            status = TaskStatus.COMPLETED.value
            if flipped.rowcount == 1:
                just_completed = True
                reward = self._complete(session, user_id, definition, period, circle_id)

        return TaskProgressView(
            task_slug=definition.slug,
            title=definition.title,
            task_type=definition.task_type,
            period_key=period.key,
            current_value=current,
            target_value=row.target_value,
            status=status,
            just_completed=just_completed,
            reward_points=reward,
        )

    def _complete(
        self,
        session: Session,
        user_id: int,
        definition: TaskDefinitionRecord,
        period: Period,
        circle_id: int | None,
    ) -> int:
        """Pay the reward and journal the completion events.  Returns points paid."""
        now = self.window.now()
        context = {"task_slug": definition.slug, "task_type": definition.task_type,
                   "period_key": period.key}
        main, typed = completion_events(definition.task_type)
        reward = definition.reward_score
        try:
            self.score.award_in(
                session,
                Event(main, user_id, "task", definition.slug, context, now),
                reward,
                task_reward_key(user_id, definition.slug, period.key),
                circle_id,
            )
        except PersistenceConflict:
            reward = 0
        event_log.append(
            session, Event(typed, user_id, "task", definition.slug, context, now), 0, self.window.today(),
        )
        logger.info("Task %s (%s) completed by user %s (+%d)",
                    definition.slug, period.key, user_id, reward)
        return reward

    def process_event(
        self,
        user_id: int,
        event_type: str,
        context: Mapping[str, Any] | None = None,
        circle_id: int | None = None,
        _depth: int = 0,
    ) -> list[TaskProgressView]:
        """Advance every personal task listening for *event_type*.

        Returns the progress rows that changed, including those moved by
        cascaded completion events.
        """
        context = context or {}
        views: list[TaskProgressView] = []
        with get_session(self.engine) as session:
            definitions = active_definitions(session, event_type, circle=False)
            for definition in definitions:
                view = self._advance(session, user_id, definition, context, circle_id)
                if view is not None:
                    views.append(view)
            linked = {
                d.slug: (d.reward_badge_slug, d.badge_progress_contribution)
                for d in definitions if d.reward_badge_slug and d.badge_progress_contribution
            }

        completed = [v for v in views if v.just_completed]
        for view in completed:
            badge_slug, percent = linked.get(view.task_slug, (None, None))
            if badge_slug:
                self.badges.add_progress(user_id, badge_slug, percent)

        if _depth < MAX_TASK_CASCADE_DEPTH:
            for view in completed:
                for cascade in completion_events(view.task_type):
                    views.extend(self.process_event(
                        user_id, cascade, {"task_slug": view.task_slug}, circle_id, _depth + 1,
                    ))
        return views

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------
    def expire_old_tasks(self, period_type: str) -> int:
        """Mark unfinished rows of ended periods as expired.

        Only rows whose period ended before the current period began are
        touched, so in-flight progress is never raced.
        """
        current = self.window.period(period_type)
        task_types = [t for t, p in TASK_PERIODS.items() if p == period_type and t != "circle"]
        with get_session(self.engine) as session:
            definition_ids = select(TaskDefinitionRecord.id).where(
                TaskDefinitionRecord.task_type.in_(task_types)
            )
            result = session.execute(
                update(TaskProgress)
                .where(
                    TaskProgress.status == TaskStatus.IN_PROGRESS.value,
                    TaskProgress.period_end < current.start,
                    TaskProgress.task_definition_id.in_(definition_ids),
                )
                .values(status=TaskStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Expired %d %s task rows", count, period_type)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_user_tasks(self, user_id: int, task_type: str) -> list[TaskProgressView]:
        """Current-period progress for every active task of *task_type*."""
        period = self.window.period(TASK_PERIODS[task_type])
        with get_session(self.engine) as session:
            definitions = session.scalars(
                select(TaskDefinitionRecord).where(
                    TaskDefinitionRecord.is_active.is_(True),
                    TaskDefinitionRecord.task_type == task_type,
                ).order_by(TaskDefinitionRecord.id)
            ).all()
            rows = {
                r.task_definition_id: r for r in session.scalars(
                    select(TaskProgress).where(
                        TaskProgress.user_id == user_id,
                        TaskProgress.period_key == period.key,
                    )
                ).all()
            }
            return [
                TaskProgressView(
                    task_slug=d.slug,
                    title=d.title,
                    task_type=d.task_type,
                    period_key=period.key,
                    current_value=rows[d.id].current_value if d.id in rows else 0,
                    target_value=d.target_value,
                    status=rows[d.id].status if d.id in rows else TaskStatus.IN_PROGRESS.value,
                )
                for d in definitions
            ]


# ---------------------------------------------------------------------------
# Admin-side definition management
# ---------------------------------------------------------------------------
class TaskService:
    """Create and edit dynamic task definitions.  Static rows are read-only."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def seed_static_definitions(self, rules: RuleStore) -> int:
        return seed_task_definitions(self.engine, rules)

    def create_definition(
        self,
        *,
        slug: str,
        title: str,
        task_type: str,
        target_value: int,
        scoring_event_types: list[str],
        reward_score: int = 0,
        **optional: Any,
    ) -> int:
        """Insert a dynamic definition and return its id.

        Raises ``ValueError`` for an unknown task type, a non-positive target
        or a duplicate slug.
        """
        if task_type not in TASK_PERIODS:
            raise ValueError(f"Unknown task type: {task_type}")
        if target_value <= 0:
            raise ValueError("target_value must be positive")
        unknown = set(optional) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        with get_session(self.engine) as session:
            record = TaskDefinitionRecord(
                slug=slug,
                title=title,
                task_type=task_type,
                target_value=target_value,
                scoring_event_types=list(scoring_event_types),
                reward_score=reward_score,
                is_static=False,
                **optional,
            )
            try:
                with session.begin_nested():
                    session.add(record)
                    session.flush()
            except IntegrityError:
                raise ValueError(f"Task slug already exists: {slug}") from None
            logger.info("Created task definition %s", slug)
            return record.id

    def update_definition(self, slug: str, **changes: Any) -> bool:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        with get_session(self.engine) as session:
            record = session.scalar(
                select(TaskDefinitionRecord).where(TaskDefinitionRecord.slug == slug)
            )
            if record is None or record.is_static:
                return False
            for name, value in changes.items():
                setattr(record, name, list(value) if name == "scoring_event_types" else value)
            return True

    def deactivate_definition(self, slug: str) -> bool:
        """Stop a definition (static or dynamic) from collecting progress."""
        with get_session(self.engine) as session:
            result = session.execute(
                update(TaskDefinitionRecord)
                .where(TaskDefinitionRecord.slug == slug)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            return (result.rowcount or 0) > 0
