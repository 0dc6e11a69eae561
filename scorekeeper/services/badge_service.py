"""
scorekeeper.services.badge_service — Badge Progress & Awarding
===============================================================

Evaluates unearned badges after each event and flips ``earned`` exactly
once.  Condition logic lives in :mod:`scorekeeper.engine.badges`; this
module supplies the history queries and the persistence.

Progress only ever increases.  The earned transition is a compare-and-set
(``UPDATE ... WHERE earned = false``), so two concurrent evaluations
cannot both award the same badge.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Collection, Mapping
from datetime import UTC, date, datetime, timedelta

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.constants import BADGE_EARNED_EVENT
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import (
    CircleContribution,
    CircleTask,
    EventRecord,
    Streak,
    TaskStatus,
    UserBadge,
)
from scorekeeper.engine.badges import evaluate, relevant_badges
from scorekeeper.engine.events import BadgeView, Event
from scorekeeper.engine.rules import BadgeDefinition, RuleStore
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.services import event_log

logger = logging.getLogger(__name__)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# History read model
# ---------------------------------------------------------------------------
class SqlBadgeHistory:
    """:class:`~scorekeeper.engine.badges.BadgeHistory` over the database."""

    def __init__(self, session: Session, user_id: int, window: TimeWindow) -> None:
        self.session = session
        self.user_id = user_id
        self.window = window

    def count_events(
        self, event_types: Collection[str], context_filter: Mapping[str, str] | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(EventRecord).where(
            EventRecord.user_id == self.user_id,
            EventRecord.event_type.in_(list(event_types)),
        )
        for key, value in (context_filter or {}).items():
            stmt = stmt.where(EventRecord.context[key].as_string() == str(value))
        return self.session.scalar(stmt) or 0

    def count_unique_days(self, event_type: str) -> int:
        return self.session.scalar(
            select(func.count(func.distinct(EventRecord.event_day))).where(
                EventRecord.user_id == self.user_id,
                EventRecord.event_type == event_type,
            )
        ) or 0

    def count_in_period(self, event_type: str, period_type: str) -> int:
        period = self.window.period(period_type)
        return self.session.scalar(
            select(func.count()).select_from(EventRecord).where(
                EventRecord.user_id == self.user_id,
                EventRecord.event_type == event_type,
                EventRecord.event_day >= period.start,
                EventRecord.event_day <= period.end,
            )
        ) or 0

    def _distinct_days(self, event_type: str, limit: int | None = None) -> list[date]:
        stmt = (
            select(EventRecord.event_day)
            .where(EventRecord.user_id == self.user_id, EventRecord.event_type == event_type)
            .distinct()
            .order_by(EventRecord.event_day.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def event_weeks(self, event_type: str) -> list[date]:
        weeks = {day - timedelta(days=day.weekday()) for day in self._distinct_days(event_type)}
        return sorted(weeks, reverse=True)

    def active_days(self, event_type: str, limit: int = 30) -> list[date]:
        return self._distinct_days(event_type, limit)

    def current_streak(self, streak_type: str) -> int:
        return self.session.scalar(
            select(Streak.current_streak).where(
                Streak.user_id == self.user_id, Streak.streak_type == streak_type,
            )
        ) or 0

    def circle_task_shares(self) -> list[float]:
        rows = self.session.execute(
            select(
                CircleContribution.circle_task_id,
                func.sum(CircleContribution.amount).label("contributed"),
                CircleTask.target_value,
            )
            .join(CircleTask, CircleTask.id == CircleContribution.circle_task_id)
            .where(CircleContribution.user_id == self.user_id)
            .group_by(CircleContribution.circle_task_id, CircleTask.target_value)
        ).all()
        return [100.0 * row.contributed / row.target_value for row in rows if row.target_value]

    def hero_shares(self, window_hours: int) -> list[float]:
        tasks = self.session.scalars(
            select(CircleTask).where(
                CircleTask.status == TaskStatus.COMPLETED.value,
                CircleTask.completed_by_user_id == self.user_id,
            )
        ).all()
        shares: list[float] = []
        for task in tasks:
            if task.completed_at is None or not task.target_value:
                continue
            completed = _aware(task.completed_at)
            opened = completed - timedelta(hours=window_hours)
            contributions = self.session.execute(
                select(CircleContribution.amount, CircleContribution.created_at).where(
                    CircleContribution.circle_task_id == task.id,
                    CircleContribution.user_id == self.user_id,
                )
            ).all()
            in_window = sum(
                c.amount for c in contributions if opened <= _aware(c.created_at) <= completed
            )
            shares.append(100.0 * in_window / task.target_value)
        return shares

    def count_unique_counterparts(self, event_types: Collection[str]) -> int:
        return self.session.scalar(
            select(func.count(func.distinct(EventRecord.target_user_id))).where(
                EventRecord.user_id == self.user_id,
                EventRecord.event_type.in_(list(event_types)),
                EventRecord.target_user_id.is_not(None),
            )
        ) or 0


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class BadgeRuleEngine:
    def __init__(self, engine: Engine, rules: RuleStore, window: TimeWindow) -> None:
        self.engine = engine
        self.rules = rules
        self.window = window

    def _get_or_create(self, session: Session, user_id: int, slug: str) -> UserBadge:
        stmt = select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_slug == slug)
        row = session.scalar(stmt)
        if row is not None:
            return row
        try:
            with session.begin_nested():
                session.add(UserBadge(user_id=user_id, badge_slug=slug, progress=0, earned=False))
                session.flush()
        except IntegrityError:
            logger.debug("UserBadge %s/%s created concurrently", user_id, slug)
        return session.scalar(stmt)

    def _raise_progress(self, session: Session, row_id: int, progress: int) -> None:
        session.execute(
            update(UserBadge)
            .where(UserBadge.id == row_id, UserBadge.earned.is_(False), UserBadge.progress < progress)
            .values(progress=progress, updated_at=self.window.now())
            .execution_options(synchronize_session=False)
        )

    def _try_award(
        self, session: Session, user_id: int, row_id: int, badge: BadgeDefinition,
    ) -> BadgeView | None:
        earned_at = self.window.now()
        result = session.execute(
            update(UserBadge)
            .where(
                UserBadge.id == row_id,
                UserBadge.earned.is_(False),
                UserBadge.progress >= badge.goal,
            )
            .values(earned=True, earned_at=earned_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        event_log.append(
            session,
            Event(
                event_type=BADGE_EARNED_EVENT,
                user_id=user_id,
                entity_type="badge",
                entity_id=badge.slug,
                context={"tier": badge.tier, "category": badge.category},
                timestamp=earned_at,
            ),
            0,
            self.window.today(),
        )
        logger.info("Badge %s earned by user %s", badge.slug, user_id)
        return BadgeView(badge.slug, badge.title, badge.category, badge.tier, earned_at)

    def earned_slugs(self, session: Session, user_id: int) -> set[str]:
        return set(session.scalars(
            select(UserBadge.badge_slug).where(UserBadge.user_id == user_id, UserBadge.earned.is_(True))
        ).all())

    def process_event(
        self,
        user_id: int,
        event_type: str | Collection[str],
        context: Mapping | None = None,
    ) -> BadgeView | None:
        """Evaluate every unearned badge the event(s) can move.

        Returns the first badge newly earned by this call, if any.
        """
        event_types = [event_type] if isinstance(event_type, str) else list(event_type)
        first: BadgeView | None = None
        with get_session(self.engine) as session:
            earned = self.earned_slugs(session, user_id)
            history = SqlBadgeHistory(session, user_id, self.window)
            for badge in relevant_badges(self.rules.badges, event_types, earned):
                progress = evaluate(badge, history)
                row = self._get_or_create(session, user_id, badge.slug)
                if row.earned:
                    continue
                if progress > row.progress:
                    self._raise_progress(session, row.id, progress)
                if max(progress, row.progress) >= badge.goal:
                    view = self._try_award(session, user_id, row.id, badge)
                    if view is not None and first is None:
                        first = view
        return first

    def add_progress(self, user_id: int, badge_slug: str, percent: int) -> BadgeView | None:
        """Add *percent* of the badge's goal to its progress (task rewards)."""
        badge = self.rules.badge(badge_slug)
        if badge is None:
            logger.warning("Task references unknown badge %s", badge_slug)
            return None
        delta = max(1, math.ceil(badge.goal * percent / 100))
        with get_session(self.engine) as session:
            row = self._get_or_create(session, user_id, badge_slug)
            if row.earned:
                return None
            new_progress = min(row.progress + delta, badge.goal)
            self._raise_progress(session, row.id, new_progress)
            if new_progress >= badge.goal:
                return self._try_award(session, user_id, row.id, badge)
        return None

    def get_user_badges(self, user_id: int) -> list[dict]:
        """Progress for every badge, earned or not."""
        with get_session(self.engine) as session:
            rows = {
                r.badge_slug: r for r in session.scalars(
                    select(UserBadge).where(UserBadge.user_id == user_id)
                ).all()
            }
            return [
                {
                    "slug": b.slug,
                    "title": b.title,
                    "category": b.category,
                    "tier": b.tier,
                    "progress": rows[b.slug].progress if b.slug in rows else 0,
                    "goal": b.goal,
                    "earned": bool(rows[b.slug].earned) if b.slug in rows else False,
                    "earned_at": rows[b.slug].earned_at if b.slug in rows else None,
                }
                for b in self.rules.badges
            ]
