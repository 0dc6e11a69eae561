"""
scorekeeper.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- events               — Append-only journal of every dispatched event
- points_ledger        — Point awards keyed by a unique idempotency key
- user_scores          — Per-user total / daily score counters
- circle_scores        — Per-circle running totals
- streaks              — Consecutive-day counters with weekly grace
- milestones           — One row per threshold ever awarded
- task_definitions     — Static (seeded) and admin-created task templates
- task_progress        — Per-user progress for one task in one period
- circle_tasks         — Shared circle progress for one task in one week
- circle_contributions — Individual contributions to a circle task
- user_badges          — Per-user badge progress and earned flag
- score_snapshots      — Daily / weekly / monthly score history
- notifications        — Rendered notifications awaiting delivery
"""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all scoring-engine ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TaskStatus(enum.StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PeriodType(enum.StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# ---------------------------------------------------------------------------
# Event journal
# ---------------------------------------------------------------------------
class EventRecord(Base):
    """Every dispatched event, including zero-point and denied ones."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, default=0)
    entity_type: Mapped[str | None] = mapped_column(String(64))
    entity_id: Mapped[str | None] = mapped_column(String(128))
    target_user_id: Mapped[int | None] = mapped_column(BigInteger)
    context: Mapped[dict] = mapped_column(JSONB, default=dict)
    event_day: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_events_user_type_day", "user_id", "event_type", "event_day"),
        Index("ix_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventRecord id={self.id} user={self.user_id} type={self.event_type}>"


# ---------------------------------------------------------------------------
# Points ledger
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """One point award.  The unique key is what makes awards exactly-once."""

    __tablename__ = "points_ledger"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64))
    entity_id: Mapped[str | None] = mapped_column(String(128))
    award_day: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_points_ledger_key"),
        Index("ix_points_ledger_user_type_day", "user_id", "event_type", "award_day"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry key={self.idempotency_key!r} points={self.points}>"


# ---------------------------------------------------------------------------
# Score aggregates
# ---------------------------------------------------------------------------
class UserScore(Base):
    __tablename__ = "user_scores"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    score_day: Mapped[date | None] = mapped_column(Date)
    circle_id: Mapped[int | None] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<UserScore user={self.user_id} total={self.total_score}>"


class CircleScore(Base):
    __tablename__ = "circle_scores"

    circle_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# ---------------------------------------------------------------------------
# Streaks & milestones
# ---------------------------------------------------------------------------
class Streak(Base):
    __tablename__ = "streaks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    streak_type: Mapped[str] = mapped_column(String(32), nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_date: Mapped[date | None] = mapped_column(Date)
    grace_remaining: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "streak_type", name="uq_streak_user_type"),
    )

    def __repr__(self) -> str:
        return f"<Streak user={self.user_id} type={self.streak_type} n={self.current_streak}>"


class Milestone(Base):
    __tablename__ = "milestones"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    milestone_value: Mapped[int] = mapped_column(Integer, nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "milestone_type", "target_entity_id", "milestone_value",
            name="uq_milestone_once",
        ),
    )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
class TaskDefinitionRecord(Base):
    """Task template.  ``is_static`` rows are seeded from the rule tables."""

    __tablename__ = "task_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    task_type: Mapped[str] = mapped_column(String(16), nullable=False)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    scoring_event_types: Mapped[list] = mapped_column(JSONB, default=list)
    reward_score: Mapped[int] = mapped_column(Integer, default=0)
    badge_progress_contribution: Mapped[int | None] = mapped_column(Integer)
    reward_badge_slug: Mapped[str | None] = mapped_column(String(64))
    magnitude_key: Mapped[str | None] = mapped_column(String(64))
    count_unique_days: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_static: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<TaskDefinition slug={self.slug!r} type={self.task_type}>"


class TaskProgress(Base):
    __tablename__ = "task_progress"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    task_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("task_definitions.id", ondelete="CASCADE"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, default=0)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.IN_PROGRESS.value)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    last_increment_day: Mapped[date | None] = mapped_column(Date)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    definition: Mapped[TaskDefinitionRecord] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "task_definition_id", "period_key", name="uq_task_progress_period"),
        Index("ix_task_progress_status_end", "status", "period_end"),
    )


class CircleTask(Base):
    __tablename__ = "circle_tasks"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    circle_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    task_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("task_definitions.id", ondelete="CASCADE"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, default=0)
    target_value: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.IN_PROGRESS.value)
    completed_by_user_id: Mapped[int | None] = mapped_column(BigInteger)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    definition: Mapped[TaskDefinitionRecord] = relationship()

    __table_args__ = (
        UniqueConstraint("circle_id", "task_definition_id", "period_key", name="uq_circle_task_period"),
    )


class CircleContribution(Base):
    __tablename__ = "circle_contributions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    circle_task_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("circle_tasks.id", ondelete="CASCADE"), nullable=False
    )
    circle_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_circle_contrib_task_user", "circle_task_id", "user_id"),
    )


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
class UserBadge(Base):
    __tablename__ = "user_badges"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    badge_slug: Mapped[str] = mapped_column(String(64), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    earned: Mapped[bool] = mapped_column(Boolean, default=False)
    earned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "badge_slug", name="uq_user_badge"),
    )

    def __repr__(self) -> str:
        return f"<UserBadge user={self.user_id} badge={self.badge_slug} earned={self.earned}>"


# ---------------------------------------------------------------------------
# Snapshots & notifications
# ---------------------------------------------------------------------------
class ScoreSnapshot(Base):
    __tablename__ = "score_snapshots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    score: Mapped[int] = mapped_column(Integer, default=0)
    rank_position: Mapped[int | None] = mapped_column(Integer)
    event_counts: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "period_type", "period_key", name="uq_snapshot_period"),
        Index("ix_snapshot_period", "period_type", "period_key"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(32), default="system")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    entity_type: Mapped[str | None] = mapped_column(String(64))
    entity_id: Mapped[str | None] = mapped_column(String(128))
    params: Mapped[dict] = mapped_column(JSONB, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_day: Mapped[date] = mapped_column(Date, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_dedup", "user_id", "notification_type", "created_day"),
    )
