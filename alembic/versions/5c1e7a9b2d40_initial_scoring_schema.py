"""Initial scoring schema

Revision ID: 5c1e7a9b2d40
Revises:
Create Date: 2026-10-19 09:12:31.418207

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c1e7a9b2d40'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now())


def upgrade() -> None:
    """Create the journal, ledger, score, streak, task, badge and notification tables."""

    # --- events (journal) ---
    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("points", sa.Integer, nullable=True),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("target_user_id", sa.BigInteger, nullable=True),
        sa.Column("context", postgresql.JSONB, nullable=True, server_default="{}"),
        sa.Column("event_day", sa.Date, nullable=False),
        _created_at(),
    )
    op.create_index("ix_events_user_type_day", "events", ["user_id", "event_type", "event_day"])
    op.create_index("ix_events_created_at", "events", ["created_at"])

    # --- points_ledger ---
    op.create_table(
        "points_ledger",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("points", sa.Integer, nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("award_day", sa.Date, nullable=False),
        _created_at(),
        sa.UniqueConstraint("idempotency_key", name="uq_points_ledger_key"),
    )
    op.create_index(
        "ix_points_ledger_user_type_day", "points_ledger", ["user_id", "event_type", "award_day"],
    )

    # --- score aggregates ---
    op.create_table(
        "user_scores",
        sa.Column("user_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("total_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("score_day", sa.Date, nullable=True),
        sa.Column("circle_id", sa.BigInteger, nullable=True),
        _created_at("updated_at"),
    )
    op.create_table(
        "circle_scores",
        sa.Column("circle_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("total_score", sa.Integer, nullable=False, server_default="0"),
    )

    # --- streaks & milestones ---
    op.create_table(
        "streaks",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("streak_type", sa.String(32), nullable=False),
        sa.Column("current_streak", sa.Integer, nullable=True),
        sa.Column("longest_streak", sa.Integer, nullable=True),
        sa.Column("last_activity_date", sa.Date, nullable=True),
        sa.Column("grace_remaining", sa.Integer, nullable=True),
        _created_at("updated_at"),
        sa.UniqueConstraint("user_id", "streak_type", name="uq_streak_user_type"),
    )
    op.create_table(
        "milestones",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("milestone_type", sa.String(32), nullable=False),
        sa.Column("target_entity_id", sa.String(128), nullable=False),
        sa.Column("milestone_value", sa.Integer, nullable=False),
        sa.Column("points_awarded", sa.Integer, nullable=True),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "user_id", "milestone_type", "target_entity_id", "milestone_value",
            name="uq_milestone_once",
        ),
    )

    # --- tasks ---
    op.create_table(
        "task_definitions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("task_type", sa.String(16), nullable=False),
        sa.Column("target_value", sa.Integer, nullable=False),
        sa.Column("scoring_event_types", postgresql.JSONB, nullable=True, server_default="[]"),
        sa.Column("reward_score", sa.Integer, nullable=True),
        sa.Column("badge_progress_contribution", sa.Integer, nullable=True),
        sa.Column("reward_badge_slug", sa.String(64), nullable=True),
        sa.Column("magnitude_key", sa.String(64), nullable=True),
        sa.Column("count_unique_days", sa.Boolean, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=True),
        sa.Column("is_static", sa.Boolean, nullable=True),
        _created_at(),
        _created_at("updated_at"),
    )
    op.create_table(
        "task_progress",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column(
            "task_definition_id", sa.Integer,
            sa.ForeignKey("task_definitions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("current_value", sa.Integer, nullable=True),
        sa.Column("target_value", sa.Integer, nullable=False),
        sa.Column("status", sa.String(16), nullable=True),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("last_increment_day", sa.Date, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint(
            "user_id", "task_definition_id", "period_key", name="uq_task_progress_period",
        ),
    )
    op.create_index("ix_task_progress_status_end", "task_progress", ["status", "period_end"])

    op.create_table(
        "circle_tasks",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("circle_id", sa.BigInteger, nullable=False),
        sa.Column(
            "task_definition_id", sa.Integer,
            sa.ForeignKey("task_definitions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("period_start", sa.Date, nullable=False),
        sa.Column("period_end", sa.Date, nullable=False),
        sa.Column("current_value", sa.Integer, nullable=True),
        sa.Column("target_value", sa.Integer, nullable=False),
        sa.Column("status", sa.String(16), nullable=True),
        sa.Column("completed_by_user_id", sa.BigInteger, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "circle_id", "task_definition_id", "period_key", name="uq_circle_task_period",
        ),
    )
    op.create_table(
        "circle_contributions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "circle_task_id", sa.BigInteger,
            sa.ForeignKey("circle_tasks.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("circle_id", sa.BigInteger, nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_circle_contrib_task_user", "circle_contributions", ["circle_task_id", "user_id"],
    )

    # --- badges ---
    op.create_table(
        "user_badges",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("badge_slug", sa.String(64), nullable=False),
        sa.Column("progress", sa.Integer, nullable=True),
        sa.Column("earned", sa.Boolean, nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=True),
        _created_at("updated_at"),
        sa.UniqueConstraint("user_id", "badge_slug", name="uq_user_badge"),
    )

    # --- snapshots & notifications ---
    op.create_table(
        "score_snapshots",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("period_type", sa.String(16), nullable=False),
        sa.Column("period_key", sa.String(16), nullable=False),
        sa.Column("score", sa.Integer, nullable=True),
        sa.Column("rank_position", sa.Integer, nullable=True),
        sa.Column("event_counts", postgresql.JSONB, nullable=True, server_default="{}"),
        _created_at(),
        sa.UniqueConstraint("user_id", "period_type", "period_key", name="uq_snapshot_period"),
    )
    op.create_index("ix_snapshot_period", "score_snapshots", ["period_type", "period_key"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("category", sa.String(32), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("actor_id", sa.BigInteger, nullable=True),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("params", postgresql.JSONB, nullable=True, server_default="{}"),
        sa.Column("is_read", sa.Boolean, nullable=True),
        sa.Column("created_day", sa.Date, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_notifications_dedup", "notifications", ["user_id", "notification_type", "created_day"],
    )


def downgrade() -> None:
    """Drop every scoring table."""
    for index, table in (
        ("ix_notifications_dedup", "notifications"),
        ("ix_snapshot_period", "score_snapshots"),
        ("ix_circle_contrib_task_user", "circle_contributions"),
        ("ix_task_progress_status_end", "task_progress"),
        ("ix_points_ledger_user_type_day", "points_ledger"),
        ("ix_events_created_at", "events"),
        ("ix_events_user_type_day", "events"),
    ):
        op.drop_index(index, table_name=table)
    for table in (
        "notifications", "score_snapshots", "user_badges", "circle_contributions",
        "circle_tasks", "task_progress", "task_definitions", "milestones", "streaks",
        "circle_scores", "user_scores", "points_ledger", "events",
    ):
        op.drop_table(table)
