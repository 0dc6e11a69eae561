"""
scorekeeper.database.seed — Static Task Definition Seeder
==========================================================

Copies the task definitions from the rule tables into ``task_definitions``
so the tracker reads static and admin-created tasks the same way.

Idempotent — only inserts slugs that don't already exist.  Rows edited
later (for example deactivated by an admin) are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from scorekeeper.database.models import TaskDefinitionRecord
from scorekeeper.engine.rules import RuleStore

logger = logging.getLogger(__name__)


def seed_task_definitions(engine: Engine, rules: RuleStore) -> int:
    """Insert static task definitions that don't yet exist.

    Returns the number of rows inserted.
    """
    session = Session(engine)
    inserted = 0
    try:
        existing = set(session.scalars(select(TaskDefinitionRecord.slug)).all())
        for task in rules.tasks:
            if task.slug in existing:
                continue
            session.add(TaskDefinitionRecord(
                slug=task.slug,
                title=task.title,
                description=task.description,
                task_type=task.task_type,
                target_value=task.target_value,
                scoring_event_types=list(task.scoring_event_types),
                reward_score=task.reward_score,
                badge_progress_contribution=task.badge_progress_contribution,
                reward_badge_slug=task.reward_badge_slug,
                magnitude_key=task.magnitude_key,
                count_unique_days=task.count_unique_days,
                is_active=task.is_active,
                is_static=True,
            ))
            inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d static task definitions.", inserted)
    return inserted
