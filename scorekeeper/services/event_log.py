"""
scorekeeper.services.event_log — Event Journal
===============================================

Every dispatched event is appended here, whatever its point outcome:
awards, zero-point events, soft denials and pro-user activity alike.
Rows are never updated.  Badge conditions and scheduled snapshots read
their history from this table.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from scorekeeper.database.models import EventRecord
from scorekeeper.engine.events import Event

logger = logging.getLogger(__name__)


def _target_user(event: Event) -> int | None:
    raw = event.context.get("target_user_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _jsonable(context: dict) -> dict:
    return {k: v if isinstance(v, (str, int, float, bool, type(None), list, dict)) else str(v)
            for k, v in context.items()}


def append(session: Session, event: Event, points: int, day: date) -> EventRecord:
    """Add one journal row to the session's transaction."""
    record = EventRecord(
        user_id=event.user_id,
        event_type=event.event_type,
        points=points,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        target_user_id=_target_user(event),
        context=_jsonable(event.context),
        event_day=day,
        created_at=event.timestamp,
    )
    session.add(record)
    session.flush()
    return record


def has_event(
    session: Session,
    user_id: int,
    event_type: str,
    entity_id: str | None = None,
) -> bool:
    stmt = select(EventRecord.id).where(
        EventRecord.user_id == user_id, EventRecord.event_type == event_type,
    )
    if entity_id is not None:
        stmt = stmt.where(EventRecord.entity_id == entity_id)
    return session.scalar(stmt.limit(1)) is not None


def count_for_day(session: Session, user_id: int, event_type: str, day: date) -> int:
    return session.scalar(
        select(func.count()).select_from(EventRecord).where(
            EventRecord.user_id == user_id,
            EventRecord.event_type == event_type,
            EventRecord.event_day == day,
        )
    ) or 0
