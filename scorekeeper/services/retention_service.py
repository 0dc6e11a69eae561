"""
scorekeeper.services.retention_service — Event Journal Retention Cleanup
=========================================================================

Periodic cleanup of aged ``events`` rows and expired notifications.

    - Default retention: 90 days (``event_retention_days`` in config.yaml).
    - The ledger is never pruned; it is the award source of truth.
    - Notifications are removed once ``expires_at`` has passed.

**Deletion is batched** so the table is never locked for long: rows are
removed in chunks of ``BATCH_SIZE``, one transaction per chunk.

Badge conditions that read the journal (unique days, comebacks) only see
the retained window; earned badges are unaffected.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, delete, func, select

from scorekeeper.database.engine import get_session
from scorekeeper.database.models import EventRecord, Notification

logger = logging.getLogger(__name__)

# How many rows to delete in each batch
BATCH_SIZE = 5_000

DEFAULT_RETENTION_DAYS = 90


def _delete_in_batches(engine: Engine, model: type, condition, batch_size: int) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(select(model.id).where(condition).limit(batch_size)).all()
            if not ids:
                break
            result = session.execute(delete(model).where(model.id.in_(ids)))
            deleted += result.rowcount or 0
        logger.info("Retention: deleted %d %s rows (total so far: %d)",
                    len(ids), model.__tablename__, deleted)
    return deleted


def run_retention_cleanup(
    engine: Engine,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: datetime | None = None,
    batch_size: int = BATCH_SIZE,
) -> dict[str, int]:
    """Delete journal rows older than ``retention_days`` and expired notifications.

    Returns ``{"events_deleted": N, "notifications_deleted": M}``.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=retention_days)

    events_deleted = _delete_in_batches(
        engine, EventRecord, EventRecord.created_at < cutoff, batch_size,
    )
    notifications_deleted = _delete_in_batches(
        engine, Notification, Notification.expires_at < now, batch_size,
    )

    logger.info(
        "Retention cleanup complete — %d events, %d notifications removed "
        "(retention_days=%d, cutoff=%s)",
        events_deleted, notifications_deleted, retention_days, cutoff.isoformat(),
    )
    return {"events_deleted": events_deleted, "notifications_deleted": notifications_deleted}


def get_retention_stats(engine: Engine) -> dict:
    """Journal size statistics for host health pages."""
    with get_session(engine) as session:
        total_events = session.scalar(select(func.count()).select_from(EventRecord)) or 0
        oldest = session.scalar(select(func.min(EventRecord.created_at)))
        newest = session.scalar(select(func.max(EventRecord.created_at)))
        pending_notifications = session.scalar(
            select(func.count()).select_from(Notification).where(Notification.is_read.is_(False))
        ) or 0

    return {
        "total_events": total_events,
        "oldest_event": oldest.isoformat() if oldest else None,
        "newest_event": newest.isoformat() if newest else None,
        "unread_notifications": pending_notifications,
    }
