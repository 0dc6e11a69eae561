"""
scorekeeper.services.ledger_service — Points Ledger
====================================================

Append-only record of point awards.  The unique ``idempotency_key``
column is the single source of truth for "was this already rewarded":
inserts run inside a SAVEPOINT and a duplicate key surfaces as
:class:`~scorekeeper.errors.PersistenceConflict` while the outer
transaction stays usable.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.database.engine import get_session
from scorekeeper.database.models import LedgerEntry
from scorekeeper.errors import PersistenceConflict

logger = logging.getLogger(__name__)


def insert_entry(
    session: Session,
    *,
    idempotency_key: str,
    user_id: int,
    event_type: str,
    points: int,
    award_day: date,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> LedgerEntry:
    """Insert one ledger row or raise :class:`PersistenceConflict`."""
    entry = LedgerEntry(
        idempotency_key=idempotency_key,
        user_id=user_id,
        event_type=event_type,
        points=points,
        entity_type=entity_type,
        entity_id=entity_id,
        award_day=award_day,
    )
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(entry)
            session.flush()
    except IntegrityError:
        # The SAVEPOINT was rolled back; the outer txn is still alive.
        logger.debug("Ledger key already present: %s", idempotency_key)
        raise PersistenceConflict(idempotency_key) from None
    return entry


def has_key(session: Session, idempotency_key: str) -> bool:
    return session.scalar(
        select(LedgerEntry.id).where(LedgerEntry.idempotency_key == idempotency_key)
    ) is not None


def count_for_day(session: Session, user_id: int, event_type: str, day: date) -> int:
    """Number of awards for (user, event) on one local day."""
    return session.scalar(
        select(func.count()).select_from(LedgerEntry).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.event_type == event_type,
            LedgerEntry.award_day == day,
        )
    ) or 0


def sum_points(session: Session, user_id: int) -> int:
    return session.scalar(
        select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(LedgerEntry.user_id == user_id)
    ) or 0


# ---------------------------------------------------------------------------
# Read helpers for hosts
# ---------------------------------------------------------------------------
def get_history(engine: Engine, user_id: int, limit: int = 50) -> list[LedgerEntry]:
    """Most recent awards first."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        ).all()
        session.expunge_all()
        return list(rows)


def period_total(engine: Engine, user_id: int, start: date, end: date) -> int:
    """Points awarded between two local days, inclusive."""
    with get_session(engine) as session:
        return session.scalar(
            select(func.coalesce(func.sum(LedgerEntry.points), 0)).where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.award_day >= start,
                LedgerEntry.award_day <= end,
            )
        ) or 0
