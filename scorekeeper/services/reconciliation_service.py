"""
scorekeeper.services.reconciliation_service — Score Reconciliation
===================================================================

Job that validates ``user_scores.total_score`` against the points ledger
and corrects drift if found.

How it works:
    1. ``SUM(points)`` from ``points_ledger`` grouped by user.
    2. Compare against the stored ``user_scores.total_score``.  Totals are
       floored at zero, so the expected value is ``max(0, sum)``.
    3. Overwrite mismatches with the true value and log every correction.

Daily scores are not reconciled; they reset at the next local midnight.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, func, select, update

from scorekeeper.database.engine import get_session
from scorekeeper.database.models import LedgerEntry, UserScore

logger = logging.getLogger(__name__)


def reconcile_scores(engine: Engine, fix: bool = True) -> dict:
    """Validate total scores against the ledger and (optionally) fix drift.

    Returns ``{"checked": N, "corrected": M, "corrections": [...]}``.
    """
    corrections: list[dict] = []

    with get_session(engine) as session:
        truth_map: dict[int, int] = {
            row.user_id: max(0, int(row.actual))
            for row in session.execute(
                select(LedgerEntry.user_id, func.sum(LedgerEntry.points).label("actual"))
                .group_by(LedgerEntry.user_id)
            ).all()
        }
        stored_map: dict[int, int] = {
            row.user_id: row.total_score
            for row in session.execute(select(UserScore.user_id, UserScore.total_score)).all()
        }

        checked = 0
        for user_id in sorted(truth_map.keys() | stored_map.keys()):
            checked += 1
            actual = truth_map.get(user_id, 0)
            stored = stored_map.get(user_id)
            if stored == actual or (stored is None and actual == 0):
                continue
            corrections.append({
                "user_id": user_id,
                "stored": stored,
                "actual": actual,
                "diff": actual - (stored or 0),
            })
            if not fix:
                continue
            if stored is None:
                session.add(UserScore(user_id=user_id, total_score=actual, daily_score=0))
            else:
                session.execute(
                    update(UserScore)
                    .where(UserScore.user_id == user_id)
                    .values(total_score=actual)
                    .execution_options(synchronize_session=False)
                )

    if corrections:
        logger.warning(
            "Score reconciliation: %s %d/%d totals: %s",
            "corrected" if fix else "found drift in", len(corrections), checked, corrections,
        )
    else:
        logger.info("Score reconciliation: all %d totals match", checked)

    return {
        "checked": checked,
        "corrected": len(corrections) if fix else 0,
        "corrections": corrections,
        "timestamp": datetime.now(UTC).isoformat(),
    }
