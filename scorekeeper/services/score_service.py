"""
scorekeeper.services.score_service — Eligibility, Points & Score Counters
==========================================================================

Decides whether an event may earn points, how many, and applies the award.

Eligibility is checked in a fixed order: per-entity, daily count, daily
pair, global daily cap, feature flag.  The first failing check wins.
Limit and cap checks only apply to events that would award points; the
feature flag applies to every event of a gated type.

The award path writes the ledger row, bumps the score counters with a
single ``UPDATE ... SET total = total + :points`` and appends the event
journal row, all in one transaction.  The ledger's unique key is the
final guard against concurrent duplicates; the pre-check above only
produces friendlier messages.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorekeeper.collaborators import IdentityProvider
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import CircleScore, UserScore
from scorekeeper.engine.events import Event
from scorekeeper.engine.idempotency import KeyInput, key_for
from scorekeeper.engine.rules import DEFAULT_DYNAMIC_POINTS, RuleStore, SelectorPoints
from scorekeeper.engine.timewindow import TimeWindow
from scorekeeper.errors import EligibilityDenied
from scorekeeper.services import event_log, ledger_service

logger = logging.getLogger(__name__)

RewardLookup = Callable[[str | None, str], int | None]


class DenialReason(enum.StrEnum):
    ALREADY_EARNED = "already_earned"
    DAILY_LIMIT = "daily_limit_reached"
    ALREADY_SENT_TODAY = "already_sent_today"
    DAILY_CAP = "daily_cap_reached"
    FEATURE_DISABLED = "feature_disabled"
    INVALID_PAYLOAD = "invalid_payload"


SOFT_DENIALS: frozenset[DenialReason] = frozenset({
    DenialReason.ALREADY_EARNED,
    DenialReason.DAILY_LIMIT,
    DenialReason.ALREADY_SENT_TODAY,
    DenialReason.DAILY_CAP,
})

DENIAL_MESSAGES: dict[DenialReason, str] = {
    DenialReason.ALREADY_EARNED: "{label}: you have already earned points for this.",
    DenialReason.DAILY_LIMIT: "{label}: daily limit reached, come back tomorrow.",
    DenialReason.ALREADY_SENT_TODAY: "{label}: already sent to this person today.",
    DenialReason.DAILY_CAP: "You have reached today's point cap. Great work!",
}


@dataclass(frozen=True, slots=True)
class Eligibility:
    """Outcome of :meth:`ScoreService.can_earn_points`.

    ``key`` and ``points`` are computed once here and reused by the award
    so timestamp-scoped keys stay stable across the two steps.
    """

    allowed: bool
    reason: DenialReason | None = None
    key: str | None = None
    points: int = 0

    @property
    def soft(self) -> bool:
        return self.reason in SOFT_DENIALS

    def raise_if_denied(self) -> None:
        """Strict form for hosts that prefer exceptions to flags."""
        if not self.allowed:
            raise EligibilityDenied(self.reason.value, soft=self.soft)


@dataclass(frozen=True, slots=True)
class ScoreTotals:
    total_score: int = 0
    daily_score: int = 0


class ScoreService:
    """Eligibility oracle and award path.

    Parameters
    ----------
    engine:
        SQLAlchemy engine.
    rules:
        Validated rule tables.
    window:
        Local-time calendar.
    identity:
        Host identity provider (pro role, circle membership).
    reward_lookup:
        ``(entity_type, entity_id) -> points | None`` for rules whose
        points are ``dynamic``.
    """

    def __init__(
        self,
        engine: Engine,
        rules: RuleStore,
        window: TimeWindow,
        identity: IdentityProvider,
        reward_lookup: RewardLookup | None = None,
    ) -> None:
        self.engine = engine
        self.rules = rules
        self.window = window
        self.identity = identity
        self.reward_lookup = reward_lookup

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------
    def calculate(self, event_type: str, context: Mapping[str, Any]) -> int:
        """Points the event is worth, before eligibility."""
        rule = self.rules.rule(event_type)
        spec = rule.points
        if isinstance(spec, SelectorPoints):
            return spec.resolve(context)
        if rule.is_dynamic:
            return self._dynamic_points(context)
        return int(spec)

    def _dynamic_points(self, context: Mapping[str, Any]) -> int:
        explicit = context.get("reward_points", context.get("score_reward"))
        if explicit is not None:
            try:
                return int(explicit)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric reward in context: %r", explicit)
        entity_id = context.get("entity_id")
        if self.reward_lookup is not None and entity_id is not None:
            found = self.reward_lookup(context.get("entity_type"), str(entity_id))
            if found is not None:
                return int(found)
        return DEFAULT_DYNAMIC_POINTS

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------
    def idempotency_key(
        self,
        user_id: int,
        event_type: str,
        entity_id: str | None,
        context: Mapping[str, Any],
        event: Event | None = None,
    ) -> str:
        return key_for(KeyInput(
            event_type=event_type,
            user_id=user_id,
            day=self.window.today(),
            entity_type=context.get("entity_type"),
            entity_id=None if entity_id is None else str(entity_id),
            context=context,
            timestamp=event.timestamp if event is not None else self.window.now(),
        ))

    def can_earn_points(
        self,
        user_id: int,
        event_type: str,
        entity_id: str | None,
        context: Mapping[str, Any],
        event: Event | None = None,
    ) -> Eligibility:
        rule = self.rules.rule(event_type)
        try:
            key = self.idempotency_key(user_id, event_type, entity_id, context, event)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Cannot build key for %s: %s", event_type, exc)
            return Eligibility(False, DenialReason.INVALID_PAYLOAD)
        points = self.calculate(event_type, context)

        if points != 0:
            with get_session(self.engine) as session:
                if rule.per_entity_limit and ledger_service.has_key(session, key):
                    return Eligibility(False, DenialReason.ALREADY_EARNED, key, points)
                if rule.daily_limit is not None:
                    today_count = ledger_service.count_for_day(
                        session, user_id, event_type, self.window.today(),
                    )
                    if today_count >= rule.daily_limit:
                        return Eligibility(False, DenialReason.DAILY_LIMIT, key, points)
                if rule.daily_pair_limit and ledger_service.has_key(session, key):
                    return Eligibility(False, DenialReason.ALREADY_SENT_TODAY, key, points)
                flags = self.rules.flags
                if flags.enable_daily_score_cap and points > 0:
                    daily = self._daily_score(session, user_id)
                    if daily + points > flags.daily_score_cap_value:
                        return Eligibility(False, DenialReason.DAILY_CAP, key, points)

        if rule.feature_flag and not self.rules.flags.is_enabled(rule.feature_flag):
            return Eligibility(False, DenialReason.FEATURE_DISABLED, key, points)
        return Eligibility(True, None, key, points)

    @staticmethod
    def denial_message(reason: DenialReason, label: str) -> str:
        template = DENIAL_MESSAGES.get(reason)
        return template.format(label=label) if template else reason.value

    # ------------------------------------------------------------------
    # Award path
    # ------------------------------------------------------------------
    def award_in(
        self,
        session: Session,
        event: Event,
        points: int,
        key: str | None,
        circle_id: int | None = None,
    ) -> ScoreTotals:
        """Ledger insert + score increment + journal row inside *session*.

        Zero-point events skip the ledger.  Raises
        :class:`~scorekeeper.errors.PersistenceConflict` on a duplicate key.
        """
        today = self.window.today()
        if points != 0 and key is not None:
            ledger_service.insert_entry(
                session,
                idempotency_key=key,
                user_id=event.user_id,
                event_type=event.event_type,
                points=points,
                award_day=today,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            )
            totals = self.apply_points(session, event.user_id, points, circle_id)
        else:
            totals = self._read_totals(session, event.user_id)
        event_log.append(session, event, points, today)
        return totals

    def award(
        self,
        event: Event,
        points: int,
        key: str | None,
        circle_id: int | None = None,
    ) -> ScoreTotals:
        """:meth:`award_in` in its own transaction."""
        with get_session(self.engine) as session:
            return self.award_in(session, event, points, key, circle_id)

    def log_only(self, event: Event) -> None:
        """Journal an event that earns nothing (denials, pro users)."""
        with get_session(self.engine) as session:
            event_log.append(session, event, 0, self.window.today())

    def apply_points(
        self,
        session: Session,
        user_id: int,
        points: int,
        circle_id: int | None = None,
    ) -> ScoreTotals:
        """Atomically add *points* to the user's (and circle's) counters."""
        today = self.window.today()
        self._ensure_row(session, UserScore, user_id=user_id)
        new_total = UserScore.total_score + points
        values: dict[str, Any] = {
            "total_score": case((new_total < 0, 0), else_=new_total),
            "daily_score": case(
                (UserScore.score_day == today, UserScore.daily_score + points),
                else_=points,
            ),
            "score_day": today,
            "updated_at": self.window.now(),
        }
        if circle_id is not None:
            values["circle_id"] = circle_id
        session.execute(
            update(UserScore)
            .where(UserScore.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if circle_id is not None:
            self._ensure_row(session, CircleScore, circle_id=circle_id)
            session.execute(
                update(CircleScore)
                .where(CircleScore.circle_id == circle_id)
                .values(total_score=CircleScore.total_score + points)
                .execution_options(synchronize_session=False)
            )
        return self._read_totals(session, user_id)

    def award_points(self, user_id: int, points: int, circle_id: int | None = None) -> ScoreTotals:
        """Counter-only adjustment in its own transaction (no ledger row)."""
        with get_session(self.engine) as session:
            return self.apply_points(session, user_id, points, circle_id)

    @staticmethod
    def _ensure_row(session: Session, model: type, **pk: int) -> None:
        column, value = next(iter(pk.items()))
        exists = session.scalar(select(getattr(model, column)).where(getattr(model, column) == value))
        if exists is not None:
            return
        try:
            with session.begin_nested():
                session.add(model(**pk, total_score=0))
                session.flush()
        except IntegrityError:
            # Created concurrently; the UPDATE that follows still applies.
            pass

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _read_totals(self, session: Session, user_id: int) -> ScoreTotals:
        row = session.execute(
            select(UserScore.total_score, UserScore.daily_score, UserScore.score_day)
            .where(UserScore.user_id == user_id)
        ).first()
        if row is None:
            return ScoreTotals()
        daily = row.daily_score if row.score_day == self.window.today() else 0
        return ScoreTotals(row.total_score, daily)

    def _daily_score(self, session: Session, user_id: int) -> int:
        return self._read_totals(session, user_id).daily_score

    def get_scores(self, user_id: int) -> ScoreTotals:
        with get_session(self.engine) as session:
            return self._read_totals(session, user_id)

    def get_daily_score(self, user_id: int) -> int:
        return self.get_scores(user_id).daily_score

    def get_circle_score(self, circle_id: int) -> int:
        with get_session(self.engine) as session:
            return session.scalar(
                select(CircleScore.total_score).where(CircleScore.circle_id == circle_id)
            ) or 0

    def is_pro_user(self, user_id: int) -> bool:
        return bool(self.identity.is_pro(user_id))
