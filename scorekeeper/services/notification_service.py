"""
scorekeeper.services.notification_service — Notification Sink & Emitter
========================================================================

:class:`NotificationEmitter` turns a finished dispatch into sink calls
using the pure mapping in :mod:`scorekeeper.engine.notifications`.

:class:`NotificationService` is the bundled database sink.  It renders the
template for the notification type, resolves the actor's display name,
stamps an expiry, and suppresses duplicates of the same (recipient, type,
entity) on one local day.  Delivery (push, e-mail, websocket) is left to
the host.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from sqlalchemy import Engine, select, update

from scorekeeper.collaborators import IdentityProvider, NotificationSink
from scorekeeper.database.engine import get_session
from scorekeeper.database.models import Notification
from scorekeeper.engine.events import DispatchResult, Event
from scorekeeper.engine.notifications import NotificationIntent, notifications_for
from scorekeeper.engine.rules import RuleStore
from scorekeeper.engine.timewindow import TimeWindow

logger = logging.getLogger(__name__)

# Routing fields carried inside ``params`` on the sink call
ROUTING_KEYS = ("actor_id", "entity_type", "entity_id")


class NotificationService:
    """Database-backed :class:`~scorekeeper.collaborators.NotificationSink`."""

    def __init__(
        self,
        engine: Engine,
        rules: RuleStore,
        window: TimeWindow,
        identity: IdentityProvider | None = None,
    ) -> None:
        self.engine = engine
        self.rules = rules
        self.window = window
        self.identity = identity

    def create(self, user_id: int, notification_type: str, params: dict[str, Any]) -> int | None:
        """Store one notification.  Returns its id, or ``None`` when skipped."""
        template = self.rules.template(notification_type)
        if template is None:
            logger.warning("No notification template for %s", notification_type)
            return None

        params = dict(params)
        actor_id, entity_type, entity_id = (params.pop(k, None) for k in ROUTING_KEYS)
        if actor_id is not None and "actor_name" not in params and self.identity is not None:
            params["actor_name"] = self.identity.display_name(int(actor_id)) or f"User {actor_id}"
        title, body = template.render(params)
        today = self.window.today()
        entity_id = None if entity_id is None else str(entity_id)

        with get_session(self.engine) as session:
            duplicate = select(Notification.id).where(
                Notification.user_id == user_id,
                Notification.notification_type == notification_type,
                Notification.created_day == today,
            )
            duplicate = duplicate.where(
                Notification.entity_id.is_(None) if entity_id is None
                else Notification.entity_id == entity_id
            )
            if session.scalar(duplicate.limit(1)) is not None:
                logger.debug("Duplicate %s for user %s suppressed", notification_type, user_id)
                return None

            now = self.window.now()
            record = Notification(
                user_id=user_id,
                notification_type=notification_type,
                category=template.category,
                title=title,
                body=body,
                actor_id=actor_id,
                entity_type=entity_type,
                entity_id=entity_id,
                params={k: v for k, v in params.items() if isinstance(v, (str, int, float, bool))},
                created_day=today,
                expires_at=now + timedelta(days=template.expires_days),
                created_at=now,
            )
            session.add(record)
            session.flush()
            return record.id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> list[dict]:
        with get_session(self.engine) as session:
            stmt = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                stmt = stmt.where(Notification.is_read.is_(False))
            rows = session.scalars(stmt.order_by(Notification.id.desc()).limit(limit)).all()
            return [
                {
                    "id": n.id,
                    "type": n.notification_type,
                    "category": n.category,
                    "title": n.title,
                    "body": n.body,
                    "actor_id": n.actor_id,
                    "entity_type": n.entity_type,
                    "entity_id": n.entity_id,
                    "is_read": n.is_read,
                    "created_at": n.created_at,
                }
                for n in rows
            ]

    def mark_read(self, user_id: int, notification_ids: list[int] | None = None) -> int:
        """Mark the given (or all) notifications of *user_id* as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id, Notification.is_read.is_(False),
        )
        if notification_ids is not None:
            stmt = stmt.where(Notification.id.in_(notification_ids))
        with get_session(self.engine) as session:
            result = session.execute(
                stmt.values(is_read=True).execution_options(synchronize_session=False)
            )
            return result.rowcount or 0


class NotificationEmitter:
    """Maps a dispatch to notification intents and hands them to the sink.

    A failing sink call is logged and skipped; it never affects points.
    """

    def __init__(self, sink: NotificationSink) -> None:
        self.sink = sink

    def send(self, intent: NotificationIntent) -> bool:
        params = dict(intent.params)
        if intent.actor_id is not None:
            params["actor_id"] = intent.actor_id
        if intent.entity_type is not None:
            params["entity_type"] = intent.entity_type
        if intent.entity_id is not None:
            params["entity_id"] = intent.entity_id
        try:
            self.sink.create(intent.user_id, intent.notification_type, params)
        except Exception:
            logger.exception("Notification %s to user %s failed",
                             intent.notification_type, intent.user_id)
            return False
        return True

    def emit(
        self,
        event: Event,
        result: DispatchResult,
        extras: Mapping[str, Any] | None = None,
    ) -> int:
        """Create every notification for one dispatch.  Returns how many were sent."""
        return sum(1 for intent in notifications_for(event, result, extras) if self.send(intent))
