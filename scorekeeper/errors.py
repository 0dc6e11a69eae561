"""
scorekeeper.errors — Exception Hierarchy
=========================================

Services raise these; :class:`~scorekeeper.services.dispatcher.EventDispatcher`
converts them into structured :class:`DispatchResult` objects so callers never
see an exception for an ordinary repeat or limit hit.
"""

from __future__ import annotations


class ScorekeeperError(Exception):
    """Base class for every error raised by the scoring engine."""


class Unauthenticated(ScorekeeperError):
    """No user could be resolved from the payload or the identity provider."""

    def __init__(self, message: str = "User not authenticated") -> None:
        super().__init__(message)


class InvalidEventType(ScorekeeperError):
    """The event type is unknown to the rule store.

    Never raised out of ``dispatch``; unknown types are scored as zero-point
    events labelled with the raw type.  Exposed for strict lookups.
    """

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class EligibilityDenied(ScorekeeperError):
    """A (user, event, entity) combination may not earn points right now."""

    def __init__(self, reason: str, *, soft: bool) -> None:
        super().__init__(reason)
        self.reason = reason
        self.soft = soft


class PersistenceConflict(ScorekeeperError):
    """The ledger's unique idempotency key rejected an insert (lost race)."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Duplicate ledger key: {idempotency_key}")
        self.idempotency_key = idempotency_key


class RuleConfigurationError(ScorekeeperError):
    """Rule tables failed validation at load time."""
