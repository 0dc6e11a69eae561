"""
scorekeeper.collaborators — Host Platform Contracts
====================================================

The engine never reads the host platform's users, roles, posts or comments
directly.  The host implements these protocols and hands them to
:func:`scorekeeper.bootstrap.build_dispatcher`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class EntityInfo:
    """A post-like object (article, diet plan, exercise, profile...)."""

    entity_type: str
    entity_id: str
    author_id: int | None = None
    title: str | None = None
    slug: str | None = None
    reward_points: int | None = None  # explicit per-entity reward for dynamic rules


@dataclass(frozen=True, slots=True)
class CommentInfo:
    comment_id: str
    author_id: int
    like_count: int = 0
    entity_type: str | None = None
    entity_id: str | None = None
    parent_author_id: int | None = None  # set when the comment is a reply
    content_author_id: int | None = None


class IdentityProvider(Protocol):
    def current_user_id(self) -> int | None: ...

    def is_pro(self, user_id: int) -> bool: ...

    def circle_id(self, user_id: int) -> int | None: ...

    def circle_members(self, circle_id: int) -> list[int]: ...

    def display_name(self, user_id: int) -> str | None: ...


class ContentLookup(Protocol):
    def get_entity(self, entity_type: str | None, entity_id: str) -> EntityInfo | None: ...

    def get_comment(self, comment_id: str) -> CommentInfo | None: ...


class NotificationSink(Protocol):
    """Fire-and-forget notification creation."""

    def create(self, user_id: int, notification_type: str, params: dict[str, Any]) -> Any: ...
