"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from scorekeeper.bootstrap import Scorekeeper, build_scorekeeper
from scorekeeper.collaborators import CommentInfo, EntityInfo
from scorekeeper.database.models import Base
from scorekeeper.database.seed import seed_task_definitions
from scorekeeper.engine.rules import RuleStore, load_rules

# Wednesday 2026-03-11, 12:00 in Europe/Istanbul (ISO week 2026-W11)
START = datetime(2026, 3, 11, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FixedClock:
    """Injectable clock; tests move it explicitly."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)


class FakeIdentity:
    def __init__(self) -> None:
        self.current: int | None = None
        self.pro: set[int] = set()
        self.circles: dict[int, int] = {}
        self.names: dict[int, str] = {}

    def current_user_id(self) -> int | None:
        return self.current

    def is_pro(self, user_id: int) -> bool:
        return user_id in self.pro

    def circle_id(self, user_id: int) -> int | None:
        return self.circles.get(user_id)

    def circle_members(self, circle_id: int) -> list[int]:
        return sorted(u for u, c in self.circles.items() if c == circle_id)

    def display_name(self, user_id: int) -> str | None:
        return self.names.get(user_id)


class FakeContent:
    def __init__(self) -> None:
        self.entities: dict[tuple[str | None, str], EntityInfo] = {}
        self.comments: dict[str, CommentInfo] = {}

    def add_entity(self, entity_type: str, entity_id, **fields) -> EntityInfo:
        info = EntityInfo(entity_type, str(entity_id), **fields)
        self.entities[(entity_type, str(entity_id))] = info
        return info

    def add_comment(self, comment_id, author_id: int, **fields) -> CommentInfo:
        info = CommentInfo(str(comment_id), author_id, **fields)
        self.comments[str(comment_id)] = info
        return info

    def get_entity(self, entity_type: str | None, entity_id: str) -> EntityInfo | None:
        return self.entities.get((entity_type, str(entity_id)))

    def get_comment(self, comment_id: str) -> CommentInfo | None:
        return self.comments.get(str(comment_id))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all scoring tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).  The pysqlite
    driver's own transaction handling is switched off so SAVEPOINTs behave
    as they do on PostgreSQL.  Sessions sharing the one connection also
    share its transaction, so ``db_session`` may be queried at any point.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        # StaticPool hands every session the same connection; join an open txn
        if not conn.connection.dbapi_connection.in_transaction:
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session for direct assertions on table contents."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def content() -> FakeContent:
    return FakeContent()


@pytest.fixture
def rules() -> RuleStore:
    return load_rules()


@pytest.fixture
def make_app(db_engine, identity, content, clock):
    """Factory: build a fully wired engine, optionally overriding feature flags."""
    def _make(rules: RuleStore | None = None, **flags) -> Scorekeeper:
        store = rules or load_rules(flag_overrides=flags or None)
        seed_task_definitions(db_engine, store)
        return build_scorekeeper(db_engine, identity, content, rules=store, clock=clock)
    return _make


@pytest.fixture
def app(make_app) -> Scorekeeper:
    return make_app()


@pytest.fixture
def dispatcher(app):
    return app.dispatcher
