"""
tests/conftest.py - Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of jerkyrank.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from jerkyrank.config import config_from_dict  # noqa: E402
from jerkyrank.database.engine import EnginePools  # noqa: E402
from jerkyrank.database.models import (  # noqa: E402
    AchievementDefinition,
    Base,
    Product,
    User,
)
from jerkyrank.engine.clock import FrozenClock  # noqa: E402

_jsonb_sqlite_registered = False

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


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
# Builders shared across test modules
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    user_id: int,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    handle: str | None = None,
    hide_name_privacy: bool = False,
    active: bool = True,
    created_at: datetime | None = None,
) -> None:
    with Session(engine) as session:
        session.add(User(
            id=user_id,
            first_name=first_name,
            last_name=last_name,
            handle=handle,
            hide_name_privacy=hide_name_privacy,
            active=active,
            created_at=created_at or START,
        ))
        session.commit()


def add_definition(
    engine: Engine,
    code: str,
    requirement: dict[str, Any],
    *,
    points: int = 100,
    has_tiers: bool = False,
    **extra: Any,
) -> None:
    """Insert one definition; ids follow insertion order."""
    name = extra.pop("name", code.replace("_", " ").title())
    with Session(engine) as session:
        session.add(AchievementDefinition(
            code=code,
            name=name,
            requirement=requirement,
            points=points,
            has_tiers=has_tiers,
            **extra,
        ))
        session.commit()


def add_products(engine: Engine, *products: tuple[str, str | None, str | None]) -> None:
    """``(id, vendor, animal_type)`` triples, all rankable."""
    with Session(engine) as session:
        for product_id, vendor, animal in products:
            session.add(Product(
                id=product_id, title=product_id.title(), vendor=vendor, animal_type=animal,
            ))
        session.commit()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from jerkyrank.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all JerkyRank tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def cfg():
    """Fast, deterministic settings: no backoff sleeps, no timer flushes."""
    return config_from_dict({
        "batch_size": 3,
        "batch_interval_seconds": 3600,
        "classification_workers": 2,
        "retry_base_delay_seconds": 0,
        "warm_spacing_seconds": 0,
        "ready_retry_delay_seconds": 0,
        "ready_max_retries": 2,
    })


@pytest.fixture
def runtime(db_engine, cfg, clock):
    """A fully wired runtime on one SQLite engine.

    Classification workers are not started; tests drive
    ``runtime.queue.classify`` directly.
    """
    from jerkyrank.services.engagement_service import EngagementRuntime

    rt = EngagementRuntime(EnginePools.single(db_engine), cfg, clock=clock)
    yield rt
    rt.shutdown()


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()
