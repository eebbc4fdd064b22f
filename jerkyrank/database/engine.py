"""
jerkyrank.database.engine - Connection Pools & Session Helpers
===============================================================

The engine runs three **logical pools**, each a separate SQLAlchemy
:class:`Engine` sized on its own:

* ``interactive`` - request handlers (leaderboard reads, ranking writes).
* ``webhook``     - order / product webhook workers.
* ``background``  - ClassificationQueue workers, warm-up, resets.

A slow classification backlog therefore can never starve request
handlers of connections.  Acquisition is bounded by ``pool_timeout``;
on PostgreSQL each connection also carries a ``statement_timeout`` so
every store call runs under a deadline.

Store code is synchronous.  Async callers (FastAPI lifespan hooks) hop
onto a worker thread with :func:`run_db`.

Usage::

    from jerkyrank.database.engine import create_pools, init_db, get_session

    pools = create_pools(cfg)            # reads DATABASE_URL from .env
    init_db(pools.interactive)

    with get_session(pools.background) as session:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from jerkyrank.database.models import Base

if TYPE_CHECKING:
    from jerkyrank.config import EngineConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

POOL_NAMES: tuple[str, ...] = ("interactive", "webhook", "background")

# Optional per-pool override, e.g. a read replica for webhooks
_POOL_URL_ENV: dict[str, str] = {
    "interactive": "DATABASE_URL",
    "webhook": "DATABASE_URL_WEBHOOK",
    "background": "DATABASE_URL_BACKGROUND",
}


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EnginePools:
    """The three logical pools.  Tests may pass the same engine three times."""

    interactive: Engine
    webhook: Engine
    background: Engine

    @classmethod
    def single(cls, engine: Engine) -> EnginePools:
        return cls(interactive=engine, webhook=engine, background=engine)

    def dispose(self) -> None:
        for engine in {id(e): e for e in (self.interactive, self.webhook, self.background)}.values():
            engine.dispose()


def _database_url(pool: str) -> str:
    url = os.getenv(_POOL_URL_ENV[pool]) or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )
    return url


def create_db_engine(pool: str, cfg: EngineConfig) -> Engine:
    """Build the :class:`Engine` backing one logical pool.

    Parameters
    ----------
    pool:
        One of :data:`POOL_NAMES`.
    cfg:
        Supplies pool sizing, acquisition timeout and statement timeout.

    Raises
    ------
    RuntimeError
        If ``DATABASE_URL`` is not set.
    """
    if pool not in POOL_NAMES:
        raise ValueError(f"Unknown pool {pool!r}; expected one of {POOL_NAMES}")

    url = _database_url(pool)
    sizing = cfg.pools[pool]
    connect_args: dict = {}
    if url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={cfg.statement_timeout_ms}"
        connect_args["application_name"] = f"jerkyrank-{pool}"

    engine = create_engine(
        url,
        echo=False,
        pool_size=sizing.pool_size,
        max_overflow=sizing.max_overflow,
        pool_pre_ping=True,
        pool_timeout=cfg.pool_timeout_seconds,
        pool_recycle=3600,
        connect_args=connect_args,
    )
    logger.info(
        "Database pool '%s' created → %s (size=%d, overflow=%d)",
        pool, engine.url.host, sizing.pool_size, sizing.max_overflow,
    )
    return engine


def create_pools(cfg: EngineConfig) -> EnginePools:
    return EnginePools(
        interactive=create_db_engine("interactive", cfg),
        webhook=create_db_engine("webhook", cfg),
        background=create_db_engine("background", cfg),
    )


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`jerkyrank.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** store function on a background thread."""
    return await asyncio.to_thread(func, *args, **kwargs)
