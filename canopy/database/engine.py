"""
canopy.database.engine — Database Connection & Async Helper
============================================================

**Why this file exists:**
Callers of the ledger live on an ``asyncio`` event loop.  SQLAlchemy +
psycopg2 is **synchronous** — calling the database directly from async code
would stall the loop until the query returns.

The bridge pattern used everywhere in canopy:

    1. An async caller wants a ledger operation.
    2. It calls ``await run_db(some_function, arg1, arg2)``.
    3. ``run_db`` ships the synchronous function to a **thread pool** via
       ``asyncio.to_thread()``.
    4. The DB work happens on a background thread; the event loop stays free.
    5. The result is awaited back in the caller.

Usage::

    from canopy.database.engine import create_db_engine, run_db

    engine = create_db_engine()          # reads DATABASE_URL from the env
    account = await run_db(account_service.get_or_create, engine, "42", "realm", settings)
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from canopy.config import PersistenceSettings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(
    url: str | None = None,
    settings: PersistenceSettings | None = None,
) -> Engine:
    """Build a SQLAlchemy :class:`Engine`.

    *url* defaults to the ``DATABASE_URL`` env var.  Pool sizing comes from
    *settings* (``pool_size=5``, ``max_overflow=10``, ``pool_timeout=10``,
    ``pool_recycle=3600`` by default) and is skipped for SQLite, whose
    pools don't take those arguments.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    kwargs: dict = {"echo": False, "pool_pre_ping": True}
    if make_url(url).get_backend_name() != "sqlite":
        if settings is None:
            from canopy.config import PersistenceSettings

            settings = PersistenceSettings()
        kwargs.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,     # Fail instead of hanging forever
            pool_recycle=settings.pool_recycle,
        )

    engine = create_engine(url, **kwargs)
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Query / error counters
# ---------------------------------------------------------------------------
class QueryStats:
    """Thread-safe counters fed by engine events (DB work runs on worker threads)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_queries = 0
        self.total_errors = 0

    def record_query(self) -> None:
        with self._lock:
            self.total_queries += 1

    def record_error(self) -> None:
        with self._lock:
            self.total_errors += 1


def instrument_engine(engine: Engine, stats: QueryStats) -> None:
    """Count every statement executed on *engine* into *stats*.

    Errors are recorded by the persistence manager where it catches them.
    """

    @event.listens_for(engine, "before_cursor_execute")
    def _count_query(conn, cursor, statement, parameters, context, executemany):
        stats.record_query()


def ping(engine: Engine) -> float:
    """Run ``SELECT 1`` and return the round-trip latency in milliseconds."""
    started = time.perf_counter()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return (time.perf_counter() - started) * 1000


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(AuditLogEntry(realm_id="r1", action_type="note"))
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
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
    """Run a **synchronous** database function on a background thread.

    Every DB call made from async code goes through this wrapper::

        result = await run_db(my_sync_db_function, engine, user_id)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is
    never blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
