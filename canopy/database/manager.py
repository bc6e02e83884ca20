"""
canopy.database.manager — Resilient Persistence Manager
========================================================

**Why this file exists:**
The ledger must keep answering even when PostgreSQL doesn't.  This module
owns the connection lifecycle and decides which data accessor the rest of
canopy talks to:

    UNINITIALIZED ──initialize()──▶ CONNECTING ──ok──▶ CONNECTED
                                         │                 │ 3 failed health checks
                                         ▼ exhausted       ▼
                                      DEGRADED ◀───────────┘
                                         │ reconnect task succeeds
                                         └──────────────▶ CONNECTED
    any state ──shutdown()──▶ SHUTTING_DOWN ──▶ STOPPED

While CONNECTED two background tasks run on the event loop: a health check
(``SELECT 1`` plus a ``status_snapshots`` heartbeat) and periodic
retention maintenance.  While DEGRADED only the reconnect task runs, and
:attr:`PersistenceManager.access` hands out :class:`DegradedDataAccess`.

A failing schema migration during :meth:`initialize` is fatal.  During
recovery it is not: the manager stays degraded and tries again later.

Usage::

    manager = PersistenceManager.from_env(load_config())
    await manager.initialize()            # never raises for connectivity
    account = await run_db(manager.access.get_or_create, "42", "realm-1")
    ...
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from functools import partial

from dotenv import load_dotenv
from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from canopy.config import CanopyConfig, EconomySettings, PersistenceSettings, RetentionSettings
from canopy.database.access import DataAccess, DegradedDataAccess, LiveDataAccess
from canopy.database.engine import (
    QueryStats,
    create_db_engine,
    get_session,
    instrument_engine,
    ping,
    run_db,
)
from canopy.database.migrations import MIGRATIONS, Migration, MigrationRunner
from canopy.database.models import StatusSnapshot
from canopy.errors import ConnectionExhausted, MigrationFailed, PersistenceUnavailable
from canopy.services.retention_service import run_retention_cleanup

logger = logging.getLogger(__name__)

# Failures that mean "the database isn't there right now".
CONNECTIVITY_ERRORS = (SQLAlchemyError, OSError, TimeoutError)


class PersistenceState(enum.StrEnum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PersistenceStatus:
    state: PersistenceState
    connected: bool
    degraded: bool
    attempt_count: int
    last_health_check: datetime | None
    last_health_check_ok: datetime | None
    connection_established_at: datetime | None
    total_queries: int
    total_errors: int
    consecutive_health_failures: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("last_health_check", "last_health_check_ok", "connection_established_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class PersistenceManager:
    """Owns the engine, the active data accessor and the background tasks.

    *engine_factory* builds a fresh :class:`Engine` for every connection
    attempt; the manager disposes engines it gives up on.
    """

    def __init__(
        self,
        settings: PersistenceSettings,
        engine_factory: Callable[[], Engine],
        *,
        economy: EconomySettings | None = None,
        retention: RetentionSettings | None = None,
        migrations: Sequence[Migration] | None = None,
    ) -> None:
        self.settings = settings
        self.economy = economy or EconomySettings()
        self.retention = retention or RetentionSettings()
        self._engine_factory = engine_factory
        self._migrations = list(MIGRATIONS if migrations is None else migrations)

        self.state = PersistenceState.UNINITIALIZED
        self.engine: Engine | None = None
        self.stats = QueryStats()
        self.attempt_count = 0
        self.connection_established_at: datetime | None = None
        self.last_health_check: datetime | None = None
        self.last_health_check_ok: datetime | None = None
        self.consecutive_health_failures = 0

        self._access: DataAccess | None = None
        self._health_task: asyncio.Task | None = None
        self._maintenance_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @classmethod
    def from_env(cls, config: CanopyConfig | None = None) -> PersistenceManager:
        """Build a manager for ``DATABASE_URL`` (read from the env / ``.env``)."""
        load_dotenv()
        url = os.getenv("DATABASE_URL")
        if not url:
            raise RuntimeError(
                "DATABASE_URL is not set.  "
                "Copy .env.example → .env and set a valid PostgreSQL URL."
            )
        config = config or CanopyConfig()
        return cls(
            config.persistence,
            partial(create_db_engine, url, config.persistence),
            economy=config.economy,
            retention=config.retention,
        )

    # -------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------
    @property
    def access(self) -> DataAccess:
        """The accessor to use *right now*; fetch it on every call."""
        if self._access is None:
            raise PersistenceUnavailable(
                f"No data accessor available (persistence state: {self.state})"
            )
        return self._access

    @property
    def connected(self) -> bool:
        return self.state is PersistenceState.CONNECTED

    @property
    def degraded(self) -> bool:
        return self.state is PersistenceState.DEGRADED

    def get_status(self) -> PersistenceStatus:
        return PersistenceStatus(
            state=self.state,
            connected=self.connected,
            degraded=self.degraded,
            attempt_count=self.attempt_count,
            last_health_check=self.last_health_check,
            last_health_check_ok=self.last_health_check_ok,
            connection_established_at=self.connection_established_at,
            total_queries=self.stats.total_queries,
            total_errors=self.stats.total_errors,
            consecutive_health_failures=self.consecutive_health_failures,
        )

    # -------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------
    async def initialize(self) -> bool:
        """Connect, migrate and go live.

        Returns ``True`` when connected, ``False`` when the manager started
        in degraded mode.  Raises :class:`MigrationFailed` if the schema
        can't be brought up to date.
        """
        if self.state not in (PersistenceState.UNINITIALIZED, PersistenceState.STOPPED):
            logger.warning("initialize() called in state %s; ignoring", self.state)
            return self.connected

        self.state = PersistenceState.CONNECTING
        try:
            engine = await self.connect_with_retry()
        except ConnectionExhausted as exc:
            logger.error("%s; starting in degraded mode", exc)
            self.enable_degraded_mode()
            return False

        try:
            await run_db(self._run_migrations, engine)
        except MigrationFailed:
            logger.critical("Schema migration failed at startup; refusing to start", exc_info=True)
            self.stats.record_error()
            engine.dispose()
            self.state = PersistenceState.STOPPED
            raise

        self._go_live(engine)
        return True

    async def connect_with_retry(self) -> Engine:
        """Open a verified engine, backing off exponentially between attempts.

        Raises :class:`ConnectionExhausted` after
        ``max_connection_attempts`` failures.
        """
        max_attempts = self.settings.max_connection_attempts
        for attempt in range(1, max_attempts + 1):
            self.attempt_count = attempt
            engine = None
            try:
                engine = self._engine_factory()
                instrument_engine(engine, self.stats)
                latency = await asyncio.wait_for(
                    run_db(ping, engine), timeout=self.settings.connect_timeout_seconds
                )
            except CONNECTIVITY_ERRORS as exc:
                self.stats.record_error()
                if engine is not None:
                    engine.dispose()
                logger.warning(
                    "Database connection attempt %d/%d failed: %r",
                    attempt, max_attempts, exc,
                )
                if attempt < max_attempts:
                    await asyncio.sleep(self.settings.backoff_delay(attempt))
                continue

            self.attempt_count = 0
            self.connection_established_at = datetime.now(UTC)
            logger.info("Database connected on attempt %d (%.1f ms)", attempt, latency)
            return engine

        raise ConnectionExhausted(max_attempts)

    def _run_migrations(self, engine: Engine) -> list[str]:
        return MigrationRunner(engine, self._migrations).run()

    def _go_live(self, engine: Engine) -> None:
        self.engine = engine
        self._access = LiveDataAccess(engine, self.economy)
        self.consecutive_health_failures = 0
        self.state = PersistenceState.CONNECTED
        self._start_background_tasks()
        logger.info("Persistence is live")

    # -------------------------------------------------------------------
    # Degraded mode
    # -------------------------------------------------------------------
    def enable_degraded_mode(self) -> None:
        """Swap in the degraded accessor and start trying to reconnect.

        Must be called from the event loop thread.
        """
        if self.state is PersistenceState.DEGRADED:
            return
        logger.warning("Persistence entering DEGRADED mode: writes are dropped until the database returns")

        self.state = PersistenceState.DEGRADED
        self._access = DegradedDataAccess(self.economy)
        self._stop_task("_health_task")
        self._stop_task("_maintenance_task")
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
        self.connection_established_at = None

        if self._reconnect_task is None:
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_loop(), name="canopy-reconnect"
            )

    async def recover_from_degraded_mode(self) -> bool:
        """One reconnect attempt: connect, migrate, go live.

        Failures (including a failing migration) leave the manager degraded.
        """
        if self.state is not PersistenceState.DEGRADED:
            return self.connected

        engine = None
        try:
            engine = self._engine_factory()
            instrument_engine(engine, self.stats)
            await asyncio.wait_for(
                run_db(ping, engine), timeout=self.settings.connect_timeout_seconds
            )
            await run_db(self._run_migrations, engine)
        except (*CONNECTIVITY_ERRORS, MigrationFailed) as exc:
            self.stats.record_error()
            if engine is not None:
                engine.dispose()
            logger.warning("Reconnect attempt failed, staying degraded: %r", exc)
            return False

        if self.state is not PersistenceState.DEGRADED:
            # shutdown() ran while we were connecting
            engine.dispose()
            return False

        self.connection_established_at = datetime.now(UTC)
        logger.info("Database connection restored; leaving degraded mode")
        self._go_live(engine)
        return True

    async def _reconnect_loop(self) -> None:
        try:
            while self.state is PersistenceState.DEGRADED:
                await asyncio.sleep(self.settings.reconnect_interval_seconds)
                if self.state is not PersistenceState.DEGRADED:
                    break
                try:
                    if await self.recover_from_degraded_mode():
                        break
                except Exception:
                    logger.exception("Reconnect attempt crashed", extra={"task": "reconnect"})
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # -------------------------------------------------------------------
    # Health check
    # -------------------------------------------------------------------
    def _heartbeat(self, engine: Engine) -> float:
        latency = ping(engine)
        with get_session(engine) as session:
            session.add(StatusSnapshot(
                status="healthy",
                latency_ms=round(latency, 3),
                total_queries=self.stats.total_queries,
                total_errors=self.stats.total_errors,
            ))
        return latency

    async def perform_health_check(self) -> bool:
        """Probe the database once.

        ``health_failure_threshold`` consecutive failures switch the manager
        to degraded mode; a single failure only counts.
        """
        engine = self.engine
        if self.state is not PersistenceState.CONNECTED or engine is None:
            return False

        self.last_health_check = datetime.now(UTC)
        try:
            latency = await asyncio.wait_for(
                run_db(self._heartbeat, engine),
                timeout=self.settings.health_check_timeout_seconds,
            )
        except CONNECTIVITY_ERRORS as exc:
            self.stats.record_error()
            self.consecutive_health_failures += 1
            logger.warning(
                "Health check failed (%d/%d consecutive): %r",
                self.consecutive_health_failures,
                self.settings.health_failure_threshold,
                exc,
            )
            if self.consecutive_health_failures >= self.settings.health_failure_threshold:
                logger.error(
                    "Database lost after %d failed health checks",
                    self.consecutive_health_failures,
                )
                self.enable_degraded_mode()
            return False

        self.last_health_check_ok = self.last_health_check
        self.consecutive_health_failures = 0
        logger.debug("Health check ok (%.1f ms)", latency)
        return True

    async def _health_loop(self) -> None:
        while self.state is PersistenceState.CONNECTED:
            await asyncio.sleep(self.settings.health_check_interval_seconds)
            if self.state is not PersistenceState.CONNECTED:
                break
            try:
                await self.perform_health_check()
            except Exception:
                logger.exception("Health check crashed", extra={"task": "health"})

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------
    async def perform_maintenance(self) -> dict[str, int] | None:
        """Run retention cleanup.  Skipped unless connected; never raises."""
        engine = self.engine
        if self.state is not PersistenceState.CONNECTED or engine is None:
            logger.info("Maintenance skipped: persistence is %s", self.state)
            return None

        try:
            result = await run_db(
                run_retention_cleanup,
                engine,
                audit_log_days=self.retention.audit_log_days,
                status_snapshot_days=self.retention.status_snapshot_days,
                batch_size=self.retention.batch_size,
            )
        except Exception:
            self.stats.record_error()
            logger.exception("Maintenance failed", extra={"task": "maintenance"})
            return None

        logger.info(
            "Maintenance complete: %d audit entries, %d snapshots removed",
            result["audit_deleted"], result["snapshots_deleted"],
        )
        return result

    async def _maintenance_loop(self) -> None:
        while self.state is PersistenceState.CONNECTED:
            await asyncio.sleep(self.settings.maintenance_interval_seconds)
            if self.state is not PersistenceState.CONNECTED:
                break
            await self.perform_maintenance()

    # -------------------------------------------------------------------
    # Task bookkeeping
    # -------------------------------------------------------------------
    def _start_background_tasks(self) -> None:
        loop = asyncio.get_running_loop()
        if self._health_task is None:
            self._health_task = loop.create_task(self._health_loop(), name="canopy-health")
        if self._maintenance_task is None:
            self._maintenance_task = loop.create_task(
                self._maintenance_loop(), name="canopy-maintenance"
            )

    def _stop_task(self, attr: str) -> None:
        task: asyncio.Task | None = getattr(self, attr)
        setattr(self, attr, None)
        # The health loop may be the caller; it exits on its own once the state changes.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # -------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------
    async def shutdown(self) -> None:
        """Stop every task and release the engine.  Safe to call twice."""
        if self.state is PersistenceState.STOPPED:
            return
        logger.info("Persistence shutting down")
        self.state = PersistenceState.SHUTTING_DOWN

        tasks = [
            t for t in (self._health_task, self._maintenance_task, self._reconnect_task)
            if t is not None and t is not asyncio.current_task()
        ]
        self._health_task = self._maintenance_task = self._reconnect_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
        self._access = None
        self.connection_established_at = None
        self.consecutive_health_failures = 0
        self.state = PersistenceState.STOPPED
        logger.info("Persistence stopped")
