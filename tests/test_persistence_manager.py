"""
tests/test_persistence_manager.py — Persistence Manager Lifecycle Tests
========================================================================

Connect / degrade / recover / shutdown against a file-backed SQLite
database.  Unreachable databases are simulated with engine factories that
raise.  Each test drives its own event loop with ``asyncio.run`` and shuts
the manager down before the loop closes.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError

import canopy.database.manager as manager_module
from canopy.config import PersistenceSettings
from canopy.database.access import DegradedDataAccess, LiveDataAccess
from canopy.database.engine import get_session
from canopy.database.manager import PersistenceManager, PersistenceState
from canopy.database.migrations import Migration
from canopy.database.models import StatusSnapshot
from canopy.errors import ConnectionExhausted, MigrationFailed, PersistenceUnavailable

FAST = PersistenceSettings(
    max_connection_attempts=3,
    backoff_base_seconds=0,
    connect_timeout_seconds=5,
    reconnect_interval_seconds=0.01,
    health_check_interval_seconds=3600,
    health_check_timeout_seconds=5,
    health_failure_threshold=3,
    maintenance_interval_seconds=3600,
)


def run_async(coro):
    return asyncio.run(coro)


def _down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is down"))


@pytest.fixture
def sqlite_factory(tmp_path):
    path = tmp_path / "canopy.db"

    def factory():
        return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})

    return factory


@pytest.fixture
def flaky_factory(sqlite_factory):
    """A factory that fails until ``flaky_factory.up = True``."""

    def factory():
        if not factory.up:
            raise ConnectionRefusedError("connection refused")
        return sqlite_factory()

    factory.up = False
    return factory


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestInitialize:
    def test_connects_and_migrates(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                assert await manager.initialize() is True
                assert manager.state is PersistenceState.CONNECTED
                assert isinstance(manager.access, LiveDataAccess)
                assert manager.attempt_count == 0
                assert manager.connection_established_at is not None

                account = manager.access.get_or_create("alice", "realm-1")
                assert account.primary_balance == manager.economy.starting_balance
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_exhausted_retries_start_degraded(self):
        async def scenario():
            manager = PersistenceManager(FAST, _down)
            try:
                assert await manager.initialize() is False
                assert manager.degraded
                assert isinstance(manager.access, DegradedDataAccess)
                assert manager.attempt_count == FAST.max_connection_attempts
                assert manager.stats.total_errors >= FAST.max_connection_attempts
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_backoff_between_attempts(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        settings = PersistenceSettings(
            max_connection_attempts=4, backoff_base_seconds=1, backoff_max_seconds=5,
        )

        async def scenario():
            manager = PersistenceManager(settings, _down)
            monkeypatch.setattr(manager_module.asyncio, "sleep", fake_sleep)
            with pytest.raises(ConnectionExhausted) as exc_info:
                await manager.connect_with_retry()
            assert exc_info.value.attempts == 4

        run_async(scenario())
        assert delays == [2, 4, 5]

    def test_failing_migration_is_fatal(self, sqlite_factory):
        def explode(op):
            raise RuntimeError("bad migration")

        async def scenario():
            manager = PersistenceManager(
                FAST, sqlite_factory, migrations=[Migration("001_boom", explode)]
            )
            with pytest.raises(MigrationFailed):
                await manager.initialize()
            assert manager.state is PersistenceState.STOPPED
            with pytest.raises(PersistenceUnavailable):
                manager.access

        run_async(scenario())

    def test_second_initialize_is_ignored(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                engine = manager.engine
                assert await manager.initialize() is True
                assert manager.engine is engine
            finally:
                await manager.shutdown()

        run_async(scenario())


class TestDegradedMode:
    def test_degraded_access_never_raises(self):
        async def scenario():
            manager = PersistenceManager(FAST, _down)
            try:
                await manager.initialize()
                access = manager.access
                account = access.get_or_create("alice", "realm-1")
                assert account.primary_balance == 0
                assert access.history("alice", "realm-1") == []
                assert access.leaderboard("realm-1", "total_value", 10) == []
                assert access.rank("alice", "realm-1", "total_value") == 0
                result = access.admin_adjust(actor_id="mod", user_id="alice",
                                             realm_id="realm-1", amount=10)
                assert result.degraded
                assert result.transaction is None
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_recovers_when_database_returns(self, flaky_factory):
        async def scenario():
            manager = PersistenceManager(FAST, flaky_factory)
            try:
                assert await manager.initialize() is False
                flaky_factory.up = True
                await _wait_for(lambda: manager.connected)

                assert isinstance(manager.access, LiveDataAccess)
                assert manager.access.get_or_create("bob", "realm-1").id is not None
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_recovery_attempt_while_down_stays_degraded(self, flaky_factory):
        async def scenario():
            manager = PersistenceManager(FAST, flaky_factory)
            try:
                await manager.initialize()
                assert await manager.recover_from_degraded_mode() is False
                assert manager.degraded
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_failing_migration_during_recovery_stays_degraded(self, flaky_factory):
        def explode(op):
            raise RuntimeError("bad migration")

        async def scenario():
            manager = PersistenceManager(
                FAST, flaky_factory, migrations=[Migration("001_boom", explode)]
            )
            try:
                await manager.initialize()
                flaky_factory.up = True
                assert await manager.recover_from_degraded_mode() is False
                assert manager.degraded
                assert isinstance(manager.access, DegradedDataAccess)
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_enable_degraded_mode_is_idempotent(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(
                PersistenceSettings(reconnect_interval_seconds=3600), sqlite_factory
            )
            try:
                await manager.initialize()
                manager.enable_degraded_mode()
                task = manager._reconnect_task
                manager.enable_degraded_mode()
                assert manager._reconnect_task is task
                assert manager.engine is None
            finally:
                await manager.shutdown()

        run_async(scenario())


class TestHealthCheck:
    def test_success_writes_heartbeat(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                assert await manager.perform_health_check() is True
                assert manager.last_health_check is not None
                assert manager.last_health_check_ok == manager.last_health_check

                with get_session(manager.engine) as session:
                    count = session.scalar(select(func.count()).select_from(StatusSnapshot))
                assert count == 1
                assert manager.stats.total_queries > 0
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_degrades_after_consecutive_failures(self, sqlite_factory, monkeypatch):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                monkeypatch.setattr(manager_module, "ping", _down)

                assert await manager.perform_health_check() is False
                assert await manager.perform_health_check() is False
                assert manager.connected
                assert manager.consecutive_health_failures == 2

                assert await manager.perform_health_check() is False
                assert manager.degraded
                assert isinstance(manager.access, DegradedDataAccess)
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_failed_check_is_still_timestamped(self, sqlite_factory, monkeypatch):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                monkeypatch.setattr(manager_module, "ping", _down)
                assert await manager.perform_health_check() is False
                return manager.get_status().to_dict()
            finally:
                await manager.shutdown()

        status = run_async(scenario())
        assert isinstance(status["last_health_check"], str)
        assert status["last_health_check_ok"] is None
        assert status["consecutive_health_failures"] == 1

    def test_success_resets_failure_count(self, sqlite_factory, monkeypatch):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                real_ping = manager_module.ping
                monkeypatch.setattr(manager_module, "ping", _down)
                await manager.perform_health_check()
                await manager.perform_health_check()

                monkeypatch.setattr(manager_module, "ping", real_ping)
                assert await manager.perform_health_check() is True
                assert manager.consecutive_health_failures == 0
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_skipped_when_not_connected(self):
        async def scenario():
            manager = PersistenceManager(FAST, _down)
            try:
                await manager.initialize()
                assert await manager.perform_health_check() is False
            finally:
                await manager.shutdown()

        run_async(scenario())


class TestMaintenance:
    def test_runs_when_connected(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                result = await manager.perform_maintenance()
                assert result == {"audit_deleted": 0, "snapshots_deleted": 0}
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_skipped_when_degraded(self):
        async def scenario():
            manager = PersistenceManager(FAST, _down)
            try:
                await manager.initialize()
                assert await manager.perform_maintenance() is None
            finally:
                await manager.shutdown()

        run_async(scenario())

    def test_failure_is_logged_not_raised(self, sqlite_factory, monkeypatch):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                monkeypatch.setattr(manager_module, "run_retention_cleanup", _down)
                errors = manager.stats.total_errors
                assert await manager.perform_maintenance() is None
                assert manager.stats.total_errors == errors + 1
            finally:
                await manager.shutdown()

        run_async(scenario())


class TestShutdownAndStatus:
    def test_shutdown_is_idempotent(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            await manager.initialize()
            await manager.shutdown()
            await manager.shutdown()

            assert manager.state is PersistenceState.STOPPED
            assert manager.engine is None
            assert manager._health_task is None
            with pytest.raises(PersistenceUnavailable):
                manager.access

        run_async(scenario())

    def test_shutdown_stops_reconnect_loop(self):
        async def scenario():
            manager = PersistenceManager(FAST, _down)
            await manager.initialize()
            assert manager._reconnect_task is not None
            await manager.shutdown()
            assert manager._reconnect_task is None
            assert manager.state is PersistenceState.STOPPED

        run_async(scenario())

    def test_status_snapshot(self, sqlite_factory):
        async def scenario():
            manager = PersistenceManager(FAST, sqlite_factory)
            try:
                await manager.initialize()
                return manager.get_status().to_dict()
            finally:
                await manager.shutdown()

        status = run_async(scenario())
        assert status["state"] == "connected"
        assert status["connected"] is True
        assert status["degraded"] is False
        assert isinstance(status["connection_established_at"], str)
        assert status["last_health_check"] is None

    def test_from_env_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(manager_module, "load_dotenv", lambda: False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError):
            PersistenceManager.from_env()

    def test_from_env_builds_manager(self, monkeypatch, tmp_path):
        monkeypatch.setattr(manager_module, "load_dotenv", lambda: False)
        monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'env.db'}")
        manager = PersistenceManager.from_env()
        assert manager.state is PersistenceState.UNINITIALIZED
