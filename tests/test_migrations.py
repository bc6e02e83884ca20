"""
tests/test_migrations.py — Schema Migrator Tests
=================================================

Runs the built-in and ad-hoc migrations against a bare in-memory SQLite
database (no ``create_all``).
"""

from __future__ import annotations

import logging

import pytest
import sqlalchemy as sa
from sqlalchemy import create_engine, inspect
from sqlalchemy.pool import StaticPool

from canopy.database.migrations import MIGRATIONS, Migration, MigrationRunner
from canopy.database.models import Base
from canopy.errors import MigrationFailed


@pytest.fixture
def bare_engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def _create_widgets(op):
    op.create_table("widgets", sa.Column("id", sa.Integer, primary_key=True))


def _drop_widgets(op):
    op.drop_table("widgets")


def _create_gizmos(op):
    op.create_table("gizmos", sa.Column("id", sa.Integer, primary_key=True))


def _drop_gizmos(op):
    op.drop_table("gizmos")


def _explode(op):
    raise RuntimeError("boom")


WIDGETS = Migration("a_widgets", _create_widgets, _drop_widgets, description="widgets table")
GIZMOS = Migration("b_gizmos", _create_gizmos, _drop_gizmos, destructive_down=True)


class TestBuiltInMigrations:
    def test_fresh_database(self, bare_engine):
        executed = MigrationRunner(bare_engine).run()

        assert executed == [m.name for m in MIGRATIONS]
        tables = set(inspect(bare_engine).get_table_names())
        assert {"accounts", "ledger_transactions", "audit_log",
                "status_snapshots", "migration_history"} <= tables

    def test_second_run_is_a_no_op(self, bare_engine):
        runner = MigrationRunner(bare_engine)
        runner.run()
        assert runner.run() == []
        assert runner.pending() == []
        assert runner.applied() == [m.name for m in MIGRATIONS]

    def test_schema_matches_models(self, bare_engine):
        """The migrated schema has exactly the columns the ORM maps, and its indexes."""
        MigrationRunner(bare_engine).run()
        inspector = inspect(bare_engine)

        for table in Base.metadata.sorted_tables:
            reflected = {c["name"] for c in inspector.get_columns(table.name)}
            assert reflected == {c.name for c in table.columns}, table.name

            indexes = {ix["name"] for ix in inspector.get_indexes(table.name)}
            assert {ix.name for ix in table.indexes} <= indexes, table.name

    def test_up_steps_tolerate_existing_schema(self, db_engine):
        """Running against a create_all() schema only records history."""
        executed = MigrationRunner(db_engine).run()
        assert executed == [m.name for m in MIGRATIONS]

    def test_rollback_work_preferences(self, bare_engine):
        runner = MigrationRunner(bare_engine)
        runner.run()

        assert runner.rollback_last() == "003_work_preferences"
        columns = {c["name"] for c in inspect(bare_engine).get_columns("accounts")}
        assert "favorite_work_kind" not in columns
        assert [m.name for m in runner.pending()] == ["003_work_preferences"]

    def test_status(self, bare_engine):
        runner = MigrationRunner(bare_engine)
        assert all(not row["applied"] for row in runner.status())

        runner.run()
        status = runner.status()
        assert [row["name"] for row in status] == [m.name for m in MIGRATIONS]
        assert all(row["applied"] and row["executed_at"] for row in status)

    def test_checksums_are_recorded(self):
        assert all(len(m.checksum) == 64 for m in MIGRATIONS)


class TestRunner:
    def test_duplicate_names_rejected(self, bare_engine):
        with pytest.raises(ValueError):
            MigrationRunner(bare_engine, [WIDGETS, WIDGETS])

    def test_failure_stops_and_is_not_recorded(self, bare_engine):
        runner = MigrationRunner(
            bare_engine, [WIDGETS, Migration("boom", _explode), GIZMOS]
        )
        with pytest.raises(MigrationFailed) as exc_info:
            runner.run()

        assert exc_info.value.name == "boom"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert runner.applied() == ["a_widgets"]
        assert "gizmos" not in inspect(bare_engine).get_table_names()

    def test_fixed_migration_resumes(self, bare_engine):
        with pytest.raises(MigrationFailed):
            MigrationRunner(bare_engine, [WIDGETS, Migration("b_gizmos", _explode)]).run()

        executed = MigrationRunner(bare_engine, [WIDGETS, GIZMOS]).run()
        assert executed == ["b_gizmos"]

    def test_rollback_last(self, bare_engine):
        runner = MigrationRunner(bare_engine, [WIDGETS])
        runner.run()

        assert runner.rollback_last() == "a_widgets"
        assert runner.applied() == []
        assert "widgets" not in inspect(bare_engine).get_table_names()

    def test_rollback_with_nothing_applied(self, bare_engine):
        assert MigrationRunner(bare_engine, [WIDGETS]).rollback_last() is None

    def test_rollback_without_down_fails(self, bare_engine):
        runner = MigrationRunner(bare_engine, [Migration("a_widgets", _create_widgets)])
        runner.run()

        with pytest.raises(MigrationFailed):
            runner.rollback_last()
        assert runner.applied() == ["a_widgets"]

    def test_rollback_of_unknown_migration_fails(self, bare_engine):
        MigrationRunner(bare_engine, [WIDGETS]).run()
        with pytest.raises(MigrationFailed):
            MigrationRunner(bare_engine, [GIZMOS]).rollback_last()

    def test_destructive_rollback_warns(self, bare_engine, caplog):
        runner = MigrationRunner(bare_engine, [WIDGETS, GIZMOS])
        runner.run()

        with caplog.at_level(logging.WARNING, logger="canopy.database.migrations"):
            assert runner.rollback_last() == "b_gizmos"
        assert "DESTRUCTIVE" in caplog.text
