"""
canopy.database.migrations — Ordered, Recorded Schema Migrations
================================================================

**Why this file exists:**
The persistence manager must bring the schema up to date on every startup
*and* again after recovering from degraded mode — in-process, without a
CLI.  Each migration is a named pair of callables that receive an Alembic
:class:`~alembic.operations.Operations` bound to the live connection, so
the DDL vocabulary is the same ``op.create_table`` / ``op.create_index``
used in ordinary Alembic revision files.

Which migrations have run is recorded in ``migration_history``:

    1. Migrations run in declared order; recorded names are skipped.
    2. Each ``up`` runs in its own transaction together with its history row.
    3. A failing ``up`` is not recorded and raises :class:`MigrationFailed`;
       later migrations don't run.
    4. ``up`` steps check for existing tables/indexes/columns first, so
       re-applying one against an already-migrated schema is harmless.

Usage::

    from canopy.database.migrations import MigrationRunner

    executed = MigrationRunner(engine).run()     # ["001_initial_schema", …]
"""

from __future__ import annotations

import hashlib
import inspect as pyinspect
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import sqlalchemy as sa
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Engine, delete, insert, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from canopy.database.models import MigrationRecord
from canopy.errors import MigrationFailed

logger = logging.getLogger(__name__)

MigrationFn = Callable[[Operations], None]


@dataclass(frozen=True)
class Migration:
    name: str
    up: MigrationFn
    down: MigrationFn | None = None
    description: str = ""
    destructive_down: bool = False

    @property
    def checksum(self) -> str | None:
        """SHA-256 of the ``up`` source, when it can be read."""
        try:
            source = pyinspect.getsource(self.up)
        except (OSError, TypeError):
            return None
        return hashlib.sha256(source.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Existence checks (fresh inspector each time; DDL invalidates the cache)
# ---------------------------------------------------------------------------
def has_table(op: Operations, table: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(table)


def has_index(op: Operations, table: str, index: str) -> bool:
    if not has_table(op, table):
        return False
    return any(ix["name"] == index for ix in sa.inspect(op.get_bind()).get_indexes(table))


def has_column(op: Operations, table: str, column: str) -> bool:
    if not has_table(op, table):
        return False
    return any(col["name"] == column for col in sa.inspect(op.get_bind()).get_columns(table))


def _create_index(op: Operations, name: str, table: str, columns: list, **kw) -> None:
    if not has_index(op, table, name):
        op.create_index(name, table, columns, **kw)


def _drop_index(op: Operations, name: str, table: str) -> None:
    if has_index(op, table, name):
        op.drop_index(name, table_name=table)


# ---------------------------------------------------------------------------
# 001: initial schema
# ---------------------------------------------------------------------------
def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer, nullable=False, server_default="0")


def _initial_schema_up(op: Operations) -> None:
    """Create accounts, ledger_transactions, audit_log and status_snapshots."""

    # --- accounts ---
    if not has_table(op, "accounts"):
        op.create_table(
            "accounts",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("realm_id", sa.String(64), nullable=False),
            _counter("primary_balance"),
            _counter("restricted_balance"),
            _counter("primary_earned"),
            _counter("primary_spent"),
            _counter("restricted_earned"),
            _counter("restricted_spent"),
            _counter("daily_streak"),
            _counter("max_daily_streak"),
            sa.Column("last_daily_claim_at", sa.DateTime(timezone=True), nullable=True),
            _counter("total_daily_claims"),
            _counter("work_streak"),
            sa.Column("last_work_at", sa.DateTime(timezone=True), nullable=True),
            _counter("total_work_completed"),
            _counter("total_transactions"),
            _counter("total_purchases"),
            _counter("gifts_sent"),
            _counter("gifts_received"),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("metadata", postgresql.JSONB, nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("user_id", "realm_id", name="uq_accounts_user_realm"),
            sa.CheckConstraint("primary_balance >= 0", name="ck_accounts_primary_nonneg"),
            sa.CheckConstraint("restricted_balance >= 0", name="ck_accounts_restricted_nonneg"),
            sa.CheckConstraint(
                "primary_earned >= primary_spent", name="ck_accounts_primary_flow"
            ),
            sa.CheckConstraint(
                "restricted_earned >= restricted_spent", name="ck_accounts_restricted_flow"
            ),
        )

    # --- ledger_transactions ---
    if not has_table(op, "ledger_transactions"):
        op.create_table(
            "ledger_transactions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("reference_code", sa.String(40), nullable=False),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("realm_id", sa.String(64), nullable=False),
            sa.Column("counterparty_user_id", sa.String(64), nullable=True),
            sa.Column("kind", sa.String(30), nullable=False),
            sa.Column("currency", sa.String(20), nullable=False),
            sa.Column("amount", sa.Integer, nullable=False),
            sa.Column("description", sa.Text, nullable=False, server_default=""),
            sa.Column("item_reference", sa.String(100), nullable=True),
            sa.Column("correlation_ref", sa.String(40), nullable=True),
            sa.Column("idempotency_key", sa.String(128), nullable=True),
            sa.Column(
                "requires_restricted_access", sa.Boolean, nullable=False,
                server_default=sa.false(),
            ),
            sa.Column(
                "involves_restricted_content", sa.Boolean, nullable=False,
                server_default=sa.false(),
            ),
            sa.Column(
                "compliance_verified", sa.Boolean, nullable=False, server_default=sa.false()
            ),
            sa.Column("balance_after", sa.Integer, nullable=False),
            sa.Column("balance_snapshot", postgresql.JSONB, nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
            sa.Column(
                "reverses_transaction_id", sa.String(36),
                sa.ForeignKey("ledger_transactions.id"), nullable=True,
            ),
            sa.Column("processed_by", sa.String(64), nullable=True),
            sa.Column("metadata", postgresql.JSONB, nullable=True),
            sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "created_at", sa.DateTime(timezone=True), nullable=False,
                server_default=sa.func.now(),
            ),
            sa.CheckConstraint("amount >= 0", name="ck_ledger_tx_amount_nonneg"),
        )
    _create_index(
        op, "ix_ledger_tx_reference", "ledger_transactions", ["reference_code"], unique=True,
    )
    # Idempotency: unique partial index on the caller's key
    _create_index(
        op, "ix_ledger_tx_idempotency", "ledger_transactions",
        ["user_id", "realm_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )

    # --- audit_log ---
    if not has_table(op, "audit_log"):
        op.create_table(
            "audit_log",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("actor_id", sa.String(64), nullable=True),
            sa.Column("realm_id", sa.String(64), nullable=False),
            sa.Column("target_user_id", sa.String(64), nullable=True),
            sa.Column("action_type", sa.String(50), nullable=False),
            sa.Column("details", postgresql.JSONB, nullable=True),
            sa.Column("compliance_flag", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column(
                "created_at", sa.DateTime(timezone=True), nullable=False,
                server_default=sa.func.now(),
            ),
        )

    # --- status_snapshots ---
    if not has_table(op, "status_snapshots"):
        op.create_table(
            "status_snapshots",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("latency_ms", sa.Float, nullable=False, server_default="0"),
            _counter("total_queries"),
            _counter("total_errors"),
            sa.Column(
                "created_at", sa.DateTime(timezone=True), nullable=False,
                server_default=sa.func.now(),
            ),
        )


def _initial_schema_down(op: Operations) -> None:
    for table in ("status_snapshots", "audit_log", "ledger_transactions", "accounts"):
        if has_table(op, table):
            op.drop_table(table)


# ---------------------------------------------------------------------------
# 002: query-path indexes
# ---------------------------------------------------------------------------
_SECONDARY_INDEXES: list[tuple[str, str, list[str]]] = [
    ("ix_accounts_realm_primary", "accounts", ["realm_id", "primary_balance"]),
    ("ix_accounts_realm_streak", "accounts", ["realm_id", "daily_streak"]),
    ("ix_ledger_tx_account_time", "ledger_transactions", ["user_id", "realm_id", "created_at"]),
    ("ix_ledger_tx_correlation", "ledger_transactions", ["correlation_ref"]),
    ("ix_ledger_tx_reverses", "ledger_transactions", ["reverses_transaction_id"]),
    ("ix_audit_log_realm_time", "audit_log", ["realm_id", "created_at"]),
    ("ix_audit_log_compliance_time", "audit_log", ["compliance_flag", "created_at"]),
    ("ix_status_snapshots_created_at", "status_snapshots", ["created_at"]),
]


def _indexes_up(op: Operations) -> None:
    for name, table, columns in _SECONDARY_INDEXES:
        _create_index(op, name, table, columns)


def _indexes_down(op: Operations) -> None:
    for name, table, _ in reversed(_SECONDARY_INDEXES):
        _drop_index(op, name, table)


# ---------------------------------------------------------------------------
# 003: remember each member's most frequent work activity
# ---------------------------------------------------------------------------
def _work_preferences_up(op: Operations) -> None:
    if not has_column(op, "accounts", "favorite_work_kind"):
        op.add_column("accounts", sa.Column("favorite_work_kind", sa.String(30), nullable=True))


def _work_preferences_down(op: Operations) -> None:
    if has_column(op, "accounts", "favorite_work_kind"):
        with op.batch_alter_table("accounts") as batch:
            batch.drop_column("favorite_work_kind")


MIGRATIONS: list[Migration] = [
    Migration(
        "001_initial_schema",
        _initial_schema_up,
        _initial_schema_down,
        description="Accounts, ledger, audit log and heartbeat tables",
        destructive_down=True,
    ),
    Migration(
        "002_ledger_indexes",
        _indexes_up,
        _indexes_down,
        description="Leaderboard, history and retention indexes",
    ),
    Migration(
        "003_work_preferences",
        _work_preferences_up,
        _work_preferences_down,
        description="accounts.favorite_work_kind",
        destructive_down=True,
    ),
]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
class MigrationRunner:
    """Apply and roll back :class:`Migration` objects against *engine*."""

    def __init__(self, engine: Engine, migrations: Sequence[Migration] = MIGRATIONS) -> None:
        names = [m.name for m in migrations]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate migration name(s): {', '.join(duplicates)}")
        self.engine = engine
        self.migrations = list(migrations)
        self._by_name = {m.name: m for m in self.migrations}

    def ensure_history_table(self) -> None:
        MigrationRecord.__table__.create(self.engine, checkfirst=True)

    def applied(self) -> list[str]:
        """Recorded migration names, oldest first."""
        self.ensure_history_table()
        with Session(self.engine) as session:
            return list(session.scalars(
                select(MigrationRecord.name).order_by(
                    MigrationRecord.executed_at, MigrationRecord.id
                )
            ).all())

    def pending(self) -> list[Migration]:
        done = set(self.applied())
        return [m for m in self.migrations if m.name not in done]

    def status(self) -> list[dict]:
        """Declared migrations with their applied state, for health output."""
        self.ensure_history_table()
        with Session(self.engine) as session:
            records = {r.name: r for r in session.scalars(select(MigrationRecord)).all()}
        return [
            {
                "name": m.name,
                "description": m.description,
                "applied": m.name in records,
                "executed_at": records[m.name].executed_at.isoformat() if m.name in records else None,
            }
            for m in self.migrations
        ]

    def run(self) -> list[str]:
        """Apply every pending migration in order; return the names executed."""
        executed: list[str] = []
        for migration in self.pending():
            self._apply(migration)
            executed.append(migration.name)

        if executed:
            logger.info("Applied %d migration(s): %s", len(executed), ", ".join(executed))
        else:
            logger.info("Schema up to date (%d migration(s) recorded)", len(self.migrations))
        return executed

    def _apply(self, migration: Migration) -> None:
        logger.info("Running migration %s — %s", migration.name, migration.description)
        started = time.perf_counter()
        try:
            with self.engine.begin() as conn:
                migration.up(Operations(MigrationContext.configure(conn)))
                conn.execute(insert(MigrationRecord).values(
                    name=migration.name,
                    executed_at=datetime.now(UTC),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    checksum=migration.checksum,
                ))
        except Exception as exc:
            logger.error("Migration %s failed: %s", migration.name, exc)
            raise MigrationFailed(migration.name, str(exc)) from exc

    def rollback_last(self) -> str | None:
        """Undo the most recently applied migration; return its name (None if none)."""
        self.ensure_history_table()
        with Session(self.engine) as session:
            record = session.scalar(
                select(MigrationRecord)
                .order_by(MigrationRecord.executed_at.desc(), MigrationRecord.id.desc())
                .limit(1)
            )
        if record is None:
            logger.info("No migrations to roll back")
            return None

        migration = self._by_name.get(record.name)
        if migration is None:
            raise MigrationFailed(record.name, "not in the declared migration list")
        if migration.down is None:
            raise MigrationFailed(record.name, "no down migration defined")
        if migration.destructive_down:
            logger.warning(
                "Rolling back %s is DESTRUCTIVE — data in the affected tables/columns "
                "will be lost",
                migration.name,
            )

        try:
            with self.engine.begin() as conn:
                migration.down(Operations(MigrationContext.configure(conn)))
                conn.execute(delete(MigrationRecord).where(MigrationRecord.name == record.name))
        except Exception as exc:
            logger.error("Rollback of %s failed: %s", migration.name, exc)
            raise MigrationFailed(migration.name, f"rollback failed: {exc}") from exc

        logger.info("Rolled back migration %s", migration.name)
        return migration.name
