"""
canopy.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- accounts            — One balance sheet per (user, realm)
- ledger_transactions — Append-only, immutable record of every balance change
- audit_log           — Administrative and compliance trail
- status_snapshots    — Heartbeat rows written by the health check
- migration_history   — Which schema migrations have been applied

Completed ledger transactions can never be updated or deleted through the
ORM; corrections are new records that point back at the original via
``reverses_transaction_id``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from canopy.constants import Currency
from canopy.errors import ImmutableRecordError


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all canopy ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OperationKind(enum.StrEnum):
    """Every reason a balance can change.  Direction lives in canopy.engine.ledger."""
    PURCHASE = "purchase"
    SALE = "sale"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    GIFT_OUT = "gift_out"
    GIFT_IN = "gift_in"
    DAILY_REWARD = "daily_reward"
    WORK_REWARD = "work_reward"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    PENALTY = "penalty"
    REFUND = "refund"
    TAX = "tax"
    INITIAL_GRANT = "initial_grant"


class TransactionStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"


class AuditAction(enum.StrEnum):
    """Categories of entries recorded in audit_log."""
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    REVERSAL = "reversal"
    RESTRICTED_TRANSACTION = "restricted_transaction"


class LeaderboardKey(enum.StrEnum):
    TOTAL_VALUE = "total_value"
    PRIMARY = "primary"
    RESTRICTED = "restricted"
    DAILY_STREAK = "daily_streak"
    WORK_STREAK = "work_streak"
    EARNED = "earned"
    TRANSACTIONS = "transactions"


# ---------------------------------------------------------------------------
# Accounts: one row per (user, realm)
# ---------------------------------------------------------------------------
class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)

    primary_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restricted_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    primary_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    primary_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restricted_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    restricted_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Daily claim cycle
    daily_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_daily_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_claim_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_daily_claims: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Work cycle
    work_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_work_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_work_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    favorite_work_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # Lifetime counters
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gifts_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gifts_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "realm_id", name="uq_accounts_user_realm"),
        CheckConstraint("primary_balance >= 0", name="ck_accounts_primary_nonneg"),
        CheckConstraint("restricted_balance >= 0", name="ck_accounts_restricted_nonneg"),
        CheckConstraint("primary_earned >= primary_spent", name="ck_accounts_primary_flow"),
        CheckConstraint(
            "restricted_earned >= restricted_spent", name="ck_accounts_restricted_flow"
        ),
        Index("ix_accounts_realm_primary", "realm_id", "primary_balance"),
        Index("ix_accounts_realm_streak", "realm_id", "daily_streak"),
    )
    # Accounts are handed back detached; load server-side timestamps at flush.
    __mapper_args__ = {"eager_defaults": True}

    @classmethod
    def blank(cls, user_id: str, realm_id: str) -> Account:
        """A transient, all-zero account (used as a stand-in when the store is down)."""
        return cls(
            user_id=user_id,
            realm_id=realm_id,
            primary_balance=0,
            restricted_balance=0,
            primary_earned=0,
            primary_spent=0,
            restricted_earned=0,
            restricted_spent=0,
            daily_streak=0,
            max_daily_streak=0,
            total_daily_claims=0,
            work_streak=0,
            total_work_completed=0,
            total_transactions=0,
            total_purchases=0,
            gifts_sent=0,
            gifts_received=0,
            is_active=True,
            metadata_={"degraded": True},
        )

    def balance(self, currency: Currency) -> int:
        if currency == Currency.RESTRICTED:
            return self.restricted_balance
        return self.primary_balance

    def total_value(self, restricted_multiplier: int) -> int:
        return self.primary_balance + self.restricted_balance * restricted_multiplier

    def snapshot(self) -> dict[str, int]:
        return {
            Currency.PRIMARY.value: self.primary_balance,
            Currency.RESTRICTED.value: self.restricted_balance,
        }

    def __repr__(self) -> str:
        return (
            f"<Account user={self.user_id} realm={self.realm_id} "
            f"primary={self.primary_balance} restricted={self.restricted_balance}>"
        )


# ---------------------------------------------------------------------------
# LedgerTransaction: immutable record of one balance change
# ---------------------------------------------------------------------------
class LedgerTransaction(Base):
    """One completed balance change.  Never edited, never deleted.

    Immutability is enforced by the ``before_update``/``before_delete``
    mapper events below, which fire only for ORM unit-of-work flushes.
    Core statements (``update(LedgerTransaction)``, ``delete(...)``,
    ``session.execute`` with a bulk UPDATE) skip them, so nothing in this
    package issues one against this table.  Corrections are new records
    (see ``reverse_transaction``).
    """

    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    reference_code: Mapped[str] = mapped_column(String(40), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    counterparty_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    currency: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    item_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Both legs of a transfer/gift share one correlation reference
    correlation_ref: Mapped[str | None] = mapped_column(String(40), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    requires_restricted_access: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    involves_restricted_content: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    compliance_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.COMPLETED.value
    )
    reverses_transaction_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id"), nullable=True
    )
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)

    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_ledger_tx_reference", "reference_code", unique=True),
        Index("ix_ledger_tx_account_time", "user_id", "realm_id", "created_at"),
        Index("ix_ledger_tx_correlation", "correlation_ref"),
        Index("ix_ledger_tx_reverses", "reverses_transaction_id"),
        # Partial unique index: replaying the same key for the same account
        Index(
            "ix_ledger_tx_idempotency",
            "user_id",
            "realm_id",
            "idempotency_key",
            unique=True,
            postgresql_where=idempotency_key.isnot(None),
        ),
        CheckConstraint("amount >= 0", name="ck_ledger_tx_amount_nonneg"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerTransaction ref={self.reference_code} user={self.user_id} "
            f"kind={self.kind} {self.amount} {self.currency}>"
        )


@event.listens_for(LedgerTransaction, "before_update")
def _refuse_completed_update(mapper, connection, target: LedgerTransaction) -> None:
    history = get_history(target, "status")
    original = history.deleted[0] if history.deleted else target.status
    if original == TransactionStatus.COMPLETED:
        raise ImmutableRecordError(
            f"Transaction {target.reference_code} is completed and cannot be modified"
        )


@event.listens_for(LedgerTransaction, "before_delete")
def _refuse_completed_delete(mapper, connection, target: LedgerTransaction) -> None:
    if target.status == TransactionStatus.COMPLETED:
        raise ImmutableRecordError(
            f"Transaction {target.reference_code} is completed and cannot be deleted"
        )


# ---------------------------------------------------------------------------
# AuditLogEntry: administrative / compliance trail
# ---------------------------------------------------------------------------
class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    # Compliance rows are kept forever; the rest age out via retention
    compliance_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_audit_log_realm_time", "realm_id", "created_at"),
        Index("ix_audit_log_compliance_time", "compliance_flag", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLogEntry id={self.id} action={self.action_type} target={self.target_user_id}>"


# ---------------------------------------------------------------------------
# StatusSnapshot: heartbeat rows from the health check
# ---------------------------------------------------------------------------
class StatusSnapshot(Base):
    __tablename__ = "status_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_queries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_status_snapshots_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# MigrationRecord: applied schema migrations
# ---------------------------------------------------------------------------
class MigrationRecord(Base):
    __tablename__ = "migration_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<MigrationRecord {self.name} at={self.executed_at}>"
