"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import BigInteger, Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from canopy.config import EconomySettings
from canopy.constants import Currency
from canopy.database.models import Base, OperationKind
from canopy.engine.ledger import LedgerOperation
from canopy.services import ledger_service


@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


@compiles(BigInteger, "sqlite")
def _compile_bigint_as_integer(type_, compiler, **kw):
    return "INTEGER"


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with every canopy table created.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def settings() -> EconomySettings:
    """Economy defaults, except accounts start empty so balances are easy to reason about."""
    return EconomySettings(starting_balance=0)


@pytest.fixture
def fund(db_engine, settings):
    """Credit an account (creating it if needed) via an admin adjustment."""

    def _fund(user_id: str, amount: int, currency: Currency = Currency.PRIMARY, realm_id: str = "realm-1"):
        op = LedgerOperation(
            user_id=user_id,
            realm_id=realm_id,
            kind=OperationKind.ADMIN_ADJUSTMENT,
            amount=amount,
            description="test funding",
            currency=currency,
            compliance_verified=True,
        )
        return ledger_service.apply(db_engine, op, settings=settings)

    return _fund
