"""
tests/test_account_service.py — Account Store Tests
====================================================

Lazy creation, deactivation, ranking and leaderboards.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from canopy.config import EconomySettings
from canopy.constants import Currency
from canopy.database.models import Account, AuditAction, AuditLogEntry, LeaderboardKey
from canopy.errors import AccountNotFound
from canopy.services import account_service
from canopy.services.audit_service import list_audit_entries

REALM = "realm-1"


class TestGetOrCreate:
    def test_first_access_creates_with_starting_balance(self, db_engine):
        account = account_service.get_or_create(
            db_engine, "alice", REALM, EconomySettings(starting_balance=100)
        )
        assert account.id is not None
        assert account.primary_balance == 100
        assert account.restricted_balance == 0
        assert account.is_active
        assert account.created_at is not None

    def test_second_access_returns_same_row(self, db_engine, settings):
        first = account_service.get_or_create(db_engine, "alice", REALM, settings)
        second = account_service.get_or_create(db_engine, "alice", REALM, settings)
        assert first.id == second.id

        with Session(db_engine) as session:
            rows = session.scalars(select(Account)).all()
        assert len(rows) == 1

    def test_realms_are_separate(self, db_engine, settings):
        a = account_service.get_or_create(db_engine, "alice", "realm-1", settings)
        b = account_service.get_or_create(db_engine, "alice", "realm-2", settings)
        assert a.id != b.id

    def test_creation_is_audited(self, db_engine, settings):
        account_service.get_or_create(db_engine, "alice", REALM, settings)
        entries = list_audit_entries(db_engine, REALM, target_user_id="alice")
        assert [e.action_type for e in entries] == [AuditAction.ACCOUNT_CREATED.value]

    def test_get_account_does_not_create(self, db_engine):
        with pytest.raises(AccountNotFound):
            account_service.get_account(db_engine, "nobody", REALM)


class TestDeactivate:
    def test_deactivate_keeps_row(self, db_engine, settings, fund):
        fund("alice", 40)
        account = account_service.deactivate_account(
            db_engine, "alice", REALM, actor_id="mod", reason="left server"
        )
        assert account.is_active is False
        assert account_service.get_account(db_engine, "alice", REALM).primary_balance == 40

    def test_deactivation_is_audited(self, db_engine, fund):
        fund("alice", 40)
        account_service.deactivate_account(db_engine, "alice", REALM, actor_id="mod")

        with Session(db_engine) as session:
            entry = session.scalar(
                select(AuditLogEntry).where(
                    AuditLogEntry.action_type == AuditAction.ACCOUNT_DEACTIVATED.value
                )
            )
        assert entry.actor_id == "mod"
        assert entry.details["balances"]["primary"] == 40

    def test_unknown_account(self, db_engine):
        with pytest.raises(AccountNotFound):
            account_service.deactivate_account(db_engine, "nobody", REALM)


class TestRanking:
    @pytest.fixture
    def realm(self, fund):
        fund("alice", 300)
        fund("bob", 100)
        fund("bob", 25, Currency.RESTRICTED)      # total value 350
        fund("carol", 300)
        fund("dave", 50)

    def test_rank_by_total_value(self, db_engine, realm):
        assert account_service.rank(db_engine, "bob", REALM) == 1
        assert account_service.rank(db_engine, "alice", REALM) == 2
        assert account_service.rank(db_engine, "carol", REALM) == 2
        assert account_service.rank(db_engine, "dave", REALM) == 4

    def test_rank_by_primary(self, db_engine, realm):
        assert account_service.rank(db_engine, "bob", REALM, LeaderboardKey.PRIMARY) == 3

    def test_restricted_multiplier_is_configurable(self, db_engine, realm):
        assert account_service.rank(
            db_engine, "bob", REALM, restricted_multiplier=1
        ) == 3

    def test_rank_unknown_account(self, db_engine, realm):
        with pytest.raises(AccountNotFound):
            account_service.rank(db_engine, "nobody", REALM)

    def test_leaderboard_order_and_ties(self, db_engine, realm):
        board = account_service.leaderboard(db_engine, REALM, LeaderboardKey.TOTAL_VALUE, 10)

        assert [e.user_id for e in board] == ["bob", "alice", "carol", "dave"]
        assert [e.rank for e in board] == [1, 2, 2, 4]
        assert board[0].value == 350
        assert board[0].total_value == 350

    def test_leaderboard_limit(self, db_engine, realm):
        board = account_service.leaderboard(db_engine, REALM, LeaderboardKey.PRIMARY, 2)
        assert [e.user_id for e in board] == ["alice", "carol"]

    def test_inactive_accounts_are_excluded(self, db_engine, realm):
        account_service.deactivate_account(db_engine, "bob", REALM)

        board = account_service.leaderboard(db_engine, REALM)
        assert "bob" not in [e.user_id for e in board]
        assert account_service.rank(db_engine, "alice", REALM) == 1

    def test_realm_summary(self, db_engine, realm):
        summary = account_service.get_realm_summary(db_engine, REALM)
        assert summary["accounts"] == 4
        assert summary["primary_in_circulation"] == 750
        assert summary["restricted_in_circulation"] == 25
