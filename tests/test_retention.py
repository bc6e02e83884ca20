"""
tests/test_retention.py — Retention Cleanup Tests
==================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from canopy.database.models import AuditLogEntry, LedgerTransaction, StatusSnapshot
from canopy.services.retention_service import get_retention_stats, run_retention_cleanup

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _audit(session, days_old, compliance=False, action="note"):
    session.add(AuditLogEntry(
        realm_id="realm-1",
        action_type=action,
        compliance_flag=compliance,
        created_at=NOW - timedelta(days=days_old),
    ))


def _snapshot(session, days_old):
    session.add(StatusSnapshot(status="healthy", created_at=NOW - timedelta(days=days_old)))


def _count(engine, model):
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


class TestAuditRetention:
    def test_old_entries_removed_compliance_kept(self, db_engine):
        with Session(db_engine) as session:
            _audit(session, 400)
            _audit(session, 400, compliance=True)
            _audit(session, 10)
            session.commit()

        result = run_retention_cleanup(db_engine, now=NOW)

        assert result["audit_deleted"] == 1
        with Session(db_engine) as session:
            remaining = session.scalars(select(AuditLogEntry)).all()
        assert len(remaining) == 2
        assert any(e.compliance_flag for e in remaining)

    def test_custom_window(self, db_engine):
        with Session(db_engine) as session:
            _audit(session, 40)
            session.commit()

        assert run_retention_cleanup(db_engine, audit_log_days=365, now=NOW)["audit_deleted"] == 0
        assert run_retention_cleanup(db_engine, audit_log_days=30, now=NOW)["audit_deleted"] == 1

    def test_deletes_in_batches(self, db_engine, caplog):
        with Session(db_engine) as session:
            for _ in range(5):
                _audit(session, 500)
            session.commit()

        with caplog.at_level("INFO", logger="canopy.services.retention_service"):
            result = run_retention_cleanup(db_engine, batch_size=2, now=NOW)

        assert result["audit_deleted"] == 5
        batches = [r for r in caplog.records if "rows (total so far" in r.getMessage()]
        assert len(batches) == 3
        assert _count(db_engine, AuditLogEntry) == 0

    def test_ledger_is_never_touched(self, db_engine, fund):
        fund("alice", 100)
        fund("alice", 50)
        before = _count(db_engine, LedgerTransaction)

        far_future = datetime.now(UTC) + timedelta(days=5000)
        run_retention_cleanup(db_engine, audit_log_days=1, now=far_future)

        assert _count(db_engine, LedgerTransaction) == before == 2


class TestSnapshotRetention:
    def test_old_snapshots_removed(self, db_engine):
        with Session(db_engine) as session:
            _snapshot(session, 60)
            _snapshot(session, 45)
            _snapshot(session, 1)
            session.commit()

        result = run_retention_cleanup(db_engine, now=NOW)

        assert result["snapshots_deleted"] == 2
        assert _count(db_engine, StatusSnapshot) == 1

    def test_newest_snapshot_always_kept(self, db_engine):
        with Session(db_engine) as session:
            _snapshot(session, 90)
            _snapshot(session, 60)
            session.commit()

        result = run_retention_cleanup(db_engine, now=NOW)

        assert result["snapshots_deleted"] == 1
        with Session(db_engine) as session:
            kept = session.scalars(select(StatusSnapshot)).one()
        assert kept.created_at.replace(tzinfo=UTC) == NOW - timedelta(days=60)

    def test_empty_tables(self, db_engine):
        assert run_retention_cleanup(db_engine, now=NOW) == {
            "audit_deleted": 0,
            "snapshots_deleted": 0,
        }


class TestRetentionStats:
    def test_counts(self, db_engine):
        with Session(db_engine) as session:
            _audit(session, 100)
            _audit(session, 5, compliance=True)
            _snapshot(session, 2)
            session.commit()

        stats = get_retention_stats(db_engine)

        assert stats["total_audit_entries"] == 2
        assert stats["compliance_audit_entries"] == 1
        assert stats["total_status_snapshots"] == 1
        assert stats["oldest_audit_entry"].startswith("2025-11-21")
        assert stats["newest_status_snapshot"] is not None

    def test_empty(self, db_engine):
        stats = get_retention_stats(db_engine)
        assert stats["total_audit_entries"] == 0
        assert stats["oldest_audit_entry"] is None
