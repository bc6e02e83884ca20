"""
canopy.services.retention_service — Audit & Heartbeat Retention Cleanup
========================================================================

Periodic cleanup run by the persistence manager's maintenance task.

    - Audit log: rows older than ``audit_log_days`` (default 365) are removed,
      **except** compliance-flagged rows, which are kept indefinitely.
    - Status snapshots: heartbeat rows older than ``status_snapshot_days``
      (default 30) are removed, always keeping the most recent one.
    - Ledger transactions are never touched.

**Deletion is batched** to avoid locking the table for too long:
rows are removed in chunks of ``batch_size``, each in its own transaction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, delete, func, select

from canopy.database.engine import get_session
from canopy.database.models import AuditLogEntry, StatusSnapshot

logger = logging.getLogger(__name__)

# How many rows to delete in each batch (avoids long-held row locks)
BATCH_SIZE = 5_000


def _delete_in_batches(engine: Engine, model, *conditions, batch_size: int) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(model.id).where(*conditions).limit(batch_size)
            ).all()
            if not ids:
                break
            result = session.execute(delete(model).where(model.id.in_(ids)))
            deleted += result.rowcount  # type: ignore[operator]
            logger.info(
                "Retention: deleted %d %s rows (total so far: %d)",
                result.rowcount, model.__tablename__, deleted,
            )
    return deleted


def run_retention_cleanup(
    engine: Engine,
    *,
    audit_log_days: int = 365,
    status_snapshot_days: int = 30,
    batch_size: int = BATCH_SIZE,
    now: datetime | None = None,
) -> dict[str, int]:
    """Prune aged audit entries and heartbeat rows.

    Returns a summary dict: ``{"audit_deleted": N, "snapshots_deleted": M}``.
    """
    now = now or datetime.now(UTC)
    audit_cutoff = now - timedelta(days=audit_log_days)
    snapshot_cutoff = now - timedelta(days=status_snapshot_days)

    # --- Non-compliance audit entries ---
    audit_deleted = _delete_in_batches(
        engine,
        AuditLogEntry,
        AuditLogEntry.created_at < audit_cutoff,
        AuditLogEntry.compliance_flag.is_(False),
        batch_size=batch_size,
    )

    # --- Heartbeats, keeping the newest ---
    with get_session(engine) as session:
        newest_id = session.scalar(
            select(StatusSnapshot.id)
            .order_by(StatusSnapshot.created_at.desc(), StatusSnapshot.id.desc())
            .limit(1)
        )
    snapshots_deleted = 0
    if newest_id is not None:
        snapshots_deleted = _delete_in_batches(
            engine,
            StatusSnapshot,
            StatusSnapshot.created_at < snapshot_cutoff,
            StatusSnapshot.id != newest_id,
            batch_size=batch_size,
        )

    logger.info(
        "Retention cleanup complete — %d audit entries, %d snapshots removed "
        "(audit cutoff=%s, snapshot cutoff=%s)",
        audit_deleted, snapshots_deleted, audit_cutoff.isoformat(), snapshot_cutoff.isoformat(),
    )
    return {"audit_deleted": audit_deleted, "snapshots_deleted": snapshots_deleted}


def get_retention_stats(engine: Engine) -> dict:
    """Row counts and age range for the housekeeping tables."""
    with get_session(engine) as session:
        total_audit = session.scalar(
            select(func.count()).select_from(AuditLogEntry)
        ) or 0

        compliance_audit = session.scalar(
            select(func.count())
            .select_from(AuditLogEntry)
            .where(AuditLogEntry.compliance_flag.is_(True))
        ) or 0

        oldest_audit = session.scalar(select(func.min(AuditLogEntry.created_at)))

        total_snapshots = session.scalar(
            select(func.count()).select_from(StatusSnapshot)
        ) or 0

        newest_snapshot = session.scalar(select(func.max(StatusSnapshot.created_at)))

    return {
        "total_audit_entries": total_audit,
        "compliance_audit_entries": compliance_audit,
        "oldest_audit_entry": oldest_audit.isoformat() if oldest_audit else None,
        "total_status_snapshots": total_snapshots,
        "newest_status_snapshot": newest_snapshot.isoformat() if newest_snapshot else None,
    }
