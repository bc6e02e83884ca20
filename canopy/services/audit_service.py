"""
canopy.services.audit_service — Audit Trail
============================================

Every administrative mutation and every restricted-currency movement
leaves an ``audit_log`` row written in the same transaction as the change
it describes.  Rows flagged ``compliance_flag`` are never pruned.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from canopy.database.models import AuditAction, AuditLogEntry

logger = logging.getLogger(__name__)


def record_audit(
    session: Session,
    *,
    realm_id: str,
    action: AuditAction,
    target_user_id: str | None = None,
    actor_id: str | None = None,
    details: dict[str, Any] | None = None,
    compliance_flag: bool = False,
    now: datetime | None = None,
) -> AuditLogEntry:
    """Insert a row into audit_log within the current transaction."""
    entry = AuditLogEntry(
        realm_id=realm_id,
        action_type=action.value,
        target_user_id=target_user_id,
        actor_id=actor_id,
        details=details,
        compliance_flag=compliance_flag,
    )
    if now is not None:
        entry.created_at = now
    session.add(entry)
    logger.debug("Audit %s realm=%s target=%s", action, realm_id, target_user_id)
    return entry


def list_audit_entries(
    engine: Engine,
    realm_id: str,
    *,
    target_user_id: str | None = None,
    compliance_only: bool = False,
    limit: int = 50,
) -> list[AuditLogEntry]:
    """Newest-first audit entries for a realm."""
    stmt = select(AuditLogEntry).where(AuditLogEntry.realm_id == realm_id)
    if target_user_id is not None:
        stmt = stmt.where(AuditLogEntry.target_user_id == target_user_id)
    if compliance_only:
        stmt = stmt.where(AuditLogEntry.compliance_flag.is_(True))
    stmt = stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc()).limit(limit)

    with Session(engine) as session:
        return list(session.scalars(stmt).all())
