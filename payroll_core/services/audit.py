# payroll_core/services/audit.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from payroll_core.extensions import db
from payroll_core.models.audit import AuditLog

log = logging.getLogger(__name__)


class AuditRecorder:
    """
    Best-effort audit trail.

    ``record`` runs after the business change has been committed and in its own
    commit. Whatever goes wrong here is logged and rolled back; the caller never
    sees it.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    def record(self, entity_type: str, entity_id: Optional[int], action: str,
               actor_id: Optional[int], details: Optional[str] = None,
               old_status: Optional[str] = None, new_status: Optional[str] = None) -> Optional[AuditLog]:
        try:
            row = self._write(entity_type, entity_id, action, actor_id, details, old_status, new_status)
            self.session.commit()
            return row
        except Exception:
            self.session.rollback()
            log.exception("audit write failed: %s#%s %s by %s", entity_type, entity_id, action, actor_id)
            return None

    def _write(self, entity_type, entity_id, action, actor_id, details, old_status, new_status) -> AuditLog:
        row = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            details=details,
            old_status=old_status,
            new_status=new_status,
            performed_at=datetime.utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def history(self, entity_type: str, entity_id: int):
        return (
            self.session.query(AuditLog)
            .filter_by(entity_type=entity_type, entity_id=entity_id)
            .order_by(AuditLog.performed_at.asc(), AuditLog.id.asc())
            .all()
        )
