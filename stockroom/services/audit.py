"""
Audit trail helper shared by the workflow services.
"""
from typing import Optional
from sqlalchemy.orm import Session

from stockroom.core.logging import audit_logger, _scrub_value
from stockroom.db.models import AuditLog


def record_audit(
    db: Session,
    action: str,
    actor: Optional[str],
    entity_type: str,
    entity_id: Optional[int],
    details: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    """
    Add an AuditLog row to the caller's transaction and emit the audit log line.

    The row is committed (or rolled back) together with the change it
    describes; nothing is flushed here.
    """
    entry = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=_scrub_value(details or {}),
        ip_address=ip_address,
    )
    db.add(entry)
    audit_logger.log(
        action,
        actor=actor,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    return entry
