"""
Read-only access to the audit trail written by the workflow services.
"""
from datetime import date, datetime, time, timezone
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from stockroom.core.rbac import Permission, require
from stockroom.db.models import AuditLog
from stockroom.db.session import get_db

router = APIRouter(prefix="/api/audit", tags=["Audit"])

EntityType = Literal[
    "request", "product", "quotation", "quotation_item", "payment_request", "request_period"
]


# ============= SCHEMAS =============

class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: Optional[datetime]
    actor: Optional[str]
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    details: Optional[dict]
    ip_address: Optional[str]


class ActivityCount(BaseModel):
    key: Optional[str]
    count: int


class AuditActivity(BaseModel):
    day: date
    events: int
    by_entity: List[ActivityCount]
    by_actor: List[ActivityCount]


# ============= ROUTES =============

@router.get("/logs", response_model=List[AuditEntry])
async def list_audit_logs(
    entity_type: Optional[EntityType] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    actor: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(require(Permission.VIEW_AUDIT)),
    db: Session = Depends(get_db),
):
    """Newest first. ``entity_type`` + ``entity_id`` gives one record's history."""
    filters = []
    if entity_type:
        filters.append(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        filters.append(AuditLog.entity_id == entity_id)
    if action:
        filters.append(AuditLog.action == action)
    if actor:
        filters.append(AuditLog.actor == actor)
    if since:
        filters.append(AuditLog.timestamp >= since)
    if until:
        filters.append(AuditLog.timestamp <= until)

    return (
        db.query(AuditLog)
        .filter(*filters)
        .order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.get("/activity", response_model=AuditActivity)
async def daily_activity(
    day: Optional[date] = None,
    user_context: dict = Depends(require(Permission.VIEW_AUDIT)),
    db: Session = Depends(get_db),
):
    """Event counts for one UTC day, grouped by entity type and by actor."""
    day = day or datetime.now(timezone.utc).date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    in_day = (AuditLog.timestamp >= start, AuditLog.timestamp <= end)

    def grouped(column):
        rows = (
            db.query(column, func.count(AuditLog.id))
            .filter(*in_day)
            .group_by(column)
            .order_by(desc(func.count(AuditLog.id)))
            .all()
        )
        return [ActivityCount(key=key, count=count) for key, count in rows]

    return AuditActivity(
        day=day,
        events=db.query(func.count(AuditLog.id)).filter(*in_day).scalar() or 0,
        by_entity=grouped(AuditLog.entity_type),
        by_actor=grouped(AuditLog.actor),
    )
