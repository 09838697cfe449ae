"""
Request windows: requesters may only open requests between a department's
configured start and end day of the month.
"""
from datetime import date
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.errors import StoreFailure, ValidationError
from stockroom.core.logging import get_logger
from stockroom.db.models import RequestPeriod
from stockroom.services.audit import record_audit

logger = get_logger(__name__)

PERIOD_GENERAL = "general"
PERIOD_TECHNICAL = "technical"

# Departments that follow the technical-area window
TECHNICAL_DEPARTMENTS = frozenset({"area_tecnica", "área técnica", "area tecnica", "technical"})


def period_key_for_department(department: Optional[str]) -> str:
    if department and department.strip().lower() in TECHNICAL_DEPARTMENTS:
        return PERIOD_TECHNICAL
    return PERIOD_GENERAL


def is_period_open(period: Optional[RequestPeriod], today: date) -> bool:
    """No configuration means the window is always open."""
    if period is None:
        return True
    return period.start_day <= today.day <= period.end_day


def get_period(db: Session, key: str) -> Optional[RequestPeriod]:
    return db.query(RequestPeriod).filter(RequestPeriod.department == key).first()


def ensure_period_open(db: Session, department: Optional[str], today: date) -> None:
    key = period_key_for_department(department)
    period = get_period(db, key)
    if not is_period_open(period, today):
        raise ValidationError(
            f"Requests for '{key}' can only be opened between day "
            f"{period.start_day} and day {period.end_day} of the month",
            {"period": key, "start_day": period.start_day, "end_day": period.end_day},
        )


def upsert_period(db: Session, key: str, start_day: int, end_day: int, actor: str) -> RequestPeriod:
    if key not in (PERIOD_GENERAL, PERIOD_TECHNICAL):
        raise ValidationError(f"Unknown request period '{key}'")
    if not (1 <= start_day <= 31 and 1 <= end_day <= 31):
        raise ValidationError("Period days must be between 1 and 31")
    if start_day > end_day:
        raise ValidationError("Period start day must not be after its end day")

    period = get_period(db, key)
    if period is None:
        period = RequestPeriod(department=key)
        db.add(period)
    period.start_day = start_day
    period.end_day = end_day
    period.updated_by = actor

    try:
        db.flush()
        record_audit(db, "update_request_period", actor, "request_period", period.id,
                     {"department": key, "start_day": start_day, "end_day": end_day})
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save request period {key}: {e}")
        raise StoreFailure("update_request_period") from e

    db.refresh(period)
    return period
