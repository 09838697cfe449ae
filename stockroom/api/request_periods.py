"""
Request period API routes - monthly windows in which requesters may open requests.
"""
from typing import List, Optional
from datetime import date, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.core.rbac import Permission, get_current_user_context, require
from stockroom.services import request_periods

router = APIRouter(prefix="/api/request-periods", tags=["Request Periods"])


class PeriodUpdate(BaseModel):
    start_day: int = Field(..., ge=1, le=31)
    end_day: int = Field(..., ge=1, le=31)


class PeriodResponse(BaseModel):
    department: str
    configured: bool
    start_day: Optional[int]
    end_day: Optional[int]
    is_open: bool
    updated_by: Optional[str]
    updated_at: Optional[datetime]


def _build_period_response(key: str, period, today: date) -> PeriodResponse:
    return PeriodResponse(
        department=key,
        configured=period is not None,
        start_day=period.start_day if period else None,
        end_day=period.end_day if period else None,
        is_open=request_periods.is_period_open(period, today),
        updated_by=period.updated_by if period else None,
        updated_at=period.updated_at if period else None,
    )


@router.get("", response_model=List[PeriodResponse])
async def list_periods(
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    """Both windows and whether they are open today. Visible to every role."""
    today = date.today()
    return [
        _build_period_response(key, request_periods.get_period(db, key), today)
        for key in (request_periods.PERIOD_GENERAL, request_periods.PERIOD_TECHNICAL)
    ]


@router.put("/{key}", response_model=PeriodResponse)
async def update_period(
    key: str,
    payload: PeriodUpdate,
    user_context: dict = Depends(require(Permission.CONFIGURE_REQUEST_PERIODS)),
    db: Session = Depends(get_db)
):
    period = request_periods.upsert_period(db, key, payload.start_day, payload.end_day, user_context["name"])
    return _build_period_response(key, period, date.today())
