"""
Stock ledger API routes (read-only; entries are written by withdrawals).
"""
from typing import List, Optional
import datetime as dt
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session
from sqlalchemy import desc

from stockroom.db.session import get_db
from stockroom.db.models import StockMovement
from stockroom.core.rbac import Permission, require

router = APIRouter(prefix="/api/movements", tags=["Movements"])


class MovementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    product_name: str
    type: str
    reason: str
    quantity: int
    date: dt.date
    request_id: Optional[int]
    authorized_by: Optional[str]
    notes: Optional[str]
    unit_price: float
    total_value: float
    created_at: Optional[dt.datetime]


@router.get("", response_model=List[MovementResponse])
async def list_movements(
    product_id: Optional[int] = Query(None, description="Filter by product"),
    request_id: Optional[int] = Query(None, description="Filter by request"),
    start_date: Optional[date] = Query(None, description="First movement date"),
    end_date: Optional[date] = Query(None, description="Last movement date"),
    limit: int = Query(100, le=1000),
    offset: int = Query(0),
    user_context: dict = Depends(require(Permission.VIEW_MOVEMENTS)),
    db: Session = Depends(get_db)
):
    """List ledger entries, newest first."""
    query = db.query(StockMovement)

    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if request_id is not None:
        query = query.filter(StockMovement.request_id == request_id)
    if start_date:
        query = query.filter(StockMovement.date >= start_date)
    if end_date:
        query = query.filter(StockMovement.date <= end_date)

    movements = query.order_by(desc(StockMovement.date), desc(StockMovement.id)).offset(offset).limit(limit).all()
    return [MovementResponse.model_validate(m) for m in movements]
