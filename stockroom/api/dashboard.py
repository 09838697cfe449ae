"""
Dashboard API routes - financial metrics and rollups (admin).
"""
from typing import List
from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.db.models import MaterialRequest, Product, Quotation, StockMovement
from stockroom.core.rbac import Permission, require
from stockroom.services import dashboard

router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])


@router.get("")
async def get_dashboard(
    user_context: dict = Depends(require(Permission.VIEW_DASHBOARD)),
    db: Session = Depends(get_db)
) -> dict:
    """Counts, category breakdown, top/bottom products and month-over-month trends."""
    return dashboard.dashboard_data(db.query(Product).all(), db.query(StockMovement).all(), date.today())


@router.get("/financial")
async def get_financial_metrics(
    user_context: dict = Depends(require(Permission.VIEW_DASHBOARD)),
    db: Session = Depends(get_db)
) -> dict:
    return dashboard.financial_metrics(db.query(Product).all(), db.query(StockMovement).all(), date.today())


@router.get("/reports/suppliers")
async def get_supplier_report(
    user_context: dict = Depends(require(Permission.VIEW_DASHBOARD)),
    db: Session = Depends(get_db)
) -> List[dict]:
    return dashboard.supplier_report(db.query(Quotation).all())


@router.get("/reports/departments")
async def get_department_report(
    user_context: dict = Depends(require(Permission.VIEW_DASHBOARD)),
    db: Session = Depends(get_db)
) -> List[dict]:
    return dashboard.department_report(db.query(MaterialRequest).all())
