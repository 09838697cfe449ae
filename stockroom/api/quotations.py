"""
Quotation API routes - supplier invitations, bids and winner selection.
"""
from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.db.models import QuotationStatus, Supplier
from stockroom.core.errors import NotFound
from stockroom.core.rbac import Permission, require
from stockroom.services import quotation_engine
from stockroom.services.request_lifecycle import get_request

router = APIRouter(prefix="/api/quotations", tags=["Quotations"])


# ============= SCHEMAS =============

class QuotationStart(BaseModel):
    request_id: int
    supplier_ids: Optional[List[int]] = None  # all active suppliers when omitted
    request_item_ids: Optional[List[int]] = None  # every item when omitted


class BidCreate(BaseModel):
    unit_price: float = Field(..., gt=0)
    delivery_time: Optional[str] = None
    notes: Optional[str] = None


class WinnerSelection(BaseModel):
    quotation_item_id: int


class QuotationItemResponse(BaseModel):
    id: int
    supplier_id: int
    supplier_name: str
    unit_price: Optional[float]
    total_price: Optional[float]
    delivery_time: Optional[str]
    notes: Optional[str]
    status: str
    submitted_at: Optional[datetime]


class QuotationResponse(BaseModel):
    id: int
    request_id: int
    request_item_id: int
    product_id: Optional[int]
    product_name: str
    requested_quantity: int
    status: str
    selected_supplier_id: Optional[int]
    selected_price: Optional[float]
    selected_delivery_time: Optional[str]
    created_by: Optional[str]
    created_at: Optional[datetime]
    lowest_price: Optional[float]
    items: List[QuotationItemResponse]


def _build_quotation_response(quotation) -> QuotationResponse:
    return QuotationResponse(
        id=quotation.id,
        request_id=quotation.request_id,
        request_item_id=quotation.request_item_id,
        product_id=quotation.product_id,
        product_name=quotation.product_name,
        requested_quantity=quotation.requested_quantity,
        status=quotation.status,
        selected_supplier_id=quotation.selected_supplier_id,
        selected_price=quotation.selected_price,
        selected_delivery_time=quotation.selected_delivery_time,
        created_by=quotation.created_by,
        created_at=quotation.created_at,
        lowest_price=quotation_engine.lowest_price(quotation),
        items=[
            QuotationItemResponse(
                id=i.id,
                supplier_id=i.supplier_id,
                supplier_name=i.supplier_name,
                unit_price=i.unit_price,
                total_price=i.total_price,
                delivery_time=i.delivery_time,
                notes=i.notes,
                status=i.status,
                submitted_at=i.submitted_at,
            )
            for i in quotation.items
        ],
    )


def _load_suppliers(db: Session, supplier_ids: Optional[List[int]]) -> List[Supplier]:
    suppliers = []
    for supplier_id in supplier_ids or []:
        supplier = db.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFound("supplier", supplier_id)
        suppliers.append(supplier)
    return suppliers


# ============= ROUTES =============

@router.post("", response_model=List[QuotationResponse], status_code=201)
async def start_quotations(
    payload: QuotationStart,
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    """Open quotations for an approved request, one per item."""
    request = get_request(db, payload.request_id)
    suppliers = _load_suppliers(db, payload.supplier_ids)

    if not payload.request_item_ids:
        quotations = quotation_engine.start_quotations(db, request, suppliers, user_context["name"])
        return [_build_quotation_response(q) for q in quotations]

    items = {item.id: item for item in request.items}
    missing = [i for i in payload.request_item_ids if i not in items]
    if missing:
        raise NotFound("request_item", missing[0])
    suppliers = suppliers or quotation_engine.active_suppliers(db)

    quotations = [
        quotation_engine.create_quotation(db, request, items[item_id], suppliers, user_context["name"])
        for item_id in payload.request_item_ids
    ]
    return [_build_quotation_response(q) for q in quotations]


@router.get("", response_model=List[QuotationResponse])
async def list_quotations(
    request_id: Optional[int] = Query(None, description="Filter by request"),
    status: Optional[QuotationStatus] = Query(None, description="Filter by status"),
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    quotations = quotation_engine.list_quotations(db, request_id=request_id, status=status)
    return [_build_quotation_response(q) for q in quotations]


@router.get("/{quotation_id}", response_model=QuotationResponse)
async def get_quotation(
    quotation_id: int,
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    """Quotation with its bids and the current lowest submitted price."""
    return _build_quotation_response(quotation_engine.get_quotation(db, quotation_id))


@router.post("/items/{quotation_item_id}/bid", response_model=QuotationResponse)
async def submit_bid(
    quotation_item_id: int,
    bid: BidCreate,
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    """Record a supplier's price for one quotation item."""
    item = quotation_engine.submit_bid(
        db, quotation_item_id, bid.unit_price, bid.delivery_time, bid.notes, actor=user_context["name"]
    )
    return _build_quotation_response(quotation_engine.get_quotation(db, item.quotation_id))


@router.post("/{quotation_id}/select", response_model=QuotationResponse)
async def select_winner(
    quotation_id: int,
    selection: WinnerSelection,
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    """Select the winning bid; every other bid is rejected."""
    quotation = quotation_engine.select_winner(
        db, quotation_id, selection.quotation_item_id, actor=user_context["name"]
    )
    return _build_quotation_response(quotation)


@router.post("/{quotation_id}/cancel", response_model=QuotationResponse)
async def cancel_quotation(
    quotation_id: int,
    user_context: dict = Depends(require(Permission.MANAGE_QUOTATIONS)),
    db: Session = Depends(get_db)
):
    quotation = quotation_engine.cancel_quotation(db, quotation_id, actor=user_context["name"])
    return _build_quotation_response(quotation)
