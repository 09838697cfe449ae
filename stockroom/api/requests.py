"""
Request API routes: creation, review and signature-gated withdrawal.
"""
from typing import Annotated, List, Literal, Optional, Union
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.db.models import RequestItemKind, RequestPriority, RequestStatus, RequestType
from stockroom.core.rbac import Permission, Role, require
from stockroom.services import request_lifecycle, withdrawal
from stockroom.services.request_lifecycle import ItemSpec

router = APIRouter(prefix="/api/requests", tags=["Requests"])


# ============= SCHEMAS =============

class CataloguedItemIn(BaseModel):
    kind: Literal["catalogued"]
    product_id: int
    quantity: int = Field(..., gt=0)
    category: Optional[str] = None


class AdhocItemIn(BaseModel):
    kind: Literal["adhoc"]
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    category: Optional[str] = None


RequestItemIn = Annotated[Union[CataloguedItemIn, AdhocItemIn], Field(discriminator="kind")]


class RequestCreate(BaseModel):
    type: RequestType = RequestType.MATERIAL
    items: List[RequestItemIn] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    department: Optional[str] = None
    priority: RequestPriority = RequestPriority.STANDARD
    notes: Optional[str] = None
    supplier_id: Optional[int] = None


class RequestReject(BaseModel):
    notes: Optional[str] = None


class WithdrawalConfirm(BaseModel):
    signature: str
    receiver_name: str


class RequestItemResponse(BaseModel):
    id: int
    position: int
    kind: str
    product_id: Optional[int]
    product_name: str
    quantity: int
    category: Optional[str]


class RequestResponse(BaseModel):
    id: int
    type: str
    reason: str
    requested_by: str
    department: Optional[str]
    priority: str
    status: str
    request_date: date
    notes: Optional[str]
    supplier_id: Optional[int]
    supplier_name: Optional[str]
    approved_by: Optional[str]
    approval_date: Optional[datetime]
    received_by: Optional[str]
    receiver_signature: Optional[str]
    completed_at: Optional[datetime]
    created_at: Optional[datetime]
    items: List[RequestItemResponse]


class ItemOutcomeResponse(BaseModel):
    position: int
    product_name: str
    requested: int
    result: str
    product_id: Optional[int]
    available: Optional[int]
    movement_id: Optional[int]
    reason: Optional[str]


class WithdrawalResponse(BaseModel):
    request_id: int
    completed: bool
    items: List[ItemOutcomeResponse]
    summary: dict


def build_request_response(request) -> RequestResponse:
    return RequestResponse(
        id=request.id,
        type=request.type,
        reason=request.reason,
        requested_by=request.requested_by,
        department=request.department,
        priority=request.priority,
        status=request.status,
        request_date=request.request_date,
        notes=request.notes,
        supplier_id=request.supplier_id,
        supplier_name=request.supplier_name,
        approved_by=request.approved_by,
        approval_date=request.approval_date,
        received_by=request.received_by,
        receiver_signature=request.receiver_signature,
        completed_at=request.completed_at,
        created_at=request.created_at,
        items=[
            RequestItemResponse(
                id=item.id,
                position=item.position,
                kind=item.kind,
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                category=item.category,
            )
            for item in request.items
        ],
    )


def _item_spec(item) -> ItemSpec:
    if item.kind == RequestItemKind.ADHOC.value:
        return ItemSpec(kind=RequestItemKind.ADHOC, quantity=item.quantity, name=item.name, category=item.category)
    return ItemSpec(
        kind=RequestItemKind.CATALOGUED,
        quantity=item.quantity,
        product_id=item.product_id,
        category=item.category,
    )


# ============= ROUTES =============

@router.post("", response_model=RequestResponse, status_code=201)
async def create_request(
    request_data: RequestCreate,
    user_context: dict = Depends(require(Permission.ADD_REQUESTS)),
    db: Session = Depends(get_db)
):
    """Open a purchase (SC) or material (SM) request."""
    request = request_lifecycle.create_request(
        db,
        request_type=request_data.type.value,
        items=[_item_spec(item) for item in request_data.items],
        reason=request_data.reason,
        requested_by=user_context["name"],
        department=request_data.department or user_context.get("department"),
        priority=request_data.priority.value,
        notes=request_data.notes,
        supplier_id=request_data.supplier_id,
        actor_role=user_context["role"],
    )
    return build_request_response(request)


@router.get("", response_model=List[RequestResponse])
async def list_requests(
    status: Optional[RequestStatus] = Query(None, description="Filter by status"),
    type: Optional[RequestType] = Query(None, description="SC or SM"),
    department: Optional[str] = Query(None, description="Filter by department"),
    user_context: dict = Depends(require(Permission.VIEW_REQUESTS)),
    db: Session = Depends(get_db)
):
    """List requests. Requesters only see their own."""
    requested_by = user_context["name"] if user_context["role"] == Role.REQUESTER else None
    requests = request_lifecycle.list_requests(
        db, status=status, request_type=type, department=department, requested_by=requested_by
    )
    return [build_request_response(r) for r in requests]


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: int,
    user_context: dict = Depends(require(Permission.VIEW_REQUESTS)),
    db: Session = Depends(get_db)
):
    return build_request_response(request_lifecycle.get_request(db, request_id))


@router.post("/{request_id}/approve", response_model=RequestResponse)
async def approve_request(
    request_id: int,
    user_context: dict = Depends(require(Permission.APPROVE_REQUESTS)),
    db: Session = Depends(get_db)
):
    request = request_lifecycle.approve_request(db, request_id, user_context["name"])
    return build_request_response(request)


@router.post("/{request_id}/reject", response_model=RequestResponse)
async def reject_request(
    request_id: int,
    payload: Optional[RequestReject] = None,
    user_context: dict = Depends(require(Permission.APPROVE_REQUESTS)),
    db: Session = Depends(get_db)
):
    notes = payload.notes if payload else None
    request = request_lifecycle.reject_request(db, request_id, user_context["name"], notes)
    return build_request_response(request)


@router.get("/{request_id}/withdrawal", response_model=WithdrawalResponse)
async def preview_withdrawal(
    request_id: int,
    user_context: dict = Depends(require(Permission.RECONCILE_WITHDRAWALS)),
    db: Session = Depends(get_db)
):
    """Classify each item against current stock without changing anything."""
    return withdrawal.preview_withdrawal(db, request_id).to_dict()


@router.post("/{request_id}/withdrawal", response_model=WithdrawalResponse)
async def confirm_withdrawal(
    request_id: int,
    payload: WithdrawalConfirm,
    user_context: dict = Depends(require(Permission.RECONCILE_WITHDRAWALS)),
    db: Session = Depends(get_db)
):
    """Confirm the handover with the receiver's signature; deducts stock and completes the request."""
    outcome = withdrawal.reconcile_withdrawal(
        db,
        request_id,
        signature=payload.signature,
        receiver_name=payload.receiver_name,
        actor=user_context["name"],
    )
    return outcome.to_dict()
