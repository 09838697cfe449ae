"""
Payment request API routes.
"""
from typing import List, Optional
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.db.models import PaymentMethod, PaymentRequestStatus, PaymentRequestType
from stockroom.core.rbac import Permission, require
from stockroom.services import payment_requests

router = APIRouter(prefix="/api/payments", tags=["Payments"])


# ============= SCHEMAS =============

class PaymentRequestCreate(BaseModel):
    request_type: PaymentRequestType = PaymentRequestType.PAYMENT
    document_number: str
    payee: str
    tax_id: str
    total_amount: float = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_details: Optional[str] = None
    description: str
    authorized_by: Optional[str] = None
    payment_date: date
    requester_email: Optional[str] = None
    department: Optional[str] = None


class PaymentTransition(BaseModel):
    status: PaymentRequestStatus
    rejection_reason: Optional[str] = None


class PaymentRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    compact_code: str
    request_type: str
    document_number: str
    payee: str
    tax_id: str
    total_amount: float
    payment_method: str
    payment_details: Optional[str]
    description: str
    requested_by: str
    authorized_by: Optional[str]
    payment_date: date
    requester_email: Optional[str]
    department: Optional[str]
    status: str
    approved_by: Optional[str]
    approval_date: Optional[datetime]
    rejection_reason: Optional[str]
    created_at: Optional[datetime]


# ============= ROUTES =============

@router.get("/next-date")
async def get_next_payment_date(
    user_context: dict = Depends(require(Permission.MANAGE_PAYMENTS)),
) -> dict:
    """Earliest Tuesday or Thursday a new payment can be scheduled for."""
    return {"next_valid_date": payment_requests.next_valid_payment_date(date.today()).isoformat()}


@router.post("", response_model=PaymentRequestResponse, status_code=201)
async def create_payment_request(
    payload: PaymentRequestCreate,
    user_context: dict = Depends(require(Permission.MANAGE_PAYMENTS)),
    db: Session = Depends(get_db)
):
    data = payload.model_dump(mode="python")
    data["request_type"] = payload.request_type.value
    data["payment_method"] = payload.payment_method.value
    data["requester_email"] = data.get("requester_email") or user_context.get("email")
    data["department"] = data.get("department") or user_context.get("department")
    payment = payment_requests.create_payment_request(db, data, user_context["name"])
    return PaymentRequestResponse.model_validate(payment)


@router.get("", response_model=List[PaymentRequestResponse])
async def list_payment_requests(
    status: Optional[PaymentRequestStatus] = Query(None, description="Filter by status"),
    requested_by: Optional[str] = Query(None, description="Filter by requester"),
    user_context: dict = Depends(require(Permission.MANAGE_PAYMENTS)),
    db: Session = Depends(get_db)
):
    payments = payment_requests.list_payment_requests(db, status=status, requested_by=requested_by)
    return [PaymentRequestResponse.model_validate(p) for p in payments]


@router.get("/{payment_id}", response_model=PaymentRequestResponse)
async def get_payment_request(
    payment_id: int,
    user_context: dict = Depends(require(Permission.MANAGE_PAYMENTS)),
    db: Session = Depends(get_db)
):
    return PaymentRequestResponse.model_validate(payment_requests.get_payment_request(db, payment_id))


@router.post("/{payment_id}/status", response_model=PaymentRequestResponse)
async def transition_payment_request(
    payment_id: int,
    payload: PaymentTransition,
    user_context: dict = Depends(require(Permission.MANAGE_PAYMENTS)),
    db: Session = Depends(get_db)
):
    """Approve, reject, cancel or mark a payment request as paid."""
    payment = payment_requests.transition_payment_request(
        db, payment_id, payload.status.value, user_context["name"], payload.rejection_reason
    )
    return PaymentRequestResponse.model_validate(payment)
