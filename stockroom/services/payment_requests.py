"""
Payment requests: scheduling rules, daily sequence codes and status flow.

    pending  -> approved | rejected | cancelled
    approved -> paid | cancelled
"""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.config import settings
from stockroom.core.errors import InvalidTransition, NotFound, StoreFailure, ValidationError, parse_choice
from stockroom.core.logging import get_logger
from stockroom.db.models import (
    PaymentMethod, PaymentRequest, PaymentRequestStatus, PaymentRequestType
)
from stockroom.services.audit import record_audit

logger = get_logger(__name__)

CODE_PREFIX = "PAYMENT REQUEST"

# date.weekday(): Monday is 0
PAYMENT_WEEKDAYS = frozenset({1, 3})  # Tuesday, Thursday

ALLOWED_TRANSITIONS: Dict[PaymentRequestStatus, FrozenSet[PaymentRequestStatus]] = {
    PaymentRequestStatus.PENDING: frozenset({
        PaymentRequestStatus.APPROVED, PaymentRequestStatus.REJECTED, PaymentRequestStatus.CANCELLED,
    }),
    PaymentRequestStatus.APPROVED: frozenset({PaymentRequestStatus.PAID, PaymentRequestStatus.CANCELLED}),
    PaymentRequestStatus.REJECTED: frozenset(),
    PaymentRequestStatus.PAID: frozenset(),
    PaymentRequestStatus.CANCELLED: frozenset(),
}


def _min_lead_days(min_hours: int) -> int:
    return -(-min_hours // 24)


def next_valid_payment_date(today: date, min_hours: Optional[int] = None) -> date:
    """First Tuesday or Thursday at least `min_hours` after the start of today."""
    if min_hours is None:
        min_hours = settings.PAYMENT_MIN_LEAD_HOURS
    candidate = today + timedelta(days=_min_lead_days(min_hours))
    while candidate.weekday() not in PAYMENT_WEEKDAYS:
        candidate += timedelta(days=1)
    return candidate


def validate_payment_date(payment_date: date, today: date, min_hours: Optional[int] = None) -> None:
    if min_hours is None:
        min_hours = settings.PAYMENT_MIN_LEAD_HOURS
    suggestion = next_valid_payment_date(today, min_hours).isoformat()

    if payment_date.weekday() not in PAYMENT_WEEKDAYS:
        raise ValidationError(
            "Payment date must be a Tuesday or a Thursday",
            {"suggested_date": suggestion},
        )
    if (payment_date - today).days * 24 < min_hours:
        raise ValidationError(
            f"Payment date must be at least {min_hours} hours ahead",
            {"suggested_date": suggestion},
        )


def normalize_tax_id(tax_id: str) -> str:
    """Strip punctuation from a CPF (11 digits) or CNPJ (14 digits)."""
    digits = re.sub(r"\D", "", tax_id or "")
    if len(digits) not in (11, 14):
        raise ValidationError("Tax id must have 11 (CPF) or 14 (CNPJ) digits")
    return digits


def generate_code(today: date, existing_today: int) -> Dict[str, str]:
    compact = f"{today.day:02d}/{today.month:02d} - {existing_today + 1:02d}"
    return {"code": f"{CODE_PREFIX} {compact}", "compact_code": compact}


def _last_sequence_for(db: Session, today: date) -> int:
    """Highest NN already issued under today's ``dd/mm`` label."""
    prefix = f"{today.day:02d}/{today.month:02d} - "
    issued = db.query(PaymentRequest.compact_code).filter(
        PaymentRequest.compact_code.like(f"{prefix}%")
    ).all()
    return max((int(code[len(prefix):]) for (code,) in issued), default=0)


def get_payment_request(db: Session, payment_id: int) -> PaymentRequest:
    payment = db.get(PaymentRequest, payment_id)
    if payment is None:
        raise NotFound("payment_request", payment_id)
    return payment


def list_payment_requests(
    db: Session,
    status: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> List[PaymentRequest]:
    query = db.query(PaymentRequest)
    if status:
        query = query.filter(PaymentRequest.status == parse_choice(PaymentRequestStatus, status, "status").value)
    if requested_by:
        query = query.filter(PaymentRequest.requested_by == requested_by)
    return query.order_by(PaymentRequest.created_at.desc(), PaymentRequest.id.desc()).all()


def create_payment_request(db: Session, data: dict, actor: str, today: Optional[date] = None) -> PaymentRequest:
    today = today or date.today()

    for name in ("document_number", "payee", "description"):
        if not (data.get(name) or "").strip():
            raise ValidationError(f"{name} is required")
    total = data.get("total_amount")
    if total is None or total <= 0:
        raise ValidationError("total_amount must be greater than zero")
    tax_id = normalize_tax_id(data.get("tax_id"))
    payment_date = data.get("payment_date")
    if payment_date is None:
        raise ValidationError("payment_date is required",
                              {"suggested_date": next_valid_payment_date(today).isoformat()})
    validate_payment_date(payment_date, today)

    codes = generate_code(today, _last_sequence_for(db, today))
    payment = PaymentRequest(
        code=codes["code"],
        compact_code=codes["compact_code"],
        request_type=parse_choice(
            PaymentRequestType, data.get("request_type", PaymentRequestType.PAYMENT.value), "request_type"
        ).value,
        document_number=data["document_number"].strip(),
        payee=data["payee"].strip(),
        tax_id=tax_id,
        total_amount=total,
        payment_method=parse_choice(PaymentMethod, data.get("payment_method"), "payment_method").value,
        payment_details=data.get("payment_details"),
        description=data["description"].strip(),
        requested_by=actor,
        authorized_by=data.get("authorized_by"),
        payment_date=payment_date,
        requester_email=data.get("requester_email"),
        department=data.get("department"),
        status=PaymentRequestStatus.PENDING.value,
        created_at=datetime.now(timezone.utc),
    )

    try:
        db.add(payment)
        db.flush()
        record_audit(db, "create_payment_request", actor, "payment_request", payment.id, {
            "code": payment.code,
            "total_amount": payment.total_amount,
            "payment_method": payment.payment_method,
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create payment request {codes['code']}: {e}")
        raise StoreFailure("create_payment_request") from e

    db.refresh(payment)
    return payment


def transition_payment_request(
    db: Session,
    payment_id: int,
    target_status: str,
    actor: str,
    rejection_reason: Optional[str] = None,
) -> PaymentRequest:
    payment = get_payment_request(db, payment_id)
    current = PaymentRequestStatus(payment.status)
    target = parse_choice(PaymentRequestStatus, target_status, "status")

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition("payment_request", current.value, target.value)

    values = {"status": target.value, "updated_at": datetime.now(timezone.utc)}
    if target == PaymentRequestStatus.APPROVED:
        values.update(approved_by=actor, approval_date=datetime.now(timezone.utc))
    elif target == PaymentRequestStatus.REJECTED:
        if not (rejection_reason or "").strip():
            raise ValidationError("A rejection reason is required")
        values["rejection_reason"] = rejection_reason.strip()

    try:
        result = db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == payment.id, PaymentRequest.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(payment)
            raise InvalidTransition("payment_request", payment.status, target.value)

        record_audit(db, f"payment_request_{target.value}", actor, "payment_request", payment.id,
                     {"from": current.value, "to": target.value})
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to move payment request {payment_id} to {target.value}: {e}")
        raise StoreFailure(f"payment request transition to {target.value}") from e

    db.refresh(payment)
    return payment
