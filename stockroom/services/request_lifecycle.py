"""
Request lifecycle: creation and guarded status transitions.

    pending  -> approved | rejected
    approved -> completed

Transitions are persisted with a status-guarded UPDATE so that two sessions
racing on the same request cannot both apply a change. Stock and ledger are
never touched here; completion is driven by the withdrawal reconciler.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.errors import (
    AlreadyCompleted, InvalidTransition, NotFound, StoreFailure, ValidationError, parse_choice
)
from stockroom.core.logging import get_logger
from stockroom.core.rbac import Role
from stockroom.db.models import (
    MaterialRequest, Product, RequestItem, RequestItemKind, RequestPriority,
    RequestStatus, RequestType, Supplier
)
from stockroom.services.audit import record_audit
from stockroom.services.request_periods import ensure_period_open

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
}

# Transitions that must name who performed them
ACTOR_REQUIRED = frozenset({RequestStatus.APPROVED, RequestStatus.COMPLETED})


@dataclass
class ItemSpec:
    """A request line as submitted. `product_id` for catalogued, `name` for adhoc."""
    kind: RequestItemKind
    quantity: int
    product_id: Optional[int] = None
    name: Optional[str] = None
    category: Optional[str] = None


def get_request(db: Session, request_id: int) -> MaterialRequest:
    request = db.get(MaterialRequest, request_id)
    if request is None:
        raise NotFound("request", request_id)
    return request


def list_requests(
    db: Session,
    status: Optional[str] = None,
    request_type: Optional[str] = None,
    department: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> List[MaterialRequest]:
    query = db.query(MaterialRequest)
    if status:
        query = query.filter(MaterialRequest.status == parse_choice(RequestStatus, status, "status").value)
    if request_type:
        query = query.filter(MaterialRequest.type == parse_choice(RequestType, request_type, "type").value)
    if department:
        query = query.filter(MaterialRequest.department == department)
    if requested_by:
        query = query.filter(MaterialRequest.requested_by == requested_by)
    return query.order_by(MaterialRequest.created_at.desc(), MaterialRequest.id.desc()).all()


def _build_item(db: Session, position: int, spec: ItemSpec) -> RequestItem:
    if not isinstance(spec.quantity, int) or spec.quantity <= 0:
        raise ValidationError(
            f"Item {position + 1}: quantity must be a positive integer",
            {"position": position},
        )

    kind = RequestItemKind(spec.kind)
    if kind == RequestItemKind.CATALOGUED:
        if spec.product_id is None:
            raise ValidationError(f"Item {position + 1}: catalogued items need a product_id")
        product = db.get(Product, spec.product_id)
        if product is None:
            raise NotFound("product", spec.product_id)
        return RequestItem(
            position=position,
            kind=kind.value,
            product_id=product.id,
            product_name=product.name,
            quantity=spec.quantity,
            category=spec.category or product.category,
        )

    name = (spec.name or "").strip()
    if not name:
        raise ValidationError(f"Item {position + 1}: unregistered items need a name")
    return RequestItem(
        position=position,
        kind=kind.value,
        product_id=None,
        product_name=name,
        quantity=spec.quantity,
        category=spec.category,
    )


def create_request(
    db: Session,
    *,
    request_type: str,
    items: List[ItemSpec],
    reason: str,
    requested_by: str,
    department: Optional[str] = None,
    priority: str = RequestPriority.STANDARD.value,
    notes: Optional[str] = None,
    supplier_id: Optional[int] = None,
    actor_role: Optional[Role] = None,
    today: Optional[date] = None,
) -> MaterialRequest:
    """Open a new pending request."""
    today = today or date.today()

    if not items:
        raise ValidationError("A request must contain at least one item")
    if not (requested_by or "").strip():
        raise ValidationError("requested_by is required")
    if actor_role == Role.REQUESTER:
        ensure_period_open(db, department, today)

    request = MaterialRequest(
        type=parse_choice(RequestType, request_type, "type").value,
        reason=reason,
        requested_by=requested_by,
        department=department,
        priority=parse_choice(RequestPriority, priority, "priority").value,
        status=RequestStatus.PENDING.value,
        request_date=today,
        notes=notes,
    )
    if supplier_id is not None:
        supplier = db.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFound("supplier", supplier_id)
        request.supplier_id = supplier.id
        request.supplier_name = supplier.name

    request.items = [_build_item(db, position, spec) for position, spec in enumerate(items)]

    try:
        db.add(request)
        db.flush()
        record_audit(db, "create_request", requested_by, "request", request.id, {
            "type": request.type,
            "priority": request.priority,
            "item_count": len(request.items),
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create request: {e}")
        raise StoreFailure("create_request") from e

    db.refresh(request)
    return request


def request_replenishment(
    db: Session,
    product_id: int,
    requested_by: str,
    department: Optional[str] = None,
) -> MaterialRequest:
    """Open a priority withdrawal request restocking a product to twice its minimum."""
    product = db.get(Product, product_id)
    if product is None:
        raise NotFound("product", product_id)

    suggested_quantity = max(product.min_stock * 2, 10)
    return create_request(
        db,
        request_type=RequestType.MATERIAL.value,
        items=[ItemSpec(
            kind=RequestItemKind.CATALOGUED,
            product_id=product.id,
            quantity=suggested_quantity,
            category=product.category,
        )],
        reason=(
            f"Automatic replenishment request. "
            f"Current stock: {product.quantity} {product.unit or ''}".rstrip()
        ),
        requested_by=requested_by,
        department=department,
        priority=RequestPriority.PRIORITY.value,
    )


def transition(
    db: Session,
    request: MaterialRequest,
    target_status,
    actor: Optional[str],
    metadata: Optional[dict] = None,
    commit: bool = True,
) -> MaterialRequest:
    """
    Move a request to `target_status`.

    `metadata` may carry `notes`, and for completion the
    `receiver_signature` and `received_by` captured by the withdrawal.
    With commit=False the change joins the caller's transaction and the
    caller owns commit/rollback.

    Raises InvalidTransition, AlreadyCompleted, ValidationError or
    StoreFailure; on any of them the request's stored status is unchanged.
    """
    metadata = metadata or {}
    current = RequestStatus(request.status)
    target = parse_choice(RequestStatus, target_status, "status")

    if target not in ALLOWED_TRANSITIONS[current]:
        if current == RequestStatus.COMPLETED:
            raise AlreadyCompleted(request.id)
        raise InvalidTransition("request", current.value, target.value)

    actor = (actor or "").strip()
    if target in ACTOR_REQUIRED and not actor:
        raise ValidationError(f"An actor is required to mark a request {target.value}")

    now = datetime.now(timezone.utc)
    values = {"status": target.value, "updated_at": now}
    if target == RequestStatus.APPROVED:
        values.update(approved_by=actor, approval_date=now)
    elif target == RequestStatus.COMPLETED:
        signature = (metadata.get("receiver_signature") or "").strip()
        received_by = (metadata.get("received_by") or "").strip()
        if not signature or not received_by:
            raise ValidationError("Completing a request requires the receiver's signature and name")
        values.update(receiver_signature=signature, received_by=received_by, completed_at=now)
    if metadata.get("notes"):
        values["notes"] = metadata["notes"]

    try:
        result = db.execute(
            update(MaterialRequest)
            .where(MaterialRequest.id == request.id, MaterialRequest.status == current.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            latest = db.execute(
                select(MaterialRequest.status).where(MaterialRequest.id == request.id)
            ).scalar_one_or_none()
            if commit:
                db.rollback()
            logger.warning(
                f"Request {request.id} changed concurrently: expected '{current.value}', found '{latest}'"
            )
            if latest == RequestStatus.COMPLETED.value:
                raise AlreadyCompleted(request.id)
            raise InvalidTransition("request", latest or current.value, target.value)

        record_audit(db, f"request_{target.value}", actor or None, "request", request.id, {
            "from": current.value,
            "to": target.value,
            **({"received_by": values["received_by"]} if target == RequestStatus.COMPLETED else {}),
        })
        db.expire(request)
        if commit:
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to move request {request.id} to {target.value}: {e}")
        raise StoreFailure(f"request transition to {target.value}") from e

    return request


def approve_request(db: Session, request_id: int, actor: str) -> MaterialRequest:
    return transition(db, get_request(db, request_id), RequestStatus.APPROVED, actor)


def reject_request(db: Session, request_id: int, actor: Optional[str], notes: Optional[str] = None) -> MaterialRequest:
    return transition(db, get_request(db, request_id), RequestStatus.REJECTED, actor, {"notes": notes})
