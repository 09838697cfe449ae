"""
Quotation engine: invite suppliers to price request items, collect bids and
pick one winner per quotation.

Selecting a winner is informational only; stock moves solely through the
withdrawal reconciler.
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.errors import (
    InvalidTransition, ItemNotSubmitted, NotFound, QuotationAlreadyDecided,
    StoreFailure, ValidationError, parse_choice
)
from stockroom.core.logging import get_logger
from stockroom.db.models import (
    MaterialRequest, Quotation, QuotationItem, QuotationItemStatus,
    QuotationStatus, RequestItem, RequestStatus, Supplier, SupplierStatus
)
from stockroom.services.audit import record_audit

logger = get_logger(__name__)

DECIDED_STATUSES = (QuotationStatus.COMPLETED.value, QuotationStatus.CANCELLED.value)
UNDECIDED_STATUSES = (QuotationStatus.PENDING.value, QuotationStatus.IN_PROGRESS.value)


def get_quotation(db: Session, quotation_id: int) -> Quotation:
    quotation = db.get(Quotation, quotation_id)
    if quotation is None:
        raise NotFound("quotation", quotation_id)
    return quotation


def list_quotations(
    db: Session,
    request_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[Quotation]:
    query = db.query(Quotation)
    if request_id is not None:
        query = query.filter(Quotation.request_id == request_id)
    if status:
        query = query.filter(Quotation.status == parse_choice(QuotationStatus, status, "status").value)
    return query.order_by(Quotation.created_at.desc(), Quotation.id.desc()).all()


def active_suppliers(db: Session) -> List[Supplier]:
    return db.query(Supplier).filter(
        Supplier.status == SupplierStatus.ACTIVE.value
    ).order_by(Supplier.name).all()


def lowest_price(quotation: Quotation) -> Optional[float]:
    """Lowest unit price among submitted bids, or None when nobody has bid yet."""
    prices = [
        item.unit_price
        for item in quotation.items
        if item.status == QuotationItemStatus.SUBMITTED.value and item.unit_price is not None
    ]
    return min(prices) if prices else None


def _require_approved(request: MaterialRequest) -> None:
    if request.status != RequestStatus.APPROVED.value:
        raise InvalidTransition("request", request.status, "quotation")


def _open_quotation_for(db: Session, item: RequestItem) -> Optional[Quotation]:
    return db.query(Quotation).filter(
        Quotation.request_item_id == item.id,
        Quotation.status != QuotationStatus.CANCELLED.value,
    ).first()


def _build_quotation(
    db: Session,
    request: MaterialRequest,
    item: RequestItem,
    suppliers: List[Supplier],
    actor: str,
) -> Quotation:
    if item.request_id != request.id:
        raise ValidationError(f"Item {item.id} does not belong to request {request.id}")
    if not suppliers:
        raise ValidationError("At least one supplier must be invited")
    if len({s.id for s in suppliers}) != len(suppliers):
        raise ValidationError("A supplier can only be invited once per quotation")
    if _open_quotation_for(db, item) is not None:
        raise ValidationError(
            f"Item '{item.product_name}' already has an open quotation",
            {"request_item_id": item.id},
        )

    quotation = Quotation(
        request_id=request.id,
        request_item_id=item.id,
        product_id=item.product_id,
        product_name=item.product_name,
        requested_quantity=item.quantity,
        status=QuotationStatus.PENDING.value,
        created_by=actor,
    )
    quotation.items = [
        QuotationItem(
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            status=QuotationItemStatus.PENDING.value,
        )
        for supplier in suppliers
    ]
    db.add(quotation)
    return quotation


def create_quotation(
    db: Session,
    request: MaterialRequest,
    item: RequestItem,
    invited_suppliers: List[Supplier],
    actor: str,
) -> Quotation:
    """Open a quotation for one request item with one pending bid per invited supplier."""
    _require_approved(request)
    quotation = _build_quotation(db, request, item, invited_suppliers, actor)

    try:
        db.flush()
        record_audit(db, "create_quotation", actor, "quotation", quotation.id, {
            "request_id": request.id,
            "product_name": item.product_name,
            "suppliers": [s.id for s in invited_suppliers],
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create quotation for request {request.id}: {e}")
        raise StoreFailure("create_quotation") from e

    db.refresh(quotation)
    return quotation


def start_quotations(
    db: Session,
    request: MaterialRequest,
    suppliers: Optional[Iterable[Supplier]],
    actor: str,
) -> List[Quotation]:
    """
    Open a quotation for every item of an approved request.

    When no suppliers are given every active supplier is invited. Items that
    already have an open quotation are skipped.
    """
    _require_approved(request)

    suppliers = list(suppliers or []) or active_suppliers(db)
    if not suppliers:
        raise ValidationError("No active suppliers to invite")

    created = []
    for item in request.items:
        if _open_quotation_for(db, item) is not None:
            logger.info(f"Request {request.id} item {item.id} already quoted, skipping")
            continue
        created.append(_build_quotation(db, request, item, suppliers, actor))

    if not created:
        raise ValidationError(f"Every item of request {request.id} already has an open quotation")

    try:
        db.flush()
        record_audit(db, "start_quotations", actor, "request", request.id, {
            "quotations": [q.id for q in created],
            "suppliers": [s.id for s in suppliers],
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to start quotations for request {request.id}: {e}")
        raise StoreFailure("start_quotations") from e

    for quotation in created:
        db.refresh(quotation)
    return created


def submit_bid(
    db: Session,
    quotation_item_id: int,
    unit_price: float,
    delivery_time: Optional[str] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> QuotationItem:
    """
    Record a supplier's price. The first bid moves the quotation to in_progress.

    The parent quotation is claimed with a status-guarded UPDATE before the
    bid is written, so a bid racing a winner selection either lands before
    the selection or fails with QuotationAlreadyDecided.
    """
    if unit_price is None or unit_price <= 0:
        raise ValidationError("unit_price must be greater than zero")

    item = db.get(QuotationItem, quotation_item_id)
    if item is None:
        raise NotFound("quotation_item", quotation_item_id)
    quotation = item.quotation

    if quotation.status in DECIDED_STATUSES:
        raise QuotationAlreadyDecided(quotation.id, quotation.status)
    if item.status != QuotationItemStatus.PENDING.value:
        raise InvalidTransition("quotation_item", item.status, QuotationItemStatus.SUBMITTED.value)

    now = datetime.now(timezone.utc)
    try:
        claimed = db.execute(
            update(Quotation)
            .where(Quotation.id == quotation.id, Quotation.status.in_(UNDECIDED_STATUSES))
            .values(status=QuotationStatus.IN_PROGRESS.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            db.refresh(quotation)
            logger.warning(f"Bid {item.id} refused, quotation {quotation.id} is {quotation.status}")
            raise QuotationAlreadyDecided(quotation.id, quotation.status)

        written = db.execute(
            update(QuotationItem)
            .where(QuotationItem.id == item.id, QuotationItem.status == QuotationItemStatus.PENDING.value)
            .values(
                unit_price=unit_price,
                total_price=unit_price * quotation.requested_quantity,
                delivery_time=delivery_time,
                notes=notes,
                status=QuotationItemStatus.SUBMITTED.value,
                submitted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if written.rowcount != 1:
            db.rollback()
            db.refresh(item)
            raise InvalidTransition("quotation_item", item.status, QuotationItemStatus.SUBMITTED.value)

        record_audit(db, "submit_bid", actor, "quotation_item", item.id, {
            "quotation_id": quotation.id,
            "supplier_id": item.supplier_id,
            "unit_price": unit_price,
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to record bid {quotation_item_id}: {e}")
        raise StoreFailure("submit_bid") from e

    db.refresh(quotation)
    db.refresh(item)
    return item


def select_winner(
    db: Session,
    quotation_id: int,
    winning_item_id: int,
    actor: Optional[str] = None,
) -> Quotation:
    """
    Pick the winning bid of a quotation.

    The winner becomes `selected`, every sibling `rejected`, and the
    quotation `completed` with the winner's supplier, price and delivery
    time copied onto it. The quotation row is claimed with a status-guarded
    UPDATE, so of two concurrent selections only one succeeds.
    """
    quotation = get_quotation(db, quotation_id)
    if quotation.status in DECIDED_STATUSES:
        raise QuotationAlreadyDecided(quotation.id, quotation.status)

    winner = next((i for i in quotation.items if i.id == winning_item_id), None)
    if winner is None:
        raise NotFound("quotation_item", winning_item_id)
    if winner.status != QuotationItemStatus.SUBMITTED.value:
        raise ItemNotSubmitted(winner.id, winner.status)

    try:
        claimed = db.execute(
            update(Quotation)
            .where(Quotation.id == quotation.id, Quotation.status.in_(UNDECIDED_STATUSES))
            .values(
                status=QuotationStatus.COMPLETED.value,
                selected_supplier_id=winner.supplier_id,
                selected_price=winner.unit_price,
                selected_delivery_time=winner.delivery_time,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            db.rollback()
            db.refresh(quotation)
            logger.warning(f"Quotation {quotation.id} was decided concurrently ({quotation.status})")
            raise QuotationAlreadyDecided(quotation.id, quotation.status)

        for item in quotation.items:
            if item.id == winner.id:
                item.status = QuotationItemStatus.SELECTED.value
            else:
                item.status = QuotationItemStatus.REJECTED.value

        record_audit(db, "select_quotation_winner", actor, "quotation", quotation.id, {
            "quotation_item_id": winner.id,
            "supplier_id": winner.supplier_id,
            "unit_price": winner.unit_price,
        })
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to select winner for quotation {quotation_id}: {e}")
        raise StoreFailure("select_winner") from e

    db.refresh(quotation)
    return quotation


def cancel_quotation(db: Session, quotation_id: int, actor: Optional[str] = None) -> Quotation:
    """Cancel an undecided quotation; its bids are kept as they are."""
    quotation = get_quotation(db, quotation_id)
    if quotation.status in DECIDED_STATUSES:
        raise QuotationAlreadyDecided(quotation.id, quotation.status)

    try:
        cancelled = db.execute(
            update(Quotation)
            .where(Quotation.id == quotation.id, Quotation.status.in_(UNDECIDED_STATUSES))
            .values(status=QuotationStatus.CANCELLED.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount != 1:
            db.rollback()
            db.refresh(quotation)
            raise QuotationAlreadyDecided(quotation.id, quotation.status)

        record_audit(db, "cancel_quotation", actor, "quotation", quotation.id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to cancel quotation {quotation_id}: {e}")
        raise StoreFailure("cancel_quotation") from e

    db.refresh(quotation)
    return quotation
