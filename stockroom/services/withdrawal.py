"""
Withdrawal reconciler: turn an approved request into stock deductions.

This is the only code path that decrements Product.quantity and the only
writer of StockMovement rows. A reconciliation:

1. reads the live products behind the request's catalogued items,
2. classifies every item (deliverable, insufficient-stock, unregistered,
   deduction-failed),
3. deducts each deliverable item inside its own SAVEPOINT with a
   quantity-guarded UPDATE and appends one ledger entry,
4. completes the request through the lifecycle manager with the receiver's
   signature and name, and commits everything at once.

If the request was completed concurrently the whole operation is rolled
back and AlreadyCompleted is raised, so stock is never deducted twice.
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.config import settings
from stockroom.core.errors import (
    AlreadyCompleted, InsufficientStock, InvalidTransition, StockroomError,
    StoreFailure, SubmissionCooldown, SubmissionInProgress, ValidationError
)
from stockroom.core.logging import get_logger
from stockroom.db.models import (
    MaterialRequest, MovementReason, MovementType, Product, RequestStatus, StockMovement
)
from stockroom.services.audit import record_audit
from stockroom.services.request_lifecycle import get_request, transition

logger = get_logger(__name__)

ITEM_DELIVERABLE = "deliverable"
ITEM_DEDUCTED = "deducted"
ITEM_INSUFFICIENT = "insufficient-stock"
ITEM_UNREGISTERED = "unregistered"
ITEM_FAILED = "deduction-failed"


@dataclass
class ItemOutcome:
    position: int
    product_name: str
    requested: int
    result: str
    product_id: Optional[int] = None
    available: Optional[int] = None
    movement_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class WithdrawalOutcome:
    request_id: int
    items: List[ItemOutcome] = field(default_factory=list)
    completed: bool = False

    def _with(self, result: str) -> List[ItemOutcome]:
        return [i for i in self.items if i.result == result]

    @property
    def deducted(self) -> List[ItemOutcome]:
        return self._with(ITEM_DEDUCTED)

    @property
    def insufficient(self) -> List[ItemOutcome]:
        return self._with(ITEM_INSUFFICIENT)

    @property
    def unregistered(self) -> List[ItemOutcome]:
        return self._with(ITEM_UNREGISTERED)

    @property
    def failed(self) -> List[ItemOutcome]:
        return self._with(ITEM_FAILED)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "completed": self.completed,
            "items": [asdict(i) for i in self.items],
            "summary": {
                ITEM_DEDUCTED: len(self.deducted),
                ITEM_INSUFFICIENT: len(self.insufficient),
                ITEM_UNREGISTERED: len(self.unregistered),
                ITEM_FAILED: len(self.failed),
            },
        }


# ============= DUPLICATE SUBMISSION GUARD =============

class WithdrawalGuard:
    """
    In-process guard against repeated confirmation of the same withdrawal.

    Only one reconciliation per request may run at a time, and after a
    failed attempt further attempts are refused for `cooldown_seconds`.
    The status-guarded UPDATEs remain what keeps the data correct; this
    only spares the database from double-clicks.
    """

    def __init__(self, cooldown_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if cooldown_seconds is None:
            cooldown_seconds = settings.WITHDRAWAL_COOLDOWN_SECONDS
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight = set()
        self._failed_at: Dict[int, float] = {}

    @contextmanager
    def hold(self, request_id: int):
        with self._lock:
            if request_id in self._in_flight:
                raise SubmissionInProgress(
                    f"A withdrawal for request {request_id} is already being processed",
                    {"request_id": request_id},
                )
            self._in_flight.add(request_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(request_id)

    def _prune(self, now: float) -> None:
        """Drop failure records whose cooldown has run out. Caller holds the lock."""
        expired = [rid for rid, failed_at in self._failed_at.items() if now - failed_at >= self.cooldown_seconds]
        for rid in expired:
            del self._failed_at[rid]

    def check_cooldown(self, request_id: int) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            failed_at = self._failed_at.get(request_id)
        if failed_at is None:
            return
        remaining = self.cooldown_seconds - (now - failed_at)
        raise SubmissionCooldown(
            f"Please wait {remaining:.1f}s before retrying the withdrawal for request {request_id}",
            {"request_id": request_id, "retry_after": round(remaining, 1)},
        )

    def record_failure(self, request_id: int) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            self._failed_at[request_id] = now

    def clear(self, request_id: int) -> None:
        with self._lock:
            self._failed_at.pop(request_id, None)

    def reset(self) -> None:
        with self._lock:
            self._in_flight.clear()
            self._failed_at.clear()


default_guard = WithdrawalGuard()


# ============= CLASSIFICATION =============

def plan_withdrawal(request: MaterialRequest, products: Mapping[int, Product]) -> List[ItemOutcome]:
    """
    Classify each request item against current stock without changing anything.

    `products` maps product id to the live product row; catalogued items
    whose product is missing from it are reported as deduction-failed.
    """
    plan = []
    for item in request.items:
        outcome = ItemOutcome(
            position=item.position,
            product_name=item.product_name,
            requested=item.quantity,
            result=ITEM_UNREGISTERED,
            product_id=item.product_id,
        )
        if item.is_adhoc:
            outcome.reason = "Item is not registered in the catalog"
            plan.append(outcome)
            continue

        product = products.get(item.product_id)
        if product is None:
            outcome.result = ITEM_FAILED
            outcome.reason = "Product not found"
        elif product.quantity >= item.quantity:
            outcome.result = ITEM_DELIVERABLE
            outcome.available = product.quantity
        else:
            shortage = InsufficientStock(product.id, product.name, product.quantity, item.quantity)
            outcome.result = ITEM_INSUFFICIENT
            outcome.available = product.quantity
            outcome.reason = shortage.message
        plan.append(outcome)
    return plan


def _load_products(db: Session, request: MaterialRequest) -> Dict[int, Product]:
    ids = {item.product_id for item in request.items if not item.is_adhoc}
    if not ids:
        return {}
    rows = db.query(Product).filter(Product.id.in_(ids)).populate_existing().all()
    return {p.id: p for p in rows}


def preview_withdrawal(db: Session, request_id: int) -> WithdrawalOutcome:
    """What a confirmation would do right now, for the confirmation dialog."""
    request = get_request(db, request_id)
    db.refresh(request)
    return WithdrawalOutcome(
        request_id=request.id,
        items=plan_withdrawal(request, _load_products(db, request)),
        completed=request.status == RequestStatus.COMPLETED.value,
    )


# ============= DEDUCTION =============

def _apply_deduction(
    db: Session,
    request: MaterialRequest,
    product: Product,
    quantity: int,
    authorized_by: str,
    receiver_name: str,
    today: date,
) -> Optional[StockMovement]:
    """Decrement stock if still sufficient and append the ledger entry. None when stock ran short."""
    result = db.execute(
        update(Product)
        .where(Product.id == product.id, Product.quantity >= quantity)
        .values(quantity=Product.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    unit_price = product.unit_price or 0.0
    movement = StockMovement(
        product_id=product.id,
        product_name=product.name,
        type=MovementType.OUT.value,
        reason=MovementReason.SALE.value,
        quantity=quantity,
        date=today,
        request_id=request.id,
        authorized_by=authorized_by,
        notes=f"Withdrawal for request #{request.id}, received by {receiver_name}",
        unit_price=unit_price,
        total_value=quantity * unit_price,
    )
    db.add(movement)
    db.flush()
    return movement


def _deduct(
    db: Session,
    request: MaterialRequest,
    outcome: ItemOutcome,
    product: Product,
    authorized_by: str,
    receiver_name: str,
    today: date,
) -> None:
    try:
        with db.begin_nested():
            movement = _apply_deduction(
                db, request, product, outcome.requested, authorized_by, receiver_name, today
            )
    except SQLAlchemyError as e:
        logger.error(f"Deduction of '{outcome.product_name}' for request {request.id} failed: {e}")
        outcome.result = ITEM_FAILED
        outcome.reason = "Stock deduction failed"
        return

    if movement is None:
        available = db.query(Product.quantity).filter(Product.id == product.id).scalar() or 0
        outcome.result = ITEM_INSUFFICIENT
        outcome.available = available
        outcome.reason = InsufficientStock(product.id, product.name, available, outcome.requested).message
        return

    outcome.result = ITEM_DEDUCTED
    outcome.movement_id = movement.id
    outcome.available = (outcome.available or 0) - outcome.requested


def _reconcile(
    db: Session,
    request: MaterialRequest,
    signature: str,
    receiver_name: str,
    actor: str,
    today: date,
) -> WithdrawalOutcome:
    products = _load_products(db, request)
    plan = plan_withdrawal(request, products)

    all_adhoc = all(o.result == ITEM_UNREGISTERED for o in plan)
    if not all_adhoc and not any(o.result == ITEM_DELIVERABLE for o in plan):
        raise ValidationError(
            "No item of this request can be withdrawn with the current stock",
            {"request_id": request.id, "items": [asdict(o) for o in plan]},
        )

    authorized_by = request.approved_by or actor
    outcome = WithdrawalOutcome(request_id=request.id, items=plan)

    try:
        for item in plan:
            if item.result == ITEM_DELIVERABLE:
                _deduct(db, request, item, products[item.product_id], authorized_by, receiver_name, today)

        if not all_adhoc and not outcome.deducted:
            db.rollback()
            raise ValidationError(
                "No stock could be deducted for this request",
                {"request_id": request.id, "items": [asdict(o) for o in plan]},
            )

        transition(
            db, request, RequestStatus.COMPLETED, actor,
            {"receiver_signature": signature, "received_by": receiver_name},
            commit=False,
        )
        record_audit(db, "reconcile_withdrawal", actor, "request", request.id, {
            "received_by": receiver_name,
            "deducted": [o.product_id for o in outcome.deducted],
            "insufficient": [o.product_id for o in outcome.insufficient],
            "unregistered": [o.product_name for o in outcome.unregistered],
            "failed": [o.product_name for o in outcome.failed],
        })
        db.commit()
    except StockroomError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Withdrawal for request {request.id} failed: {e}")
        raise StoreFailure("reconcile_withdrawal") from e

    outcome.completed = True
    logger.info(
        f"Request {request.id} withdrawn: {len(outcome.deducted)} deducted, "
        f"{len(outcome.insufficient)} insufficient, {len(outcome.unregistered)} unregistered, "
        f"{len(outcome.failed)} failed"
    )
    return outcome


def reconcile_withdrawal(
    db: Session,
    request_id: int,
    signature: str,
    receiver_name: str,
    actor: str,
    guard: Optional[WithdrawalGuard] = None,
    today: Optional[date] = None,
) -> WithdrawalOutcome:
    """
    Confirm the physical handover of an approved request.

    Raises ValidationError (missing signature/receiver, nothing deliverable),
    AlreadyCompleted, InvalidTransition, SubmissionInProgress,
    SubmissionCooldown or StoreFailure. None of them leave partial changes.
    """
    guard = guard or default_guard
    today = today or date.today()

    with guard.hold(request_id):
        request = get_request(db, request_id)
        db.refresh(request)

        if request.status == RequestStatus.COMPLETED.value:
            raise AlreadyCompleted(request.id)
        if request.status != RequestStatus.APPROVED.value:
            raise InvalidTransition("request", request.status, RequestStatus.COMPLETED.value)
        guard.check_cooldown(request_id)

        try:
            signature = (signature or "").strip()
            receiver_name = (receiver_name or "").strip()
            if not signature or not receiver_name:
                raise ValidationError("Receiver signature and name are both required")
            outcome = _reconcile(db, request, signature, receiver_name, actor, today)
        except AlreadyCompleted:
            raise
        except StockroomError:
            guard.record_failure(request_id)
            raise

        guard.clear(request_id)
        return outcome


def movements_for_request(db: Session, request_id: int) -> Iterable[StockMovement]:
    return db.query(StockMovement).filter(
        StockMovement.request_id == request_id
    ).order_by(StockMovement.id).all()
