"""
Product catalog: registration, edits with a field-level change log, explicit
stock additions and guarded deletion.

Quantity is never edited directly; it only grows through add_stock and
only shrinks through the withdrawal reconciler.
"""
from datetime import date
from typing import List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockroom.core.errors import NotFound, StoreFailure, ValidationError
from stockroom.core.logging import get_logger
from stockroom.db.models import (
    Product, ProductChangeLog, Quotation, RequestItem, StockMovement, Supplier
)
from stockroom.services import stock_projection
from stockroom.services.audit import record_audit

logger = get_logger(__name__)

# Fields a product edit may touch
EDITABLE_FIELDS = (
    "code", "name", "category", "unit", "supplier_id", "batch", "location",
    "invoice_number", "is_withholding", "entry_date", "expiration_date",
    "min_stock", "unit_price",
)


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFound("product", product_id)
    return product


def list_products(
    db: Session,
    category: Optional[str] = None,
    search: Optional[str] = None,
    status: Optional[str] = None,
    today: Optional[date] = None,
) -> List[Product]:
    today = today or date.today()
    query = db.query(Product)
    if category:
        query = query.filter(Product.category == category)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Product.name.ilike(pattern), Product.code.ilike(pattern)))
    products = query.order_by(Product.name).all()
    if status:
        # Status is derived, so it is filtered after loading
        products = [p for p in products if stock_projection.derive_status(p, today) == status]
    return products


def _validate_numbers(values: dict) -> None:
    for name in ("quantity", "min_stock"):
        value = values.get(name)
        if value is not None and (not isinstance(value, int) or value < 0):
            raise ValidationError(f"{name} must be a non-negative integer")
    price = values.get("unit_price")
    if price is not None and price < 0:
        raise ValidationError("unit_price must not be negative")


def _resolve_supplier(db: Session, supplier_id: Optional[int]) -> Optional[Supplier]:
    if supplier_id is None:
        return None
    supplier = db.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFound("supplier", supplier_id)
    return supplier


def _snapshot_supplier(product: Product, supplier: Optional[Supplier]) -> None:
    product.supplier_id = supplier.id if supplier else None
    product.supplier_name = supplier.name if supplier else None


def create_product(db: Session, data: dict, actor: str) -> Product:
    if not (data.get("code") or "").strip() or not (data.get("name") or "").strip():
        raise ValidationError("Product code and name are required")
    if data.get("expiration_date") is None:
        raise ValidationError("expiration_date is required")
    _validate_numbers(data)

    fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS + ("quantity",) and k != "supplier_id"}
    product = Product(**fields)
    _snapshot_supplier(product, _resolve_supplier(db, data.get("supplier_id")))

    try:
        db.add(product)
        db.flush()
        record_audit(db, "create_product", actor, "product", product.id,
                     {"code": product.code, "quantity": product.quantity})
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError(f"A product with code '{data['code']}' already exists") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create product {data.get('code')}: {e}")
        raise StoreFailure("create_product") from e

    db.refresh(product)
    return product


def _as_log_value(value):
    if isinstance(value, date):
        return value.isoformat()
    return value


def update_product(
    db: Session,
    product_id: int,
    changes: dict,
    actor: str,
    reason: str,
    today: Optional[date] = None,
) -> Product:
    """
    Apply an edit and append a change log entry listing every field that
    actually changed. An edit that changes nothing writes no entry.
    """
    if "quantity" in changes:
        raise ValidationError("Quantity cannot be edited; use a stock addition instead")
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown product fields: {sorted(unknown)}")
    if not (reason or "").strip():
        raise ValidationError("A reason is required to change a product")
    _validate_numbers(changes)

    product = get_product(db, product_id)
    # An unknown supplier must fail before any attribute is set
    supplier = _resolve_supplier(db, changes["supplier_id"]) if "supplier_id" in changes else None
    field_changes = []
    for name, new_value in changes.items():
        old_value = getattr(product, name)
        if old_value == new_value:
            continue
        field_changes.append({
            "field": name,
            "old_value": _as_log_value(old_value),
            "new_value": _as_log_value(new_value),
        })
        if name == "supplier_id":
            _snapshot_supplier(product, supplier)
        else:
            setattr(product, name, new_value)

    if not field_changes:
        return product

    db.add(ProductChangeLog(
        product_id=product.id,
        product_name=product.name,
        changed_by=actor,
        change_reason=reason.strip(),
        field_changes=field_changes,
        change_date=today or date.today(),
    ))
    try:
        db.flush()
        record_audit(db, "update_product", actor, "product", product.id,
                     {"fields": [c["field"] for c in field_changes]})
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("Product update conflicts with an existing product") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update product {product_id}: {e}")
        raise StoreFailure("update_product") from e

    db.refresh(product)
    return product


def add_stock(
    db: Session,
    product_id: int,
    quantity: int,
    actor: str,
    reason: Optional[str] = None,
    today: Optional[date] = None,
) -> Product:
    """Increase stock and record the old and new quantity in the change log."""
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity to add must be a positive integer")

    product = get_product(db, product_id)
    previous = product.quantity

    try:
        db.execute(
            update(Product)
            .where(Product.id == product.id)
            .values(quantity=Product.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        current = db.query(Product.quantity).filter(Product.id == product.id).scalar()
        db.add(ProductChangeLog(
            product_id=product.id,
            product_name=product.name,
            changed_by=actor,
            change_reason=(reason or "").strip() or f"Stock addition of {quantity} {product.unit or ''}".rstrip(),
            field_changes=[{"field": "quantity", "old_value": previous, "new_value": current}],
            change_date=today or date.today(),
        ))
        record_audit(db, "add_stock", actor, "product", product.id,
                     {"added": quantity, "quantity": current})
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add stock to product {product_id}: {e}")
        raise StoreFailure("add_stock") from e

    db.refresh(product)
    return product


def delete_product(db: Session, product_id: int, actor: str) -> None:
    """Remove a product nothing refers to. Ledger entries, requests and quotations keep it alive."""
    product = get_product(db, product_id)

    references = {
        "stock_movements": db.query(StockMovement.id).filter(StockMovement.product_id == product.id).count(),
        "request_items": db.query(RequestItem.id).filter(RequestItem.product_id == product.id).count(),
        "quotations": db.query(Quotation.id).filter(Quotation.product_id == product.id).count(),
    }
    referenced = {k: v for k, v in references.items() if v}
    if referenced:
        raise ValidationError(
            f"Product '{product.name}' is referenced and cannot be deleted",
            {"product_id": product.id, "references": referenced},
        )

    try:
        record_audit(db, "delete_product", actor, "product", product.id,
                     {"code": product.code, "name": product.name})
        db.delete(product)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete product {product_id}: {e}")
        raise StoreFailure("delete_product") from e


def list_change_logs(db: Session, product_id: Optional[int] = None) -> List[ProductChangeLog]:
    query = db.query(ProductChangeLog)
    if product_id is not None:
        query = query.filter(ProductChangeLog.product_id == product_id)
    return query.order_by(ProductChangeLog.created_at.desc(), ProductChangeLog.id.desc()).all()


def expiring(db: Session, within_days: int, today: Optional[date] = None) -> List[Product]:
    today = today or date.today()
    return stock_projection.expiring_products(db.query(Product).all(), today, within_days)
