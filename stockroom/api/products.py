"""
Product catalog API routes: listing with derived status, edits with change
log, stock additions and the expiration monitor.
"""
from typing import List, Literal, Optional
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockroom.db.session import get_db
from stockroom.core.config import settings
from stockroom.core.rbac import Permission, require
from stockroom.services import product_catalog, stock_projection
from stockroom.services.request_lifecycle import request_replenishment
from stockroom.api.requests import RequestResponse, build_request_response

router = APIRouter(prefix="/api/products", tags=["Products"])


# ============= SCHEMAS =============

class ProductCreate(BaseModel):
    code: str
    name: str
    category: str = "general"
    unit: Optional[str] = "un"
    supplier_id: Optional[int] = None
    batch: Optional[str] = None
    location: Optional[str] = None
    invoice_number: Optional[str] = None
    is_withholding: bool = False
    entry_date: Optional[date] = None
    expiration_date: date
    quantity: int = Field(0, ge=0)
    min_stock: int = Field(0, ge=0)
    unit_price: float = Field(0.0, ge=0)


class ProductUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    supplier_id: Optional[int] = None
    batch: Optional[str] = None
    location: Optional[str] = None
    invoice_number: Optional[str] = None
    is_withholding: Optional[bool] = None
    entry_date: Optional[date] = None
    expiration_date: Optional[date] = None
    min_stock: Optional[int] = Field(None, ge=0)
    unit_price: Optional[float] = Field(None, ge=0)
    change_reason: str


class StockAddition(BaseModel):
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None


class ProductResponse(BaseModel):
    id: int
    code: str
    name: str
    category: Optional[str]
    unit: Optional[str]
    supplier_id: Optional[int]
    supplier_name: Optional[str]
    batch: Optional[str]
    location: Optional[str]
    invoice_number: Optional[str]
    is_withholding: Optional[bool]
    entry_date: Optional[date]
    expiration_date: date
    quantity: int
    min_stock: int
    unit_price: float
    total_value: float
    status: str


class ExpiringProductResponse(ProductResponse):
    expiration_level: str
    days: int


class ChangeLogResponse(BaseModel):
    id: int
    product_id: Optional[int]
    product_name: str
    changed_by: str
    change_reason: str
    field_changes: List[dict]
    change_date: date
    created_at: Optional[datetime]


class ReplenishmentCreate(BaseModel):
    department: Optional[str] = None


def build_product_response(product, today: Optional[date] = None) -> dict:
    today = today or date.today()
    return {
        "id": product.id,
        "code": product.code,
        "name": product.name,
        "category": product.category,
        "unit": product.unit,
        "supplier_id": product.supplier_id,
        "supplier_name": product.supplier_name,
        "batch": product.batch,
        "location": product.location,
        "invoice_number": product.invoice_number,
        "is_withholding": product.is_withholding,
        "entry_date": product.entry_date,
        "expiration_date": product.expiration_date,
        "quantity": product.quantity,
        "min_stock": product.min_stock,
        "unit_price": product.unit_price,
        "total_value": stock_projection.total_value(product),
        "status": stock_projection.derive_status(product, today),
    }


# ============= ROUTES =============

@router.get("", response_model=List[ProductResponse])
async def list_products(
    category: Optional[str] = Query(None, description="Filter by category"),
    search: Optional[str] = Query(None, description="Match name or code"),
    status: Optional[Literal["active", "low-stock", "expired"]] = Query(None, description="Derived stock status"),
    user_context: dict = Depends(require(Permission.VIEW_PRODUCTS)),
    db: Session = Depends(get_db)
):
    """List products with derived status and total value."""
    today = date.today()
    products = product_catalog.list_products(db, category=category, search=search, status=status, today=today)
    return [build_product_response(p, today) for p in products]


@router.post("", response_model=ProductResponse, status_code=201)
async def create_product(
    product_data: ProductCreate,
    user_context: dict = Depends(require(Permission.MANAGE_PRODUCTS)),
    db: Session = Depends(get_db)
):
    """Register a new product."""
    product = product_catalog.create_product(db, product_data.model_dump(exclude_none=True), user_context["name"])
    return build_product_response(product)


@router.get("/expiring", response_model=List[ExpiringProductResponse])
async def list_expiring_products(
    days: int = Query(settings.EXPIRING_SOON_DAYS, ge=0, le=3650),
    user_context: dict = Depends(require(Permission.VIEW_EXPIRATION)),
    db: Session = Depends(get_db)
):
    """Products expiring within `days` (already expired ones included), soonest first."""
    today = date.today()
    result = []
    for product in product_catalog.expiring(db, days, today):
        level, remaining = stock_projection.expiration_info(
            product, today,
            critical_days=settings.CRITICAL_EXPIRY_DAYS,
            warning_days=settings.EXPIRING_SOON_DAYS,
        )
        result.append({**build_product_response(product, today), "expiration_level": level, "days": remaining})
    return result


@router.get("/change-logs", response_model=List[ChangeLogResponse])
async def list_change_logs(
    product_id: Optional[int] = Query(None, description="Filter by product"),
    user_context: dict = Depends(require(Permission.VIEW_CHANGELOG)),
    db: Session = Depends(get_db)
):
    """Field-level history of product edits and stock additions."""
    return [
        ChangeLogResponse(
            id=log.id,
            product_id=log.product_id,
            product_name=log.product_name,
            changed_by=log.changed_by,
            change_reason=log.change_reason,
            field_changes=log.field_changes or [],
            change_date=log.change_date,
            created_at=log.created_at,
        )
        for log in product_catalog.list_change_logs(db, product_id)
    ]


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int,
    user_context: dict = Depends(require(Permission.VIEW_PRODUCTS)),
    db: Session = Depends(get_db)
):
    return build_product_response(product_catalog.get_product(db, product_id))


@router.put("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: int,
    update_data: ProductUpdate,
    user_context: dict = Depends(require(Permission.MANAGE_PRODUCTS)),
    db: Session = Depends(get_db)
):
    """Edit a product. Every changed field is recorded in the change log."""
    changes = update_data.model_dump(exclude_unset=True)
    reason = changes.pop("change_reason")
    product = product_catalog.update_product(db, product_id, changes, user_context["name"], reason)
    return build_product_response(product)


@router.post("/{product_id}/stock", response_model=ProductResponse)
async def add_stock(
    product_id: int,
    addition: StockAddition,
    user_context: dict = Depends(require(Permission.MANAGE_PRODUCTS)),
    db: Session = Depends(get_db)
):
    """Add received units to a product."""
    product = product_catalog.add_stock(db, product_id, addition.quantity, user_context["name"], addition.reason)
    return build_product_response(product)


@router.delete("/{product_id}", status_code=204)
async def delete_product(
    product_id: int,
    user_context: dict = Depends(require(Permission.DELETE_PRODUCTS)),
    db: Session = Depends(get_db)
):
    """Delete a product that no movement, request or quotation refers to."""
    product_catalog.delete_product(db, product_id, user_context["name"])


@router.post("/{product_id}/replenishment", response_model=RequestResponse, status_code=201)
async def create_replenishment_request(
    product_id: int,
    payload: Optional[ReplenishmentCreate] = None,
    user_context: dict = Depends(require(Permission.ADD_REQUESTS)),
    db: Session = Depends(get_db)
):
    """Open a priority withdrawal request restocking a low product."""
    department = (payload.department if payload else None) or user_context.get("department")
    request = request_replenishment(db, product_id, user_context["name"], department)
    return build_request_response(request)
