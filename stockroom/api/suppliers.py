"""
Suppliers API routes.
"""
from typing import List, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Request, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session
from sqlalchemy import or_

from stockroom.db.session import get_db
from stockroom.db.models import Supplier, SupplierStatus
from stockroom.core.errors import NotFound
from stockroom.core.rbac import Permission, require
from stockroom.services.audit import record_audit
from stockroom.services.payment_requests import normalize_tax_id

router = APIRouter(prefix="/api/suppliers", tags=["Suppliers"])


# ============= SCHEMAS =============

class SupplierCreate(BaseModel):
    name: str
    tax_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    products: Optional[List[str]] = None


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    tax_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    products: Optional[List[str]] = None
    status: Optional[SupplierStatus] = None


class SupplierResponse(BaseModel):
    id: int
    name: str
    tax_id: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    address: Optional[str]
    contact_person: Optional[str]
    products: List[str]
    status: str
    created_at: Optional[datetime]


def _build_supplier_response(supplier: Supplier) -> SupplierResponse:
    return SupplierResponse(
        id=supplier.id,
        name=supplier.name,
        tax_id=supplier.tax_id,
        email=supplier.email,
        phone=supplier.phone,
        address=supplier.address,
        contact_person=supplier.contact_person,
        products=supplier.products or [],
        status=supplier.status,
        created_at=supplier.created_at,
    )


def _get_supplier(db: Session, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFound("supplier", supplier_id)
    return supplier


# ============= ROUTES =============

@router.get("", response_model=List[SupplierResponse])
async def list_suppliers(
    search: Optional[str] = Query(None, description="Search by name or tax id"),
    status: Optional[SupplierStatus] = Query(None, description="active or inactive"),
    user_context: dict = Depends(require(Permission.MANAGE_SUPPLIERS)),
    db: Session = Depends(get_db)
):
    """List suppliers."""
    query = db.query(Supplier)

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Supplier.name.ilike(pattern), Supplier.tax_id.ilike(pattern)))
    if status:
        query = query.filter(Supplier.status == SupplierStatus(status).value)

    return [_build_supplier_response(s) for s in query.order_by(Supplier.name).all()]


@router.post("", response_model=SupplierResponse, status_code=201)
async def create_supplier(
    request: Request,
    supplier_data: SupplierCreate,
    user_context: dict = Depends(require(Permission.MANAGE_SUPPLIERS)),
    db: Session = Depends(get_db)
):
    """Register a new supplier."""
    supplier = Supplier(
        name=supplier_data.name,
        tax_id=normalize_tax_id(supplier_data.tax_id) if supplier_data.tax_id else None,
        email=supplier_data.email,
        phone=supplier_data.phone,
        address=supplier_data.address,
        contact_person=supplier_data.contact_person,
        products=supplier_data.products or [],
        status=SupplierStatus.ACTIVE.value,
    )
    db.add(supplier)
    db.flush()

    record_audit(
        db, "create_supplier", user_context["name"], "supplier", supplier.id,
        {"name": supplier.name},
        ip_address=request.client.host if request.client else None,
    )
    db.commit()
    db.refresh(supplier)

    return _build_supplier_response(supplier)


@router.get("/{supplier_id}", response_model=SupplierResponse)
async def get_supplier(
    supplier_id: int,
    user_context: dict = Depends(require(Permission.MANAGE_SUPPLIERS)),
    db: Session = Depends(get_db)
):
    return _build_supplier_response(_get_supplier(db, supplier_id))


@router.put("/{supplier_id}", response_model=SupplierResponse)
async def update_supplier(
    supplier_id: int,
    request: Request,
    update_data: SupplierUpdate,
    user_context: dict = Depends(require(Permission.MANAGE_SUPPLIERS)),
    db: Session = Depends(get_db)
):
    """Update a supplier. Inactive suppliers are no longer invited to quotations."""
    supplier = _get_supplier(db, supplier_id)

    update_dict = update_data.model_dump(exclude_unset=True, mode="json")
    if update_dict.get("tax_id"):
        update_dict["tax_id"] = normalize_tax_id(update_dict["tax_id"])
    for key, value in update_dict.items():
        if value is not None:
            setattr(supplier, key, value)

    record_audit(
        db, "update_supplier", user_context["name"], "supplier", supplier.id,
        update_dict,
        ip_address=request.client.host if request.client else None,
    )
    db.commit()
    db.refresh(supplier)

    return _build_supplier_response(supplier)
