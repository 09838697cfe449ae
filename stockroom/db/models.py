"""
SQLAlchemy ORM models for Stockroom.

Status and derived values of products are computed on read; ledger-style
tables (stock movements, product change logs) are write-once.
"""
from datetime import date
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index, CheckConstraint, event
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from stockroom.core.errors import LedgerImmutable
from stockroom.db.session import Base
from stockroom.services import stock_projection


# ============= ENUMS =============

class RequestType(str, enum.Enum):
    PURCHASE = "SC"
    MATERIAL = "SM"


class RequestPriority(str, enum.Enum):
    STANDARD = "standard"
    PRIORITY = "priority"
    URGENT = "urgent"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class RequestItemKind(str, enum.Enum):
    CATALOGUED = "catalogued"
    ADHOC = "adhoc"


class QuotationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QuotationItemStatus(str, enum.Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SELECTED = "selected"
    REJECTED = "rejected"


class MovementType(str, enum.Enum):
    OUT = "out"


class MovementReason(str, enum.Enum):
    SALE = "sale"
    INTERNAL_TRANSFER = "internal-transfer"
    RETURN = "return"
    INTERNAL_CONSUMPTION = "internal-consumption"
    OTHER = "other"


class SupplierStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentRequestType(str, enum.Enum):
    PAYMENT = "payment"
    REIMBURSEMENT = "reimbursement"
    ADVANCE = "advance"


class PaymentMethod(str, enum.Enum):
    PIX = "pix"
    CASH = "cash"
    BANK_SLIP = "bank_slip"
    CAJU = "caju"
    SOLIDES = "solides"


class PaymentRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    CANCELLED = "cancelled"


# Well-known product categories; any other string is accepted too.
CATEGORY_GENERAL = "general"
CATEGORY_TECHNICAL = "technical"
WELL_KNOWN_CATEGORIES = (CATEGORY_GENERAL, CATEGORY_TECHNICAL)


# Enums are persisted as their string values in VARCHAR columns so the same
# schema works on PostgreSQL and SQLite.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


def _enum_type(enum_cls, name):
    return Enum(*enum_values(enum_cls), name=name, native_enum=False, length=32)


RequestTypeType = _enum_type(RequestType, "requesttype")
RequestPriorityType = _enum_type(RequestPriority, "requestpriority")
RequestStatusType = _enum_type(RequestStatus, "requeststatus")
RequestItemKindType = _enum_type(RequestItemKind, "requestitemkind")
QuotationStatusType = _enum_type(QuotationStatus, "quotationstatus")
QuotationItemStatusType = _enum_type(QuotationItemStatus, "quotationitemstatus")
MovementTypeType = _enum_type(MovementType, "movementtype")
MovementReasonType = _enum_type(MovementReason, "movementreason")
SupplierStatusType = _enum_type(SupplierStatus, "supplierstatus")
PaymentRequestTypeType = _enum_type(PaymentRequestType, "paymentrequesttype")
PaymentMethodType = _enum_type(PaymentMethod, "paymentmethod")
PaymentRequestStatusType = _enum_type(PaymentRequestStatus, "paymentrequeststatus")


# ============= CATALOG =============

class Supplier(Base):
    """Suppliers invited to quotations."""
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    tax_id = Column(String(20), index=True)  # CPF/CNPJ digits
    email = Column(String(255))
    phone = Column(String(50))
    address = Column(Text)
    contact_person = Column(String(255))
    products = Column(JSON, default=list)
    status = Column(SupplierStatusType, default=SupplierStatus.ACTIVE.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Product(Base):
    """Stocked product. `status` and `total_value` are derived, never stored."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    category = Column(String(100), default=CATEGORY_GENERAL, index=True)
    unit = Column(String(50), default="un")
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)
    supplier_name = Column(String(255))
    batch = Column(String(100))
    location = Column(String(255))
    invoice_number = Column(String(100))
    is_withholding = Column(Boolean, default=False)
    entry_date = Column(Date, default=date.today)
    expiration_date = Column(Date, nullable=False)
    quantity = Column(Integer, CheckConstraint("quantity >= 0"), nullable=False, default=0)
    min_stock = Column(Integer, CheckConstraint("min_stock >= 0"), nullable=False, default=0)
    unit_price = Column(Float, CheckConstraint("unit_price >= 0"), nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    supplier = relationship("Supplier")

    @property
    def total_value(self) -> float:
        return stock_projection.total_value(self)

    @property
    def status(self) -> str:
        return stock_projection.derive_status(self, date.today())


# ============= LEDGER =============

class StockMovement(Base):
    """Immutable out-movement. Corrections are new entries."""
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    type = Column(MovementTypeType, default=MovementType.OUT.value, nullable=False)
    reason = Column(MovementReasonType, nullable=False)
    quantity = Column(Integer, CheckConstraint("quantity > 0"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=True, index=True)
    authorized_by = Column(String(255))
    notes = Column(Text)
    unit_price = Column(Float, nullable=False, default=0.0)
    total_value = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product = relationship("Product")


class ProductChangeLog(Base):
    """Field-level audit trail for manual product edits."""
    __tablename__ = "product_change_logs"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    product_name = Column(String(255), nullable=False)
    changed_by = Column(String(255), nullable=False)
    change_reason = Column(Text, nullable=False)
    field_changes = Column(JSON, nullable=False, default=list)  # [{field, old_value, new_value}]
    change_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


def _refuse_mutation(mapper, connection, target):
    raise LedgerImmutable(
        f"{target.__tablename__} entry {target.id} is append-only",
        {"entity_type": target.__tablename__, "entity_id": target.id},
    )


for _append_only in (StockMovement, ProductChangeLog):
    event.listen(_append_only, "before_update", _refuse_mutation)
    event.listen(_append_only, "before_delete", _refuse_mutation)


# ============= REQUESTS =============

class MaterialRequest(Base):
    """Purchase (SC) or material withdrawal (SM) request."""
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(RequestTypeType, nullable=False, default=RequestType.MATERIAL.value)
    reason = Column(Text, nullable=False)
    requested_by = Column(String(255), nullable=False)
    department = Column(String(100), index=True)
    priority = Column(RequestPriorityType, nullable=False, default=RequestPriority.STANDARD.value)
    status = Column(RequestStatusType, nullable=False, default=RequestStatus.PENDING.value, index=True)
    request_date = Column(Date, nullable=False, default=date.today)
    notes = Column(Text)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)
    supplier_name = Column(String(255))
    approved_by = Column(String(255))
    approval_date = Column(DateTime(timezone=True))
    receiver_signature = Column(Text)
    received_by = Column(String(255))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "RequestItem",
        back_populates="request",
        order_by="RequestItem.position",
        cascade="all, delete-orphan",
    )
    quotations = relationship("Quotation", back_populates="request")

    __table_args__ = (
        CheckConstraint(
            "(status = 'completed') = (receiver_signature IS NOT NULL AND received_by IS NOT NULL)",
            name="ck_requests_receipt_iff_completed",
        ),
    )


class RequestItem(Base):
    """A request line: catalogued (product_id set) or adhoc (name only)."""
    __tablename__ = "request_items"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    kind = Column(RequestItemKindType, nullable=False, default=RequestItemKind.CATALOGUED.value)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, CheckConstraint("quantity > 0"), nullable=False)
    category = Column(String(100))

    request = relationship("MaterialRequest", back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "(kind = 'catalogued' AND product_id IS NOT NULL) OR (kind = 'adhoc' AND product_id IS NULL)",
            name="ck_request_items_kind_product",
        ),
    )

    @property
    def is_adhoc(self) -> bool:
        return self.kind == RequestItemKind.ADHOC


class RequestPeriod(Base):
    """Day-of-month window in which requesters of a department may open requests."""
    __tablename__ = "request_periods"

    id = Column(Integer, primary_key=True, index=True)
    department = Column(String(100), unique=True, nullable=False)
    start_day = Column(Integer, nullable=False)
    end_day = Column(Integer, nullable=False)
    updated_by = Column(String(255))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


# ============= QUOTATIONS =============

class Quotation(Base):
    """Price quotation for one request item."""
    __tablename__ = "quotations"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    request_item_id = Column(Integer, ForeignKey("request_items.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    product_name = Column(String(255), nullable=False)
    requested_quantity = Column(Integer, nullable=False)
    status = Column(QuotationStatusType, nullable=False, default=QuotationStatus.PENDING.value)
    selected_supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=True)
    selected_price = Column(Float)
    selected_delivery_time = Column(String(100))
    created_by = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    request = relationship("MaterialRequest", back_populates="quotations")
    items = relationship(
        "QuotationItem",
        back_populates="quotation",
        order_by="QuotationItem.id",
        cascade="all, delete-orphan",
    )


class QuotationItem(Base):
    """One invited supplier's bid inside a quotation."""
    __tablename__ = "quotation_items"

    id = Column(Integer, primary_key=True, index=True)
    quotation_id = Column(Integer, ForeignKey("quotations.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False)
    supplier_name = Column(String(255), nullable=False)
    unit_price = Column(Float)
    total_price = Column(Float)
    delivery_time = Column(String(100))
    notes = Column(Text)
    status = Column(QuotationItemStatusType, nullable=False, default=QuotationItemStatus.PENDING.value)
    submitted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    quotation = relationship("Quotation", back_populates="items")

    __table_args__ = (
        UniqueConstraint('quotation_id', 'supplier_id', name='uq_quotation_item_supplier'),
    )


# ============= PAYMENTS =============

class PaymentRequest(Base):
    """Request to pay a supplier, reimburse or advance money."""
    __tablename__ = "payment_requests"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(100), nullable=False, unique=True)
    compact_code = Column(String(50), nullable=False)
    request_type = Column(PaymentRequestTypeType, nullable=False)
    document_number = Column(String(100), nullable=False)
    payee = Column(String(255), nullable=False)
    tax_id = Column(String(20), nullable=False)
    total_amount = Column(Float, CheckConstraint("total_amount > 0"), nullable=False)
    payment_method = Column(PaymentMethodType, nullable=False)
    payment_details = Column(Text)
    description = Column(Text, nullable=False)
    requested_by = Column(String(255), nullable=False)
    authorized_by = Column(String(255))
    payment_date = Column(Date, nullable=False)
    requester_email = Column(String(255))
    department = Column(String(100))
    status = Column(PaymentRequestStatusType, nullable=False, default=PaymentRequestStatus.PENDING.value)
    approved_by = Column(String(255))
    approval_date = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


# ============= AUDIT LOG =============

class AuditLog(Base):
    """Audit log of state-changing operations."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    actor = Column(String(255))
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    details = Column(JSON)
    ip_address = Column(String(50))

    __table_args__ = (
        Index('ix_audit_logs_entity', 'entity_type', 'entity_id'),
    )
