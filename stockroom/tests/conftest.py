"""
Shared fixtures: in-memory SQLite schema per test, entity factories and an
API client with signed tokens for each role.
"""
import itertools
import os
from datetime import date, timedelta

# Settings are read at import time
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stockroom.core.security import create_access_token
from stockroom.db.session import Base, enable_sqlite_savepoints, get_db
from stockroom.db.models import Product, RequestItemKind, Supplier, SupplierStatus
from stockroom.services import withdrawal
from stockroom.services.request_lifecycle import ItemSpec, approve_request, create_request

ADMIN = {"sub": "1", "name": "Ada Admin", "role": "admin", "department": "administration",
         "email": "ada@example.com"}
OPERATOR = {"sub": "2", "name": "Olga Operator", "role": "operator", "department": "warehouse",
            "email": "olga@example.com"}
REQUESTER = {"sub": "3", "name": "Rita Requester", "role": "requester", "department": "laboratory",
             "email": "rita@example.com"}


# ============= DATABASE =============

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database so several sessions can hold their own connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'stockroom.db'}", connect_args={"check_same_thread": False})
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def reset_withdrawal_guard():
    withdrawal.default_guard.reset()
    yield
    withdrawal.default_guard.reset()


@pytest.fixture
def guard():
    return withdrawal.WithdrawalGuard(cooldown_seconds=0)


# ============= FACTORIES =============

def build_product(db, code, name="Latex gloves", quantity=10, min_stock=2, unit_price=5.0,
                  expiration_date=None, category="general"):
    product = Product(
        code=code,
        name=name,
        category=category,
        unit="un",
        quantity=quantity,
        min_stock=min_stock,
        unit_price=unit_price,
        expiration_date=expiration_date or date.today() + timedelta(days=365),
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def build_request(db, *lines, approved=True, request_type="SM",
                  requested_by="Rita Requester", department="laboratory"):
    """`lines` are (product_or_name, quantity) pairs; strings become unregistered items."""
    specs = []
    for target, quantity in lines:
        if isinstance(target, str):
            specs.append(ItemSpec(kind=RequestItemKind.ADHOC, quantity=quantity, name=target))
        else:
            specs.append(ItemSpec(kind=RequestItemKind.CATALOGUED, quantity=quantity, product_id=target.id))
    request = create_request(
        db,
        request_type=request_type,
        items=specs,
        reason="Routine laboratory consumption",
        requested_by=requested_by,
        department=department,
    )
    if approved:
        request = approve_request(db, request.id, "Olga Operator")
    return request


@pytest.fixture
def make_product(db):
    counter = itertools.count(1)

    def _make(**kwargs):
        kwargs.setdefault("code", f"P{next(counter):03d}")
        return build_product(db, **kwargs)
    return _make


@pytest.fixture
def make_request(db):
    def _make(*lines, **kwargs):
        return build_request(db, *lines, **kwargs)
    return _make


@pytest.fixture
def suppliers(db):
    rows = [
        Supplier(name=name, tax_id=tax_id, status=SupplierStatus.ACTIVE.value)
        for name, tax_id in [
            ("ChemLab", "98765432000110"),
            ("LabSupply", "11222333000144"),
            ("MedSupply", "12345678000190"),
        ]
    ]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    return rows


# ============= API =============

def auth_headers(claims: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def client(db):
    from stockroom.main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest.fixture
def operator_headers():
    return auth_headers(OPERATOR)


@pytest.fixture
def requester_headers():
    return auth_headers(REQUESTER)
