"""
Tests for the product catalog: creation, audited edits, stock additions and
deletion rules.
"""
from datetime import date, timedelta

import pytest

from stockroom.core.errors import LedgerImmutable, NotFound, ValidationError
from stockroom.db.models import Product, ProductChangeLog
from stockroom.services.product_catalog import (
    add_stock, create_product, delete_product, expiring, list_change_logs, list_products, update_product
)
from stockroom.services.stock_projection import STATUS_EXPIRED, STATUS_LOW_STOCK

TODAY = date(2026, 10, 19)


def _data(**overrides):
    data = {
        "code": "ETH070",
        "name": "Ethanol 70%",
        "category": "technical",
        "unit": "L",
        "quantity": 12,
        "min_stock": 4,
        "unit_price": 8.5,
        "expiration_date": TODAY + timedelta(days=200),
    }
    data.update(overrides)
    return data


class TestCreateProduct:

    def test_creates_with_snapshot_of_supplier(self, db, suppliers):
        product = create_product(db, _data(supplier_id=suppliers[0].id), "Olga Operator")

        assert product.id is not None
        assert product.supplier_name == "ChemLab"
        assert product.total_value == 102.0

    def test_duplicate_code_is_a_validation_error(self, db):
        create_product(db, _data(), "Olga Operator")
        with pytest.raises(ValidationError):
            create_product(db, _data(name="Another ethanol"), "Olga Operator")
        assert db.query(Product).count() == 1

    @pytest.mark.parametrize("overrides", [
        {"code": ""},
        {"name": "  "},
        {"expiration_date": None},
        {"quantity": -1},
        {"min_stock": -2},
        {"unit_price": -0.01},
    ])
    def test_invalid_data(self, db, overrides):
        with pytest.raises(ValidationError):
            create_product(db, _data(**overrides), "Olga Operator")

    def test_unknown_supplier(self, db):
        with pytest.raises(NotFound):
            create_product(db, _data(supplier_id=77), "Olga Operator")


class TestUpdateProduct:

    def test_logs_only_changed_fields(self, db, make_product):
        gloves = make_product(name="Latex gloves", min_stock=2, unit_price=5.0)

        update_product(db, gloves.id, {"min_stock": 6, "unit_price": 5.0, "location": "Shelf B"},
                       "Olga Operator", "Recount after audit", today=TODAY)

        log = db.query(ProductChangeLog).one()
        assert log.changed_by == "Olga Operator"
        assert log.change_reason == "Recount after audit"
        assert log.change_date == TODAY
        assert {c["field"] for c in log.field_changes} == {"min_stock", "location"}
        min_stock = next(c for c in log.field_changes if c["field"] == "min_stock")
        assert (min_stock["old_value"], min_stock["new_value"]) == (2, 6)

    def test_dates_are_logged_as_iso_strings(self, db, make_product):
        gloves = make_product(expiration_date=date(2027, 1, 1))

        update_product(db, gloves.id, {"expiration_date": date(2027, 6, 1)}, "Olga Operator", "New batch")

        change = db.query(ProductChangeLog).one().field_changes[0]
        assert change == {"field": "expiration_date", "old_value": "2027-01-01", "new_value": "2027-06-01"}

    def test_no_change_writes_no_log(self, db, make_product):
        gloves = make_product(min_stock=2)
        update_product(db, gloves.id, {"min_stock": 2}, "Olga Operator", "Nothing really")
        assert db.query(ProductChangeLog).count() == 0

    def test_quantity_is_not_editable(self, db, make_product):
        gloves = make_product(quantity=10)
        with pytest.raises(ValidationError):
            update_product(db, gloves.id, {"quantity": 99}, "Olga Operator", "Recount")
        db.refresh(gloves)
        assert gloves.quantity == 10

    def test_reason_required(self, db, make_product):
        gloves = make_product()
        with pytest.raises(ValidationError):
            update_product(db, gloves.id, {"min_stock": 9}, "Olga Operator", "  ")

    def test_change_supplier_refreshes_snapshot(self, db, make_product, suppliers):
        gloves = make_product()
        updated = update_product(db, gloves.id, {"supplier_id": suppliers[1].id}, "Olga Operator", "New vendor")
        assert updated.supplier_name == "LabSupply"

    def test_unknown_supplier_leaves_product_untouched(self, db, make_product):
        gloves = make_product(name="Latex gloves", min_stock=2)

        with pytest.raises(NotFound):
            update_product(db, gloves.id, {"name": "Nitrile gloves", "min_stock": 6, "supplier_id": 77},
                           "Olga Operator", "Switch vendor")

        assert gloves not in db.dirty
        assert (gloves.name, gloves.min_stock) == ("Latex gloves", 2)
        assert db.query(ProductChangeLog).count() == 0

    def test_change_log_is_append_only(self, db, make_product):
        gloves = make_product(min_stock=2)
        update_product(db, gloves.id, {"min_stock": 3}, "Olga Operator", "Recount")
        log = db.query(ProductChangeLog).one()

        log.change_reason = "rewritten"
        with pytest.raises(LedgerImmutable):
            db.flush()
        db.rollback()


class TestAddStock:

    def test_increments_and_logs_quantities(self, db, make_product):
        gloves = make_product(quantity=3)

        updated = add_stock(db, gloves.id, 7, "Olga Operator", today=TODAY)

        assert updated.quantity == 10
        log = list_change_logs(db, gloves.id)[0]
        assert log.field_changes == [{"field": "quantity", "old_value": 3, "new_value": 10}]
        assert log.change_reason.startswith("Stock addition of 7")

    @pytest.mark.parametrize("quantity", [0, -5])
    def test_quantity_must_be_positive(self, db, make_product, quantity):
        gloves = make_product(quantity=3)
        with pytest.raises(ValidationError):
            add_stock(db, gloves.id, quantity, "Olga Operator")


class TestDeleteProduct:

    def test_unreferenced_product_is_deleted(self, db, make_product):
        gloves = make_product()
        delete_product(db, gloves.id, "Ada Admin")
        assert db.get(Product, gloves.id) is None

    def test_product_in_a_request_is_kept(self, db, make_product, make_request):
        gloves = make_product()
        make_request((gloves, 1), approved=False)

        with pytest.raises(ValidationError) as exc:
            delete_product(db, gloves.id, "Ada Admin")

        assert exc.value.details["references"] == {"request_items": 1}
        assert db.get(Product, gloves.id) is not None


class TestQueries:

    def test_search_category_and_status_filters(self, db, make_product):
        make_product(name="Latex gloves", category="general", quantity=10, min_stock=2)
        make_product(name="Nitrile gloves", category="general", quantity=1, min_stock=5)
        make_product(name="Ethanol 70%", category="technical", quantity=10,
                     expiration_date=TODAY - timedelta(days=1))

        assert [p.name for p in list_products(db, search="GLOVES")] == ["Latex gloves", "Nitrile gloves"]
        assert [p.name for p in list_products(db, category="technical")] == ["Ethanol 70%"]
        assert [p.name for p in list_products(db, status=STATUS_LOW_STOCK, today=TODAY)] == ["Nitrile gloves"]
        assert [p.name for p in list_products(db, status=STATUS_EXPIRED, today=TODAY)] == ["Ethanol 70%"]

    def test_expiring_within_window(self, db, make_product):
        make_product(name="Soon", expiration_date=TODAY + timedelta(days=5))
        make_product(name="Later", expiration_date=TODAY + timedelta(days=90))

        assert [p.name for p in expiring(db, 30, today=TODAY)] == ["Soon"]
