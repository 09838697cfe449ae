"""
Demo data for local development. Only runs when SEED_DEMO=true (DEBUG only).
"""
from datetime import date, timedelta

from stockroom.core.logging import get_logger
from stockroom.db.session import get_db_context
from stockroom.db.models import (
    CATEGORY_GENERAL, CATEGORY_TECHNICAL, MaterialRequest, Product, RequestItem,
    RequestItemKind, RequestPeriod, RequestPriority, RequestStatus, RequestType,
    Supplier, SupplierStatus
)

logger = get_logger(__name__)


def seed_demo_data():
    """Create a small catalog, three suppliers and a pending request."""
    today = date.today()

    with get_db_context() as db:
        if db.query(Product).first():
            logger.info("Database already seeded. Skipping...")
            return

        logger.info("Seeding demo data...")

        suppliers = {}
        for name, tax_id, contact in [
            ("MedSupply", "12345678000190", "Ana Souza"),
            ("ChemLab", "98765432000110", "Carlos Lima"),
            ("LabSupply", "11222333000144", "Beatriz Rocha"),
        ]:
            supplier = Supplier(
                name=name,
                tax_id=tax_id,
                email=f"sales@{name.lower()}.example",
                contact_person=contact,
                status=SupplierStatus.ACTIVE.value,
            )
            db.add(supplier)
            suppliers[name] = supplier
        db.flush()

        products_data = [
            ("LAT001", "Latex gloves", CATEGORY_GENERAL, 150, "boxes", "MedSupply", 365, 20, 32.5, "Shelf A1"),
            ("RBF002", "pH buffer reagent", CATEGORY_TECHNICAL, 5, "liters", "ChemLab", 60, 10, 120.0, "Fridge B2"),
            ("PAP003", "Filter paper", CATEGORY_GENERAL, 80, "packs", "LabSupply", 540, 15, 18.9, "Cabinet C3"),
            ("SOL004", "Saline solution", CATEGORY_TECHNICAL, 3, "bottles", "ChemLab", 5, 8, 9.75, "Shelf D1"),
        ]
        products = []
        for code, name, category, qty, unit, supplier_name, shelf_days, min_stock, price, location in products_data:
            supplier = suppliers[supplier_name]
            product = Product(
                code=code,
                name=name,
                category=category,
                quantity=qty,
                unit=unit,
                supplier_id=supplier.id,
                supplier_name=supplier.name,
                batch=f"{code[:2]}{today:%y%m%d}",
                location=location,
                entry_date=today - timedelta(days=30),
                expiration_date=today + timedelta(days=shelf_days),
                min_stock=min_stock,
                unit_price=price,
            )
            db.add(product)
            products.append(product)
        db.flush()

        request = MaterialRequest(
            type=RequestType.MATERIAL.value,
            reason="Routine laboratory consumption",
            requested_by="Demo Requester",
            department="laboratory",
            priority=RequestPriority.STANDARD.value,
            status=RequestStatus.PENDING.value,
            request_date=today,
        )
        request.items = [
            RequestItem(position=0, kind=RequestItemKind.CATALOGUED.value, product_id=products[0].id,
                        product_name=products[0].name, quantity=10, category=products[0].category),
            RequestItem(position=1, kind=RequestItemKind.ADHOC.value, product_name="Marker pens",
                        quantity=4, category=CATEGORY_GENERAL),
        ]
        db.add(request)

        db.add(RequestPeriod(department="general", start_day=1, end_day=31, updated_by="seed"))

        db.flush()
        logger.info(f"Demo data seeded: {len(suppliers)} suppliers, {len(products)} products, 1 request")


if __name__ == "__main__":
    seed_demo_data()
