"""
Read-only financial metrics and dashboard rollups.

All functions take already-loaded rows and never write. Month boundaries
are calendar months of `today`.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Tuple

from stockroom.core.config import settings
from stockroom.db.models import (
    CATEGORY_GENERAL, CATEGORY_TECHNICAL, QuotationItemStatus, RequestStatus
)
from stockroom.services import stock_projection
from stockroom.services.stock_projection import _as_date

UNCATEGORIZED = "uncategorized"


def _previous_month(today: date) -> Tuple[int, int]:
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


def _in_month(value, year: int, month: int) -> bool:
    d = _as_date(value)
    return d is not None and d.year == year and d.month == month


def _percent_change(current: float, previous: float) -> float:
    if previous <= 0:
        return 0
    return (current - previous) / previous * 100


def financial_metrics(products: Iterable, movements: Iterable, today: date) -> dict:
    """
    Month-over-month inventory and movement metrics.

    The previous month's inventory value is not stored anywhere, so it is
    estimated by adding back this month's withdrawals and subtracting last
    month's.
    """
    movements = list(movements)
    prev_year, prev_month = _previous_month(today)

    inventory_value = sum(stock_projection.total_value(p) for p in products)
    current_moves = [m for m in movements if _in_month(m.date, today.year, today.month)]
    previous_moves = [m for m in movements if _in_month(m.date, prev_year, prev_month)]

    current_moves_value = sum(m.total_value or 0 for m in current_moves)
    previous_moves_value = sum(m.total_value or 0 for m in previous_moves)
    previous_inventory_value = inventory_value + current_moves_value - previous_moves_value

    return {
        "current_month": {
            "inventory_value": inventory_value,
            "movements_value": current_moves_value,
            "movements_count": len(current_moves),
        },
        "previous_month": {
            "inventory_value": previous_inventory_value,
            "movements_value": previous_moves_value,
            "movements_count": len(previous_moves),
        },
        "trends": {
            "inventory_value_change": inventory_value - previous_inventory_value,
            "inventory_value_change_percent": _percent_change(inventory_value, previous_inventory_value),
            "movements_value_change": current_moves_value - previous_moves_value,
            "movements_value_change_percent": _percent_change(current_moves_value, previous_moves_value),
            "movements_count_change": len(current_moves) - len(previous_moves),
            "movements_count_change_percent": _percent_change(len(current_moves), len(previous_moves)),
        },
    }


def _product_summary(product, today: date) -> dict:
    return {
        "id": product.id,
        "code": product.code,
        "name": product.name,
        "category": product.category,
        "quantity": product.quantity,
        "total_value": stock_projection.total_value(product),
        "status": stock_projection.derive_status(product, today),
    }


def dashboard_data(products: Iterable, movements: Iterable, today: date) -> dict:
    products = list(products)
    movements = list(movements)
    metrics = financial_metrics(products, movements, today)

    expiring_horizon = today + timedelta(days=settings.EXPIRING_SOON_DAYS)
    recent_since = today - timedelta(days=settings.RECENT_MOVEMENT_DAYS)

    category_count: Dict[str, int] = defaultdict(int)
    category_value: Dict[str, float] = defaultdict(float)
    for p in products:
        category = p.category or UNCATEGORIZED
        category_count[category] += 1
        category_value[category] += stock_projection.total_value(p)

    by_value = sorted(products, key=stock_projection.total_value, reverse=True)
    inventory_value = metrics["current_month"]["inventory_value"]

    return {
        "total_products": len(products),
        "low_stock_products": sum(
            1 for p in products
            if stock_projection.derive_status(p, today) == stock_projection.STATUS_LOW_STOCK
        ),
        "expiring_products": sum(
            1 for p in products
            if p.expiration_date is not None and _as_date(p.expiration_date) <= expiring_horizon
        ),
        "recent_movements": sum(1 for m in movements if _as_date(m.date) >= recent_since),
        "categories": {
            CATEGORY_GENERAL: category_count.get(CATEGORY_GENERAL, 0),
            CATEGORY_TECHNICAL: category_count.get(CATEGORY_TECHNICAL, 0),
        },
        "category_values": {
            CATEGORY_GENERAL: category_value.get(CATEGORY_GENERAL, 0.0),
            CATEGORY_TECHNICAL: category_value.get(CATEGORY_TECHNICAL, 0.0),
        },
        "all_categories": dict(category_count),
        "all_category_values": dict(category_value),
        "total_inventory_value": inventory_value,
        "average_product_value": inventory_value / len(products) if products else 0,
        "monthly_inventory_change": metrics["trends"]["inventory_value_change"],
        "monthly_inventory_change_percent": metrics["trends"]["inventory_value_change_percent"],
        "monthly_movements_value": metrics["current_month"]["movements_value"],
        "monthly_movements_change": metrics["trends"]["movements_value_change"],
        "monthly_movements_change_percent": metrics["trends"]["movements_value_change_percent"],
        "top_value_products": [_product_summary(p, today) for p in by_value[:5]],
        "low_value_products": [_product_summary(p, today) for p in list(reversed(by_value))[:5]],
        "financial_metrics": metrics,
    }


def supplier_report(quotations: Iterable) -> List[dict]:
    """Per supplier: invitations, bids, wins and value awarded across quotations."""
    rows: Dict[int, dict] = {}
    for quotation in quotations:
        for item in quotation.items:
            row = rows.setdefault(item.supplier_id, {
                "supplier_id": item.supplier_id,
                "supplier_name": item.supplier_name,
                "invited": 0,
                "bids": 0,
                "wins": 0,
                "awarded_value": 0.0,
                "_prices": [],
            })
            row["invited"] += 1
            if item.status in (QuotationItemStatus.SUBMITTED.value,
                               QuotationItemStatus.SELECTED.value,
                               QuotationItemStatus.REJECTED.value) and item.unit_price is not None:
                row["bids"] += 1
                row["_prices"].append(item.unit_price)
            if item.status == QuotationItemStatus.SELECTED.value:
                row["wins"] += 1
                row["awarded_value"] += item.total_price or 0.0

    report = []
    for row in rows.values():
        prices = row.pop("_prices")
        row["average_unit_price"] = sum(prices) / len(prices) if prices else None
        row["win_rate"] = row["wins"] / row["bids"] * 100 if row["bids"] else 0
        report.append(row)
    return sorted(report, key=lambda r: (-r["awarded_value"], r["supplier_name"]))


def department_report(requests: Iterable) -> List[dict]:
    """Per department: request counts by status and number of requested units."""
    rows: Dict[str, dict] = {}
    for request in requests:
        department = request.department or UNCATEGORIZED
        row = rows.setdefault(department, {
            "department": department,
            "total": 0,
            "units_requested": 0,
            **{status.value: 0 for status in RequestStatus},
        })
        row["total"] += 1
        row[RequestStatus(request.status).value] += 1
        row["units_requested"] += sum(item.quantity for item in request.items)
    return sorted(rows.values(), key=lambda r: (-r["total"], r["department"]))
