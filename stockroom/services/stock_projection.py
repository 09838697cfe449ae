"""
Product stock projection: status and value derived from stored fields.

These are pure functions over anything exposing `quantity`, `min_stock`,
`unit_price` and `expiration_date`, so they work on ORM rows and plain
objects alike. Nothing here is cached; callers recompute on every read.
"""
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

STATUS_ACTIVE = "active"
STATUS_LOW_STOCK = "low-stock"
STATUS_EXPIRED = "expired"

EXPIRY_EXPIRED = "expired"
EXPIRY_CRITICAL = "critical"
EXPIRY_WARNING = "warning"
EXPIRY_SAFE = "safe"


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def derive_status(product, today: date) -> str:
    """
    Status of a product on `today`.

    Expiration dominates: an expired product is reported `expired` even when
    its quantity is above the minimum.
    """
    expiration = _as_date(product.expiration_date)
    if expiration is not None and expiration <= today:
        return STATUS_EXPIRED
    if (product.quantity or 0) <= (product.min_stock or 0):
        return STATUS_LOW_STOCK
    return STATUS_ACTIVE


def total_value(product) -> float:
    return (product.quantity or 0) * (product.unit_price or 0.0)


def expiration_info(
    product,
    today: date,
    critical_days: int = 7,
    warning_days: int = 30,
) -> Tuple[str, int]:
    """
    Classify how close a product is to expiring.

    Returns (level, days) where days is the distance to the expiration date
    (days since expiry for expired products). A product expiring today is
    already expired, matching derive_status.
    """
    expiration = _as_date(product.expiration_date)
    diff = (expiration - today).days
    if diff <= 0:
        return EXPIRY_EXPIRED, abs(diff)
    if diff <= critical_days:
        return EXPIRY_CRITICAL, diff
    if diff <= warning_days:
        return EXPIRY_WARNING, diff
    return EXPIRY_SAFE, diff


def expiring_products(products: Iterable, today: date, within_days: int) -> List:
    """Products whose expiration date falls on or before today + within_days, soonest first."""
    horizon = today.toordinal() + within_days
    selected = [
        p for p in products
        if p.expiration_date is not None and _as_date(p.expiration_date).toordinal() <= horizon
    ]
    return sorted(selected, key=lambda p: _as_date(p.expiration_date))
