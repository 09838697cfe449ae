"""
Domain error taxonomy for the request, quotation and withdrawal workflow.

Every error carries the HTTP status the API layer should answer with, so
routes can let them propagate to the handler registered in main.py.
"""
from typing import Any, Optional


class StockroomError(Exception):
    """Base class for all workflow errors."""

    status_code = 400
    code = "stockroom_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.details}


class NotFound(StockroomError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )


class ValidationError(StockroomError):
    """Missing signature/receiver, empty item list, bad quantities, etc."""

    status_code = 422
    code = "validation_error"


class InvalidTransition(StockroomError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity_type: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity_type} from '{current}' to '{target}'",
            {"entity_type": entity_type, "current_status": current, "target_status": target},
        )


class AlreadyCompleted(StockroomError):
    status_code = 409
    code = "already_completed"

    def __init__(self, request_id: int):
        self.request_id = request_id
        super().__init__(
            f"Request {request_id} is already completed",
            {"request_id": request_id},
        )


class ItemNotSubmitted(StockroomError):
    status_code = 409
    code = "item_not_submitted"

    def __init__(self, item_id: int, status: str):
        self.item_id = item_id
        super().__init__(
            f"Quotation item {item_id} has no submitted bid (status '{status}')",
            {"quotation_item_id": item_id, "status": status},
        )


class QuotationAlreadyDecided(StockroomError):
    status_code = 409
    code = "quotation_already_decided"

    def __init__(self, quotation_id: int, status: str):
        self.quotation_id = quotation_id
        super().__init__(
            f"Quotation {quotation_id} is already {status}",
            {"quotation_id": quotation_id, "status": status},
        )


class InsufficientStock(StockroomError):
    """Reported per item inside a WithdrawalOutcome; not raised by the reconciler."""

    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: int, product_name: str, available: int, needed: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.needed = needed
        super().__init__(
            f"Insufficient stock for '{product_name}': need {needed}, have {available}",
            {"product_id": product_id, "available": available, "needed": needed},
        )


class DuplicateSubmission(StockroomError):
    status_code = 429
    code = "duplicate_submission"


class SubmissionInProgress(DuplicateSubmission):
    code = "submission_in_progress"


class SubmissionCooldown(DuplicateSubmission):
    code = "submission_cooldown"


class LedgerImmutable(StockroomError):
    status_code = 409
    code = "ledger_immutable"


class StoreFailure(StockroomError):
    """Underlying persistence error. The original exception is kept as __cause__."""

    status_code = 503
    code = "store_failure"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Store failure during {operation}", {"operation": operation})


def parse_choice(enum_cls, value, field: str):
    """Convert ``value`` to ``enum_cls``, raising ValidationError for unknown values."""
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Unknown {field} '{value}'",
            {"field": field, "allowed": [member.value for member in enum_cls]},
        )
