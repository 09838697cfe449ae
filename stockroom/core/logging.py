"""
JSON logging for the stockroom service.

Every line is a single JSON object. Workflow code passes domain context
(actor, request, product, quotation) through ``extra=`` and the formatter
lifts those keys to the top level. Receiver signatures, supplier tax ids and
payment details never reach the log stream.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from stockroom.core.config import settings

REDACTED = "***REDACTED***"

_SECRET_ASSIGNMENT = re.compile(
    r'(password|secret|token|api_key|authorization|signature|tax_id)'
    r'[\"\']?\s*[:=]\s*[\"\']?[^\s,;\"\'}{]+',
    re.IGNORECASE,
)

# Canvas signatures are posted as base64 data URLs
_DATA_URL = re.compile(r'data:[\w/+.-]+;base64,[A-Za-z0-9+/=]+')

_REDACTED_KEYS = frozenset({
    "password", "secret", "secret_key", "token", "access_token", "authorization",
    "signature", "receiver_signature", "tax_id", "payment_details",
})

CONTEXT_FIELDS = (
    "actor", "action", "entity_type", "entity_id",
    "request_id", "product_id", "quotation_id", "department",
)


def _scrub_value(obj):
    """Return a copy of ``obj`` with sensitive keys redacted at any depth."""
    if isinstance(obj, dict):
        return {
            key: REDACTED if str(key).lower() in _REDACTED_KEYS else _scrub_value(value)
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [_scrub_value(item) for item in obj]
    if isinstance(obj, str):
        return _DATA_URL.sub(REDACTED, obj)
    return obj


def _scrub_message(message: str) -> str:
    message = _DATA_URL.sub(REDACTED, message)
    return _SECRET_ASSIGNMENT.sub(rf'\1={REDACTED}', message)


class StructuredFormatter(logging.Formatter):
    """Render records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _scrub_message(record.getMessage()),
        }
        entry.update({
            field: getattr(record, field)
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        })
        if record.exc_info:
            entry["exception"] = _scrub_message(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging():
    """Install the JSON handler on the root logger once per process."""
    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class AuditLogger:
    """Writes the ``AUDIT:`` line that mirrors each audit table row."""

    def __init__(self, name: str = "stockroom.audit"):
        self.logger = get_logger(name)

    def log(
        self,
        action: str,
        actor: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        message = f"AUDIT: {action}"
        if entity_type and entity_id is not None:
            message += f" on {entity_type}:{entity_id}"
        if actor:
            message += f" by {actor}"
        if details:
            message += f" - {json.dumps(_scrub_value(details), default=str, sort_keys=True)}"

        self.logger.info(message, extra={
            "actor": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
        })


audit_logger = AuditLogger()
