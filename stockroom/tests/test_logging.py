"""
Tests for structured logging and secret scrubbing.
"""
import json
import logging

from stockroom.core.logging import StructuredFormatter, _scrub_message, _scrub_value


class TestScrubbing:

    def test_signature_and_tax_id_redacted(self):
        scrubbed = _scrub_value({
            "received_by": "Rui",
            "receiver_signature": "data:image/png;base64,AAAA",
            "supplier": {"tax_id": "12345678000190", "name": "ChemLab"},
        })

        assert scrubbed["received_by"] == "Rui"
        assert scrubbed["receiver_signature"] == "***REDACTED***"
        assert scrubbed["supplier"] == {"tax_id": "***REDACTED***", "name": "ChemLab"}

    def test_message_patterns(self):
        assert _scrub_message("token=abc123 accepted") == "token=***REDACTED*** accepted"


class TestStructuredFormatter:

    def test_json_line_with_audit_extras(self):
        record = logging.LogRecord("audit", logging.INFO, __file__, 1, "AUDIT: request_completed", None, None)
        record.actor = "Olga Operator"
        record.entity_type = "request"
        record.entity_id = 7

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "AUDIT: request_completed"
        assert (entry["actor"], entry["entity_type"], entry["entity_id"]) == ("Olga Operator", "request", 7)
