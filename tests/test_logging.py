"""
Tests for structured logging and payload redaction.
"""

import logging

import pytest
from unittest.mock import patch

from util.logging import StructuredLogger, audit_event, logger, sanitize_payload


class TestSanitizePayload:
    """Test redaction of sensitive values."""

    def test_redacts_nested_fields(self):
        """Sensitive keys are redacted at any depth."""
        payload = {
            "company_name": "Acme LLC",
            "shareholders": [{"first_name": "Jane", "ssn": "123456789"}],
            "payment_info": {"card_number": "4242424242424242"},
            "headers": {"apiKey": "k", "token": "t"},
        }

        sanitized = sanitize_payload(payload)

        assert sanitized["company_name"] == "Acme LLC"
        assert sanitized["shareholders"][0] == {"first_name": "Jane", "ssn": "[REDACTED]"}
        assert sanitized["payment_info"] == "[REDACTED]"
        assert sanitized["headers"] == {"apiKey": "[REDACTED]", "token": "[REDACTED]"}
        # Input untouched
        assert payload["shareholders"][0]["ssn"] == "123456789"

    def test_reveal_sensitive(self):
        """reveal_sensitive keeps values for trusted contexts."""
        assert sanitize_payload({"ssn": "123456789"}, reveal_sensitive=True) == {"ssn": "123456789"}

    def test_custom_fields(self):
        """Callers can supply their own sensitive field list."""
        assert sanitize_payload({"ein": "12-3456789", "ssn": "1"}, sensitive_fields=["ein"]) == {
            "ein": "[REDACTED]", "ssn": "1"
        }

    def test_truncates_long_strings(self):
        """Long strings are cut to 100 characters."""
        assert sanitize_payload("x" * 150) == "x" * 100 + "..."
        assert sanitize_payload(42) == 42


class TestStructuredLogger:
    """Test log levels and message shape."""

    @pytest.mark.parametrize("status, level", [
        ("success", logging.INFO),
        ("retrying", logging.WARNING),
        ("failed", logging.ERROR),
    ])
    def test_status_sets_level(self, caplog, status, level):
        """Failures log as errors and retries as warnings."""
        test_logger = StructuredLogger("formation.test")
        test_logger.logger.propagate = True
        with caplog.at_level(logging.DEBUG, logger="formation.test"):
            test_logger.log_operation("thing.do", status, {"k": "v"})

        record = caplog.records[-1]
        assert record.levelno == level
        assert "Operation: thing.do, Status: " + status in record.getMessage()

    def test_session_details_sanitized(self):
        """Session operation details never include sensitive values."""
        with patch.object(logger, "log_operation") as log_operation:
            logger.log_session_operation("update", "session-1", details={"ssn": "123456789", "step": "x"})

        operation, status, details = log_operation.call_args.args
        assert operation == "session.update"
        assert details == {"session_id": "session-1", "ssn": "[REDACTED]", "step": "x"}

    def test_agent_retry(self):
        """Retries are logged with agent, attempt and delay."""
        with patch.object(logger, "log_operation") as log_operation:
            logger.log_agent_retry("filing", "/api/v1/filings/submit", 2, 4.0, "HTTP_503")

        operation, status, details = log_operation.call_args.args
        assert operation == "agent.filing.retry"
        assert status == "retrying"
        assert details["attempt"] == 2


class TestAuditEvent:
    """Test audit events."""

    def test_payment_audit_redacts(self):
        """Payment audits map to payment_audit and redact card data."""
        with patch.object(logger, "log_operation") as log_operation:
            audit_event("payment.processed", {"idempotency_key": "payment-1"},
                        {"amount": 100, "card_number": "4242424242424242"})

        operation, status, details = log_operation.call_args.args
        assert operation == "payment_audit"
        assert status == "audit"
        assert details["payload"] == {"amount": 100, "card_number": "[REDACTED]"}

    def test_other_events(self):
        """Other event types become underscore operation names."""
        with patch.object(logger, "log_operation") as log_operation:
            audit_event("agent.config.changed", {"agent": "filing"})
        assert log_operation.call_args.args[0] == "agent_config_changed"
