"""
Structured logging for the formation CLI core.
Agent calls, session persistence, backups and review-server events all log through here.
"""

import logging
import os
from typing import Any, Dict, List

# Keys whose values never reach a log line
DEFAULT_SENSITIVE_FIELDS = [
    'ssn', 'card_number', 'cardNumber', 'cvv', 'cvc', 'payment_info', 'paymentInfo',
    'api_key', 'apiKey', 'password', 'secret', 'token', 'passphrase', 'encrypted_data'
]


class StructuredLogger:
    """Structured logger for agent, session, backup and review operations."""

    def __init__(self, name: str = "formation"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("retrying", "degraded", "warning"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_agent_request(self, agent_name: str, method: str, path: str, status: str = "success",
                          attempt: int = 1, duration_ms: float = None, details: Dict[str, Any] = None):
        """Log one outbound agent request attempt."""
        log_details = {"agent": agent_name, "method": method, "path": path, "attempt": attempt}
        if duration_ms is not None:
            log_details["duration_ms"] = round(duration_ms, 2)
        if details:
            log_details.update(details)

        self.log_operation(f"agent.{agent_name}.request", status, log_details)

    def log_agent_retry(self, agent_name: str, path: str, attempt: int, delay_sec: float, error_code: str):
        """Log a scheduled retry after a retryable failure."""
        log_details = {
            "agent": agent_name,
            "path": path,
            "attempt": attempt,
            "delay_sec": round(delay_sec, 3),
            "error_code": error_code
        }
        self.log_operation(f"agent.{agent_name}.retry", "retrying", log_details)

    def log_health_check(self, agent_name: str, status: str, latency_ms: float = None,
                         consecutive_failures: int = 0, error: str = None):
        """Log the outcome of a health probe."""
        log_details = {"agent": agent_name, "consecutive_failures": consecutive_failures}
        if latency_ms is not None:
            log_details["latency_ms"] = round(latency_ms, 2)
        if error:
            log_details["error"] = error[:100]

        self.log_operation(f"agent.{agent_name}.health", status, log_details)

    def log_session_operation(self, operation: str, session_id: str, status: str = "success",
                              details: Dict[str, Any] = None):
        """Log a session store operation."""
        log_details = {"session_id": session_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"session.{operation}", status, log_details)

    def log_backup_operation(self, operation: str, session_id: str, backup_id: str = None,
                             status: str = "success", details: Dict[str, Any] = None):
        """Log backup creation, restore and pruning."""
        log_details = {"session_id": session_id}
        if backup_id:
            log_details["backup_id"] = backup_id
        if details:
            log_details.update(details)

        self.log_operation(f"backup.{operation}", status, log_details)

    def log_review_event(self, event: str, port: int = None, status: str = "success",
                         details: Dict[str, Any] = None):
        """Log review server lifecycle and decisions."""
        log_details = {}
        if port is not None:
            log_details["port"] = port
        if details:
            log_details.update(details)

        self.log_operation(f"review.{event}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    if event_type.startswith("session"):
        operation = "session_audit"
    elif event_type.startswith("review"):
        operation = "review_audit"
    elif event_type.startswith("payment"):
        operation = "payment_audit"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
