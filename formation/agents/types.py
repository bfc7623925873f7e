"""
Shared types for remote agent clients: retry policy, health record, normalized error, call options.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_RETRYABLE_ERROR_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ENETUNREACH"})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy. Delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
    retryable_error_codes: FrozenSet[str] = DEFAULT_RETRYABLE_ERROR_CODES

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay must be <= max_delay")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be > 1")
        # Accept any iterable for the code sets but store them immutably
        object.__setattr__(self, "retryable_status_codes", frozenset(self.retryable_status_codes))
        object.__setattr__(self, "retryable_error_codes", frozenset(self.retryable_error_codes))

    def delay_for_attempt(self, attempt: int) -> float:
        """Sleep before retrying after failed attempt number `attempt` (1-based)."""
        return min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


DEFAULT_RETRY_POLICY = RetryPolicy()

# Per-agent defaults
NAME_CHECK_RETRY_POLICY = RetryPolicy(initial_delay=1.0, max_delay=5.0)
FILING_RETRY_POLICY = RetryPolicy(initial_delay=2.0, max_delay=10.0)


class AgentStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectionHealth:
    """Latest health probe result for one agent. Replaced, never appended."""
    agent_name: str
    status: AgentStatus = AgentStatus.UNKNOWN
    latency_ms: Optional[float] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_name": self.agent_name,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "consecutive_failures": self.consecutive_failures,
            "error_message": self.error_message,
        }


class AgentError(Exception):
    """Normalized failure from a remote agent call."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", retryable: bool = False,
                 http_status: int = None, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.http_status = http_status
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = {"message": self.message, "code": self.code, "retryable": self.retryable}
        if self.http_status is not None:
            data["http_status"] = self.http_status
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self):
        return f"AgentError(code={self.code!r}, retryable={self.retryable}, http_status={self.http_status}, message={self.message!r})"


@dataclass
class RequestOptions:
    """Per-call overrides."""
    timeout: Optional[float] = None
    idempotency_key: Optional[str] = None
    cancel_event: Optional[threading.Event] = None
    skip_retry: bool = False
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def with_defaults(self, skip_retry: bool = None, **defaults) -> 'RequestOptions':
        """Copy with unset fields filled from defaults; skip_retry, when given, always applies."""
        merged = replace(self, headers=dict(self.headers))
        for name, value in defaults.items():
            if getattr(merged, name) is None:
                setattr(merged, name, value)
        if skip_retry is not None:
            merged.skip_retry = skip_retry
        return merged


def merge_options(options: Optional[RequestOptions], skip_retry: bool = None, **defaults) -> RequestOptions:
    return (options or RequestOptions()).with_defaults(skip_retry=skip_retry, **defaults)
