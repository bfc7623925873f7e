"""
Payment agent endpoints.

Responses arrive wrapped as {"success": bool, "data": ..., "error": {"code", "message"}};
each helper returns the unwrapped data or raises AgentError.
"""

import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote

from util.logging import audit_event

from .executor import AgentExecutor
from .types import AgentError, RequestOptions, merge_options

AGENT_NAME = "payment"


def _unwrap(response: Any, failure_message: str) -> Any:
    if not isinstance(response, dict) or "success" not in response:
        raise AgentError(f"{failure_message}: malformed response", "INVALID_RESPONSE")
    if not response["success"]:
        error = response.get("error") or {}
        raise AgentError(
            error.get("message") or failure_message,
            error.get("code") or "PAYMENT_ERROR",
            retryable=False,
            details=error or None,
        )
    return response.get("data")


def process_payment(executor: AgentExecutor, payment_request: Dict[str, Any],
                    options: RequestOptions = None) -> Dict[str, Any]:
    """Charge a payment. One idempotency key covers every retry of this call."""
    opts = merge_options(options, idempotency_key=f"payment-{uuid.uuid4().hex}")
    response = executor.post("/payments/process", payment_request, opts)
    data = _unwrap(response, "Payment processing failed")
    audit_event("payment.processed", {"idempotency_key": opts.idempotency_key}, payment_request)
    return data


def get_payment_status(executor: AgentExecutor, payment_id: str, options: RequestOptions = None) -> Dict[str, Any]:
    response = executor.get(f"/payments/{quote(payment_id, safe='')}", options)
    return _unwrap(response, "Failed to retrieve payment status")


def refund_payment(executor: AgentExecutor, payment_id: str, amount: Optional[float] = None,
                   reason: Optional[str] = None, options: RequestOptions = None) -> Dict[str, Any]:
    opts = merge_options(options, idempotency_key=f"refund-{payment_id}-{uuid.uuid4().hex[:8]}")
    body = {k: v for k, v in (("amount", amount), ("reason", reason)) if v is not None}
    response = executor.post(f"/payments/{quote(payment_id, safe='')}/refund", body, opts)
    return _unwrap(response, "Refund processing failed")


def calculate_cost(executor: AgentExecutor, state: str, company_type: str, expedited: bool = False,
                   options: RequestOptions = None) -> Dict[str, Any]:
    response = executor.get(
        "/payments/calculate-cost",
        merge_options(options, skip_retry=True),
        params={"state": state, "companyType": company_type, "expedited": str(expedited).lower()},
    )
    return _unwrap(response, "Failed to calculate costs")


def validate_payment_method(executor: AgentExecutor, payment_method: Dict[str, Any],
                            options: RequestOptions = None) -> Dict[str, Any]:
    response = executor.post(
        "/payments/validate",
        {"paymentMethod": payment_method},
        merge_options(options, skip_retry=True),
    )
    return _unwrap(response, "Validation request failed") or {"valid": False, "errors": ["Unknown error"]}


def create_payment_intent(executor: AgentExecutor, amount: float, currency: str = "usd",
                          metadata: Dict[str, str] = None, options: RequestOptions = None) -> Dict[str, Any]:
    body = {"amount": amount, "currency": currency}
    if metadata:
        body["metadata"] = metadata
    response = executor.post("/payments/intent", body, options)
    return _unwrap(response, "Failed to create payment intent")
