"""
State filing agent endpoints.
"""

import time
from enum import Enum
from typing import Any, Dict, List
from urllib.parse import quote

from .executor import AgentExecutor
from .types import RequestOptions, merge_options

AGENT_NAME = "filing"
SUBMIT_TIMEOUT_SEC = 60.0


class FilingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    COMPLETED = "completed"
    APPROVED = "approved"


def submit_filing(executor: AgentExecutor, filing_request: Dict[str, Any],
                  options: RequestOptions = None) -> Dict[str, Any]:
    """
    Submit a formation filing.

    The idempotency key is fixed before the first attempt so retries of this call
    are deduplicated remotely.
    """
    session_id = filing_request.get("sessionId", "unknown")
    opts = merge_options(
        options,
        timeout=SUBMIT_TIMEOUT_SEC,
        idempotency_key=f"filing-{session_id}-{int(time.time() * 1000)}",
    )
    return executor.post("/api/v1/filings/submit", filing_request, opts)


def get_filing_status(executor: AgentExecutor, filing_id: str, options: RequestOptions = None) -> Dict[str, Any]:
    return executor.get(f"/api/v1/filings/{quote(filing_id, safe='')}", options)


def get_filing_progress(executor: AgentExecutor, filing_id: str, options: RequestOptions = None) -> Dict[str, Any]:
    return executor.get(f"/api/v1/filings/{quote(filing_id, safe='')}/progress", options)


def calculate_fees(executor: AgentExecutor, state: str, company_type: str, expedited: bool = False,
                   options: RequestOptions = None) -> Dict[str, Any]:
    """Fee quote; never retried so a stale quote is not returned after a slow failure."""
    return executor.post(
        "/api/v1/filings/calculate-fees",
        {"state": state, "companyType": company_type, "expedited": expedited},
        merge_options(options, skip_retry=True),
    )


def get_estimated_completion_time(executor: AgentExecutor, state: str, expedited: bool = False,
                                  options: RequestOptions = None) -> Dict[str, Any]:
    return executor.get(
        "/api/v1/filings/estimated-time",
        options,
        params={"state": state, "expedited": str(expedited).lower()},
    )


def validate_filing_data(executor: AgentExecutor, filing_request: Dict[str, Any],
                         options: RequestOptions = None) -> Dict[str, Any]:
    return executor.post("/api/v1/filings/validate", filing_request, merge_options(options, skip_retry=True))


def get_session_filings(executor: AgentExecutor, session_id: str, options: RequestOptions = None) -> List[Dict[str, Any]]:
    return executor.get(f"/api/v1/filings/session/{quote(session_id, safe='')}", options) or []


def is_filing_complete(executor: AgentExecutor, filing_id: str, options: RequestOptions = None) -> bool:
    status = get_filing_status(executor, filing_id, options).get("status")
    return status in (FilingStatus.COMPLETED.value, FilingStatus.APPROVED.value, FilingStatus.ACCEPTED.value)
