"""
Certificate review before payment.

Generates the formation certificate, shows it to the user through the local review
server, and reports whether they approved it. Approved certificate data can then be
stored on the formation session.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from util.logging import logger

from ..agents.certificate import (
    CertificateSessionData,
    CertificateValidationError,
    build_certificate_request,
    generate_certificate,
    is_url_expired,
    minutes_remaining,
)
from ..agents.executor import AgentExecutor
from ..agents.types import AgentError, RequestOptions
from ..core.schema import SessionRecord
from ..core.session_store import SessionStore
from .browser import BrowserLaunchError, open_browser
from .server import ReviewDecision, ReviewServer, ReviewServerError

log = logging.getLogger(__name__)

CERTIFICATE_FIELD = "certificate"
LOW_VALIDITY_MINUTES = 5

EXPIRED_ON_ARRIVAL_MESSAGE = "Certificate URL expired immediately after generation"
TIMED_OUT_MESSAGE = "Review session timed out"


@dataclass
class CertificateReviewResult:
    approved: bool
    cancelled: bool = False
    certificate_data: Optional[CertificateSessionData] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "cancelled": self.cancelled,
            "certificate_data": self.certificate_data.to_session_dict() if self.certificate_data else None,
            "error": self.error,
        }


def review_certificate_before_payment(company_data: Dict[str, Any], executor: AgentExecutor,
                                      server: ReviewServer = None,
                                      browser_opener: Callable[[str], None] = open_browser,
                                      decision_timeout: float = None,
                                      options: RequestOptions = None) -> CertificateReviewResult:
    """
    Generate the certificate and wait for the user to approve it in the browser.

    Timeouts and server failures are both reported as a timed-out review so the caller
    can offer a retry. A server started by this call is stopped before returning; a
    server that was already running when passed in is left as it was.

    Args:
        company_data: Formation data (company name/type, registered agent, shareholders)
        executor: Executor for the certificate agent
        server: Review server to use; a new one is created when omitted
        browser_opener: Called with the review page URL
        decision_timeout: Upper bound on the wait, on top of the server's own review window
        options: Request options for the generation call

    Returns:
        CertificateReviewResult
    """
    server = server or ReviewServer()
    company_name = company_data.get("company_name") or "Certificate"
    started = False

    try:
        request = build_certificate_request(company_data)
        response = generate_certificate(executor, request, options)

        if is_url_expired(response.expires_at):
            logger.log_review_event("certificate_expired", status="error",
                                    details={"certificate_id": response.certificate_id})
            return CertificateReviewResult(approved=False, error=EXPIRED_ON_ARRIVAL_MESSAGE)

        remaining = minutes_remaining(response.expires_at)
        if remaining < LOW_VALIDITY_MINUTES:
            log.warning(f"Certificate link expires in {remaining} minute(s)")

        url = server.start(response.download_url, company_name)
        started = True
        try:
            browser_opener(url)
        except BrowserLaunchError as e:
            log.warning(f"{e}. Open {url} manually to review the certificate.")

        decision = server.wait_for_decision(decision_timeout)

        if decision == ReviewDecision.APPROVED:
            return CertificateReviewResult(
                approved=True,
                certificate_data=CertificateSessionData.from_response(response),
            )
        if decision == ReviewDecision.CANCELLED:
            return CertificateReviewResult(approved=False, cancelled=True)
        return CertificateReviewResult(approved=False, error=TIMED_OUT_MESSAGE)

    except CertificateValidationError as e:
        return CertificateReviewResult(approved=False, error=str(e))
    except AgentError as e:
        logger.log_review_event("generation_failed", status="error", details=e.to_dict())
        return CertificateReviewResult(approved=False, error=f"Certificate generation failed: {e.message}")
    except ReviewServerError as e:
        logger.log_review_event("server_failed", status="error", details={"error": str(e)})
        return CertificateReviewResult(approved=False, error=f"Could not start review server: {e}")
    finally:
        if started:
            server.stop()


def save_certificate_to_session(store: SessionStore, session_id: str,
                                result: CertificateReviewResult) -> SessionRecord:
    """Store approved certificate data on an in-progress session."""
    if not result.approved or result.certificate_data is None:
        raise ValueError("Only an approved certificate can be saved to a session")
    return store.update_session(session_id, {CERTIFICATE_FIELD: result.certificate_data.to_session_dict()})


def _session_data(certificate: Union[CertificateSessionData, Dict[str, Any]]) -> CertificateSessionData:
    if isinstance(certificate, CertificateSessionData):
        return certificate
    return CertificateSessionData.model_validate(certificate)


def is_certificate_expired(certificate: Union[CertificateSessionData, Dict[str, Any]],
                           now: datetime = None) -> bool:
    return is_url_expired(_session_data(certificate).expires_at, now)


def get_certificate_minutes_remaining(certificate: Union[CertificateSessionData, Dict[str, Any]],
                                      now: datetime = None) -> int:
    return minutes_remaining(_session_data(certificate).expires_at, now)
