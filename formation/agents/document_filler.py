"""
Formation document generation agent endpoints.
"""

from enum import Enum
from typing import Any, Dict, List
from urllib.parse import quote

from .executor import AgentExecutor
from .types import AgentError, RequestOptions, merge_options

AGENT_NAME = "document-filler"
GENERATE_TIMEOUT_SEC = 45.0


class DocumentType(str, Enum):
    ARTICLES = "articles"
    OPERATING_AGREEMENT = "operating-agreement"
    BYLAWS = "bylaws"
    STOCK_CERTIFICATES = "stock-certificates"
    EIN_CONFIRMATION = "ein-confirmation"
    FORMATION_CERTIFICATE = "formation-certificate"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


_REQUIRED_DOCUMENTS = {
    "LLC": [DocumentType.ARTICLES, DocumentType.OPERATING_AGREEMENT],
    "C-Corp": [DocumentType.ARTICLES, DocumentType.BYLAWS, DocumentType.STOCK_CERTIFICATES],
    "S-Corp": [DocumentType.ARTICLES, DocumentType.BYLAWS, DocumentType.STOCK_CERTIFICATES],
}


def _doc_path(document_id: str, suffix: str = "") -> str:
    return f"/api/v1/documents/{quote(document_id, safe='')}{suffix}"


def get_required_documents(company_type: str) -> List[DocumentType]:
    return list(_REQUIRED_DOCUMENTS.get(company_type, []))


def generate_document(executor: AgentExecutor, session_id: str, company_data: Dict[str, Any],
                      document_type: DocumentType, options: RequestOptions = None) -> Dict[str, Any]:
    return executor.post(
        "/api/v1/documents/generate",
        {"sessionId": session_id, "companyData": company_data, "documentType": DocumentType(document_type).value},
        merge_options(options, timeout=GENERATE_TIMEOUT_SEC),
    )


def generate_all_documents(executor: AgentExecutor, session_id: str, company_data: Dict[str, Any],
                           options: RequestOptions = None) -> List[Dict[str, Any]]:
    """Request every document the company type needs in one batch call."""
    document_types = get_required_documents(company_data.get("company_type", ""))
    requests_ = [
        {"sessionId": session_id, "companyData": company_data, "documentType": doc_type.value}
        for doc_type in document_types
    ]
    return executor.post("/api/v1/documents/generate-batch", {"requests": requests_}, options) or []


def get_generation_progress(executor: AgentExecutor, document_id: str, options: RequestOptions = None) -> Dict[str, Any]:
    return executor.get(_doc_path(document_id, "/progress"), options)


def get_document_status(executor: AgentExecutor, document_id: str, options: RequestOptions = None) -> Dict[str, Any]:
    return executor.get(_doc_path(document_id), options)


def get_download_url(executor: AgentExecutor, document_id: str, expires_in_seconds: int = 3600,
                     options: RequestOptions = None) -> str:
    """Pre-signed download URL for a generated document."""
    response = executor.post(_doc_path(document_id, "/download-url"),
                             {"expiresInSeconds": expires_in_seconds}, options)
    if not isinstance(response, dict) or not response.get("url"):
        raise AgentError("Download URL response is missing 'url'", "INVALID_RESPONSE")
    return response["url"]


def cancel_generation(executor: AgentExecutor, document_id: str, options: RequestOptions = None) -> None:
    executor.delete(_doc_path(document_id), options)
