"""
Certificate generation agent: Certificate of Formation (LLC) or Certificate of Incorporation
(C-Corp / S-Corp).

Requests are a tagged union on company_type. The corporation variant carries
shares, par value and incorporator; the LLC variant has none of them.
"""

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .executor import AgentExecutor
from .types import AgentError, RequestOptions, merge_options

AGENT_NAME = "certificate"
CERTIFICATES_PATH = "/certificates"

DEFAULT_AUTHORIZED_SHARES = 10_000_000
DEFAULT_PAR_VALUE = "0.00001"
DEFAULT_COUNTY = "Sussex"
DEFAULT_INCORPORATOR_NAME = "Formation Services Inc."
DEFAULT_INCORPORATOR_ADDRESS = {
    "street1": "8 The Green, Suite A",
    "city": "Dover",
    "state": "DE",
    "zip_code": "19901",
}

API_COMPANY_TYPES = {"LLC": "llc", "C-Corp": "c-corp", "S-Corp": "s-corp"}


class CertificateValidationError(ValueError):
    """Company data cannot be turned into a valid certificate request."""
    pass


class CertificateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


def _require_text(value: str) -> str:
    if not value:
        raise ValueError('must not be empty')
    return value


class CertificateAddress(CertificateModel):
    street: str
    city: str
    state: str
    zip_code: str

    @field_validator('street', 'city', 'state', 'zip_code')
    @classmethod
    def must_not_be_empty(cls, v):
        return _require_text(v)


class CountyAddress(CertificateAddress):
    county: str

    @field_validator('county')
    @classmethod
    def county_must_not_be_empty(cls, v):
        return _require_text(v)


class RegisteredAgent(CertificateModel):
    name: str
    address: CertificateAddress

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        return _require_text(v)


class CorporateRegisteredAgent(RegisteredAgent):
    address: CountyAddress


class Incorporator(CertificateModel):
    name: str
    address: CertificateAddress

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        return _require_text(v)


class LLCCertificateRequest(CertificateModel):
    company_type: Literal['llc'] = 'llc'
    company_name: str
    registered_agent: RegisteredAgent

    @field_validator('company_name')
    @classmethod
    def company_name_must_not_be_empty(cls, v):
        return _require_text(v)


class CorporationCertificateRequest(CertificateModel):
    company_type: Literal['c-corp', 's-corp']
    company_name: str
    registered_agent: CorporateRegisteredAgent
    authorized_shares: int = Field(gt=0)
    par_value: str
    incorporator: Incorporator

    @field_validator('company_name')
    @classmethod
    def company_name_must_not_be_empty(cls, v):
        return _require_text(v)

    @field_validator('par_value', mode='before')
    @classmethod
    def par_value_must_be_decimal(cls, v):
        return format_par_value(v)


CertificateRequest = Annotated[
    Union[LLCCertificateRequest, CorporationCertificateRequest],
    Field(discriminator='company_type'),
]
_request_adapter = TypeAdapter(CertificateRequest)


class CertificateMetadata(CertificateModel):
    company_name: str
    generated_at: str
    file_size: Union[StrictInt, StrictFloat]
    file_hash: str

    @field_validator('company_name', 'generated_at', 'file_hash')
    @classmethod
    def must_not_be_empty(cls, v):
        return _require_text(v)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CertificateGenerationResponse(CertificateModel):
    success: bool
    certificate_id: str
    download_url: str
    s3_uri: str = Field(alias='s3Uri')
    expires_at: datetime
    metadata: CertificateMetadata

    @field_validator('success')
    @classmethod
    def must_have_succeeded(cls, v):
        if not v:
            raise ValueError('API returned success=false')
        return v

    @field_validator('certificate_id', 'download_url', 's3_uri')
    @classmethod
    def must_not_be_empty(cls, v):
        return _require_text(v)

    @field_validator('expires_at')
    @classmethod
    def expires_at_is_utc(cls, v):
        return _as_utc(v)


class CertificateSessionData(CertificateModel):
    """Approved certificate as stored on the session."""
    certificate_id: str
    download_url: str
    s3_uri: str = Field(alias='s3Uri')
    expires_at: datetime
    approved_at: datetime
    metadata: CertificateMetadata

    @classmethod
    def from_response(cls, response: CertificateGenerationResponse, approved_at: datetime = None) -> 'CertificateSessionData':
        return cls(
            certificate_id=response.certificate_id,
            download_url=response.download_url,
            s3_uri=response.s3_uri,
            expires_at=response.expires_at,
            approved_at=approved_at or datetime.now(timezone.utc),
            metadata=response.metadata,
        )

    def to_session_dict(self) -> Dict[str, Any]:
        """JSON-safe snake_case form for the session store."""
        return self.model_dump(mode="json")


def format_par_value(value: Any) -> str:
    """Plain decimal string, never scientific notation (1e-05 -> '0.00001')."""
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f'par value is not a number: {value!r}')
    if not number.is_finite() or number < 0:
        raise ValueError(f'par value must be a non-negative number: {value!r}')
    return format(number.normalize(), 'f')


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return ", ".join(parts)


def validate_company_data(company_data: Dict[str, Any]) -> List[str]:
    """Check that company data has what certificate generation needs."""
    errors = []

    if not str(company_data.get("company_name") or "").strip():
        errors.append("Company name is required")

    if company_data.get("company_type") not in API_COMPANY_TYPES:
        errors.append("Company type must be LLC, C-Corp or S-Corp")

    agent = company_data.get("registered_agent")
    if not isinstance(agent, dict):
        errors.append("Registered agent information is required")
    else:
        if not str(agent.get("name") or "").strip():
            errors.append("Registered agent name is required")
        address = agent.get("address")
        if not isinstance(address, dict):
            errors.append("Registered agent address is required")
        else:
            for key, label in (("street1", "street address"), ("city", "city"),
                               ("state", "state"), ("zip_code", "zip code")):
                if not str(address.get(key) or "").strip():
                    errors.append(f"Registered agent {label} is required")

    if not company_data.get("shareholders"):
        errors.append("At least one shareholder/member is required")

    return errors


def _address(source: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "street": source.get("street1") or source.get("street") or "",
        "city": source.get("city") or "",
        "state": source.get("state") or "",
        "zip_code": source.get("zip_code") or "",
    }


def build_certificate_request(company_data: Dict[str, Any]) -> Union[LLCCertificateRequest, CorporationCertificateRequest]:
    """
    Build the typed request for a company.

    Corporations default to 10,000,000 authorized shares at $0.00001 par, a Sussex
    county registered agent, and the first shareholder as incorporator.

    Raises:
        CertificateValidationError: missing or invalid company data
    """
    errors = validate_company_data(company_data)
    if errors:
        raise CertificateValidationError(f"Invalid company data: {', '.join(errors)}")

    agent = company_data["registered_agent"]
    api_type = API_COMPANY_TYPES[company_data["company_type"]]
    agent_address = _address(agent["address"])

    try:
        if api_type == "llc":
            return LLCCertificateRequest(
                company_name=company_data["company_name"],
                registered_agent=RegisteredAgent(name=agent["name"], address=CertificateAddress(**agent_address)),
            )

        shareholder = company_data["shareholders"][0]
        incorporator_address = shareholder.get("address") or DEFAULT_INCORPORATOR_ADDRESS
        incorporator_name = " ".join(
            part for part in (shareholder.get("first_name"), shareholder.get("last_name")) if part
        ) or DEFAULT_INCORPORATOR_NAME

        return CorporationCertificateRequest(
            company_type=api_type,
            company_name=company_data["company_name"],
            registered_agent=CorporateRegisteredAgent(
                name=agent["name"],
                address=CountyAddress(**agent_address, county=agent["address"].get("county") or DEFAULT_COUNTY),
            ),
            authorized_shares=company_data.get("authorized_shares") or DEFAULT_AUTHORIZED_SHARES,
            par_value=company_data.get("par_value") or DEFAULT_PAR_VALUE,
            incorporator=Incorporator(name=incorporator_name, address=CertificateAddress(**_address(incorporator_address))),
        )
    except ValidationError as e:
        raise CertificateValidationError(f"Invalid certificate request: {_format_validation_error(e)}") from e


def parse_certificate_request(data: Dict[str, Any]) -> Union[LLCCertificateRequest, CorporationCertificateRequest]:
    """Validate a wire-format (camelCase) request dict into the matching variant."""
    try:
        return _request_adapter.validate_python(data)
    except ValidationError as e:
        raise CertificateValidationError(f"Invalid certificate request: {_format_validation_error(e)}") from e


def parse_certificate_response(data: Any) -> CertificateGenerationResponse:
    try:
        return CertificateGenerationResponse.model_validate(data)
    except ValidationError as e:
        raise AgentError(f"Invalid API response: {_format_validation_error(e)}", "INVALID_RESPONSE") from e


def generate_certificate(executor: AgentExecutor,
                         request: Union[LLCCertificateRequest, CorporationCertificateRequest],
                         options: RequestOptions = None) -> CertificateGenerationResponse:
    """POST the request and validate the response shape."""
    payload = request.model_dump(by_alias=True, mode="json")
    opts = merge_options(options, idempotency_key=f"certificate-{uuid.uuid4().hex}")
    return parse_certificate_response(executor.post(CERTIFICATES_PATH, payload, opts))


def is_url_expired(expires_at: datetime, now: datetime = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return _as_utc(expires_at) <= now


def minutes_remaining(expires_at: datetime, now: datetime = None) -> int:
    """Whole minutes until expiry, floored; 0 once expired."""
    now = now or datetime.now(timezone.utc)
    seconds = (_as_utc(expires_at) - now).total_seconds()
    return max(0, math.floor(seconds / 60))
