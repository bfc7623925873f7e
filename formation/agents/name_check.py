"""
Delaware company-name availability checks.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .executor import AgentExecutor
from .types import AgentError

AGENT_NAME = "name-check"
CHECK_PATH = "/api/v1/check"

MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 245
INVALID_NAME_CHARS = re.compile(r"[<>@#$%^&*()+=\[\]{}|\\;:\"'<>,?/~`]")


@dataclass(frozen=True)
class EntityTypeInfo:
    code: str
    name: str
    requires_ending: bool
    valid_endings: tuple
    default_ending: str


DELAWARE_ENTITY_TYPES = {
    "C": EntityTypeInfo("C", "Corporation", True,
                        ("Inc.", "Corp.", "Corporation", "Incorporated", "Company", "Co.", "Limited", "Ltd."),
                        "Inc."),
    "Y": EntityTypeInfo("Y", "LLC", True, ("LLC", "L.L.C.", "Limited Liability Company"), "LLC"),
    "L": EntityTypeInfo("L", "Limited Partnership", True, ("LP", "L.P.", "Limited Partnership"), "LP"),
    "P": EntityTypeInfo("P", "LLP", True, ("LLP", "L.L.P.", "Limited Liability Partnership"), "LLP"),
    "G": EntityTypeInfo("G", "General Partnership", False, ("Partnership", "GP"), ""),
    "T": EntityTypeInfo("T", "Statutory Trust", False, ("Trust", "Statutory Trust"), ""),
}

# S-Corp is a tax election; it forms like a C-Corp
COMPANY_TYPE_TO_DELAWARE = {
    "LLC": "Y",
    "C-Corp": "C",
    "S-Corp": "C",
    "LP": "L",
    "LLP": "P",
    "GP": "G",
    "Trust": "T",
}

# Longest first so "Limited Liability Company" wins over "Company"
_ENTITY_ENDINGS = sorted({
    "LLC", "L.L.C.", "Limited Liability Company",
    "Inc.", "Inc", "Incorporated", "Corp.", "Corp", "Corporation",
    "Company", "Co.", "Co", "Limited", "Ltd.", "Ltd",
    "LP", "L.P.", "Limited Partnership",
    "LLP", "L.L.P.", "Limited Liability Partnership",
    "GP", "General Partnership", "Partnership",
    "Trust", "Statutory Trust",
}, key=len, reverse=True)


@dataclass
class NameCheckResult:
    available: bool
    company_name: str
    state: str
    checked_at: str
    reason: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)


def delaware_entity_type(company_type: str) -> EntityTypeInfo:
    try:
        return DELAWARE_ENTITY_TYPES[COMPANY_TYPE_TO_DELAWARE[company_type]]
    except KeyError:
        raise ValueError(f"Unsupported company type: {company_type}") from None


def extract_base_name(company_name: str) -> str:
    """Strip one trailing entity ending, e.g. 'Acme Widgets LLC' -> 'Acme Widgets'."""
    name = company_name.strip()
    for ending in _ENTITY_ENDINGS:
        pattern = re.compile(rf"\s+{re.escape(ending)}\s*$", re.IGNORECASE)
        if pattern.search(name):
            return pattern.sub("", name).strip()
    return name


def generate_suggestions(base_name: str) -> List[str]:
    return [
        f"{base_name} Technologies",
        f"{base_name} Solutions",
        f"{base_name} Ventures",
        f"The {base_name} Company",
        f"{base_name} Group",
    ]


def validate_company_name(company_name: str, company_type: str) -> List[str]:
    """Client-side format checks. Returns a list of problems, empty when valid."""
    errors = []
    name = company_name.strip()

    if len(name) < MIN_NAME_LENGTH:
        errors.append(f"Company name must be at least {MIN_NAME_LENGTH} characters")
    if len(name) > MAX_NAME_LENGTH:
        errors.append(f"Company name cannot exceed {MAX_NAME_LENGTH} characters")
    if INVALID_NAME_CHARS.search(name):
        errors.append("Company name contains invalid characters")

    entity = delaware_entity_type(company_type)
    if entity.requires_ending:
        endings = "|".join(re.escape(e) for e in entity.valid_endings)
        if not re.search(rf"({endings})\s*$", name, re.IGNORECASE):
            errors.append(f'Company name should include an entity ending like "{entity.default_ending}"')

    return errors


def check_name_by_entity_type(executor: AgentExecutor, base_name: str, entity_type: str,
                              entity_ending: str = None) -> Dict[str, Any]:
    """Raw availability call with an explicit Delaware entity code."""
    if entity_type not in DELAWARE_ENTITY_TYPES:
        raise ValueError(f"Unknown Delaware entity type: {entity_type}")
    ending = entity_ending if entity_ending is not None else DELAWARE_ENTITY_TYPES[entity_type].default_ending

    return executor.post(CHECK_PATH, {
        "baseName": base_name,
        "entityType": entity_type,
        "entityEnding": ending,
    })


def check_availability(executor: AgentExecutor, company_name: str, company_type: str,
                       state: str = "DE") -> NameCheckResult:
    """Check whether a company name is available in Delaware."""
    base_name = extract_base_name(company_name)
    entity = delaware_entity_type(company_type)

    response = check_name_by_entity_type(executor, base_name, entity.code, entity.default_ending)
    if not isinstance(response, dict) or "status" not in response:
        raise AgentError("Name check response is missing a status", "INVALID_RESPONSE")

    taken = response.get("status") == "taken"
    reasons = response.get("rejectionReasons") or []
    return NameCheckResult(
        available=response.get("status") == "available",
        company_name=response.get("companyName") or company_name,
        state=state,
        checked_at=response.get("checkedAt") or datetime.now(timezone.utc).isoformat(),
        reason="; ".join(reasons) or None,
        suggestions=generate_suggestions(base_name) if taken else [],
    )
