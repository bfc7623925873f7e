"""
Environment-driven configuration for the formation CLI core.
Values are read once at import; components accept explicit overrides in their constructors.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

# Session storage
SESSION_STORAGE_DIR = os.getenv(
    "SESSION_STORAGE_DIR",
    os.getenv("SESSION_STORAGE_PATH", str(Path.home() / ".formation" / "sessions"))
)
BACKUP_ENABLED = os.getenv("BACKUP_ENABLED", "true").lower() == "true"
BACKUP_RETENTION_DAYS = int(os.getenv("BACKUP_RETENTION_DAYS", "30"))
SESSION_CLEANUP_DAYS = int(os.getenv("SESSION_CLEANUP_DAYS", "90"))
SESSION_AUTO_CLEANUP = os.getenv("SESSION_AUTO_CLEANUP", "false").lower() == "true"

# Encryption - a missing key is a configuration error unless the dev fallback is allowed
FORMATION_ENCRYPTION_KEY = os.getenv("FORMATION_ENCRYPTION_KEY")
ALLOW_DEV_ENCRYPTION_KEY = os.getenv("ALLOW_DEV_ENCRYPTION_KEY", "false").lower() == "true"
ENCRYPTION_KDF_SALT = os.getenv("ENCRYPTION_KDF_SALT", "formation-cli-session-store-v1")
ENCRYPTION_KDF_ITERATIONS = int(os.getenv("ENCRYPTION_KDF_ITERATIONS", "100000"))

# Remote agents
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
API_KEY = os.getenv("API_KEY")
NAME_CHECK_API_URL = os.getenv("NAME_CHECK_API_URL", API_BASE_URL)
DOCUMENT_FILLER_API_URL = os.getenv("DOCUMENT_FILLER_API_URL", API_BASE_URL)
FILING_AGENT_API_URL = os.getenv("FILING_AGENT_API_URL", API_BASE_URL)
PAYMENT_API_URL = os.getenv("PAYMENT_API_URL", API_BASE_URL)
CERTIFICATE_API_URL = os.getenv(
    "CERTIFICATE_API_URL", "https://helpful-beauty-production.up.railway.app/api/v1"
)
AGENT_TIMEOUT_SEC = float(os.getenv("AGENT_TIMEOUT_SEC", "30"))
HEALTH_CHECK_INTERVAL_SEC = float(os.getenv("HEALTH_CHECK_INTERVAL_SEC", "0"))  # 0 disables

# Local review server
REVIEW_SERVER_HOST = os.getenv("REVIEW_SERVER_HOST", "127.0.0.1")
REVIEW_SERVER_PORT = int(os.getenv("REVIEW_SERVER_PORT", "3456"))
REVIEW_PORT_ATTEMPTS = int(os.getenv("REVIEW_PORT_ATTEMPTS", "10"))
REVIEW_TIMEOUT_SEC = float(os.getenv("REVIEW_TIMEOUT_SEC", "600"))
REVIEW_SHUTDOWN_GRACE_SEC = float(os.getenv("REVIEW_SHUTDOWN_GRACE_SEC", "0.5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

VERSION = "1.0.0"

_AGENT_URLS = {
    "name-check": NAME_CHECK_API_URL,
    "document-filler": DOCUMENT_FILLER_API_URL,
    "filing": FILING_AGENT_API_URL,
    "payment": PAYMENT_API_URL,
    "certificate": CERTIFICATE_API_URL,
}


def get_agent_url(agent_name: str) -> str:
    """Base URL configured for a named agent."""
    if agent_name not in _AGENT_URLS:
        raise ValueError(f"Unknown agent: {agent_name}")
    return _AGENT_URLS[agent_name]


def get_agent_urls() -> Dict[str, str]:
    return dict(_AGENT_URLS)


def get_health_check_interval() -> Optional[float]:
    """Periodic health check interval, or None when disabled."""
    return HEALTH_CHECK_INTERVAL_SEC if HEALTH_CHECK_INTERVAL_SEC > 0 else None


def get_storage_dir() -> Path:
    return Path(SESSION_STORAGE_DIR).expanduser()


def validate_config() -> List[str]:
    """
    Validate the loaded configuration.

    Returns:
        List of human-readable issues; empty when configuration is usable.
    """
    issues = []

    if not FORMATION_ENCRYPTION_KEY and not ALLOW_DEV_ENCRYPTION_KEY:
        issues.append("FORMATION_ENCRYPTION_KEY is not set (set ALLOW_DEV_ENCRYPTION_KEY=true for development)")

    if BACKUP_RETENTION_DAYS < 1:
        issues.append("BACKUP_RETENTION_DAYS must be >= 1")

    if SESSION_CLEANUP_DAYS < 1:
        issues.append("SESSION_CLEANUP_DAYS must be >= 1")

    if AGENT_TIMEOUT_SEC <= 0:
        issues.append("AGENT_TIMEOUT_SEC must be > 0")

    if not 1 <= REVIEW_SERVER_PORT <= 65535:
        issues.append("REVIEW_SERVER_PORT must be between 1 and 65535")

    if REVIEW_PORT_ATTEMPTS < 1:
        issues.append("REVIEW_PORT_ATTEMPTS must be >= 1")

    if REVIEW_TIMEOUT_SEC <= 0:
        issues.append("REVIEW_TIMEOUT_SEC must be > 0")

    for agent_name, url in _AGENT_URLS.items():
        if not url.startswith(("http://", "https://")):
            issues.append(f"{agent_name} agent URL must be http(s): {url}")

    return issues
