"""
Session and backup records persisted by the session store.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Company data keys holding sensitive values
SSN_FIELD = "ssn"
PAYMENT_FIELD = "payment_info"
SHAREHOLDERS_FIELD = "shareholders"


class SessionError(Exception):
    """Session store failure carrying a machine-readable code."""

    def __init__(self, message: str, code: str = "SESSION_ERROR"):
        super().__init__(message)
        self.code = code


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


@dataclass
class SessionRecord:
    session_id: str
    created_at: datetime
    updated_at: datetime
    current_step: str = "start"
    status: SessionStatus = SessionStatus.IN_PROGRESS
    company_data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['updated_at'] = self.updated_at.isoformat()
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionRecord':
        """Create from dictionary (for loading from storage)."""
        return cls(
            session_id=data['session_id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            current_step=data.get('current_step', 'start'),
            status=SessionStatus(data.get('status', SessionStatus.IN_PROGRESS.value)),
            company_data=dict(data.get('company_data') or {}),
            metadata=dict(data.get('metadata') or {}),
        )


@dataclass
class SessionQuery:
    """Filters for listing sessions; None means unconstrained."""
    status: Optional[SessionStatus] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    limit: Optional[int] = None

    def __post_init__(self):
        # Bounds without a timezone are read as UTC
        for name in ("created_after", "created_before", "updated_after", "updated_before"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                setattr(self, name, value.replace(tzinfo=timezone.utc))

    def matches(self, record: SessionRecord) -> bool:
        if self.status is not None and record.status != SessionStatus(self.status):
            return False
        if self.created_after is not None and record.created_at <= self.created_after:
            return False
        if self.created_before is not None and record.created_at >= self.created_before:
            return False
        if self.updated_after is not None and record.updated_at <= self.updated_after:
            return False
        if self.updated_before is not None and record.updated_at >= self.updated_before:
            return False
        return True


@dataclass
class SessionBackup:
    """Point-in-time snapshot of the serialized (encrypted) session payload."""
    backup_id: str
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionBackup':
        return cls(
            backup_id=data['backup_id'],
            session_id=data['session_id'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            payload=data['payload'],
            checksum=data['checksum'],
        )
