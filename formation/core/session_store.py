"""
Durable per-session persistence with field-level encryption.

Layout under the storage directory:
    <session_id>.json          one file per session (SSN and payment fields encrypted)
    active_session.json        {"session_id": ...} for the session being worked on
    backups/                   checksummed snapshots, see formation.core.backup

Only shareholder SSNs and the payment_info object are encrypted; everything else is
stored as plain JSON so sessions can be listed and filtered cheaply. Writers for one
session id are assumed to be single-threaded; there is no file locking.
"""

import copy
import json
import logging
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .backup import (
    backup_path,
    create_backup as _write_backup,
    list_backups as _list_backups,
    prune_backups,
    read_backup,
    write_json_atomic,
)
from .encryption import DecryptionError, EncryptionEnvelope, EncryptionService
from .schema import (
    PAYMENT_FIELD,
    SHAREHOLDERS_FIELD,
    SSN_FIELD,
    SessionBackup,
    SessionError,
    SessionQuery,
    SessionRecord,
    SessionStatus,
)
from util.logging import audit_event, logger

log = logging.getLogger(__name__)

ACTIVE_SESSION_FILE = "active_session.json"
BACKUP_DIR_NAME = "backups"
SESSION_ID_PATTERN = re.compile(r"^session-[A-Za-z0-9-]+$")
ENCRYPTED_PAYMENT_KEY = "encrypted_data"


def generate_session_id() -> str:
    """Time-ordered prefix plus random suffix."""
    return f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def scrub_sensitive_fields(company_data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of company data without shareholder SSNs or payment info."""
    data = copy.deepcopy(company_data)
    shareholders = data.get(SHAREHOLDERS_FIELD)
    if isinstance(shareholders, list):
        for shareholder in shareholders:
            if isinstance(shareholder, dict):
                shareholder.pop(SSN_FIELD, None)
    data.pop(PAYMENT_FIELD, None)
    return data


def _mask_ssn(ssn: Any) -> Any:
    if isinstance(ssn, str) and len(ssn.replace("-", "")) == 9:
        return f"***-**-{ssn.replace('-', '')[-4:]}"
    return None


class SessionStore:
    """File-backed session persistence; construct one per storage directory."""

    def __init__(self, storage_dir: str = None, encryption: EncryptionService = None,
                 backup_enabled: bool = None, backup_retention_days: int = None,
                 cleanup_after_days: int = None, auto_cleanup: bool = None):
        self.storage_dir = Path(storage_dir).expanduser() if storage_dir else config.get_storage_dir()
        self.backup_dir = self.storage_dir / BACKUP_DIR_NAME
        self.active_file = self.storage_dir / ACTIVE_SESSION_FILE
        self.encryption = encryption or EncryptionService()
        self.backup_enabled = config.BACKUP_ENABLED if backup_enabled is None else backup_enabled
        self.backup_retention_days = (
            config.BACKUP_RETENTION_DAYS if backup_retention_days is None else backup_retention_days
        )
        self.cleanup_after_days = (
            config.SESSION_CLEANUP_DAYS if cleanup_after_days is None else cleanup_after_days
        )
        self._last_timestamp: Optional[datetime] = None

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            if self.backup_enabled:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SessionError(f"Cannot create session storage at {self.storage_dir}: {e}", "INIT_ERROR") from e

        self._validate_active_pointer()

        if config.SESSION_AUTO_CLEANUP if auto_cleanup is None else auto_cleanup:
            self.cleanup_old_sessions()

    # ------------------------------------------------------------------
    # Paths and timestamps

    def _session_path(self, session_id: str) -> Path:
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            raise SessionError(f"Invalid session id: {session_id!r}", "INVALID_SESSION_ID")
        return self.storage_dir / f"{session_id}.json"

    def _now(self) -> datetime:
        """UTC now, strictly increasing within this store so update order is total."""
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    # ------------------------------------------------------------------
    # Field-level encryption

    def _encrypt_company_data(self, company_data: Dict[str, Any]) -> Dict[str, Any]:
        data = copy.deepcopy(company_data)

        shareholders = data.get(SHAREHOLDERS_FIELD)
        if isinstance(shareholders, list):
            for shareholder in shareholders:
                if not isinstance(shareholder, dict):
                    continue
                ssn = shareholder.get(SSN_FIELD)
                if ssn in (None, "") or EncryptionEnvelope.is_envelope(ssn):
                    continue
                shareholder[SSN_FIELD] = self.encryption.encrypt_ssn(ssn).to_dict()

        payment = data.get(PAYMENT_FIELD)
        if isinstance(payment, dict) and ENCRYPTED_PAYMENT_KEY not in payment:
            data[PAYMENT_FIELD] = {
                ENCRYPTED_PAYMENT_KEY: self.encryption.encrypt_payment_info(payment).to_dict()
            }

        return data

    def _decrypt_company_data(self, session_id: str, company_data: Dict[str, Any]) -> Dict[str, Any]:
        data = copy.deepcopy(company_data)

        shareholders = data.get(SHAREHOLDERS_FIELD)
        if isinstance(shareholders, list):
            for index, shareholder in enumerate(shareholders):
                if not isinstance(shareholder, dict) or not EncryptionEnvelope.is_envelope(shareholder.get(SSN_FIELD)):
                    continue
                try:
                    shareholder[SSN_FIELD] = self.encryption.decrypt(shareholder[SSN_FIELD])
                except DecryptionError as e:
                    shareholder.pop(SSN_FIELD)
                    logger.log_session_operation("decrypt", session_id, "warning",
                                                 {"field": f"shareholders[{index}].ssn", "error": str(e)})

        payment = data.get(PAYMENT_FIELD)
        if isinstance(payment, dict) and ENCRYPTED_PAYMENT_KEY in payment:
            try:
                data[PAYMENT_FIELD] = self.encryption.decrypt_object(payment[ENCRYPTED_PAYMENT_KEY])
            except DecryptionError as e:
                data.pop(PAYMENT_FIELD)
                logger.log_session_operation("decrypt", session_id, "warning",
                                             {"field": PAYMENT_FIELD, "error": str(e)})

        return data

    def _serialize(self, session: SessionRecord) -> Dict[str, Any]:
        payload = session.to_dict()
        payload["company_data"] = self._encrypt_company_data(session.company_data)
        return payload

    def _read_record(self, session_id: str, path: Path) -> SessionRecord:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            record = SessionRecord.from_dict(raw)
        except (ValueError, KeyError, TypeError) as e:
            raise SessionError(f"Session file {path.name} is corrupted: {e}", "SESSION_CORRUPTED") from e
        except OSError as e:
            raise SessionError(f"Failed to read session {session_id}: {e}", "LOAD_ERROR") from e

        if record.session_id != session_id:
            raise SessionError(
                f"Session file {path.name} contains id {record.session_id}", "SESSION_ID_MISMATCH"
            )

        record.company_data = self._decrypt_company_data(session_id, record.company_data)
        return record

    # ------------------------------------------------------------------
    # Active session pointer

    def get_active_session_id(self) -> Optional[str]:
        """Id held by the active-session marker, or None."""
        if not self.active_file.exists():
            return None
        try:
            with open(self.active_file, "r", encoding="utf-8") as f:
                session_id = json.load(f).get("session_id")
        except (OSError, ValueError, AttributeError) as e:
            log.warning(f"Ignoring unreadable active session marker: {e}")
            return None
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            return None
        return session_id

    def _set_active(self, session_id: str) -> None:
        write_json_atomic(self.active_file, {"session_id": session_id})

    def _clear_active(self, session_id: str = None) -> None:
        """Remove the marker; with session_id, only when it points at that session."""
        if session_id is not None and self.get_active_session_id() != session_id:
            return
        try:
            self.active_file.unlink()
        except FileNotFoundError:
            pass

    def _validate_active_pointer(self) -> None:
        if not self.active_file.exists():
            return
        session_id = self.get_active_session_id()
        try:
            session = self.load_session(session_id) if session_id else None
        except SessionError:
            session = None
        if session is None or session.status != SessionStatus.IN_PROGRESS:
            log.info(f"Clearing stale active session marker ({session_id})")
            self._clear_active()

    # ------------------------------------------------------------------
    # Session lifecycle

    def create_session(self, metadata: Dict[str, Any] = None) -> SessionRecord:
        """Create and persist a new in-progress session and make it active."""
        now = self._now()
        session = SessionRecord(
            session_id=generate_session_id(),
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        saved = self._write(session, touch=False)
        self._set_active(saved.session_id)

        logger.log_session_operation("create", saved.session_id)
        return saved

    def save_session(self, session: SessionRecord) -> SessionRecord:
        """
        Persist a session, encrypting sensitive fields in a copy.

        The caller's record is not modified; the returned record carries the new
        updated_at. Terminal sessions are saved without SSN or payment data.
        """
        return self._write(session, touch=True)

    def _write(self, session: SessionRecord, touch: bool) -> SessionRecord:
        path = self._session_path(session.session_id)

        record = copy.deepcopy(session)
        record.status = SessionStatus(record.status)
        if touch:
            record.updated_at = self._now()
        if record.is_terminal:
            record.company_data = scrub_sensitive_fields(record.company_data)

        payload = self._serialize(record)

        try:
            write_json_atomic(path, payload)
        except OSError as e:
            logger.log_session_operation("save", record.session_id, "failed", {"error": str(e)})
            raise SessionError(f"Failed to save session {record.session_id}: {e}", "SAVE_ERROR") from e

        if self.backup_enabled:
            _write_backup(self.backup_dir, payload, self.encryption)

        return record

    def load_session(self, session_id: str) -> Optional[SessionRecord]:
        """Load and decrypt a session; None when it does not exist."""
        path = self._session_path(session_id)
        if not path.exists():
            return None
        return self._read_record(session_id, path)

    def _require(self, session_id: str) -> SessionRecord:
        session = self.load_session(session_id)
        if session is None:
            raise SessionError(f"Session not found: {session_id}", "SESSION_NOT_FOUND")
        return session

    def update_session(self, session_id: str, company_data: Dict[str, Any],
                       current_step: str = None) -> SessionRecord:
        """Shallow-merge company data into a session and optionally advance its step."""
        session = self._require(session_id)
        if session.is_terminal:
            raise SessionError(
                f"Session {session_id} is {session.status.value} and cannot be updated", "SESSION_NOT_ACTIVE"
            )

        session.company_data.update(company_data or {})
        if current_step is not None:
            session.current_step = current_step

        saved = self.save_session(session)
        logger.log_session_operation("update", session_id, details={"current_step": saved.current_step})
        return saved

    def resume_session(self) -> Optional[SessionRecord]:
        """
        Find the session to continue.

        Prefers the active session when it is still in progress, otherwise the most
        recently updated in-progress session, which then becomes active.
        """
        active_id = self.get_active_session_id()
        if active_id:
            try:
                session = self.load_session(active_id)
            except SessionError as e:
                log.warning(f"Active session {active_id} is unreadable: {e}")
                session = None
            if session is not None and session.status == SessionStatus.IN_PROGRESS:
                logger.log_session_operation("resume", active_id, details={"source": "active"})
                return session

        candidates = self.list_sessions(SessionQuery(status=SessionStatus.IN_PROGRESS, limit=1))
        if not candidates:
            self._clear_active()
            return None

        session = candidates[0]
        self._set_active(session.session_id)
        logger.log_session_operation("resume", session.session_id, details={"source": "latest"})
        return session

    def _finish(self, session_id: str, status: SessionStatus) -> SessionRecord:
        session = self._require(session_id)
        earlier = self.list_backups(session_id)
        session.status = status
        session.company_data = scrub_sensitive_fields(session.company_data)
        saved = self.save_session(session)
        self._clear_active(session_id)
        self._purge_backups(earlier)

        logger.log_session_operation(status.value, session_id)
        audit_event(f"session.{status.value}", {"session_id": session_id, "current_step": saved.current_step})
        return saved

    def _purge_backups(self, entries: List[Dict[str, Any]]) -> None:
        # Snapshots taken before a session finished still hold its sensitive fields
        for entry in entries:
            try:
                backup_path(self.backup_dir, entry["session_id"], entry["backup_id"]).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise SessionError(
                    f"Failed to remove backup {entry['backup_id']}: {e}", "BACKUP_ERROR"
                ) from e
        if entries:
            logger.log_backup_operation("purge", entries[0]["session_id"], status="success",
                                        details={"removed": len(entries)})

    def complete_session(self, session_id: str) -> SessionRecord:
        """Mark completed and irreversibly drop SSN and payment data."""
        return self._finish(session_id, SessionStatus.COMPLETED)

    def abandon_session(self, session_id: str) -> SessionRecord:
        """Mark abandoned; sensitive fields are dropped as for completion."""
        return self._finish(session_id, SessionStatus.ABANDONED)

    def delete_session(self, session_id: str) -> bool:
        """Remove the session file. Backups are left for retention pruning."""
        path = self._session_path(session_id)
        self._clear_active(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SessionError(f"Failed to delete session {session_id}: {e}", "DELETE_ERROR") from e

        logger.log_session_operation("delete", session_id)
        return True

    def clear_sensitive_data(self, session_id: str) -> Optional[SessionRecord]:
        """Drop SSNs and payment info from a stored session without changing its status."""
        session = self.load_session(session_id)
        if session is None:
            return None
        session.company_data = scrub_sensitive_fields(session.company_data)
        return self.save_session(session)

    def list_sessions(self, query: SessionQuery = None) -> List[SessionRecord]:
        """Sessions matching the query, most recently updated first."""
        query = query or SessionQuery()
        sessions = []

        for path in self.storage_dir.glob("session-*.json"):
            session_id = path.stem
            if not SESSION_ID_PATTERN.match(session_id):
                continue
            try:
                session = self._read_record(session_id, path)
            except SessionError as e:
                log.warning(f"Skipping unreadable session {session_id}: {e}")
                continue
            if query.matches(session):
                sessions.append(session)

        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        if query.limit is not None:
            sessions = sessions[:query.limit]
        return sessions

    # ------------------------------------------------------------------
    # Backups

    def create_backup(self, session: SessionRecord) -> SessionBackup:
        """Snapshot the session's serialized form, independent of save-time backups."""
        self._session_path(session.session_id)
        record = copy.deepcopy(session)
        if SessionStatus(record.status).is_terminal:
            record.company_data = scrub_sensitive_fields(record.company_data)
        return _write_backup(self.backup_dir, self._serialize(record), self.encryption)

    def list_backups(self, session_id: str = None) -> List[Dict[str, Any]]:
        return _list_backups(self.backup_dir, session_id)

    def restore_from_backup(self, backup_id: str) -> SessionRecord:
        """
        Replace a session file with a verified backup payload.

        Raises:
            BackupNotFoundError: no such backup
            BackupCorruptedError: checksum mismatch; the live session is left untouched
            SessionError: the live session has finished and the backup predates that
        """
        backup = read_backup(self.backup_dir, backup_id, self.encryption)
        path = self._session_path(backup.session_id)

        try:
            live = self.load_session(backup.session_id)
        except SessionError as e:
            log.warning(f"Restoring over unreadable session {backup.session_id}: {e}")
            live = None
        backup_status = SessionStatus(backup.payload.get("status", SessionStatus.IN_PROGRESS.value))
        if live is not None and live.is_terminal and not backup_status.is_terminal:
            raise SessionError(
                f"Session {backup.session_id} is {live.status.value}; "
                f"backup {backup_id} cannot reopen it",
                "SESSION_NOT_ACTIVE",
            )

        try:
            write_json_atomic(path, backup.payload)
        except OSError as e:
            raise SessionError(f"Failed to restore session {backup.session_id}: {e}", "RESTORE_ERROR") from e

        restored = self._require(backup.session_id)
        if restored.status != SessionStatus.IN_PROGRESS:
            self._clear_active(restored.session_id)

        logger.log_backup_operation("restore", backup.session_id, backup_id)
        return restored

    # ------------------------------------------------------------------
    # Retention

    def cleanup_old_sessions(self, now: datetime = None) -> int:
        """
        Delete terminal sessions older than the cleanup window and prune old backups.

        Returns:
            Number of sessions deleted
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.cleanup_after_days)
        deleted = 0

        for session in self.list_sessions():
            if session.is_terminal and session.updated_at < cutoff:
                if self.delete_session(session.session_id):
                    deleted += 1

        pruned = prune_backups(self.backup_dir, self.backup_retention_days, now=now)

        logger.log_operation("session.cleanup", "success", {
            "sessions_deleted": deleted,
            "backups_pruned": pruned,
            "cleanup_after_days": self.cleanup_after_days
        })
        return deleted

    # ------------------------------------------------------------------
    # Export

    def export_session_for_backend(self, session_id: str) -> Dict[str, Any]:
        """Session data for the remote API: payment info removed, SSNs masked to last four."""
        session = self._require(session_id)
        company_data = copy.deepcopy(session.company_data)

        shareholders = company_data.get(SHAREHOLDERS_FIELD)
        if isinstance(shareholders, list):
            for shareholder in shareholders:
                if isinstance(shareholder, dict) and SSN_FIELD in shareholder:
                    masked = _mask_ssn(shareholder.pop(SSN_FIELD))
                    if masked:
                        shareholder["ssn_masked"] = masked
        company_data.pop(PAYMENT_FIELD, None)

        return {
            "session_id": session.session_id,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "status": session.status.value,
            "current_step": session.current_step,
            "company_data": company_data,
            "metadata": copy.deepcopy(session.metadata),
        }
