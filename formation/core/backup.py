"""
Session backups - append-only snapshots of the serialized session payload with HMAC checksums.

Files live in <storage_dir>/backups/<session_id>__<backup_id>.json. The payload is the
already-encrypted form written to the session file, so backups never hold plaintext SSNs
or card data.
"""

import json
import os
import tempfile
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .encryption import EncryptionService
from .schema import SessionBackup, SessionError
from util.logging import logger

BACKUP_SEPARATOR = "__"


class BackupError(SessionError):
    """Custom exception for backup operations."""

    def __init__(self, message: str, code: str = "BACKUP_ERROR"):
        super().__init__(message, code)


class BackupNotFoundError(BackupError):
    def __init__(self, backup_id: str):
        super().__init__(f"Backup not found: {backup_id}", "BACKUP_NOT_FOUND")
        self.backup_id = backup_id


class BackupCorruptedError(BackupError):
    """Stored backup failed checksum or structural verification."""

    def __init__(self, message: str):
        super().__init__(message, "BACKUP_CORRUPTED")


def canonical_json(payload: Any) -> str:
    """Stable serialization used for checksums."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def generate_backup_id() -> str:
    return f"backup-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def backup_path(backup_dir: Path, session_id: str, backup_id: str) -> Path:
    return backup_dir / f"{session_id}{BACKUP_SEPARATOR}{backup_id}.json"


def _backup_time_from_id(backup_id: str) -> Optional[datetime]:
    """Backup ids embed their creation time in epoch milliseconds."""
    parts = backup_id.split("-")
    if len(parts) < 3 or parts[0] != "backup" or not parts[1].isdigit():
        return None
    return datetime.fromtimestamp(int(parts[1]) / 1000, tz=timezone.utc)


def create_backup(backup_dir: Path, payload: Dict[str, Any], encryption: EncryptionService) -> SessionBackup:
    """Snapshot a serialized session payload into a new backup file."""
    session_id = payload.get("session_id")
    if not session_id:
        raise BackupError("Cannot back up a payload without a session_id")

    backup = SessionBackup(
        backup_id=generate_backup_id(),
        session_id=session_id,
        timestamp=datetime.now(timezone.utc),
        payload=payload,
        checksum=encryption.create_checksum(canonical_json(payload)),
    )

    try:
        write_json_atomic(backup_path(backup_dir, session_id, backup.backup_id), backup.to_dict())
    except OSError as e:
        logger.log_backup_operation("create", session_id, backup.backup_id, "failed", {"error": str(e)})
        raise BackupError(f"Failed to write backup for {session_id}: {e}") from e

    logger.log_backup_operation("create", session_id, backup.backup_id)
    return backup


def find_backup_file(backup_dir: Path, backup_id: str) -> Path:
    if not backup_dir.exists() or BACKUP_SEPARATOR in backup_id or "/" in backup_id or "\\" in backup_id:
        raise BackupNotFoundError(backup_id)

    matches = list(backup_dir.glob(f"*{BACKUP_SEPARATOR}{backup_id}.json"))
    if not matches:
        raise BackupNotFoundError(backup_id)
    return matches[0]


def read_backup(backup_dir: Path, backup_id: str, encryption: EncryptionService) -> SessionBackup:
    """
    Load and verify a backup.

    Raises:
        BackupNotFoundError: no backup file carries this id
        BackupCorruptedError: unreadable file, structural mismatch, or checksum mismatch
    """
    path = find_backup_file(backup_dir, backup_id)

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        backup = SessionBackup.from_dict(raw)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise BackupCorruptedError(f"Backup {backup_id} is unreadable: {e}") from e

    if not isinstance(backup.payload, dict):
        raise BackupCorruptedError(f"Backup {backup_id} payload is not an object")

    if not encryption.verify_checksum(canonical_json(backup.payload), backup.checksum):
        logger.log_backup_operation("verify", backup.session_id, backup_id, "failed",
                                    {"reason": "checksum_mismatch"})
        raise BackupCorruptedError(f"Backup {backup_id} failed checksum verification")

    if backup.payload.get("session_id") != backup.session_id:
        raise BackupCorruptedError(f"Backup {backup_id} payload belongs to a different session")

    return backup


def list_backups(backup_dir: Path, session_id: str = None) -> List[Dict[str, Any]]:
    """Backup ids and timestamps, newest first. Reads file names only."""
    if not backup_dir.exists():
        return []

    pattern = f"{session_id}{BACKUP_SEPARATOR}*.json" if session_id else f"*{BACKUP_SEPARATOR}*.json"
    entries = []
    for path in backup_dir.glob(pattern):
        owner, _, backup_id = path.stem.partition(BACKUP_SEPARATOR)
        created = _backup_time_from_id(backup_id)
        if created is None:
            created = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        entries.append({"backup_id": backup_id, "session_id": owner, "timestamp": created})

    entries.sort(key=lambda e: e["timestamp"], reverse=True)
    return entries


def prune_backups(backup_dir: Path, retention_days: int, now: datetime = None) -> int:
    """Delete backups older than the retention window. Returns number removed."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=retention_days)
    removed = 0

    for entry in list_backups(backup_dir):
        if entry["timestamp"] >= cutoff:
            continue
        path = backup_path(backup_dir, entry["session_id"], entry["backup_id"])
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue

    if removed:
        logger.log_backup_operation("prune", "*", status="success",
                                    details={"removed": removed, "retention_days": retention_days})
    return removed
