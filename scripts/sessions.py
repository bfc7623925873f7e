#!/usr/bin/env python3
"""
Command-line management for saved formation sessions.

Lists, inspects and finishes sessions, and manages their backups.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from formation.core.encryption import EncryptionError
from formation.core.schema import SessionError, SessionQuery, SessionStatus
from formation.core.session_store import SessionStore
from util.logging import sanitize_payload


def _print_session(session, verbose=False):
    print(session.session_id)
    print(f"  Status: {session.status.value}")
    print(f"  Step: {session.current_step}")
    print(f"  Created: {session.created_at.isoformat()}")
    print(f"  Updated: {session.updated_at.isoformat()}")
    company_name = session.company_data.get("company_name")
    if company_name:
        print(f"  Company: {company_name}")
    if verbose:
        print("  Company data:")
        print(json.dumps(sanitize_payload(session.company_data), indent=4, default=str))


def cmd_list(store, args):
    query = SessionQuery(
        status=SessionStatus(args.status) if args.status else None,
        limit=args.limit,
    )
    sessions = store.list_sessions(query)
    if not sessions:
        print("No sessions found.")
        return 0

    active_id = store.get_active_session_id()
    print(f"{len(sessions)} session(s):")
    for session in sessions:
        marker = "*" if session.session_id == active_id else " "
        name = session.company_data.get("company_name") or "-"
        print(f" {marker} {session.session_id}  {session.status.value:<12} {session.current_step:<20} "
              f"{session.updated_at.strftime('%Y-%m-%d %H:%M')}  {name}")
    return 0


def cmd_show(store, args):
    session = store.load_session(args.session_id)
    if session is None:
        print(f"ERROR: Session not found: {args.session_id}")
        return 1
    if args.export:
        print(json.dumps(store.export_session_for_backend(args.session_id), indent=2, default=str))
    else:
        _print_session(session, verbose=args.verbose)
    return 0


def cmd_resume(store, args):
    session = store.resume_session()
    if session is None:
        print("No in-progress session to resume.")
        return 1
    print("Resuming:")
    _print_session(session)
    return 0


def cmd_complete(store, args):
    session = store.complete_session(args.session_id)
    print(f"Session {session.session_id} completed. Sensitive data cleared.")
    return 0


def cmd_abandon(store, args):
    session = store.abandon_session(args.session_id)
    print(f"Session {session.session_id} abandoned. Sensitive data cleared.")
    return 0


def cmd_delete(store, args):
    if not args.force:
        response = input(f"Delete session {args.session_id}? (type 'yes' to continue): ")
        if response.lower() != 'yes':
            print("Operation cancelled by user.")
            return 0
    if store.delete_session(args.session_id):
        print(f"Deleted {args.session_id}")
        return 0
    print(f"ERROR: Session not found: {args.session_id}")
    return 1


def cmd_cleanup(store, args):
    removed = store.cleanup_old_sessions()
    print(f"Removed {removed} session(s) older than {store.cleanup_after_days} days.")
    return 0


def cmd_backups(store, args):
    backups = store.list_backups(args.session_id)
    if not backups:
        print("No backups found.")
        return 0
    for entry in backups:
        print(f"  {entry['backup_id']}  {entry['session_id']}  {entry['timestamp'].isoformat()}")
    return 0


def cmd_restore(store, args):
    if not args.force:
        print("WARNING: This will overwrite the current session file with the backup!")
        response = input("Are you sure you want to proceed? (type 'yes' to continue): ")
        if response.lower() != 'yes':
            print("Operation cancelled by user.")
            return 0
    session = store.restore_from_backup(args.backup_id)
    print(f"Restored {session.session_id} from {args.backup_id}")
    _print_session(session)
    return 0


COMMANDS = {
    "list": cmd_list,
    "show": cmd_show,
    "resume": cmd_resume,
    "complete": cmd_complete,
    "abandon": cmd_abandon,
    "delete": cmd_delete,
    "cleanup": cmd_cleanup,
    "backups": cmd_backups,
    "restore": cmd_restore,
}


def build_parser():
    parser = argparse.ArgumentParser(
        description="Manage saved company formation sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s list --status in_progress       # In-progress sessions, newest first
  %(prog)s show session-1700000000000-abc  # Session details (sensitive fields redacted)
  %(prog)s show <id> --export              # Backend export (SSNs masked, no payment info)
  %(prog)s backups <id>                    # Backups for one session
  %(prog)s restore <backup-id> --force     # Restore without confirmation
  %(prog)s cleanup                         # Delete sessions past the cleanup window

Environment variables:
- SESSION_STORAGE_DIR=~/.formation/sessions
- FORMATION_ENCRYPTION_KEY=... (required to read encrypted fields)
- SESSION_CLEANUP_DAYS=90, BACKUP_RETENTION_DAYS=30
        """
    )
    parser.add_argument("--storage-dir", help="Session storage directory (overrides SESSION_STORAGE_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List sessions")
    p.add_argument("--status", choices=[s.value for s in SessionStatus], help="Filter by status")
    p.add_argument("--limit", type=int, help="Maximum number of sessions")

    p = sub.add_parser("show", help="Show one session")
    p.add_argument("session_id")
    p.add_argument("--verbose", "-v", action="store_true", help="Include redacted company data")
    p.add_argument("--export", action="store_true", help="Print the backend export form")

    sub.add_parser("resume", help="Show the session that would be resumed")

    for name, help_text in (("complete", "Mark a session completed"), ("abandon", "Mark a session abandoned")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("session_id")

    p = sub.add_parser("delete", help="Delete a session (backups are kept)")
    p.add_argument("session_id")
    p.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    sub.add_parser("cleanup", help="Delete old sessions and expired backups")

    p = sub.add_parser("backups", help="List backups")
    p.add_argument("session_id", nargs="?", help="Only backups of this session")

    p = sub.add_parser("restore", help="Restore a session from a backup")
    p.add_argument("backup_id")
    p.add_argument("--force", "-f", action="store_true", help="Skip confirmation")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        store = SessionStore(storage_dir=args.storage_dir)
        return COMMANDS[args.command](store, args)
    except (SessionError, EncryptionError) as e:
        print(f"ERROR: {e}")
        return 1
    except KeyboardInterrupt:
        print(f"\nInterrupted at {datetime.now(timezone.utc).isoformat()}")
        return 130


if __name__ == "__main__":
    sys.exit(main())
