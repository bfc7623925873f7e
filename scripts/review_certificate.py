#!/usr/bin/env python3
"""
Generate a formation certificate and review it in the browser before payment.
"""

import argparse
import json
import sys
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from formation.agents.registry import create_executor
from formation.core.encryption import EncryptionError
from formation.core.schema import SessionError
from formation.core.session_store import SessionStore
from formation.review.server import ReviewServer
from formation.review.workflow import review_certificate_before_payment, save_certificate_to_session


def _load_company_data(args, store):
    if args.company_file:
        path = Path(args.company_file)
        if not path.exists():
            raise SessionError(f"Company file not found: {path}", "FILE_NOT_FOUND")
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    session = store.load_session(args.session) if args.session else store.resume_session()
    if session is None:
        raise SessionError("No session to review", "SESSION_NOT_FOUND")
    args.session = session.session_id
    return session.company_data


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Generate and review a formation certificate before payment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --company-file company.json         # Review using data from a JSON file
  %(prog)s --session session-1700000000000-abc  # Review a saved session and store the result
  %(prog)s                                      # Review the session that would be resumed

The review page is served on 127.0.0.1 starting at REVIEW_SERVER_PORT (default 3456).
Approving stores the certificate link on the session; timeouts can simply be retried.
        """
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--company-file", help="JSON file with company data")
    source.add_argument("--session", help="Session id to review")
    parser.add_argument("--storage-dir", help="Session storage directory")
    parser.add_argument("--port", type=int, help="Preferred review server port")
    parser.add_argument("--timeout", type=float, help="Review window in seconds")
    parser.add_argument("--no-browser", action="store_true", help="Print the review URL instead of opening it")

    args = parser.parse_args(argv)

    try:
        store = None if args.company_file else SessionStore(storage_dir=args.storage_dir)
        company_data = _load_company_data(args, store)
    except (SessionError, EncryptionError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    server = ReviewServer(port=args.port, timeout_sec=args.timeout)
    opener = (lambda url: print(f"Open {url} to review the certificate")) if args.no_browser else None

    with create_executor("certificate") as executor:
        kwargs = {"server": server}
        if opener is not None:
            kwargs["browser_opener"] = opener
        print("Generating certificate...")
        result = review_certificate_before_payment(company_data, executor, **kwargs)

    if result.approved:
        print(f"Certificate approved: {result.certificate_data.certificate_id}")
        if store is not None:
            try:
                save_certificate_to_session(store, args.session, result)
            except SessionError as e:
                print(f"ERROR: Could not save certificate to session: {e}")
                return 1
            print(f"Saved to session {args.session}")
        return 0

    if result.cancelled:
        print("Review cancelled. Update the company details and try again.")
        return 2

    print(f"ERROR: {result.error}")
    print("You can run this command again to retry.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
