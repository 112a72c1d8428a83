#!/usr/bin/env python3
"""
Sync and prioritize the primary inbox of every recently active user.

Eligible users: last_active_at within BATCH_SYNC_ACTIVE_DAYS and no batch sync
in the last BATCH_SYNC_MIN_INTERVAL_MINUTES. Each user's outcome is stored on
the user row (last_batch_sync_at / _status / _error).

Usage (from backend directory; use the project venv so deps are available):
  .venv/bin/python scripts/run_batch_sync.py [options]

Options:
  --user-id ID       Only sync this user (ignores the eligibility window)
  --user-email EMAIL Only sync the user with this email
"""
import argparse
import logging
import os
import sys

# Ensure priority_inbox is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)

from priority_inbox.config import settings
from priority_inbox.database import SessionLocal, init_db
from priority_inbox.models import User
from priority_inbox.services.batch_sync import run_batch_sync


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Batch-sync Gmail primary inboxes and run prioritization.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", type=int, default=None, help="Only sync this user ID")
    parser.add_argument("--user-email", type=str, default=None, help="Only sync the user with this email")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    init_db()

    db = SessionLocal()
    try:
        user_ids = None
        if args.user_id is not None:
            user_ids = [args.user_id]
        if args.user_email is not None:
            user = db.query(User).filter(User.email == args.user_email.strip()).first()
            if not user:
                print(f"User not found: {args.user_email}", file=sys.stderr)
                return 1
            user_ids = [user.id]
            print(f"Resolved --user-email to user_id={user.id}")

        summary = run_batch_sync(db, user_ids=user_ids)
        print(
            f"Done: {summary.attempted} attempted, {summary.synced} synced, "
            f"{summary.skipped} skipped, {summary.failed} failed"
        )
        return 0 if summary.failed == 0 else 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
