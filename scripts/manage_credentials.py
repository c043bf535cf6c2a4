#!/usr/bin/env python3
"""Credential housekeeping from the command line.

Usage:
    # Delete expired OTP rows and refresh tokens past the retention window:
    python scripts/manage_credentials.py sweep

    # Show the cutoffs a sweep would use without deleting anything:
    python scripts/manage_credentials.py sweep --dry-run

    # Revoke every refresh token of one account (logout everywhere):
    python scripts/manage_credentials.py revoke-all --email user@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Operate on the JSON-backed memory store under SHARED_FS_ROOT instead
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def sweep(dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from taskdesk.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        now = runtime.session.clock()
        cutoffs = {
            "otps_expired_before": now.isoformat(),
            "refresh_tokens_expired_before": runtime.tokens.retention_cutoff(now).isoformat(),
        }
        print(f"[DRY RUN] Would delete {cutoffs}")
        return {"status": "dry_run", **cutoffs}

    removed = runtime.session.sweep_expired()
    print(
        f"Deleted {removed['otps']} expired OTP rows and "
        f"{removed['refresh_tokens']} refresh tokens"
    )
    return {"status": "swept", **removed}


def revoke_all(email: str) -> dict:
    from taskdesk.service.runtime import get_runtime
    from taskdesk.service.session import normalize_email

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(normalize_email(email))
    if not user:
        print(f"No account for {email}")
        return {"status": "not_found", "email": email}
    count = runtime.session.logout_all(user.id)["revoked"]
    print(f"Revoked {count} refresh tokens for {email} (id: {user.id})")
    return {"status": "revoked", "user_id": user.id, "revoked": count}


def main():
    parser = argparse.ArgumentParser(
        description="Credential housekeeping for taskdesk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sweep_cmd = commands.add_parser("sweep", help="Delete expired credential rows")
    sweep_cmd.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the cutoffs without deleting anything",
    )

    revoke_cmd = commands.add_parser(
        "revoke-all", help="Revoke every refresh token of one account"
    )
    revoke_cmd.add_argument(
        "--email",
        default=os.environ.get("TARGET_EMAIL"),
        help="Account email (or set TARGET_EMAIL env var)",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL, or USE_MEMORY_STORE=true for the local store")
        sys.exit(1)

    try:
        if args.command == "sweep":
            sweep(dry_run=args.dry_run)
        else:
            if not args.email:
                print("Error: --email or TARGET_EMAIL environment variable required")
                sys.exit(1)
            result = revoke_all(args.email)
            if result["status"] == "not_found":
                sys.exit(2)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
