#!/usr/bin/env python3
"""Create a user account from the command line.

Usage:
    MEDTRACKER_EMAIL=a@example.com MEDTRACKER_PASSWORD=secret1 python scripts/bootstrap_user.py
    python scripts/bootstrap_user.py --email a@example.com --password secret1 --profile Me

Environment Variables:
    MEDTRACKER_EMAIL: Email for the user
    MEDTRACKER_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    email: str, password: str, profile_name: str | None = None, dry_run: bool = False
) -> dict:
    """Register ``email`` unless it already exists, optionally adding a first profile."""
    # deferred so the env defaults below are applied before settings load
    from medtracker.service.auth import Identity, normalize_email
    from medtracker.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(normalize_email(email))
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = runtime.auth.register(email, password)
    outcome = {
        "user_id": result.user_id,
        "email": result.email,
        "status": "created",
        "token": result.token,
    }
    if profile_name:
        identity = Identity(user_id=result.user_id, email=result.email)
        profile = runtime.profiles.create(identity, profile_name)
        outcome["profile_id"] = profile.id
    return outcome


def main():
    parser = argparse.ArgumentParser(
        description="Create a Medicine Tracker user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("MEDTRACKER_EMAIL"),
        help="User email (or set MEDTRACKER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("MEDTRACKER_PASSWORD"),
        help="User password (or set MEDTRACKER_PASSWORD env var)",
    )
    parser.add_argument("--profile", default=None, help="Name of a first profile to create")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or MEDTRACKER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or MEDTRACKER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/medtracker-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_user(args.email, args.password, args.profile, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("profile_id"):
            print(f"  Profile ID: {result['profile_id']}")
        print(f"  Token: {result['token'][:40]}...")


if __name__ == "__main__":
    main()
