#!/usr/bin/env python3
"""Create a verified StudyBuddy account for local setup and demos.

Usage:
    # Using environment variables:
    ACCOUNT_EMAIL=student@example.com ACCOUNT_PASSWORD='Str0ng!pass' python scripts/create_account.py

    # Or with command line args:
    python scripts/create_account.py --email student@example.com --password 'Str0ng!pass' --name Sam

Environment Variables:
    ACCOUNT_EMAIL: Email for the account
    ACCOUNT_PASSWORD: Password for the account (must meet the signup strength rules)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_account(email: str, password: str, name: str | None = None, dry_run: bool = False) -> dict:
    """Create an account with its email already verified.

    Returns:
        dict with account_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from studybuddy.service.runtime import get_runtime
    from studybuddy.storage.common import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_account_by_email(email)
    if existing:
        print(f"Account {email} already exists (id: {existing.id}, status: {existing.status.value})")
        return {"account_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.auth.provision_account(email, password, name=name)
    print(f"Created account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a verified StudyBuddy account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ACCOUNT_EMAIL"),
        help="Account email (or set ACCOUNT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="Account password (or set ACCOUNT_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ACCOUNT_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ACCOUNT_PASSWORD environment variable required")
        sys.exit(1)

    from studybuddy.api.schemas import validate_password_strength

    try:
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    # no tokens are issued here, so a throwaway signing secret is enough
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/studybuddy-accounts"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_account(args.email, args.password, args.name, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created and verified.")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
