#!/usr/bin/env python3
"""Create a pre-verified CineMatch account for local setups.

Usage:
    # Using environment variables:
    SEED_EMAIL=dev@example.com SEED_PASSWORD=Password123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email dev@example.com --password Password123!

Environment Variables:
    SEED_EMAIL: Email for the account
    SEED_PASSWORD: Password for the account
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    MEMORY_STORE_PATH: JSON state file for the memory store, so the account survives
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(
    email: str, password: str, display_name: str | None = None, dry_run: bool = False
) -> dict:
    """Create the account (or verify an existing one).

    Returns:
        dict with user_id, email, and status ('created', 'verified' or 'exists')
    """
    # Import here to avoid loading config before env vars are set
    from cinematch.service.runtime import get_runtime
    from cinematch.storage.models import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.email_verified is True:
            print(f"User {email} already exists and is verified (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would mark {email} as verified")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_email_verified(existing.id, True)
        print(f"Marked existing user {email} as verified (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "verified"}

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, display_name)
    runtime.store.set_email_verified(user.id, True)
    print(f"Created verified user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified CineMatch account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Account email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Account password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--display-name", default=None, help="Display name shown in the app")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Note: Using in-memory store; set DATABASE_URL or MEMORY_STORE_PATH to keep the account")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_user(args.email, args.password, args.display_name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
