#!/usr/bin/env python3
"""Provision a user with a personal organization and issue an API token.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=me@example.com python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email me@example.com --token-name laptop

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    DATABASE_URL: PostgreSQL connection string (required unless --memory is given)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(email: str, token_name: str, dry_run: bool = False) -> dict:
    """Create the user if needed and issue a token.

    Returns:
        dict with user_id, organization_id, status and (unless dry run) the
        one-time raw token.
    """
    # Import here to avoid loading config before env vars are set
    from yoink.service.runtime import get_runtime

    runtime = get_runtime()

    user = await runtime.users.find_by_email(email)
    status = "existing"
    if user is None:
        if dry_run:
            print(f"[DRY RUN] Would create user {email} and a token named {token_name!r}")
            return {"user_id": None, "organization_id": None, "status": "dry_run"}
        user = await runtime.users.provision_user(email)
        status = "created"
    elif dry_run:
        print(f"[DRY RUN] Would issue a token named {token_name!r} for {email}")
        return {"user_id": user.id, "organization_id": user.organization_id, "status": "dry_run"}

    issued = await runtime.tokens.create_token(user.id, token_name)
    return {
        "user_id": user.id,
        "organization_id": user.organization_id,
        "status": status,
        "raw_token": issued.raw_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Provision a Yoink user and API token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument("--token-name", default="bootstrap", help="Name for the issued token")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory store (nothing is persisted)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if args.memory:
        os.environ["USE_MEMORY_STORE"] = "true"
    elif not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required (or pass --memory for a throwaway run)")
        sys.exit(1)

    from yoink.service.errors import ServiceError
    from yoink.storage.errors import StorageError

    try:
        result = asyncio.run(bootstrap_user(args.email, args.token_name, args.dry_run))
    except (ServiceError, StorageError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        return
    if result["status"] == "created":
        print(f"\nCreated user {args.email}")
    print(f"  User ID: {result['user_id']}")
    print(f"  Organization ID: {result['organization_id']}")
    print(f"  API Token (shown once): {result['raw_token']}")


if __name__ == "__main__":
    main()
