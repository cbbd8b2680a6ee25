#!/usr/bin/env python3
"""Create the first admin account, or promote an existing claimed account.

Admins only ever sign in with a password, so the account is created claimed.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --name "Site Admin" --password '...'

Environment Variables:
    ADMIN_EMAIL, ADMIN_NAME, ADMIN_PASSWORD: defaults for the flags
    DATABASE_URL: Postgres DSN (the in-memory store is used when unset)
    PASSWORD_PEPPER: must match the pepper the application runs with
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    # Import here so the env defaults below are in place before settings load
    from claimgate.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()

    if dry_run:
        existing = runtime.store.get_account_by_email(email)
        action = "create" if not existing else f"promote ({existing.role.value})"
        print(f"[DRY RUN] Would {action} admin account: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    account, status = await runtime.auth.ensure_admin(email, name, password)
    return {"user_id": account.id, "email": account.email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for claimgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.name, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Admin account created: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"Existing account promoted to admin: {result['email']}")
    elif result["status"] == "already_admin":
        print("No changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
