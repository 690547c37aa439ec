#!/usr/bin/env python3
"""Create an ADMIN user, or grant ADMIN to an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password ...

Environment Variables:
    ADMIN_EMAIL / ADMIN_PASSWORD: credentials for the admin account
    DATABASE_URL: Postgres connection string
    MEMORY_STORE_PATH: JSON snapshot for the in-memory store when no database is used
    JWT_SECRET / JWT_REFRESH_SECRET: required by the service settings
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from tenantgate.service.guards import ADMIN_ROLE


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with user_id, email and status
    """
    # deferred so settings are read after env defaults are applied
    from tenantgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if ADMIN_ROLE in existing.roles:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.users.grant_role(existing.id, ADMIN_ROLE)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, roles=["USER", ADMIN_ROLE])
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tenantgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
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
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Error: set DATABASE_URL or MEMORY_STORE_PATH so the account persists")
            sys.exit(1)
        os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Granted {ADMIN_ROLE} to {result['email']} (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin; no changes made")
    else:
        print(f"[DRY RUN] no changes made for {result['email']}")


if __name__ == "__main__":
    main()
