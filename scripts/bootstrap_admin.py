#!/usr/bin/env python3
"""Create the first system administrator without going through the HTTP API.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --name "System Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (memory store with a state file under
        SHARED_FS_ROOT when unset)

Setup runs exactly once; a second run reports that the system is already initialized.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, display_name: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from backoffice.service.errors import ConflictError
    from backoffice.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if runtime.auth.setup_status()["initialized"]:
            return {"principal_id": None, "email": email, "status": "already_initialized"}
        if dry_run:
            print(f"[DRY RUN] Would create system administrator: {email}")
            return {"principal_id": None, "email": email, "status": "dry_run"}
        try:
            principal = await runtime.auth.setup_admin(email, password, display_name)
        except ConflictError:
            return {"principal_id": None, "email": email, "status": "already_initialized"}
        return {"principal_id": principal.id, "email": principal.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first back-office administrator",
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
    parser.add_argument("--name", default="System Admin", help="Display name")
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
    if len(args.password) < 8:
        print("Error: Password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/backoffice-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSystem administrator created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "already_initialized":
        print("\nNo changes made: the system already has an administrator.")
        sys.exit(2)


if __name__ == "__main__":
    main()
