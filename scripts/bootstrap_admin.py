#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@inst.example ADMIN_PASSWORD='Adm1n$ecure' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@inst.example --password 'Adm1n$ecure' \
        --first-name Ada --last-name Admin --unit-id 7

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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

ADMINISTRATION_UNIT_ID = 7


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "Portal",
    last_name: str = "Administrator",
    unit_id: int = ADMINISTRATION_UNIT_ID,
    dry_run: bool = False,
) -> dict:
    """Create an admin user or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, "admin")
        # Tokens minted under the old role must not outlive the promotion
        await runtime.auth.revoke_all_user_sessions(existing_user.id, reason="role_changed")
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(
        email=email,
        password=password,
        first_name=first_name,
        last_name=last_name,
        organizational_unit_id=unit_id,
        role="admin",
    )
    print(f"Created admin user: {email} (id: {user.id}, username: {user.username})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Portal Auth",
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
    parser.add_argument("--first-name", default="Portal")
    parser.add_argument("--last-name", default="Administrator")
    parser.add_argument("--unit-id", type=int, default=ADMINISTRATION_UNIT_ID)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from portalauth.service.passwords import check_password_policy

    problems = check_password_policy(args.password)
    if problems:
        print("Error: Password does not meet the policy:")
        for problem in problems:
            print(f"       - {problem}")
        sys.exit(1)

    os.environ.setdefault("SECRETS_DIR", "/tmp/portalauth-bootstrap")

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                unit_id=args.unit_id,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
