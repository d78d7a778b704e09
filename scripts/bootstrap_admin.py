#!/usr/bin/env python3
"""Seed the default administrator user, role and super permission.

Usage:
    # Using environment variables:
    ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --password SecurePassword123!

Environment Variables:
    ADMIN_PASSWORD: Password for the administrator (must meet complexity requirements)
    DEFAULT_USER_NAME / DEFAULT_ROLE_NAME / DEFAULT_SUPER_PERMISSION: identity to seed
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

ADMIN_ROLE_ID = 1
SUPER_PERMISSION_ID = 1


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(store, settings, password: str, dry_run: bool = False) -> dict:
    """Create the administrator role (id 1) and user if they are missing.

    Returns:
        dict with user_id, user_name, role_id and status
        ('created', 'already_exists' or 'dry_run')
    """
    from warden.service.session import hash_password

    user_name = settings.default_user_name
    existing_user = store.get_user_by_name(user_name)
    if existing_user:
        print(f"User {user_name} already exists (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "user_name": user_name,
            "role_id": ADMIN_ROLE_ID,
            "status": "already_exists",
        }

    if dry_run:
        print(f"[DRY RUN] Would create administrator {user_name} with role {settings.default_role_name}")
        return {"user_id": None, "user_name": user_name, "role_id": None, "status": "dry_run"}

    role = store.get_role(ADMIN_ROLE_ID)
    if role is None:
        existing = store.list_permissions_by_ids([SUPER_PERMISSION_ID])
        if existing:
            permission = existing[0]
        else:
            permission = store.create_permission(
                settings.default_super_permission,
                name="Super permission",
                permission_id=SUPER_PERMISSION_ID,
            )
        role = store.create_role(
            settings.default_role_name,
            description="Default administrator",
            permission_ids=[permission.id],
            role_id=ADMIN_ROLE_ID,
        )

    user = store.create_user(
        user_name,
        hash_password(password),
        nick_name="Administrator",
        role_ids=[role.id],
    )
    print(f"Created administrator: {user_name} (id: {user.id})")
    return {
        "user_id": user.id,
        "user_name": user_name,
        "role_id": role.id,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed the default administrator for Warden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/warden-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from warden.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = bootstrap_admin(runtime.store, runtime.settings, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdministrator created successfully!")
        print(f"  User name: {result['user_name']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role ID: {result['role_id']}")
    elif result["status"] == "already_exists":
        print("\nNo changes needed - administrator already exists.")


if __name__ == "__main__":
    main()
