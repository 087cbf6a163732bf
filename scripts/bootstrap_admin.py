#!/usr/bin/env python3
"""Create or promote a verified admin user.

Registration never grants the admin role, so the first admin is made here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --name Admin

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawing on 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    store, email: str, password: str, name: str, dry_run: bool = False, cache=None
) -> dict:
    """Create the admin, or promote and verify an existing account.

    When ``cache`` is given, a promoted user's cached profile is evicted so
    reads stop showing the old role.
    """
    from argon2 import PasswordHasher, Type

    from userhub.storage.models import User, UserRole

    email = email.strip().lower()
    existing = store.get_user_by_email(email)
    if existing:
        if existing.role == UserRole.ADMIN.value and existing.is_verified:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        store.update_user_role(existing.id, UserRole.ADMIN.value)
        if not existing.is_verified:
            store.mark_email_verified(existing.id)
        if cache is not None:
            asyncio.run(cache.evict_user_profile(existing.id))
            asyncio.run(cache.invalidate_directory())
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = User.new(
        name,
        email,
        PasswordHasher(type=Type.ID).hash(password),
        role=UserRole.ADMIN.value,
        is_verified=True,
    )
    store.create_user(user)
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for UserHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    from userhub.config import get_settings
    from userhub.storage.postgres import PostgresStore
    from userhub.storage.redis_cache import SyncRedisCache

    settings = get_settings()
    store = PostgresStore(settings.database_url, min_size=1, max_size=1)
    cache = SyncRedisCache(settings.redis_url) if settings.redis_url else None
    try:
        result = bootstrap_admin(
            store, args.email, args.password, args.name, args.dry_run, cache=cache
        )
    finally:
        store.close()
        if cache is not None:
            asyncio.run(cache.close())

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
