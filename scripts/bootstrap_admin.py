#!/usr/bin/env python3
"""Create or promote an ADMIN account.

Self-registration never grants ADMIN, so the first administrator of a
deployment is created here.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@hospital.example ADMIN_PASSWORD='S3cure!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@hospital.example --password 'S3cure!Passw0rd' \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same policy as registration)
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


def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "System",
    last_name: str = "Administrator",
    dry_run: bool = False,
) -> dict:
    """Create an ADMIN account, or promote the existing account with this email.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from medauth.service.runtime import get_runtime
    from medauth.service.validation import email_issue, normalize_email, password_issues
    from medauth.storage.models import Role

    problems = [m for m in [email_issue(email)] if m] + password_issues(password)
    if problems:
        raise ValueError("; ".join(problems))

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to ADMIN")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.update_account_role(existing.id, Role.ADMIN)
        print(f"Promoted existing account {email} to ADMIN (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email,
        runtime.hasher.hash(password),
        role=Role.ADMIN,
        profile={"first_name": first_name, "last_name": last_name},
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"user_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an ADMIN account for MedAuth",
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
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Administrator")
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
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/medauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to ADMIN!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
