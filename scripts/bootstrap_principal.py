#!/usr/bin/env python3
"""Create or update a principal with a password for local setups.

Usage:
    # Using environment variables:
    PRINCIPAL_EMAIL=admin@example.com PRINCIPAL_PASSWORD=SecurePassword123! python scripts/bootstrap_principal.py

    # Or with command line args:
    python scripts/bootstrap_principal.py --email admin@example.com --password SecurePassword123! --role admin

Environment Variables:
    PRINCIPAL_EMAIL: Identifier of the principal
    PRINCIPAL_PASSWORD: Password (must meet complexity requirements)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_principal(
    email: str,
    password: str,
    *,
    display_name: str | None = None,
    role: str = "user",
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create a principal, or reset the password and reactivate an existing one.

    Returns:
        dict with identifier and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionward.service.issuer import normalize_identifier
    from sessionward.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    identifier = normalize_identifier(email)
    existing = runtime.store.get_principal(identifier)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} principal: {identifier}")
        return {"identifier": identifier, "status": "dry_run"}

    if existing:
        runtime.verifier.set_password(identifier, password)
        if not existing.is_active:
            runtime.store.set_principal_active(identifier, True)
        print(f"Updated principal {identifier}")
        return {"identifier": identifier, "status": "updated"}

    runtime.store.create_principal(
        identifier, display_name or identifier.split("@", 1)[0], role=role
    )
    runtime.verifier.set_password(identifier, password)
    print(f"Created principal: {identifier} (role: {role})")
    return {"identifier": identifier, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a principal for sessionward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("PRINCIPAL_EMAIL"),
        help="Principal email (or set PRINCIPAL_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("PRINCIPAL_PASSWORD"),
        help="Password (or set PRINCIPAL_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--role", default="user", help="Role claim (default: user)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or PRINCIPAL_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or PRINCIPAL_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_principal(
            args.email,
            args.password,
            display_name=args.name,
            role=args.role,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nPrincipal created successfully!")
    elif result["status"] == "updated":
        print("\nPassword reset; principal is active.")


if __name__ == "__main__":
    main()
