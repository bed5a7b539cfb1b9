#!/usr/bin/env python3
"""Register a login from the command line.

Usage:
    # Using environment variables:
    GATEKEY_LOGIN=alice GATEKEY_PASSWORD=s3cret python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --login alice --password s3cret --email alice@example.com

Environment Variables:
    GATEKEY_LOGIN: Login to register
    GATEKEY_PASSWORD: Password for the login
    DATABASE_URL / DB_DSN: PostgreSQL connection string (memory store when unset)
    FILE_STORAGE_PATH: Base path of the memory store's users log
    JWT_SECRET: Signing secret; generated for this run when unset
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(
    login: str, password: str, email: str | None = None, dry_run: bool = False
) -> dict:
    """Register ``login`` and report the outcome.

    Returns:
        dict with user_id, login, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatekey.service.errors import ConflictError
    from gatekey.service.runtime import get_runtime, shutdown_runtime

    runtime = get_runtime()
    try:
        if dry_run:
            print(f"[DRY RUN] Would register login: {login}")
            return {"user_id": None, "login": login, "status": "dry_run"}
        try:
            user_id = runtime.auth.register(login, password, email=email)
        except ConflictError:
            print(f"Login {login} is already registered")
            return {"user_id": None, "login": login, "status": "exists"}
        print(f"Registered login: {login} (user_id: {user_id})")
        return {"user_id": user_id, "login": login, "status": "created"}
    finally:
        shutdown_runtime()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Register a login with the credential service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--login",
        default=os.environ.get("GATEKEY_LOGIN"),
        help="Login to register (or set GATEKEY_LOGIN env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("GATEKEY_PASSWORD"),
        help="Password (or set GATEKEY_PASSWORD env var)",
    )
    parser.add_argument("--email", default=None, help="Optional profile email")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.login:
        print("Error: --login or GATEKEY_LOGIN environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or GATEKEY_PASSWORD environment variable required")
        sys.exit(1)

    # Registration never signs tokens, so a throwaway secret is enough
    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not (os.environ.get("DATABASE_URL") or os.environ.get("DB_DSN")):
        print("Note: Using the memory store (set DATABASE_URL for PostgreSQL)")

    try:
        result = create_user(args.login, args.password, args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
