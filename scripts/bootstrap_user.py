#!/usr/bin/env python3
"""Register the single vault user without going through the setup page.

The server never sees the master password: pass the hash and encrypted key
material exactly as a Bitwarden client would send them to
``POST /api/accounts/register``.

Usage:
    python scripts/bootstrap_user.py --email a@example.com \\
        --master-password-hash <base64> --key 2.iv|data|mac \\
        --private-key 2.iv|data|mac --public-key <base64>

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless --dry-run)
    JWT_SECRET: must already be set to a safe value
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from vaultsync.service.runtime import get_runtime
    from vaultsync.storage.models import User

    runtime = get_runtime()
    runtime.auth.ensure_secret_safe_for_registration()

    existing = runtime.store.count_users()
    if existing:
        print(f"Registration is closed: {existing} user already registered")
        return {"user_id": None, "email": args.email, "status": "closed"}

    user = User.new(
        args.email,
        args.master_password_hash,
        args.key,
        name=args.name,
        private_key=args.private_key,
        public_key=args.public_key,
        kdf_type=args.kdf,
        kdf_iterations=args.kdf_iterations,
    )
    if args.dry_run:
        print(f"[DRY RUN] Would register {user.email}")
        return {"user_id": None, "email": user.email, "status": "dry_run"}

    runtime.auth.register_first_user(user)
    print(f"Registered {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Register the vault user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("VAULT_EMAIL"))
    parser.add_argument("--name", default=None)
    parser.add_argument("--master-password-hash", required=True)
    parser.add_argument("--key", required=True, help="Encrypted user key")
    parser.add_argument("--private-key", required=True, help="Encrypted private key")
    parser.add_argument("--public-key", required=True)
    parser.add_argument("--kdf", type=int, default=0)
    parser.add_argument("--kdf-iterations", type=int, default=600000)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or VAULT_EMAIL environment variable required")
        sys.exit(1)

    if args.dry_run and not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store for the dry run")

    try:
        result = bootstrap_user(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "closed":
        sys.exit(2)


if __name__ == "__main__":
    main()
