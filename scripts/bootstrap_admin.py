#!/usr/bin/env python3
"""Create an admin account, or promote an existing account to admin.

Admins cannot self-register through the API, so the first one is made here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd!'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must pass the strength policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Returns a dict with account_id, email and status."""
    from estatevault.service.credentials import check_password_strength
    from estatevault.storage.common import normalize_email
    from estatevault.storage.models import (
        Account,
        AccountStatus,
        AuditAction,
        PasswordChangeReason,
        Role,
        Severity,
    )

    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(
            existing.id, role=Role.ADMIN, status=AccountStatus.ACTIVE, email_verified=True
        )
        runtime.auth.audit.record(
            existing.id, AuditAction.ACCOUNT_ACTIVATED, {"promoted_to": "admin"}, Severity.HIGH
        )
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    weak = check_password_strength(password)
    if weak:
        raise ValueError(weak.message)
    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = Account.new(
        email, Role.ADMIN, status=AccountStatus.ACTIVE, email_verified=True
    )
    runtime.store.create_account(account)
    problem = runtime.auth.credentials.set_password(account, password, PasswordChangeReason.INITIAL)
    if problem:
        raise ValueError(problem.message)
    runtime.auth.audit.record(
        account.id, AuditAction.USER_REGISTRATION, {"role": Role.ADMIN.value}, Severity.HIGH
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


_OUTCOMES = {
    "created": "Admin account created.",
    "promoted": "Existing account promoted to admin.",
    "already_admin": "No changes needed.",
    "dry_run": "Dry run only; nothing was written.",
}


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create or promote the EstateVault administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument("--dry-run", action="store_true", help="report the change without writing it")
    args = parser.parse_args(argv)
    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        parser.error(f"missing {' and '.join(missing)} (or the matching ADMIN_* variable)")
    return args


def main(argv=None) -> int:
    args = _parse_args(argv)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/estatevault-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"DATABASE_URL not set; using the memory store in {os.environ['SHARED_FS_ROOT']}")

    from estatevault.service.runtime import get_runtime
    from estatevault.storage.errors import StorageError

    try:
        result = bootstrap_admin(get_runtime(), args.email, args.password, args.dry_run)
    except (ValueError, RuntimeError, StorageError) as exc:
        print(f"bootstrap failed: {exc}", file=sys.stderr)
        return 1

    print(_OUTCOMES[result["status"]])
    if result["account_id"]:
        print(f"  {result['email']} -> {result['account_id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
