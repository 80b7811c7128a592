"""Storage contract and helpers shared between the memory and postgres backends.

Both backends implement :class:`AuthStore`. Every method listed under
"atomic" must perform its read-modify-write as one indivisible step; service
code relies on that instead of locking in-process.
"""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from cryptography.fernet import Fernet, InvalidToken

from estatevault.logging import get_logger
from estatevault.storage.models import (
    Account,
    AuditAction,
    AuditEvent,
    BlacklistEntry,
    LedgerToken,
    LockoutState,
    LoginRecord,
    PasswordHistoryEntry,
    Role,
    TokenType,
    TwoFactorConfig,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    # accounts
    def create_account(self, account: Account) -> Account: ...
    def get_account(self, account_id: str) -> Optional[Account]: ...
    def get_account_by_email(self, email: str) -> Optional[Account]: ...
    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...
    def list_accounts(self, role: Optional[Role] = None, limit: int = 100) -> List[Account]: ...

    # credentials
    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...
    def append_password_history(self, entry: PasswordHistoryEntry, keep: int) -> None: ...
    def list_password_history(self, account_id: str, limit: int) -> List[PasswordHistoryEntry]: ...

    # lockout (atomic)
    def record_login_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState: ...
    def reset_login_failures(self, account_id: str) -> None: ...

    # ledger (take_token and rotate_token are atomic)
    def insert_token(self, token: LedgerToken) -> LedgerToken: ...
    def get_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]: ...
    def take_token(self, token_type: TokenType, digest: str) -> Optional[LedgerToken]: ...
    def rotate_token(
        self, token_type: TokenType, old_digest: str, replacement: LedgerToken
    ) -> Optional[LedgerToken]: ...
    def list_tokens(
        self, account_id: str, token_type: TokenType, now: Optional[datetime] = None
    ) -> List[LedgerToken]: ...
    def delete_tokens(
        self,
        account_id: str,
        token_type: TokenType,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
    ) -> List[LedgerToken]: ...
    def purge_expired_tokens(self, now: datetime) -> int: ...

    # blacklist
    def add_blacklist_entry(self, entry: BlacklistEntry) -> bool: ...
    def get_blacklist_entry(self, digest: str) -> Optional[BlacklistEntry]: ...
    def purge_blacklist(self, before: datetime) -> int: ...

    # two-factor (consume_backup_code, record_two_factor_failure and claim_totp_step are atomic)
    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]: ...
    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig: ...
    def consume_backup_code(self, account_id: str, code_digest: str) -> bool: ...
    def record_two_factor_failure(
        self, account_id: str, threshold: int, lock_for: timedelta, now: datetime
    ) -> LockoutState: ...
    def reset_two_factor_failures(self, account_id: str) -> None: ...
    def claim_totp_step(self, account_id: str, step: int, used_at: datetime) -> bool: ...

    # audit
    def append_audit_event(self, event: AuditEvent) -> None: ...
    def list_audit_events(
        self,
        account_id: Optional[str] = None,
        *,
        actions: Optional[Sequence[AuditAction]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...
    def purge_audit_events(self, before: datetime) -> int: ...
    def record_login(self, record: LoginRecord) -> None: ...
    def list_login_records(
        self, account_id: str, since: Optional[datetime] = None, limit: int = 100
    ) -> List[LoginRecord]: ...

    def check_health(self) -> bool: ...


ACCOUNT_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "role",
        "status",
        "two_factor_enabled",
        "email_verified",
        "phone_number",
        "first_name",
        "last_name",
        "last_login_at",
        "last_login_ip",
        "profile",
        "failed_login_count",
        "locked_until",
    }
)


def check_account_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported account fields: {sorted(unknown)}")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for two-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("two-factor encryption key material is required")
        self._fernet = Fernet(derive_cipher_key(key_material))

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("two_factor_secret_decrypt_failed")
            return None


def parse_json_meta(raw_meta: Any) -> Dict:
    """Parse a metadata column stored as JSON text or already decoded."""
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw_meta, dict):
        return raw_meta
    return {}


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
