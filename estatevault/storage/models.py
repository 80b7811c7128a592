from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    INVESTOR = "investor"
    PROPERTY_OWNER = "property_owner"
    LOCAL_REPRESENTATIVE = "local_representative"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING_DELETION = "pending_deletion"
    DELETED = "deleted"


class TokenType(str, Enum):
    """Kinds of ledger entries.

    ``access`` entries never hold a redeemable secret; they track issued bearer
    tokens so bulk revocation can blacklist them before they expire.
    """

    REFRESH = "refresh"
    ACCESS = "access"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR_CODE = "two_factor_code"
    TWO_FACTOR_CHALLENGE = "two_factor_challenge"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class BlacklistReason(str, Enum):
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ADMIN_ACTION = "admin_action"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"


class TwoFactorMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    AUTHENTICATOR = "authenticator"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PasswordChangeReason(str, Enum):
    INITIAL = "initial"
    USER_CHANGE = "user_change"
    RESET = "reset"
    ADMIN_RESET = "admin_reset"


class AuditAction(str, Enum):
    USER_REGISTRATION = "user_registration"
    EMAIL_VERIFIED = "email_verified"
    USER_LOGIN = "user_login"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SUSPICIOUS_LOGIN_ATTEMPT = "suspicious_login_attempt"
    CONCURRENT_SESSIONS_DETECTED = "concurrent_sessions_detected"
    UNUSUAL_ACTIVITY_DETECTED = "unusual_activity_detected"
    USER_LOGOUT = "user_logout"
    SESSIONS_INVALIDATED = "sessions_invalidated"
    SESSION_REVOKED = "session_revoked"
    TOKEN_REFRESHED = "token_refreshed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    TWO_FACTOR_SETUP_STARTED = "2fa_setup_started"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_DISABLED = "2fa_disabled"
    TWO_FACTOR_ERROR = "2fa_error"
    TWO_FACTOR_FAILED = "2fa_failed"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    BACKUP_CODE_USED = "backup_code_used"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_UNSUSPENDED = "account_unsuspended"
    ACCOUNT_ACTIVATED = "account_activated"
    ADMIN_PASSWORD_RESET = "admin_password_reset"


@dataclass
class Account:
    id: str
    email: str
    role: Role = Role.INVESTOR
    status: AccountStatus = AccountStatus.PENDING_ACTIVATION
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    email_verified: bool = False
    phone_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    profile: Dict = field(default_factory=dict)

    @classmethod
    def new(cls, email: str, role: Role, **kwargs) -> "Account":
        return cls(id=str(uuid.uuid4()), email=email.strip().lower(), role=role, **kwargs)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.email


@dataclass
class PasswordHistoryEntry:
    account_id: str
    password_hash: str
    reason: PasswordChangeReason
    changed_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LedgerToken:
    id: str
    account_id: str
    token_type: TokenType
    digest: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        account_id: str,
        token_type: TokenType,
        digest: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> "LedgerToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_type=token_type,
            digest=digest,
            expires_at=issued + ttl,
            created_at=issued,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            meta=meta or {},
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class BlacklistEntry:
    digest: str
    kind: TokenKind
    account_id: str
    reason: BlacklistReason
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TwoFactorConfig:
    account_id: str
    method: TwoFactorMethod
    secret: Optional[str] = None
    temp_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    is_enabled: bool = False
    enabled_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    phone_number: Optional[str] = None
    last_used_at: Optional[datetime] = None
    # Highest TOTP time step accepted so far, enablement included.
    last_used_step: Optional[int] = None


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    severity: Severity
    account_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    performed_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, action: AuditAction, severity: Severity, **kwargs) -> "AuditEvent":
        return cls(id=str(uuid.uuid4()), action=action, severity=severity, **kwargs)


@dataclass
class LoginRecord:
    account_id: str
    success: bool
    ip_address: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LockoutState:
    failed_count: int
    locked_until: Optional[datetime] = None
    just_locked: bool = False

    @property
    def locked(self) -> bool:
        return self.locked_until is not None
