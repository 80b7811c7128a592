from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union
from urllib.parse import quote, urlencode

from estatevault.config import Settings
from estatevault.logging import get_logger
from estatevault.service.audit import AuditTrail
from estatevault.service.errors import AuthErrorKind, AuthFailure, failure
from estatevault.service.ledger import TokenLedger, generate_numeric_code
from estatevault.service.notifications import AdminEvent, Delivery, SecurityAlert
from estatevault.service.sessions import SessionInvalidator
from estatevault.service.tokens import token_digest
from estatevault.storage.common import AuthStore
from estatevault.storage.models import (
    Account,
    AuditAction,
    BlacklistReason,
    Severity,
    TokenType,
    TwoFactorConfig,
    TwoFactorMethod,
    utcnow,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


def generate_totp_secret() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def totp_at(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def match_totp_step(
    secret: str, code: str, at: float, *, window: int = 2, interval: int = TOTP_INTERVAL
) -> Optional[int]:
    """Time step within ``window`` of ``at`` whose code equals ``code``, else None."""
    if not secret or not code or not code.isdigit():
        return None
    current = int(at // interval)
    for step in range(current - window, current + window + 1):
        generated = totp_at(secret, step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return step
    return None


def verify_totp(secret: str, code: str, at: float, *, window: int = 2, interval: int = TOTP_INTERVAL) -> bool:
    return match_totp_step(secret, code, at, window=window, interval=interval) is not None


def provisioning_uri(secret: str, account_email: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_email}")
    query = urlencode(
        {"secret": secret, "issuer": issuer, "algorithm": "SHA1", "digits": TOTP_DIGITS, "period": TOTP_INTERVAL}
    )
    return f"otpauth://totp/{label}?{query}"


def normalize_backup_code(code: str) -> str:
    compact = code.replace("-", "").replace(" ", "").upper()
    if len(compact) == 8:
        return f"{compact[:4]}-{compact[4:]}"
    return compact


def generate_backup_codes(count: int) -> Tuple[List[str], List[str]]:
    """Return (plaintext codes, digests) for ``count`` XXXX-XXXX codes."""
    plain = [normalize_backup_code(secrets.token_hex(4)) for _ in range(count)]
    return plain, [token_digest(code) for code in plain]


@dataclass
class SetupResult:
    method: TwoFactorMethod
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    destination: Optional[str] = None

    def as_dict(self) -> dict:
        data = {"method": self.method.value}
        if self.secret:
            data["secret"] = self.secret
            data["provisioning_uri"] = self.provisioning_uri
        if self.destination:
            data["destination"] = self.destination
        return data


def _mask_destination(value: str) -> str:
    if "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"


class TwoFactorEngine:
    """Per-account second factor: Disabled -> SetupPending -> Enabled -> Disabled."""

    def __init__(
        self,
        store: AuthStore,
        ledger: TokenLedger,
        delivery: Delivery,
        audit: AuditTrail,
        sessions: SessionInvalidator,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.delivery = delivery
        self.audit = audit
        self.sessions = sessions
        self.settings = settings
        self._clock = clock or utcnow

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.two_factor_code_ttl_minutes)

    def get_config(self, account: Account) -> Optional[TwoFactorConfig]:
        return self.store.get_two_factor(account.id)

    def status(self, account: Account) -> dict:
        cfg = self.get_config(account)
        if not cfg:
            return {"enabled": False, "method": None, "pending_setup": False, "backup_codes_remaining": 0}
        return {
            "enabled": cfg.is_enabled,
            "method": cfg.method.value,
            "pending_setup": not cfg.is_enabled and cfg.disabled_at is None,
            "backup_codes_remaining": len(cfg.backup_codes),
            "enabled_at": cfg.enabled_at.isoformat() if cfg.enabled_at else None,
        }

    def _destination(self, account: Account, cfg: TwoFactorConfig) -> Optional[str]:
        if cfg.method == TwoFactorMethod.SMS:
            return cfg.phone_number or account.phone_number
        if cfg.method == TwoFactorMethod.EMAIL:
            return account.email
        return None

    async def _issue_and_send(self, account: Account, cfg: TwoFactorConfig) -> bool:
        # At most one live code per account.
        self.ledger.revoke(account.id, TokenType.TWO_FACTOR_CODE)
        code = generate_numeric_code(TOTP_DIGITS)
        self.ledger.issue(account.id, TokenType.TWO_FACTOR_CODE, self.code_ttl, value=code)
        destination = self._destination(account, cfg)
        delivered = False
        if destination:
            delivered = await self.delivery.send_one_time_code(destination, code, cfg.method)
        if not delivered:
            self.ledger.revoke(account.id, TokenType.TWO_FACTOR_CODE)
            logger.warning("two_factor_code_not_delivered", account_id=account.id, method=cfg.method.value)
        return delivered

    async def begin_setup(
        self,
        account: Account,
        method: TwoFactorMethod,
        *,
        phone_number: Optional[str] = None,
    ) -> Union[SetupResult, AuthFailure]:
        existing = self.get_config(account)
        if existing and existing.is_enabled:
            return failure(
                AuthErrorKind.INVALID_STATE,
                "Two-factor authentication is already enabled; disable it before switching methods",
            )
        if method == TwoFactorMethod.SMS and not (phone_number or account.phone_number):
            return failure(AuthErrorKind.INVALID_STATE, "A phone number is required for SMS codes")

        # Fresh config: any prior method's secret material is dropped here.
        cfg = TwoFactorConfig(
            account_id=account.id,
            method=method,
            phone_number=(phone_number or account.phone_number) if method == TwoFactorMethod.SMS else None,
        )
        # Restarting setup must not clear an active code lockout.
        if existing and existing.locked_until and existing.locked_until > self._clock():
            cfg.failed_attempts = existing.failed_attempts
            cfg.locked_until = existing.locked_until
        result = SetupResult(method=method)
        if method == TwoFactorMethod.AUTHENTICATOR:
            secret = generate_totp_secret()
            cfg.temp_secret = secret
            self.store.save_two_factor(cfg)
            result.secret = secret
            result.provisioning_uri = provisioning_uri(
                secret, account.email, self.settings.two_factor_issuer
            )
        else:
            self.store.save_two_factor(cfg)
            if not await self._issue_and_send(account, cfg):
                return failure(
                    AuthErrorKind.INVALID_STATE,
                    "Verification code could not be delivered; try again later",
                )
            result.destination = _mask_destination(self._destination(account, cfg) or "")

        self.audit.record(
            account.id,
            AuditAction.TWO_FACTOR_SETUP_STARTED,
            {"method": method.value},
            Severity.LOW,
        )
        return result

    async def confirm_setup(
        self,
        account: Account,
        code: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> Union[List[str], AuthFailure]:
        """Validate the first code, enable 2FA and return plaintext backup codes once."""
        cfg = self.get_config(account)
        if not cfg or cfg.is_enabled:
            return failure(AuthErrorKind.INVALID_STATE, "No two-factor setup is pending")
        now = self._clock()
        locked = self._locked_failure(cfg, now)
        if locked:
            return locked
        code = (code or "").strip().replace(" ", "")
        step: Optional[int] = None
        if cfg.method == TwoFactorMethod.AUTHENTICATOR:
            step = match_totp_step(
                cfg.temp_secret or "", code, now.timestamp(), window=self.settings.totp_window
            )
            ok = step is not None
        else:
            ok = not isinstance(
                self.ledger.redeem(TokenType.TWO_FACTOR_CODE, code, account_id=account.id),
                AuthFailure,
            )
        if not ok:
            return self._record_failure(account, now, stage="setup")

        plain_codes, digests = generate_backup_codes(self.settings.backup_code_count)
        if cfg.method == TwoFactorMethod.AUTHENTICATOR:
            cfg.secret = cfg.temp_secret
            # The confirming code may not be replayed at login.
            cfg.last_used_step = step
            cfg.last_used_at = now
        cfg.temp_secret = None
        cfg.is_enabled = True
        cfg.enabled_at = now
        cfg.backup_codes = digests
        cfg.failed_attempts = 0
        cfg.locked_until = None
        self.store.save_two_factor(cfg)
        self.store.update_account(account.id, two_factor_enabled=True)
        account.two_factor_enabled = True

        await self.sessions.revoke_all(
            account.id,
            BlacklistReason.ALL_SESSIONS_REVOKED,
            except_session_id=except_session_id,
            trigger=AuditAction.TWO_FACTOR_ENABLED.value,
        )
        self.audit.record(
            account.id,
            AuditAction.TWO_FACTOR_ENABLED,
            {"method": cfg.method.value},
            Severity.HIGH,
        )
        await self.delivery.send_security_alert(
            account.email,
            SecurityAlert(
                title="Two-factor authentication enabled",
                message="Two-factor authentication was enabled on your account.",
                details={"method": cfg.method.value},
            ),
        )
        return plain_codes

    async def check_code(self, account: Account, code: str) -> Optional[AuthFailure]:
        """``None`` when ``code`` is a valid second factor for ``account``.

        Tries the configured method first, then a backup code. Every code is
        single use: backup and ledger codes are consumed, and a TOTP code is
        only accepted for a time step newer than the last one accepted.
        """
        cfg = self.get_config(account)
        if not cfg or not cfg.is_enabled:
            return failure(AuthErrorKind.INVALID_STATE, "Two-factor authentication is not enabled")
        now = self._clock()
        locked = self._locked_failure(cfg, now)
        if locked:
            return locked
        raw = (code or "").strip().replace(" ", "")
        ok = False
        if raw.isdigit():
            if cfg.method == TwoFactorMethod.AUTHENTICATOR:
                step = match_totp_step(
                    cfg.secret or "", raw, now.timestamp(), window=self.settings.totp_window
                )
                if step is not None:
                    ok = self.store.claim_totp_step(account.id, step, now)
                    if not ok:
                        logger.warning("totp_step_replayed", account_id=account.id, step=step)
            else:
                ok = not isinstance(
                    self.ledger.redeem(TokenType.TWO_FACTOR_CODE, raw, account_id=account.id),
                    AuthFailure,
                )
        if not ok and raw:
            ok = self.store.consume_backup_code(account.id, token_digest(normalize_backup_code(raw)))
            if ok:
                remaining = len(cfg.backup_codes) - 1
                self.audit.record(
                    account.id,
                    AuditAction.BACKUP_CODE_USED,
                    {"remaining": remaining},
                    Severity.MEDIUM,
                )
        if ok:
            if cfg.failed_attempts:
                self.store.reset_two_factor_failures(account.id)
            return None
        return self._record_failure(account, now, stage="login")

    @staticmethod
    def _locked_failure(cfg: TwoFactorConfig, now: datetime) -> Optional[AuthFailure]:
        if cfg.locked_until and cfg.locked_until > now:
            return failure(
                AuthErrorKind.TWO_FACTOR_LOCKED,
                "Too many invalid codes; try again later",
                retry_after_seconds=int((cfg.locked_until - now).total_seconds()),
            )
        return None

    def _record_failure(self, account: Account, now: datetime, *, stage: str) -> AuthFailure:
        state = self.store.record_two_factor_failure(
            account.id,
            self.settings.two_factor_max_attempts,
            timedelta(minutes=self.settings.two_factor_lockout_minutes),
            now,
        )
        self.audit.record(
            account.id,
            AuditAction.TWO_FACTOR_FAILED,
            {"stage": stage, "failed_attempts": state.failed_count, "locked": state.locked},
            Severity.HIGH if state.just_locked else Severity.LOW,
        )
        if state.locked:
            return failure(AuthErrorKind.TWO_FACTOR_LOCKED, "Too many invalid codes; try again later")
        return failure(AuthErrorKind.INVALID_TWO_FACTOR_CODE, "Invalid verification code")

    async def verify_code(self, account: Account, code: str) -> bool:
        return await self.check_code(account, code) is None

    async def send_login_code(self, account: Account) -> bool:
        """Send a login code over the account's own configured channel."""
        cfg = self.get_config(account)
        if not cfg or not cfg.is_enabled or cfg.method == TwoFactorMethod.AUTHENTICATOR:
            return False
        return await self._issue_and_send(account, cfg)

    async def suspend_after_delivery_failure(
        self,
        account: Account,
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        """Turn 2FA off when a login code cannot be delivered.

        Availability wins over strictness here: the user keeps password access,
        the event is logged at high severity and admins are told.
        """
        cfg = self.get_config(account)
        method = cfg.method.value if cfg else None
        if cfg:
            cfg.is_enabled = False
            cfg.disabled_at = self._clock()
            self.store.save_two_factor(cfg)
        self.store.update_account(account.id, two_factor_enabled=False)
        account.two_factor_enabled = False
        self.audit.record(
            account.id,
            AuditAction.TWO_FACTOR_ERROR,
            {"method": method, "error": "code_delivery_failed", "action": "temporarily_disabled"},
            Severity.HIGH,
            ip_address=ip_address,
        )
        await self.delivery.notify_admins(
            AdminEvent(
                event="2fa_delivery_failed",
                details={"account_id": account.id, "method": method},
            )
        )

    async def disable(
        self,
        account: Account,
        *,
        except_session_id: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[AuthFailure]:
        cfg = self.get_config(account)
        if not cfg or not cfg.is_enabled:
            return failure(AuthErrorKind.INVALID_STATE, "Two-factor authentication is not enabled")
        cfg.secret = None
        cfg.temp_secret = None
        cfg.backup_codes = []
        cfg.is_enabled = False
        cfg.disabled_at = self._clock()
        cfg.failed_attempts = 0
        cfg.locked_until = None
        self.store.save_two_factor(cfg)
        self.ledger.revoke(account.id, TokenType.TWO_FACTOR_CODE)
        self.store.update_account(account.id, two_factor_enabled=False)
        account.two_factor_enabled = False

        await self.sessions.revoke_all(
            account.id,
            BlacklistReason.ALL_SESSIONS_REVOKED,
            except_session_id=except_session_id,
            performed_by=performed_by,
            trigger=AuditAction.TWO_FACTOR_DISABLED.value,
        )
        self.audit.record(
            account.id,
            AuditAction.TWO_FACTOR_DISABLED,
            {"method": cfg.method.value},
            Severity.MEDIUM,
            performed_by=performed_by,
        )
        await self.delivery.send_security_alert(
            account.email,
            SecurityAlert(
                title="Two-factor authentication disabled",
                message="Two-factor authentication was turned off for your account.",
            ),
        )
        return None

    def regenerate_backup_codes(self, account: Account) -> Union[List[str], AuthFailure]:
        cfg = self.get_config(account)
        if not cfg or not cfg.is_enabled:
            return failure(AuthErrorKind.INVALID_STATE, "Two-factor authentication is not enabled")
        plain_codes, digests = generate_backup_codes(self.settings.backup_code_count)
        cfg.backup_codes = digests
        self.store.save_two_factor(cfg)
        self.audit.record(
            account.id,
            AuditAction.BACKUP_CODES_REGENERATED,
            {"count": len(plain_codes)},
            Severity.MEDIUM,
        )
        return plain_codes
