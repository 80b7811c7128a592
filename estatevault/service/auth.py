from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from estatevault.config import Settings
from estatevault.logging import get_logger
from estatevault.service.audit import AuditTrail
from estatevault.service.blacklist import TokenBlacklist
from estatevault.service.credentials import CredentialStore, check_password_strength
from estatevault.service.errors import AuthErrorKind, AuthFailure, failure
from estatevault.service.ledger import TokenLedger
from estatevault.service.lockout import LockoutTracker
from estatevault.service.notifications import AdminEvent, Delivery, SecurityAlert
from estatevault.service.profiles import ProfileDirectory
from estatevault.service.sessions import SessionInfo, SessionInvalidator
from estatevault.service.tokens import BearerClaims, BearerTokenCodec, TokenPair
from estatevault.service.two_factor import SetupResult, TwoFactorEngine
from estatevault.storage.common import AuthStore, normalize_email
from estatevault.storage.errors import ConstraintViolation
from estatevault.storage.models import (
    Account,
    AccountStatus,
    AuditAction,
    BlacklistReason,
    LoginRecord,
    PasswordChangeReason,
    Role,
    Severity,
    TokenKind,
    TokenType,
    TwoFactorMethod,
    utcnow,
)
from estatevault.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_CHALLENGE_TTL = timedelta(minutes=10)


@dataclass
class RequestContext:
    """Client facts captured once per request and passed down explicitly."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class AuthContext:
    """A verified bearer: the account plus the session it belongs to."""

    account: Account
    session_id: str
    access_token: str
    claims: BearerClaims
    request: RequestContext = field(default_factory=RequestContext)


@dataclass
class LoginSuccess:
    account: Account
    tokens: TokenPair
    profile: Dict[str, Any]

    def as_dict(self) -> dict:
        return {"requires_two_factor": False, "account": self.profile, **self.tokens.as_dict()}


@dataclass
class TwoFactorChallenge:
    """Intermediate login result: password accepted, second factor pending."""

    challenge_token: str
    method: TwoFactorMethod
    delivered: bool
    expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "requires_two_factor": True,
            "challenge_token": self.challenge_token,
            "method": self.method.value,
            "code_sent": self.delivered,
            "expires_at": self.expires_at.isoformat(),
        }


class AuthService:
    """Sequences credentials, lockout, 2FA, ledger, sessions and audit for each flow."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        delivery: Delivery,
        *,
        cache: Optional[RedisCache] = None,
        profiles: Optional[ProfileDirectory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.delivery = delivery
        self._clock = clock or utcnow
        self.profiles = profiles or ProfileDirectory()
        self.codec = BearerTokenCodec(settings, clock=self._clock)
        self.audit = AuditTrail(store, settings, clock=self._clock)
        self.credentials = CredentialStore(store, history_depth=settings.password_history_depth)
        self.lockout = LockoutTracker(
            store,
            self.audit,
            delivery,
            threshold=settings.max_failed_logins,
            lockout=timedelta(minutes=settings.lockout_minutes),
            clock=self._clock,
        )
        self.ledger = TokenLedger(store, clock=self._clock)
        self.blacklist = TokenBlacklist(
            store,
            cache,
            grace=timedelta(hours=settings.blacklist_grace_hours),
            clock=self._clock,
        )
        self.sessions = SessionInvalidator(self.ledger, self.blacklist, self.audit)
        self.two_factor = TwoFactorEngine(
            store,
            self.ledger,
            delivery,
            self.audit,
            self.sessions,
            settings,
            clock=self._clock,
        )

    # -- helpers ------------------------------------------------------------

    def _status_failure(self, account: Account) -> Optional[AuthFailure]:
        if account.status == AccountStatus.SUSPENDED:
            return failure(AuthErrorKind.ACCOUNT_SUSPENDED, "Account is suspended")
        if account.status in (AccountStatus.DELETED, AccountStatus.PENDING_DELETION):
            return failure(AuthErrorKind.ACCOUNT_DELETED, "Account is no longer available")
        return None

    def _locked_failure(self, account: Account) -> AuthFailure:
        minutes = self.lockout.remaining_minutes(account)
        return failure(
            AuthErrorKind.ACCOUNT_LOCKED,
            f"Account is locked; try again in {minutes} minutes",
            retry_after_minutes=minutes,
        )

    def _refresh_ttl(self, remember_me: bool) -> timedelta:
        minutes = (
            self.settings.remember_me_refresh_ttl_minutes
            if remember_me
            else self.settings.refresh_token_ttl_minutes
        )
        return timedelta(minutes=minutes)

    def _access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _track_access(self, account: Account, session_id: str, ctx: RequestContext) -> tuple[str, datetime]:
        ttl = self._access_ttl()
        token, expires_at = self.codec.issue(account, session_id, TokenKind.ACCESS, ttl)
        self.ledger.issue(
            account.id,
            TokenType.ACCESS,
            ttl,
            value=token,
            session_id=session_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        return token, expires_at

    def _issue_session(self, account: Account, ctx: RequestContext, *, remember_me: bool) -> TokenPair:
        session_id = str(uuid.uuid4())
        refresh_ttl = self._refresh_ttl(remember_me)
        refresh_token, refresh_expires = self.codec.issue(
            account, session_id, TokenKind.REFRESH, refresh_ttl
        )
        self.ledger.issue(
            account.id,
            TokenType.REFRESH,
            refresh_ttl,
            value=refresh_token,
            session_id=session_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            meta={"remember_me": remember_me, "session_started_at": self._clock().isoformat()},
        )
        access_token, access_expires = self._track_access(account, session_id, ctx)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
            session_id=session_id,
        )

    async def _alert(self, account: Account, title: str, message: str, **details: Any) -> None:
        await self.delivery.send_security_alert(
            account.email, SecurityAlert(title=title, message=message, details=details)
        )

    def _verification_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.email_verification_ttl_hours)

    async def _send_verification(self, account: Account) -> None:
        self.ledger.revoke(account.id, TokenType.EMAIL_VERIFICATION)
        issued = self.ledger.issue(account.id, TokenType.EMAIL_VERIFICATION, self._verification_ttl())
        await self.delivery.send_email_verification(account.email, issued.value)

    async def _mark_verified(self, account: Account) -> Account:
        provider = self.profiles.for_role(account.role)
        fields: Dict[str, Any] = {"email_verified": True}
        if provider.activates_on_email_verification and account.status == AccountStatus.PENDING_ACTIVATION:
            fields["status"] = AccountStatus.ACTIVE
        updated = self.store.update_account(account.id, **fields) or account
        self.audit.record(account.id, AuditAction.EMAIL_VERIFIED, {}, Severity.LOW)
        if not provider.activates_on_email_verification:
            await self.delivery.notify_admins(
                AdminEvent(
                    event="account_pending_approval",
                    details={"account_id": account.id, "role": account.role.value},
                )
            )
        return updated

    # -- registration -------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        role: Role,
        ctx: RequestContext,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        profile_data: Optional[Mapping[str, Any]] = None,
    ) -> Union[Account, AuthFailure]:
        provider = self.profiles.for_role(role)
        if not provider.self_registration:
            return failure(AuthErrorKind.FORBIDDEN, f"{role.value} accounts cannot self-register")
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            return failure(AuthErrorKind.CONFLICT, "An account with this email already exists")
        weak = check_password_strength(password)
        if weak:
            return weak
        profile = provider.prepare(profile_data or {})
        if isinstance(profile, AuthFailure):
            return profile

        account = Account.new(
            email,
            role,
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            profile=profile,
        )
        try:
            self.store.create_account(account)
        except ConstraintViolation:
            return failure(AuthErrorKind.CONFLICT, "An account with this email already exists")
        problem = self.credentials.set_password(account, password, PasswordChangeReason.INITIAL)
        if problem:
            return problem

        self.audit.record(
            account.id,
            AuditAction.USER_REGISTRATION,
            {"role": role.value},
            Severity.LOW,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        if self.settings.require_email_verification:
            await self._send_verification(account)
        else:
            account = await self._mark_verified(account)
        await self.delivery.notify_admins(
            AdminEvent(event="user_registration", details={"account_id": account.id, "role": role.value})
        )
        logger.info("account_registered", account_id=account.id, role=role.value)
        return account

    async def verify_email(self, token: str) -> Union[Account, AuthFailure]:
        record = self.ledger.redeem(TokenType.EMAIL_VERIFICATION, token)
        if isinstance(record, AuthFailure):
            return record
        account = self.store.get_account(record.account_id)
        if not account:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Token not found or already used")
        if account.email_verified:
            return account
        return await self._mark_verified(account)

    async def resend_verification(self, email: str) -> None:
        """Send a fresh verification link when one is due.

        Unknown and already verified addresses get the same silent outcome.
        """
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            logger.info("verification_resend_skipped", reason="unknown_email")
            return
        if account.email_verified:
            logger.info("verification_resend_skipped", reason="already_verified", account_id=account.id)
            return
        await self._send_verification(account)

    # -- login --------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        ctx: RequestContext,
        *,
        remember_me: bool = False,
        two_factor_code: Optional[str] = None,
    ) -> Union[LoginSuccess, TwoFactorChallenge, AuthFailure]:
        """Password login.

        Returns a :class:`TwoFactorChallenge` when a second factor is needed and
        no code was supplied inline.
        """
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            self.credentials.verify_decoy(password)
            self.audit.record(
                None,
                AuditAction.SUSPICIOUS_LOGIN_ATTEMPT,
                {"reason": "unknown_email"},
                Severity.MEDIUM,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Invalid email or password")

        if self.lockout.is_locked(account):
            return self._locked_failure(account)
        problem = self._status_failure(account)
        if problem:
            return problem

        if not self.credentials.verify_password(account, password):
            state = await self.lockout.record_failure(
                account, ip_address=ctx.ip_address, user_agent=ctx.user_agent
            )
            self.audit.record(
                account.id,
                AuditAction.LOGIN_FAILED,
                {"failed_attempts": state.failed_count},
                Severity.LOW,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
            self.audit.record_login(
                account.id,
                success=False,
                ip_address=ctx.ip_address,
                country=ctx.country,
                user_agent=ctx.user_agent,
            )
            if state.locked:
                return self._locked_failure(account)
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Invalid email or password")

        if account.two_factor_enabled:
            if two_factor_code:
                problem = await self.two_factor.check_code(account, two_factor_code)
                if problem:
                    return problem
            else:
                challenge = await self._start_challenge(account, ctx, remember_me=remember_me)
                if challenge is not None:
                    return challenge

        if self.settings.require_email_verification and not account.email_verified:
            return failure(AuthErrorKind.EMAIL_NOT_VERIFIED, "Email address has not been verified")
        return await self._complete_login(account, ctx, remember_me=remember_me)

    async def _start_challenge(
        self, account: Account, ctx: RequestContext, *, remember_me: bool
    ) -> Optional[TwoFactorChallenge]:
        """Open a 2FA challenge, or ``None`` when 2FA had to be switched off."""
        cfg = self.two_factor.get_config(account)
        if not cfg or not cfg.is_enabled:
            # Flag and config disagree; the config is authoritative.
            logger.warning("two_factor_flag_without_config", account_id=account.id)
            return None
        delivered = False
        if cfg.method != TwoFactorMethod.AUTHENTICATOR:
            delivered = await self.two_factor.send_login_code(account)
            if not delivered:
                await self.two_factor.suspend_after_delivery_failure(
                    account, ip_address=ctx.ip_address
                )
                return None
        self.ledger.revoke(account.id, TokenType.TWO_FACTOR_CHALLENGE)
        issued = self.ledger.issue(
            account.id,
            TokenType.TWO_FACTOR_CHALLENGE,
            _CHALLENGE_TTL,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            meta={"remember_me": remember_me},
        )
        return TwoFactorChallenge(
            challenge_token=issued.value,
            method=cfg.method,
            delivered=delivered,
            expires_at=issued.record.expires_at,
        )

    async def verify_two_factor_login(
        self, challenge_token: str, code: str, ctx: RequestContext
    ) -> Union[LoginSuccess, AuthFailure]:
        pending = self.ledger.peek(TokenType.TWO_FACTOR_CHALLENGE, challenge_token)
        if not pending:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Login challenge not found or expired")
        account = self.store.get_account(pending.account_id)
        if not account:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Login challenge not found or expired")
        problem = self._status_failure(account)
        if problem:
            return problem

        problem = await self.two_factor.check_code(account, code)
        if problem:
            if problem.kind == AuthErrorKind.TWO_FACTOR_LOCKED:
                self.ledger.revoke(account.id, TokenType.TWO_FACTOR_CHALLENGE)
            return problem
        # Consume the challenge so one verification yields one session.
        redeemed = self.ledger.redeem(TokenType.TWO_FACTOR_CHALLENGE, challenge_token)
        if isinstance(redeemed, AuthFailure):
            return redeemed

        if self.settings.require_email_verification and not account.email_verified:
            return failure(AuthErrorKind.EMAIL_NOT_VERIFIED, "Email address has not been verified")
        return await self._complete_login(
            account, ctx, remember_me=bool(redeemed.meta.get("remember_me"))
        )

    async def _complete_login(
        self, account: Account, ctx: RequestContext, *, remember_me: bool
    ) -> LoginSuccess:
        now = self._clock()
        self.lockout.record_success(account)
        account = self.store.update_account(
            account.id, last_login_at=now, last_login_ip=ctx.ip_address
        ) or account
        tokens = self._issue_session(account, ctx, remember_me=remember_me)

        self.audit.record(
            account.id,
            AuditAction.USER_LOGIN,
            {"remember_me": remember_me, "session_id": tokens.session_id},
            Severity.LOW,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        self.audit.record_login(
            account.id,
            success=True,
            ip_address=ctx.ip_address,
            country=ctx.country,
            user_agent=ctx.user_agent,
        )
        self._check_concurrent_sessions(account, tokens.session_id, ctx)
        patterns = self.audit.detect_suspicious(account.id)
        if patterns:
            self.audit.record(
                account.id,
                AuditAction.UNUSUAL_ACTIVITY_DETECTED,
                {"patterns": patterns},
                Severity.HIGH,
                ip_address=ctx.ip_address,
            )
            await self._alert(
                account,
                "Unusual sign-in activity",
                "We noticed sign-ins to your account that do not match your usual pattern.",
                patterns=patterns,
                ip_address=ctx.ip_address,
            )
        logger.info("login_succeeded", account_id=account.id, session_id=tokens.session_id)
        return LoginSuccess(account=account, tokens=tokens, profile=self.profiles.describe(account))

    def _check_concurrent_sessions(self, account: Account, session_id: str, ctx: RequestContext) -> None:
        others = [
            token
            for token in self.ledger.list_active(account.id, TokenType.REFRESH)
            if token.session_id != session_id
            and token.ip_address
            and token.ip_address != ctx.ip_address
        ]
        if others:
            self.audit.record(
                account.id,
                AuditAction.CONCURRENT_SESSIONS_DETECTED,
                {
                    "other_sessions": len(others),
                    "other_ips": sorted({t.ip_address for t in others}),
                },
                Severity.MEDIUM,
                ip_address=ctx.ip_address,
            )

    # -- bearer tokens ------------------------------------------------------

    async def authenticate(
        self, access_token: Optional[str], ctx: Optional[RequestContext] = None
    ) -> Union[AuthContext, AuthFailure]:
        """Blacklist veto, then signature and expiry, then account status."""
        if not access_token:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Missing bearer token")
        if await self.blacklist.is_blacklisted(access_token):
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Token has been revoked")
        claims = self.codec.claims(access_token, TokenKind.ACCESS)
        if not claims:
            return failure(AuthErrorKind.TOKEN_EXPIRED, "Invalid or expired token")
        account = self.store.get_account(claims.account_id)
        if not account:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Account not found")
        problem = self._status_failure(account)
        if problem:
            return problem
        return AuthContext(
            account=account,
            session_id=claims.session_id,
            access_token=access_token,
            claims=claims,
            request=ctx or RequestContext(),
        )

    async def refresh(self, refresh_token: str, ctx: RequestContext) -> Union[TokenPair, AuthFailure]:
        """Exchange a refresh token; the refresh token rotates on every call."""
        if await self.blacklist.is_blacklisted(refresh_token):
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Refresh token has been revoked")
        claims = self.codec.claims(refresh_token, TokenKind.REFRESH)
        if not claims:
            return failure(AuthErrorKind.TOKEN_EXPIRED, "Invalid or expired refresh token")
        current = self.ledger.peek(TokenType.REFRESH, refresh_token)
        if not current or current.account_id != claims.account_id:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Refresh token not found")
        account = self.store.get_account(claims.account_id)
        if not account:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Refresh token not found")
        problem = self._status_failure(account)
        if problem:
            return problem

        refresh_ttl = self._refresh_ttl(bool(current.meta.get("remember_me")))
        new_refresh, refresh_expires = self.codec.issue(
            account, claims.session_id, TokenKind.REFRESH, refresh_ttl
        )
        rotated = self.ledger.rotate_refresh(
            refresh_token,
            new_refresh,
            refresh_ttl,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        if isinstance(rotated, AuthFailure):
            return rotated
        access_token, access_expires = self._track_access(account, claims.session_id, ctx)
        self.audit.record(
            account.id,
            AuditAction.TOKEN_REFRESHED,
            {"session_id": claims.session_id},
            Severity.LOW,
            ip_address=ctx.ip_address,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            access_expires_at=access_expires,
            refresh_expires_at=refresh_expires,
            session_id=claims.session_id,
        )

    async def logout(self, auth: AuthContext) -> None:
        account = auth.account
        await self.blacklist.blacklist(
            auth.access_token,
            TokenKind.ACCESS,
            account.id,
            BlacklistReason.LOGOUT,
            auth.claims.expires_at,
        )
        await self.sessions.revoke_session(account.id, auth.session_id, BlacklistReason.LOGOUT)
        self.audit.record(
            account.id,
            AuditAction.USER_LOGOUT,
            {"session_id": auth.session_id},
            Severity.LOW,
            ip_address=auth.request.ip_address,
            user_agent=auth.request.user_agent,
        )

    # -- passwords ----------------------------------------------------------

    async def forgot_password(self, email: str, ctx: RequestContext) -> None:
        """Always succeeds from the caller's point of view."""
        account = self.store.get_account_by_email(normalize_email(email))
        if not account or self._status_failure(account):
            logger.info("password_reset_requested_unknown")
            return
        now = self._clock()
        cooldown = timedelta(seconds=self.settings.password_reset_cooldown_seconds)
        recent = [
            t for t in self.ledger.list_active(account.id, TokenType.PASSWORD_RESET)
            if t.created_at > now - cooldown
        ]
        if recent:
            logger.info("password_reset_cooldown", account_id=account.id)
            return
        self.ledger.revoke(account.id, TokenType.PASSWORD_RESET)
        issued = self.ledger.issue(
            account.id,
            TokenType.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        self.audit.record(
            account.id,
            AuditAction.PASSWORD_RESET_REQUESTED,
            {},
            Severity.LOW,
            ip_address=ctx.ip_address,
        )
        await self.delivery.send_password_reset(account.email, issued.value)

    async def reset_password(
        self, token: str, new_password: str, ctx: RequestContext
    ) -> Optional[AuthFailure]:
        pending = self.ledger.peek(TokenType.PASSWORD_RESET, token)
        if not pending:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Reset token not found or expired")
        account = self.store.get_account(pending.account_id)
        if not account:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Reset token not found or expired")
        # Policy checks first so a rejected password does not burn the token.
        weak = check_password_strength(new_password)
        if weak:
            return weak
        if self.credentials.is_reused(account, new_password):
            return failure(
                AuthErrorKind.PASSWORD_REUSED,
                f"Password must differ from your last {self.credentials.history_depth} passwords",
            )
        redeemed = self.ledger.redeem(TokenType.PASSWORD_RESET, token)
        if isinstance(redeemed, AuthFailure):
            return redeemed
        problem = self.credentials.set_password(account, new_password, PasswordChangeReason.RESET)
        if problem:
            return problem

        self.ledger.revoke(account.id, TokenType.PASSWORD_RESET)
        self.lockout.record_success(account)
        await self.sessions.revoke_all(
            account.id, BlacklistReason.PASSWORD_CHANGED, trigger="password_reset"
        )
        self.audit.record(
            account.id,
            AuditAction.PASSWORD_RESET_COMPLETED,
            {},
            Severity.HIGH,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        await self._alert(
            account,
            "Password reset",
            "Your password was reset and all sessions were signed out.",
            ip_address=ctx.ip_address,
        )
        return None

    async def change_password(
        self, auth: AuthContext, current_password: str, new_password: str
    ) -> Optional[AuthFailure]:
        account = auth.account
        if not self.credentials.verify_password(account, current_password):
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Current password is incorrect")
        if current_password == new_password:
            return failure(AuthErrorKind.INVALID_STATE, "New password must differ from the current one")
        problem = self.credentials.set_password(account, new_password, PasswordChangeReason.USER_CHANGE)
        if problem:
            return problem
        await self.sessions.revoke_all(
            account.id,
            BlacklistReason.PASSWORD_CHANGED,
            except_session_id=auth.session_id,
            trigger="password_changed",
        )
        self.audit.record(
            account.id,
            AuditAction.PASSWORD_CHANGED,
            {},
            Severity.HIGH,
            ip_address=auth.request.ip_address,
            user_agent=auth.request.user_agent,
        )
        await self._alert(
            account,
            "Password changed",
            "Your password was changed. Other sessions were signed out.",
            ip_address=auth.request.ip_address,
        )
        return None

    # -- two-factor ---------------------------------------------------------

    def two_factor_status(self, auth: AuthContext) -> dict:
        return self.two_factor.status(auth.account)

    async def setup_two_factor(
        self, auth: AuthContext, method: TwoFactorMethod, phone_number: Optional[str] = None
    ) -> Union[SetupResult, AuthFailure]:
        return await self.two_factor.begin_setup(auth.account, method, phone_number=phone_number)

    async def enable_two_factor(self, auth: AuthContext, code: str) -> Union[List[str], AuthFailure]:
        return await self.two_factor.confirm_setup(
            auth.account, code, except_session_id=auth.session_id
        )

    async def disable_two_factor(
        self, auth: AuthContext, password: str, code: str
    ) -> Optional[AuthFailure]:
        account = auth.account
        if not self.credentials.verify_password(account, password):
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Password is incorrect")
        problem = await self.two_factor.check_code(account, code)
        if problem:
            return problem
        return await self.two_factor.disable(account, except_session_id=auth.session_id)

    def regenerate_backup_codes(self, auth: AuthContext, password: str) -> Union[List[str], AuthFailure]:
        if not self.credentials.verify_password(auth.account, password):
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Password is incorrect")
        return self.two_factor.regenerate_backup_codes(auth.account)

    # -- sessions and history -----------------------------------------------

    def list_sessions(self, auth: AuthContext) -> List[SessionInfo]:
        return self.sessions.list_sessions(auth.account.id, auth.session_id)

    async def revoke_session(self, auth: AuthContext, session_id: str) -> Optional[AuthFailure]:
        if not await self.sessions.revoke_session(auth.account.id, session_id):
            return failure(AuthErrorKind.NOT_FOUND, "Session not found")
        return None

    async def revoke_all_sessions(
        self, auth: AuthContext, password: str, *, keep_current: bool = True
    ) -> Union[int, AuthFailure]:
        if not self.credentials.verify_password(auth.account, password):
            return failure(AuthErrorKind.INVALID_CREDENTIALS, "Password is incorrect")
        return await self.sessions.revoke_all(
            auth.account.id,
            BlacklistReason.ALL_SESSIONS_REVOKED,
            except_session_id=auth.session_id if keep_current else None,
            trigger="logout_everywhere",
        )

    def login_history(self, auth: AuthContext, limit: int = 20) -> List[LoginRecord]:
        return self.audit.login_history(auth.account.id, limit=limit)

    def me(self, auth: AuthContext) -> Dict[str, Any]:
        return self.profiles.describe(auth.account)

    # -- admin --------------------------------------------------------------

    def _admin_target(self, auth: AuthContext, account_id: str) -> Union[Account, AuthFailure]:
        if auth.account.role != Role.ADMIN:
            return failure(AuthErrorKind.FORBIDDEN, "Admin role required")
        target = self.store.get_account(account_id)
        if not target:
            return failure(AuthErrorKind.NOT_FOUND, "Account not found")
        return target

    async def suspend_account(
        self, auth: AuthContext, account_id: str, reason: str
    ) -> Union[Account, AuthFailure]:
        target = self._admin_target(auth, account_id)
        if isinstance(target, AuthFailure):
            return target
        if target.id == auth.account.id:
            return failure(AuthErrorKind.INVALID_STATE, "Admins cannot suspend themselves")
        if target.status == AccountStatus.SUSPENDED:
            return failure(AuthErrorKind.INVALID_STATE, "Account is already suspended")
        target = self.store.update_account(target.id, status=AccountStatus.SUSPENDED) or target
        await self.sessions.revoke_all(
            target.id,
            BlacklistReason.ADMIN_ACTION,
            performed_by=auth.account.id,
            trigger="account_suspended",
        )
        self.audit.record(
            target.id,
            AuditAction.ACCOUNT_SUSPENDED,
            {"reason": reason},
            Severity.HIGH,
            performed_by=auth.account.id,
            ip_address=auth.request.ip_address,
        )
        await self._alert(target, "Account suspended", "Your account has been suspended.", reason=reason)
        return target

    async def unsuspend_account(self, auth: AuthContext, account_id: str) -> Union[Account, AuthFailure]:
        target = self._admin_target(auth, account_id)
        if isinstance(target, AuthFailure):
            return target
        if target.status != AccountStatus.SUSPENDED:
            return failure(AuthErrorKind.INVALID_STATE, "Account is not suspended")
        status = AccountStatus.ACTIVE if target.email_verified else AccountStatus.PENDING_ACTIVATION
        target = self.store.update_account(target.id, status=status) or target
        self.audit.record(
            target.id,
            AuditAction.ACCOUNT_UNSUSPENDED,
            {"status": status.value},
            Severity.MEDIUM,
            performed_by=auth.account.id,
        )
        return target

    def activate_account(self, auth: AuthContext, account_id: str) -> Union[Account, AuthFailure]:
        """Approve an account left pending after email verification."""
        target = self._admin_target(auth, account_id)
        if isinstance(target, AuthFailure):
            return target
        if target.status != AccountStatus.PENDING_ACTIVATION:
            return failure(AuthErrorKind.INVALID_STATE, "Account is not pending activation")
        if not target.email_verified:
            return failure(AuthErrorKind.EMAIL_NOT_VERIFIED, "Email address has not been verified")
        target = self.store.update_account(target.id, status=AccountStatus.ACTIVE) or target
        self.audit.record(
            target.id,
            AuditAction.ACCOUNT_ACTIVATED,
            {},
            Severity.MEDIUM,
            performed_by=auth.account.id,
        )
        return target

    def unlock_account(self, auth: AuthContext, account_id: str) -> Union[Account, AuthFailure]:
        target = self._admin_target(auth, account_id)
        if isinstance(target, AuthFailure):
            return target
        self.lockout.unlock(target, performed_by=auth.account.id)
        return target

    async def force_password_reset(
        self, auth: AuthContext, account_id: str
    ) -> Union[Account, AuthFailure]:
        """Replace the password with an unknown one and mail a reset link."""
        target = self._admin_target(auth, account_id)
        if isinstance(target, AuthFailure):
            return target
        self.credentials.scramble(target)
        await self.sessions.revoke_all(
            target.id,
            BlacklistReason.ADMIN_ACTION,
            performed_by=auth.account.id,
            trigger="admin_password_reset",
        )
        self.ledger.revoke(target.id, TokenType.PASSWORD_RESET)
        issued = self.ledger.issue(
            target.id,
            TokenType.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.audit.record(
            target.id,
            AuditAction.ADMIN_PASSWORD_RESET,
            {},
            Severity.HIGH,
            performed_by=auth.account.id,
        )
        await self.delivery.send_password_reset(target.email, issued.value)
        return target
