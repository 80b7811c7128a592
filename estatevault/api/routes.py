from __future__ import annotations

from typing import Optional, TypeVar, Union

from fastapi import APIRouter, Depends, Header, Request, Response

from estatevault.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    PasswordConfirmRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RevokeAllSessionsRequest,
    SuspendAccountRequest,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupRequest,
    VerifyEmailRequest,
)
from estatevault.logging import get_correlation_id, get_logger
from estatevault.service.auth import AuthContext, RequestContext
from estatevault.service.errors import AuthFailure, ForbiddenError, RateLimitedError
from estatevault.service.runtime import check_rate_limit, get_runtime
from estatevault.service.tokens import extract_bearer
from estatevault.storage.models import Account, LoginRecord, Role, TwoFactorMethod

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

T = TypeVar("T")

_COUNTRY_HEADERS = ("CF-IPCountry", "X-Country-Code")


def _unwrap(result: Union[T, AuthFailure]) -> T:
    if isinstance(result, AuthFailure):
        raise result.to_error()
    return result


class RateLimitInfo:
    """Rate limit state for response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int = 60, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Raise 429 once ``key`` has used up ``limit`` requests in the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": info.reset_seconds}
        )
    return info


async def _limit_public(
    runtime, scope: str, limit: int, ctx: RequestContext, email: Optional[str] = None
) -> None:
    await _enforce_rate_limit(runtime, f"{scope}:ip:{ctx.ip_address or 'unknown'}", limit)
    if email:
        await _enforce_rate_limit(runtime, f"{scope}:email:{email.lower()}", limit)


def get_request_context(request: Request) -> RequestContext:
    country = next(
        (request.headers[h] for h in _COUNTRY_HEADERS if request.headers.get(h)), None
    )
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        country=country,
        request_id=get_correlation_id(),
    )


async def get_auth_context(
    ctx: RequestContext = Depends(get_request_context),
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return _unwrap(await runtime.auth.authenticate(extract_bearer(authorization), ctx))


async def get_admin_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if auth.account.role != Role.ADMIN:
        raise ForbiddenError("admin access required")
    return auth


def _account_summary(account: Account) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "role": account.role.value,
        "status": account.status.value,
        "email_verified": account.email_verified,
        "two_factor_enabled": account.two_factor_enabled,
    }


def _login_record(record: LoginRecord) -> dict:
    return {
        "success": record.success,
        "ip_address": record.ip_address,
        "country": record.country,
        "user_agent": record.user_agent,
        "created_at": record.created_at.isoformat(),
    }


# -- public auth ------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, ctx: RequestContext = Depends(get_request_context)):
    """Create an account pending email verification.

    Raises:
        400: weak password or missing role data
        409: email already registered
        429: rate limit exceeded
    """
    runtime = get_runtime()
    await _limit_public(runtime, "signup", runtime.settings.signup_rate_limit_per_minute, ctx, body.email)
    account = _unwrap(
        await runtime.auth.register(
            body.email,
            body.password,
            Role(body.role),
            ctx,
            first_name=body.first_name,
            last_name=body.last_name,
            phone_number=body.phone_number,
            profile_data=body.profile_data(),
        )
    )
    return Envelope(
        status="ok",
        data={
            "account": _account_summary(account),
            "email_verification_required": not account.email_verified,
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(get_request_context)):
    """Password login; may answer with a two-factor challenge instead of tokens.

    Raises:
        401: invalid credentials or 2FA code
        403: suspended, deleted, or unverified account
        423: account locked
        429: rate limit exceeded
    """
    runtime = get_runtime()
    await _limit_public(runtime, "login", runtime.settings.login_rate_limit_per_minute, ctx, body.email)
    result = _unwrap(
        await runtime.auth.login(
            body.email,
            body.password,
            ctx,
            remember_me=body.remember_me,
            two_factor_code=body.two_factor_code,
        )
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor_login(
    body: TwoFactorLoginRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    await _limit_public(runtime, "2fa", runtime.settings.two_factor_rate_limit_per_minute, ctx)
    result = _unwrap(
        await runtime.auth.verify_two_factor_login(body.challenge_token, body.code, ctx)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    await _limit_public(runtime, "refresh", runtime.settings.login_rate_limit_per_minute, ctx)
    tokens = _unwrap(await runtime.auth.refresh(body.refresh_token, ctx))
    return Envelope(status="ok", data=tokens.as_dict())


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest, ctx: RequestContext = Depends(get_request_context)
):
    """Always 200 so callers cannot learn which emails are registered."""
    runtime = get_runtime()
    await _limit_public(runtime, "reset", runtime.settings.reset_rate_limit_per_minute, ctx, body.email)
    await runtime.auth.forgot_password(body.email, ctx)
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent."},
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    await _limit_public(runtime, "reset", runtime.settings.reset_rate_limit_per_minute, ctx)
    _unwrap(await runtime.auth.reset_password(body.token, body.new_password, ctx))
    return Envelope(status="ok", data={"message": "Password has been reset."})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    await _limit_public(runtime, "verify", runtime.settings.reset_rate_limit_per_minute, ctx)
    account = _unwrap(await runtime.auth.verify_email(body.token))
    return Envelope(status="ok", data={"account": _account_summary(account)})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: ResendVerificationRequest, ctx: RequestContext = Depends(get_request_context)
):
    runtime = get_runtime()
    await _limit_public(runtime, "verify", runtime.settings.reset_rate_limit_per_minute, ctx, body.email)
    await runtime.auth.resend_verification(body.email)
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a verification email has been sent."},
    )


# -- authenticated ----------------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.logout(auth)
    return Envelope(status="ok", data={"message": "Logged out."})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: ChangePasswordRequest, auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    _unwrap(await runtime.auth.change_password(auth, body.current_password, body.new_password))
    return Envelope(status="ok", data={"message": "Password changed; other sessions were signed out."})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["auth"])
async def two_factor_status(auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.two_factor_status(auth))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(body: TwoFactorSetupRequest, auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"2fa:setup:{auth.account.id}", runtime.settings.two_factor_rate_limit_per_minute
    )
    result = _unwrap(
        await runtime.auth.setup_two_factor(
            auth, TwoFactorMethod(body.method), phone_number=body.phone_number
        )
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(body: TwoFactorCodeRequest, auth: AuthContext = Depends(get_auth_context)):
    """Confirm setup; the backup codes in the response are never shown again."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"2fa:enable:{auth.account.id}", runtime.settings.two_factor_rate_limit_per_minute
    )
    codes = _unwrap(await runtime.auth.enable_two_factor(auth, body.code))
    return Envelope(status="ok", data={"enabled": True, "backup_codes": codes})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, auth: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"2fa:disable:{auth.account.id}", runtime.settings.two_factor_rate_limit_per_minute
    )
    _unwrap(await runtime.auth.disable_two_factor(auth, body.password, body.code))
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["auth"])
async def two_factor_backup_codes(
    body: PasswordConfirmRequest, auth: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    codes = _unwrap(runtime.auth.regenerate_backup_codes(auth, body.password))
    return Envelope(status="ok", data={"backup_codes": codes})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(auth)
    return Envelope(status="ok", data={"sessions": [s.as_dict() for s in sessions]})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    _unwrap(await runtime.auth.revoke_session(auth, session_id))
    return Envelope(status="ok", data={"revoked": session_id})


@router.post("/auth/sessions/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(
    body: RevokeAllSessionsRequest, auth: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    count = _unwrap(
        await runtime.auth.revoke_all_sessions(auth, body.password, keep_current=body.keep_current)
    )
    return Envelope(status="ok", data={"sessions_revoked": count})


@router.get("/auth/login-history", response_model=Envelope, tags=["auth"])
async def login_history(limit: int = 20, auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    records = runtime.auth.login_history(auth, limit=max(1, min(limit, 100)))
    return Envelope(status="ok", data={"logins": [_login_record(r) for r in records]})


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(auth: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.me(auth))


# -- admin ------------------------------------------------------------------


@router.post("/admin/accounts/{account_id}/suspend", response_model=Envelope, tags=["admin"])
async def admin_suspend(
    account_id: str, body: SuspendAccountRequest, auth: AuthContext = Depends(get_admin_context)
):
    runtime = get_runtime()
    account = _unwrap(await runtime.auth.suspend_account(auth, account_id, body.reason))
    return Envelope(status="ok", data={"account": _account_summary(account)})


@router.post("/admin/accounts/{account_id}/unsuspend", response_model=Envelope, tags=["admin"])
async def admin_unsuspend(account_id: str, auth: AuthContext = Depends(get_admin_context)):
    runtime = get_runtime()
    account = _unwrap(await runtime.auth.unsuspend_account(auth, account_id))
    return Envelope(status="ok", data={"account": _account_summary(account)})


@router.post("/admin/accounts/{account_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate(account_id: str, auth: AuthContext = Depends(get_admin_context)):
    runtime = get_runtime()
    account = _unwrap(runtime.auth.activate_account(auth, account_id))
    return Envelope(status="ok", data={"account": _account_summary(account)})


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(account_id: str, auth: AuthContext = Depends(get_admin_context)):
    runtime = get_runtime()
    account = _unwrap(runtime.auth.unlock_account(auth, account_id))
    return Envelope(status="ok", data={"account": _account_summary(account)})


@router.post(
    "/admin/accounts/{account_id}/force-password-reset", response_model=Envelope, tags=["admin"]
)
async def admin_force_password_reset(account_id: str, auth: AuthContext = Depends(get_admin_context)):
    runtime = get_runtime()
    account = _unwrap(await runtime.auth.force_password_reset(auth, account_id))
    return Envelope(status="ok", data={"account": _account_summary(account)})
