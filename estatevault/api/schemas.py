from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "locked",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s().-]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


class EmailField(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(EmailField):
    password: str = Field(..., max_length=128)
    role: Literal["investor", "property_owner", "local_representative"] = "investor"
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    region: Optional[str] = Field(default=None, max_length=100)
    company_name: Optional[str] = Field(default=None, max_length=200)
    referral_code: Optional[str] = Field(default=None, max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    def profile_data(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "company_name": self.company_name,
            "referral_code": self.referral_code,
        }


class LoginRequest(EmailField):
    password: str = Field(..., max_length=128)
    remember_me: bool = False
    two_factor_code: Optional[str] = Field(default=None, max_length=16)


class TwoFactorLoginRequest(BaseModel):
    challenge_token: str = Field(..., max_length=256)
    code: str = Field(..., min_length=6, max_length=16)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(EmailField):
    pass


class ResendVerificationRequest(EmailField):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=128)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class TwoFactorSetupRequest(BaseModel):
    method: Literal["email", "sms", "authenticator"]
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., max_length=128)
    code: str = Field(..., min_length=6, max_length=16)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., max_length=128)


class RevokeAllSessionsRequest(PasswordConfirmRequest):
    keep_current: bool = True


class SuspendAccountRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
