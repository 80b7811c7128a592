from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from estatevault.config import Settings
from estatevault.logging import get_logger
from estatevault.storage.models import Account, TokenKind, utcnow

logger = get_logger(__name__)


def token_digest(value: str, scope: Optional[str] = None) -> str:
    """One-way digest used as the lookup key for ledger and blacklist entries.

    ``scope`` binds short codes to an account so two accounts holding the same
    six digits never collide.
    """
    material = f"{scope}:{value}" if scope else value
    return hashlib.sha256(material.encode()).hexdigest()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "session_id": self.session_id,
        }


@dataclass
class BearerClaims:
    account_id: str
    role: str
    session_id: str
    kind: TokenKind
    jti: str
    expires_at: datetime


class BearerTokenCodec:
    """HS256 JWT encode/decode with issuer, audience and expiry checks."""

    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self._clock = clock or utcnow
        self._clock_skew_leeway = timedelta(seconds=120)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def claims(self, token: str, kind: TokenKind) -> Optional[BearerClaims]:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != kind.value:
            return None
        try:
            return BearerClaims(
                account_id=str(payload["sub"]),
                role=str(payload["role"]),
                session_id=str(payload["sid"]),
                kind=kind,
                jti=str(payload["jti"]),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=utcnow().tzinfo),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def issue(
        self,
        account: Account,
        session_id: str,
        kind: TokenKind,
        ttl: timedelta,
    ) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "sid": session_id,
            "role": account.role.value,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self.encode(payload), datetime.fromtimestamp(payload["exp"], tz=now.tzinfo)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
