from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from estatevault.logging import get_logger
from estatevault.service.errors import AuthErrorKind, AuthFailure, failure
from estatevault.service.tokens import token_digest
from estatevault.storage.common import AuthStore
from estatevault.storage.models import LedgerToken, TokenType, utcnow

logger = get_logger(__name__)

# Codes are typed by people, so they are short and bound to the account.
_ACCOUNT_SCOPED_TYPES = frozenset({TokenType.TWO_FACTOR_CODE})


@dataclass
class IssuedToken:
    """Plaintext value handed back exactly once, plus its stored record."""

    value: str
    record: LedgerToken


def generate_numeric_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


class TokenLedger:
    """Issue, redeem and rotate persisted tokens.

    Only digests are stored. Redemption removes the entry in the same store
    operation that finds it, so a value can be redeemed at most once.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    @staticmethod
    def digest_for(token_type: TokenType, value: str, account_id: Optional[str] = None) -> str:
        scope = account_id if token_type in _ACCOUNT_SCOPED_TYPES else None
        return token_digest(value, scope)

    def issue(
        self,
        account_id: str,
        token_type: TokenType,
        ttl: timedelta,
        *,
        value: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> IssuedToken:
        plaintext = value or secrets.token_hex(32)
        record = LedgerToken.new(
            account_id,
            token_type,
            self.digest_for(token_type, plaintext, account_id),
            ttl,
            now=self._clock(),
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            meta=meta,
        )
        self.store.insert_token(record)
        logger.debug("ledger_token_issued", token_type=token_type.value, account_id=account_id)
        return IssuedToken(value=plaintext, record=record)

    def redeem(
        self,
        token_type: TokenType,
        value: str,
        *,
        account_id: Optional[str] = None,
    ) -> Union[LedgerToken, AuthFailure]:
        if not value:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Token not found")
        if token_type in _ACCOUNT_SCOPED_TYPES and not account_id:
            raise ValueError(f"{token_type.value} redemption requires an account id")
        token = self.store.take_token(token_type, self.digest_for(token_type, value, account_id))
        if token is None:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Token not found or already used")
        if token.is_expired(self._clock()):
            return failure(AuthErrorKind.TOKEN_EXPIRED, "Token has expired")
        return token

    def peek(self, token_type: TokenType, value: str) -> Optional[LedgerToken]:
        """Look an entry up without consuming it (refresh pre-checks, session listing)."""
        token = self.store.get_token(token_type, self.digest_for(token_type, value))
        if token is None or token.is_expired(self._clock()):
            return None
        return token

    def rotate_refresh(
        self,
        old_value: str,
        new_value: str,
        ttl: timedelta,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Union[LedgerToken, AuthFailure]:
        """Swap a refresh entry for a new one in a single store operation.

        The session id and device metadata carry over so the session keeps
        its identity across rotations.
        """
        old_digest = self.digest_for(TokenType.REFRESH, old_value)
        current = self.store.get_token(TokenType.REFRESH, old_digest)
        if current is None:
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Refresh token not found")
        now = self._clock()
        if current.is_expired(now):
            self.store.take_token(TokenType.REFRESH, old_digest)
            return failure(AuthErrorKind.TOKEN_EXPIRED, "Refresh token has expired")
        replacement = LedgerToken.new(
            current.account_id,
            TokenType.REFRESH,
            self.digest_for(TokenType.REFRESH, new_value),
            ttl,
            now=now,
            session_id=current.session_id,
            ip_address=ip_address or current.ip_address,
            user_agent=user_agent or current.user_agent,
            meta={**current.meta, "session_started_at": current.meta.get(
                "session_started_at", current.created_at.isoformat()
            )},
        )
        replacement.last_used_at = now
        if self.store.rotate_token(TokenType.REFRESH, old_digest, replacement) is None:
            # Lost the race with another rotation or a revocation.
            return failure(AuthErrorKind.TOKEN_NOT_FOUND, "Refresh token not found")
        return replacement

    def revoke(
        self,
        account_id: str,
        token_type: TokenType,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
    ) -> List[LedgerToken]:
        return self.store.delete_tokens(
            account_id,
            token_type,
            session_id=session_id,
            except_session_id=except_session_id,
        )

    def list_active(self, account_id: str, token_type: TokenType) -> List[LedgerToken]:
        return self.store.list_tokens(account_id, token_type, now=self._clock())

    def purge_expired(self) -> int:
        removed = self.store.purge_expired_tokens(self._clock())
        if removed:
            logger.info("ledger_tokens_purged", removed=removed)
        return removed
