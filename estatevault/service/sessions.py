from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from estatevault.logging import get_logger
from estatevault.service.audit import AuditTrail
from estatevault.service.blacklist import TokenBlacklist
from estatevault.service.ledger import TokenLedger
from estatevault.storage.models import (
    AuditAction,
    BlacklistReason,
    Severity,
    TokenKind,
    TokenType,
)

logger = get_logger(__name__)


@dataclass
class SessionInfo:
    session_id: str
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_current: bool

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "expires_at": self.expires_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "is_current": self.is_current,
        }


class SessionInvalidator:
    """Bulk and per-session revocation.

    A session is the refresh entry plus the access entries sharing its
    ``session_id``. Tokens issued after a revocation starts are not chased.
    """

    def __init__(self, ledger: TokenLedger, blacklist: TokenBlacklist, audit: AuditTrail) -> None:
        self.ledger = ledger
        self.blacklist = blacklist
        self.audit = audit

    async def _revoke(
        self,
        account_id: str,
        reason: BlacklistReason,
        *,
        session_id: Optional[str] = None,
        except_session_id: Optional[str] = None,
    ) -> int:
        refresh = self.ledger.revoke(
            account_id,
            TokenType.REFRESH,
            session_id=session_id,
            except_session_id=except_session_id,
        )
        access = self.ledger.revoke(
            account_id,
            TokenType.ACCESS,
            session_id=session_id,
            except_session_id=except_session_id,
        )
        for entry in access:
            await self.blacklist.blacklist_digest(
                entry.digest, TokenKind.ACCESS, account_id, reason, entry.expires_at
            )
        sessions = {t.session_id for t in refresh} | {t.session_id for t in access}
        sessions.discard(None)
        return len(sessions)

    async def revoke_all(
        self,
        account_id: str,
        reason: BlacklistReason,
        *,
        except_session_id: Optional[str] = None,
        performed_by: Optional[str] = None,
        trigger: Optional[str] = None,
    ) -> int:
        count = await self._revoke(account_id, reason, except_session_id=except_session_id)
        logger.info(
            "sessions_invalidated",
            account_id=account_id,
            reason=reason.value,
            count=count,
            kept_current=except_session_id is not None,
        )
        self.audit.record(
            account_id,
            AuditAction.SESSIONS_INVALIDATED,
            {
                "reason": reason.value,
                "trigger": trigger or reason.value,
                "sessions_revoked": count,
                "kept_current": except_session_id is not None,
            },
            Severity.HIGH,
            performed_by=performed_by,
        )
        return count

    async def revoke_session(
        self,
        account_id: str,
        session_id: str,
        reason: BlacklistReason = BlacklistReason.LOGOUT,
    ) -> bool:
        count = await self._revoke(account_id, reason, session_id=session_id)
        if count:
            self.audit.record(
                account_id,
                AuditAction.SESSION_REVOKED,
                {"session_id": session_id, "reason": reason.value},
                Severity.MEDIUM if reason != BlacklistReason.LOGOUT else Severity.LOW,
            )
        return bool(count)

    def list_sessions(
        self, account_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionInfo]:
        sessions = []
        for token in self.ledger.list_active(account_id, TokenType.REFRESH):
            if not token.session_id:
                continue
            started = token.meta.get("session_started_at")
            sessions.append(
                SessionInfo(
                    session_id=token.session_id,
                    created_at=datetime.fromisoformat(started) if started else token.created_at,
                    last_used_at=token.last_used_at,
                    expires_at=token.expires_at,
                    ip_address=token.ip_address,
                    user_agent=token.user_agent,
                    is_current=token.session_id == current_session_id,
                )
            )
        return sessions
