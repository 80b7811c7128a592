from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from estatevault.logging import get_logger
from estatevault.service.tokens import token_digest
from estatevault.storage.common import AuthStore
from estatevault.storage.models import (
    BlacklistEntry,
    BlacklistReason,
    TokenKind,
    utcnow,
)
from estatevault.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class TokenBlacklist:
    """Revoked bearer tokens, keyed by token digest.

    The durable store holds every entry; Redis, when present, mirrors them
    with a TTL so the per-request check is a single key lookup.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache] = None,
        *,
        grace: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.grace = grace
        self._clock = clock or utcnow

    async def blacklist_digest(
        self,
        digest: str,
        kind: TokenKind,
        account_id: str,
        reason: BlacklistReason,
        expires_at: datetime,
    ) -> bool:
        """Insert an entry; returns False when the digest was already present."""
        entry = BlacklistEntry(
            digest=digest,
            kind=kind,
            account_id=account_id,
            reason=reason,
            expires_at=expires_at,
            created_at=self._clock(),
        )
        added = self.store.add_blacklist_entry(entry)
        if self.cache and expires_at > self._clock():
            try:
                await self.cache.blacklist_token(digest, expires_at)
            except Exception as exc:
                logger.warning("blacklist_cache_write_failed", error=str(exc))
        return added

    async def blacklist(
        self,
        token: str,
        kind: TokenKind,
        account_id: str,
        reason: BlacklistReason,
        expires_at: datetime,
    ) -> bool:
        return await self.blacklist_digest(
            token_digest(token), kind, account_id, reason, expires_at
        )

    async def is_blacklisted(self, token: str) -> bool:
        digest = token_digest(token)
        if self.cache:
            try:
                if await self.cache.is_token_blacklisted(digest):
                    return True
            except Exception as exc:
                # Fall through to the durable store rather than failing open.
                logger.warning("blacklist_cache_read_failed", error=str(exc))
        return self.store.get_blacklist_entry(digest) is not None

    def purge(self) -> int:
        removed = self.store.purge_blacklist(self._clock() - self.grace)
        if removed:
            logger.info("blacklist_entries_purged", removed=removed)
        return removed
