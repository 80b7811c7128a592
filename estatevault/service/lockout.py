from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from estatevault.logging import get_logger
from estatevault.service.audit import AuditTrail
from estatevault.service.notifications import Delivery, SecurityAlert
from estatevault.storage.common import AuthStore
from estatevault.storage.models import (
    Account,
    AuditAction,
    LockoutState,
    Severity,
    utcnow,
)

logger = get_logger(__name__)


class LockoutTracker:
    """Per-account failed-login counter with a timed lock.

    Unlocked -> count+1 per failure -> Locked(now + lockout) once the
    threshold is reached -> Unlocked with a fresh count after the lock expires.
    The increment and the threshold transition happen in one store operation.
    """

    def __init__(
        self,
        store: AuthStore,
        audit: AuditTrail,
        delivery: Delivery,
        *,
        threshold: int = 5,
        lockout: timedelta = timedelta(minutes=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.delivery = delivery
        self.threshold = threshold
        self.lockout = lockout
        self._clock = clock or utcnow

    def is_locked(self, account: Account) -> bool:
        return account.is_locked(self._clock())

    def remaining(self, account: Account) -> timedelta:
        if not self.is_locked(account):
            return timedelta(0)
        return account.locked_until - self._clock()

    def remaining_minutes(self, account: Account) -> int:
        return math.ceil(self.remaining(account).total_seconds() / 60)

    async def record_failure(
        self,
        account: Account,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LockoutState:
        state = self.store.record_login_failure(
            account.id, self.threshold, self.lockout, self._clock()
        )
        account.failed_login_count = state.failed_count
        account.locked_until = state.locked_until
        if not state.just_locked:
            return state

        logger.warning(
            "account_locked",
            account_id=account.id,
            failed_count=state.failed_count,
            locked_until=state.locked_until.isoformat(),
        )
        self.audit.record(
            account.id,
            AuditAction.ACCOUNT_LOCKED,
            {
                "failed_attempts": state.failed_count,
                "locked_until": state.locked_until.isoformat(),
                "lockout_minutes": int(self.lockout.total_seconds() // 60),
            },
            Severity.CRITICAL,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.delivery.send_security_alert(
            account.email,
            SecurityAlert(
                title="Account locked",
                message=(
                    "Your account was locked after repeated failed sign-in attempts."
                ),
                details={
                    "ip_address": ip_address,
                    "locked_until": state.locked_until.isoformat(),
                },
            ),
        )
        return state

    def record_success(self, account: Account) -> None:
        if account.failed_login_count or account.locked_until:
            self.store.reset_login_failures(account.id)
        account.failed_login_count = 0
        account.locked_until = None

    def unlock(self, account: Account, *, performed_by: Optional[str] = None) -> None:
        self.store.reset_login_failures(account.id)
        account.failed_login_count = 0
        account.locked_until = None
        self.audit.record(
            account.id,
            AuditAction.ACCOUNT_UNLOCKED,
            {},
            Severity.MEDIUM,
            performed_by=performed_by,
        )
