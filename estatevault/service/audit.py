from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from estatevault.config import Settings
from estatevault.logging import get_logger
from estatevault.storage.common import AuthStore
from estatevault.storage.models import (
    AuditAction,
    AuditEvent,
    LoginRecord,
    Severity,
    utcnow,
)

logger = get_logger(__name__)

MULTIPLE_IPS = "multiple_ips"
MULTIPLE_COUNTRIES = "multiple_countries"
EXCESSIVE_LOGINS = "excessive_logins"


@dataclass
class SuspiciousSource:
    ip_address: str
    attempts: int


class AuditTrail:
    """Append-only security event log plus login-pattern heuristics.

    ``record`` never raises: a failing audit write is logged and the calling
    operation carries on.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def record(
        self,
        account_id: Optional[str],
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        severity: Severity = Severity.LOW,
        *,
        performed_by: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        event = AuditEvent.new(
            action,
            severity,
            account_id=account_id,
            details=dict(details or {}),
            performed_by=performed_by,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.warning(
                "audit_record_failed",
                action=action.value,
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if severity in (Severity.HIGH, Severity.CRITICAL):
            logger.warning(
                "security_event",
                action=action.value,
                severity=severity.value,
                account_id=account_id,
            )
        return event

    def record_login(
        self,
        account_id: str,
        *,
        success: bool,
        ip_address: Optional[str] = None,
        country: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        record = LoginRecord(
            account_id=account_id,
            success=success,
            ip_address=ip_address,
            country=country,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.record_login(record)
        except Exception as exc:
            logger.warning("login_record_failed", account_id=account_id, error=str(exc))

    def login_history(self, account_id: str, limit: int = 20) -> List[LoginRecord]:
        return self.store.list_login_records(account_id, limit=limit)

    def recent_events(self, account_id: str, limit: int = 50) -> List[AuditEvent]:
        return self.store.list_audit_events(account_id, limit=limit)

    def detect_suspicious(
        self, account_id: str, window: Optional[timedelta] = None
    ) -> List[str]:
        """Heuristics over successful logins inside ``window``.

        Flags more distinct source IPs or countries than allowed, and login
        velocity above the configured maximum.
        """
        window = window or timedelta(hours=self.settings.suspicious_window_hours)
        since = self._clock() - window
        records = [
            r for r in self.store.list_login_records(account_id, since=since, limit=1000)
            if r.success
        ]
        matched = []
        ips = {r.ip_address for r in records if r.ip_address}
        countries = {r.country for r in records if r.country}
        if len(ips) > self.settings.suspicious_max_ips:
            matched.append(MULTIPLE_IPS)
        if len(countries) > self.settings.suspicious_max_countries:
            matched.append(MULTIPLE_COUNTRIES)
        if len(records) > self.settings.suspicious_max_logins:
            matched.append(EXCESSIVE_LOGINS)
        return matched

    def noisy_sources(self, window: timedelta, threshold: int) -> List[SuspiciousSource]:
        """Source IPs with more than ``threshold`` failed or unknown-account logins."""
        since = self._clock() - window
        events = self.store.list_audit_events(
            actions=[AuditAction.SUSPICIOUS_LOGIN_ATTEMPT, AuditAction.LOGIN_FAILED],
            since=since,
            limit=10000,
        )
        counts = Counter(e.ip_address for e in events if e.ip_address)
        return [
            SuspiciousSource(ip_address=ip, attempts=count)
            for ip, count in counts.most_common()
            if count > threshold
        ]

    def purge(self) -> int:
        cutoff = self._clock() - timedelta(days=self.settings.audit_retention_days)
        return self.store.purge_audit_events(cutoff)
