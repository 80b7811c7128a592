from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, List

from estatevault.config import Settings
from estatevault.logging import get_logger
from estatevault.service.audit import AuditTrail, SuspiciousSource
from estatevault.service.blacklist import TokenBlacklist
from estatevault.service.ledger import TokenLedger
from estatevault.service.notifications import AdminEvent, Delivery

logger = get_logger(__name__)

_SCAN_WINDOW = timedelta(minutes=30)


@dataclass
class CleanupReport:
    ledger_tokens: int = 0
    blacklist_entries: int = 0
    audit_events: int = 0

    def as_dict(self) -> dict:
        return {
            "ledger_tokens": self.ledger_tokens,
            "blacklist_entries": self.blacklist_entries,
            "audit_events": self.audit_events,
        }


class SecurityJobs:
    """Periodic housekeeping: token expiry sweeps and failed-login source scans."""

    def __init__(
        self,
        ledger: TokenLedger,
        blacklist: TokenBlacklist,
        audit: AuditTrail,
        delivery: Delivery,
        settings: Settings,
    ) -> None:
        self.ledger = ledger
        self.blacklist = blacklist
        self.audit = audit
        self.delivery = delivery
        self.settings = settings

    def cleanup_expired(self) -> CleanupReport:
        report = CleanupReport(
            ledger_tokens=self.ledger.purge_expired(),
            blacklist_entries=self.blacklist.purge(),
            audit_events=self.audit.purge(),
        )
        logger.info("security_cleanup_complete", **report.as_dict())
        return report

    async def scan_suspicious(self) -> List[SuspiciousSource]:
        sources = self.audit.noisy_sources(
            _SCAN_WINDOW, self.settings.suspicious_ip_failure_threshold
        )
        for source in sources:
            logger.warning(
                "suspicious_source_detected",
                ip_address=source.ip_address,
                attempts=source.attempts,
            )
        if sources:
            await self.delivery.notify_admins(
                AdminEvent(
                    event="suspicious_login_sources",
                    details={
                        "window_minutes": int(_SCAN_WINDOW.total_seconds() // 60),
                        "sources": [
                            {"ip_address": s.ip_address, "attempts": s.attempts} for s in sources
                        ],
                    },
                )
            )
        return sources


async def run_periodic(
    name: str, job: Callable[[], Awaitable[object]], interval_seconds: int
) -> None:
    """Run ``job`` every ``interval_seconds`` until cancelled."""
    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort housekeeping
                logger.warning("periodic_job_failed", job=name, error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("periodic_job_cancelled", job=name)
