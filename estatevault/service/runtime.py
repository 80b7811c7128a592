from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from estatevault.config import Settings, get_settings, reset_settings_cache
from estatevault.logging import get_logger
from estatevault.service.auth import AuthService
from estatevault.service.email import EmailService
from estatevault.service.jobs import SecurityJobs
from estatevault.service.notifications import NotificationDispatcher, SmsGateway
from estatevault.storage.common import AuthStore
from estatevault.storage.memory import MemoryStore
from estatevault.storage.models import utcnow
from estatevault.storage.postgres import PostgresStore
from estatevault.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _redacted_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "<unparseable>"
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":***@", 1)


def _build_store(settings: Settings) -> AuthStore:
    key = settings.two_factor_encryption_key or settings.jwt_secret
    if settings.use_memory_store:
        return MemoryStore(settings.shared_fs_root, encryption_key=key)
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
    return PostgresStore(settings.database_url, settings.shared_fs_root, encryption_key=key)


def _connect_cache(settings: Settings) -> Optional[RedisCache]:
    """Redis is mandatory in production; tests and local dev may run without it."""
    problem: Optional[Exception] = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url)
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            problem = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unavailable; set ALLOW_REDIS_FALLBACK_DEV=true to run with "
            "in-process rate limits and store-only blacklist checks"
        ) from problem
    logger.warning(
        "redis_fallback",
        redis_url=_redacted_url(settings.redis_url),
        reason=str(problem) if problem else "REDIS_URL not set",
    )
    return None


def _build_delivery(settings: Settings) -> NotificationDispatcher:
    email = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        base_url=settings.app_base_url,
        timeout=settings.delivery_timeout_seconds,
    )
    sms = SmsGateway(
        settings.sms_api_url,
        settings.sms_api_key,
        sender_id=settings.sms_sender_id,
        timeout=settings.delivery_timeout_seconds,
    )
    return NotificationDispatcher(
        email,
        sms,
        admin_emails=settings.admin_alert_recipients,
        code_ttl_minutes=settings.two_factor_code_ttl_minutes,
        reset_ttl_minutes=settings.password_reset_ttl_minutes,
        verification_ttl_hours=settings.email_verification_ttl_hours,
    )


class LocalBuckets:
    """In-process token buckets used when Redis is not available.

    Guarded by a thread lock rather than an asyncio lock: the critical section
    never awaits, and the test client runs requests on separate event loops.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        now = utcnow()
        rate = limit / window_seconds
        with self._lock:
            level, stamp = self._buckets.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, (now - stamp).total_seconds()) * rate)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now)
        wait = 0 if allowed else int((cost - level) / rate) + 1
        return allowed, int(level), wait


class Runtime:
    """Process-wide wiring of settings, storage, delivery and services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        settings = self.settings
        self.store = _build_store(settings)
        self.cache = _connect_cache(settings)
        self.delivery = _build_delivery(settings)
        self.email = self.delivery.email
        self.sms = self.delivery.sms
        self.auth = AuthService(self.store, settings, self.delivery, cache=self.cache)
        self.jobs = SecurityJobs(
            self.auth.ledger, self.auth.blacklist, self.auth.audit, self.delivery, settings
        )
        self.buckets = LocalBuckets()
        logger.info(
            "runtime_ready",
            store=type(self.store).__name__,
            redis=self.cache is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from fresh settings; refused outside TEST_MODE."""
    global runtime
    with _runtime_lock:
        old = runtime
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if old is not None and old.cache is not None:
            try:
                asyncio.get_running_loop().create_task(old.cache.close())
            except RuntimeError:
                asyncio.run(old.cache.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Token bucket per key: Redis when connected, otherwise in process.

    A non-positive ``limit`` disables the check.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    window_seconds = window_seconds if window_seconds > 0 else 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    result = runtime.buckets.take(key, limit, window_seconds, cost)
    return result if return_remaining else result[0]
