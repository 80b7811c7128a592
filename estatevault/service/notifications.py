"""Delivery collaborator used by the auth core.

Every method returns ``True``/``False`` and never raises: the core treats
delivery as best effort and must keep its own state consistent when the
mail server or SMS provider is down.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from estatevault.logging import get_logger
from estatevault.service.email import EmailService
from estatevault.storage.models import TwoFactorMethod

logger = get_logger(__name__)


@dataclass
class SecurityAlert:
    title: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AdminEvent:
    event: str
    details: Dict[str, Any] = field(default_factory=dict)


class Delivery(Protocol):
    async def send_one_time_code(
        self, destination: str, code: str, channel: TwoFactorMethod
    ) -> bool: ...

    async def send_security_alert(self, account_email: str, alert: SecurityAlert) -> bool: ...

    async def notify_admins(self, event: AdminEvent) -> bool: ...

    async def send_email_verification(self, email: str, token: str) -> bool: ...

    async def send_password_reset(self, email: str, token: str) -> bool: ...


class SmsGateway:
    """Minimal client for an HTTP SMS provider (JSON POST with bearer key)."""

    def __init__(
        self,
        api_url: Optional[str],
        api_key: Optional[str],
        *,
        sender_id: str = "EstateVault",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def send(self, phone_number: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", phone=phone_number, length=len(message))
            return True
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        payload = {"to": phone_number, "from": self.sender_id, "message": message}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_send_http_error",
                status_code=exc.response.status_code,
                phone=phone_number,
            )
            return False
        except httpx.HTTPError as exc:
            logger.error("sms_send_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        logger.info("sms_sent", phone=phone_number)
        return True


class NotificationDispatcher:
    """Email + SMS implementation of :class:`Delivery`."""

    def __init__(
        self,
        email: EmailService,
        sms: SmsGateway,
        *,
        admin_emails: Optional[List[str]] = None,
        code_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.email = email
        self.sms = sms
        self.admin_emails = list(admin_emails or [])
        self.code_ttl_minutes = code_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    async def _run_email(self, func, *args) -> bool:
        try:
            return bool(await asyncio.to_thread(func, *args))
        except Exception as exc:
            logger.error("email_dispatch_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    async def send_one_time_code(
        self, destination: str, code: str, channel: TwoFactorMethod
    ) -> bool:
        if not destination:
            logger.warning("one_time_code_no_destination", channel=channel.value)
            return False
        if channel == TwoFactorMethod.SMS:
            message = (
                f"Your {self.sms.sender_id} verification code is {code}. "
                f"It expires in {self.code_ttl_minutes} minutes."
            )
            try:
                return await self.sms.send(destination, message)
            except Exception as exc:
                logger.error("sms_dispatch_failed", error_type=type(exc).__name__, error=str(exc))
                return False
        if channel == TwoFactorMethod.EMAIL:
            return await self._run_email(
                self.email.send_one_time_code, destination, code, self.code_ttl_minutes
            )
        logger.warning("one_time_code_unsupported_channel", channel=channel.value)
        return False

    async def send_security_alert(self, account_email: str, alert: SecurityAlert) -> bool:
        return await self._run_email(
            self.email.send_security_alert,
            account_email,
            alert.title,
            alert.message,
            alert.details,
        )

    async def notify_admins(self, event: AdminEvent) -> bool:
        if not self.admin_emails:
            logger.info("admin_notification", notify_event=event.event, details=event.details)
            return True
        results = [
            await self._run_email(self.email.send_admin_alert, recipient, event.event, event.details)
            for recipient in self.admin_emails
        ]
        return all(results)

    async def send_email_verification(self, email: str, token: str) -> bool:
        return await self._run_email(
            self.email.send_email_verification, email, token, self.verification_ttl_hours
        )

    async def send_password_reset(self, email: str, token: str) -> bool:
        return await self._run_email(
            self.email.send_password_reset, email, token, self.reset_ttl_minutes
        )
