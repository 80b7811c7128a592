"""Delivery: SMS gateway over httpx, SMTP email rendering and the dispatcher."""

import smtplib

import httpx

from estatevault.service.email import EmailService
from estatevault.service.notifications import (
    AdminEvent,
    NotificationDispatcher,
    SecurityAlert,
    SmsGateway,
)
from estatevault.storage.models import TwoFactorMethod


class RecordingEmail(EmailService):
    def __init__(self, *, fail=False):
        super().__init__(base_url="https://app.example.com/")
        self.sent = []
        self.fail = fail

    def _send_email(self, to_email, subject, html_body, text_body=None):
        if self.fail:
            raise smtplib.SMTPException("relay down")
        self.sent.append((to_email, subject, html_body, text_body))
        return True


def _dispatcher(email=None, sms=None, **kwargs):
    return NotificationDispatcher(email or RecordingEmail(), sms or SmsGateway(None, None), **kwargs)


async def test_sms_gateway_posts_json():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "msg-1"})

    gateway = SmsGateway(
        "https://sms.example.com/send", "key-1", transport=httpx.MockTransport(handler)
    )
    assert await gateway.send("+15551234567", "hello")
    assert seen[0].headers["Authorization"] == "Bearer key-1"
    assert b'"to":"+15551234567"' in seen[0].content.replace(b" ", b"")


async def test_sms_gateway_reports_http_errors():
    gateway = SmsGateway(
        "https://sms.example.com/send",
        "key-1",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    assert await gateway.send("+15551234567", "hello") is False


async def test_unconfigured_sms_logs_instead_of_sending():
    assert not SmsGateway(None, None).is_configured
    assert await SmsGateway(None, None).send("+15551234567", "hello")


async def test_email_code_goes_to_email_channel():
    email = RecordingEmail()
    dispatcher = _dispatcher(email, code_ttl_minutes=7)
    assert await dispatcher.send_one_time_code("a@example.com", "123456", TwoFactorMethod.EMAIL)
    to_email, subject, html_body, text_body = email.sent[-1]
    assert to_email == "a@example.com"
    assert "123456" in html_body and "7 minutes" in text_body


async def test_authenticator_channel_and_missing_destination_fail():
    dispatcher = _dispatcher()
    assert not await dispatcher.send_one_time_code("a@example.com", "1", TwoFactorMethod.AUTHENTICATOR)
    assert not await dispatcher.send_one_time_code("", "1", TwoFactorMethod.EMAIL)


async def test_smtp_errors_become_false():
    dispatcher = _dispatcher(RecordingEmail(fail=True))
    assert await dispatcher.send_security_alert("a@example.com", SecurityAlert("t", "m")) is False


async def test_reset_link_uses_base_url():
    email = RecordingEmail()
    await _dispatcher(email).send_password_reset("a@example.com", "tok123")
    assert "https://app.example.com/reset-password?token=tok123" in email.sent[-1][3]


async def test_admin_notifications_fan_out():
    email = RecordingEmail()
    dispatcher = _dispatcher(email, admin_emails=["ops@example.com", "sec@example.com"])
    assert await dispatcher.notify_admins(AdminEvent("2fa_delivery_failed", {"account_id": "a1"}))
    assert [sent[0] for sent in email.sent] == ["ops@example.com", "sec@example.com"]
    assert "account_id: a1" in email.sent[0][3]


def test_alert_body_escapes_html():
    email = RecordingEmail()
    email.send_security_alert("a@example.com", "<b>t</b>", "m", {"ip_address": "<x>"})
    html_body = email.sent[-1][2]
    assert "<b>t</b>" not in html_body
    assert "&lt;x&gt;" in html_body


def test_unconfigured_email_is_dev_mode():
    service = EmailService()
    assert not service.is_configured
    assert service.send_email_verification("a@example.com", "tok", 24)
