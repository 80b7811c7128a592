from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional

from estatevault.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: system-ui, sans-serif; line-height: 1.5; color: #1f2933; background: #f7f7f5; }
        .container { max-width: 560px; margin: 0 auto; padding: 32px 16px; background: #ffffff; }
        .button { display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .footer { margin-top: 32px; font-size: 12px; color: #5b6470; }
"""

# SMTP failures worth a distinct log event; anything else is "email_send_failed".
_SMTP_FAILURE_EVENTS = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
)


@dataclass(frozen=True)
class SmtpRelay:
    host: Optional[str]
    port: int
    user: Optional[str]
    password: Optional[str]
    starttls: bool
    timeout: float

    def connect(self) -> smtplib.SMTP:
        """Open an authenticated session: STARTTLS on ``starttls``, implicit TLS otherwise."""
        context = ssl.create_default_context()
        if self.starttls:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout)
        try:
            if self.starttls:
                server.starttls(context=context)
            if self.user and self.password:
                server.login(self.user, self.password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server


def mask_address(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery for account and security mail.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "EstateVault",
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.relay = SmtpRelay(smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls, timeout)
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.relay.host and self.sender)

    def _render(
        self,
        title: str,
        paragraphs: Iterable[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
        code: Optional[str] = None,
    ) -> tuple[str, str]:
        paragraphs = list(paragraphs)
        parts = [f"<h1>{html.escape(title)}</h1>"]
        parts.extend(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        if code:
            parts.append(f'<p class="code">{html.escape(code)}</p>')
        if action_url:
            parts.append(
                f'<p style="margin: 30px 0;"><a href="{html.escape(action_url)}" class="button">'
                f"{html.escape(action_label or 'Open')}</a></p>"
            )
        footer = f"<p>{html.escape(self.from_name)}</p>"
        if action_url:
            footer += (
                "<p>If the button doesn't work, copy and paste this URL: "
                f"{html.escape(action_url)}</p>"
            )
        html_body = (
            '<!DOCTYPE html>\n<html>\n<head>\n<meta charset="utf-8">\n'
            f"<style>{_STYLE}</style>\n</head>\n<body>\n<div class=\"container\">\n"
            + "\n".join(parts)
            + f'\n<div class="footer">{footer}</div>\n</div>\n</body>\n</html>\n'
        )
        text_lines = [title, ""] + paragraphs
        if code:
            text_lines += ["", code]
        if action_url:
            text_lines += ["", action_url]
        text_lines += ["", "---", self.from_name]
        return html_body, "\n".join(text_lines) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Hand one message to the relay. False means SMTP refused or failed."""
        masked = mask_address(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=masked, subject=subject)
            return True

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.sender}>"
        message["To"] = to_email
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))

        try:
            with self.relay.connect() as server:
                server.sendmail(self.sender, [to_email], message.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            event = next(
                (name for kind, name in _SMTP_FAILURE_EVENTS if isinstance(exc, kind)),
                "email_send_failed",
            )
            logger.error(
                event,
                to=masked,
                relay=f"{self.relay.host}:{self.relay.port}",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=masked, subject=subject)
        return True

    def send_one_time_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Your verification code",
            [
                "Use the code below to finish signing in.",
                f"The code expires in {ttl_minutes} minutes and can only be used once.",
                "If you did not try to sign in, change your password immediately.",
            ],
            code=code,
        )
        return self._send_email(
            to_email, f"{self.from_name} verification code", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset Password",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_email_verification(self, to_email: str, token: str, ttl_hours: int) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your email address.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify Email",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_security_alert(self, to_email: str, title: str, message: str, details: dict) -> bool:
        lines = [message]
        lines.extend(f"{key}: {value}" for key, value in sorted(details.items()) if value is not None)
        lines.append("If this wasn't you, contact support and change your password immediately.")
        html_body, text_body = self._render(title, lines)
        return self._send_email(to_email, f"Security alert: {title}", html_body, text_body)

    def send_admin_alert(self, to_email: str, event: str, details: dict) -> bool:
        lines = [f"Event: {event}"]
        lines.extend(f"{key}: {value}" for key, value in sorted(details.items()) if value is not None)
        html_body, text_body = self._render("Administrator notification", lines)
        return self._send_email(to_email, f"[{self.from_name} admin] {event}", html_body, text_body)
