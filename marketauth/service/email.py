from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from marketauth.config import Settings
from marketauth.logging import get_logger
from marketauth.storage.models import EMAIL_VERIFY, PASSWORD_RESET

logger = get_logger(__name__)


class Mailer(Protocol):
    def deliver(self, email: str, kind: str, token: str) -> bool: ...


_TEMPLATES = {
    EMAIL_VERIFY: {
        "subject": "Verify your {brand} email",
        "heading": "Verify your email",
        "intro": "Thanks for signing up! Please confirm your email address with the link below.",
        "button": "Verify Email",
    },
    PASSWORD_RESET: {
        "subject": "Reset your {brand} password",
        "heading": "Reset your password",
        "intro": "We received a request to reset your password. Use the link below to choose a new one.",
        "button": "Reset Password",
    },
}

_HTML = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{url}">{button}</a></p>
        <p>This link will expire in {ttl} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{brand}<br>{url}</p>
    </div>
</body>
</html>
"""

_TEXT = """{heading}

{intro}

{url}

This link will expire in {ttl} minutes.

If you didn't request this, you can safely ignore this email.

---
{brand}
"""


class EmailService:
    """Transactional email for verification and password reset links.

    Falls back to logging when SMTP is not configured (dev mode). Delivery is
    fire-and-forget: failures are logged and reported as ``False``, never raised.
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
        from_name: str = "Macle",
        base_url: str = "http://localhost:3000",
        verify_route: str = "/verify-email",
        reset_route: str = "/reset-password",
        ttl_minutes: Optional[dict[str, int]] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.routes = {EMAIL_VERIFY: verify_route, PASSWORD_RESET: reset_route}
        self.ttl_minutes = ttl_minutes or {EMAIL_VERIFY: 60, PASSWORD_RESET: 60}
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_public_url,
            verify_route=settings.email_verify_route,
            reset_route=settings.password_reset_route,
            ttl_minutes={
                EMAIL_VERIFY: settings.email_verification_ttl_minutes,
                PASSWORD_RESET: settings.password_reset_ttl_minutes,
            },
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def build_link(self, kind: str, token: str) -> str:
        route = self.routes[kind]
        if not route.startswith("/"):
            route = "/" + route
        return f"{self.base_url}{route}?token={quote(token)}"

    def deliver(self, email: str, kind: str, token: str) -> bool:
        if kind not in _TEMPLATES:
            raise ValueError(f"unknown delivery kind: {kind}")
        template = _TEMPLATES[kind]
        fields = {
            "brand": self.from_name,
            "heading": template["heading"],
            "intro": template["intro"],
            "button": template["button"],
            "url": self.build_link(kind, token),
            "ttl": self.ttl_minutes.get(kind, 60),
        }
        subject = template["subject"].format(brand=self.from_name)
        return self._send_email(email, subject, _HTML.format(**fields), _TEXT.format(**fields))

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=recipient, error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True
