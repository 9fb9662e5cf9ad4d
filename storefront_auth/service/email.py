from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Iterable, Optional

from storefront_auth.logging import get_logger, redact_email

logger = get_logger(__name__)

SMTPS_PORT = 465


@dataclass
class MailMessage:
    to: str
    subject: str
    text_body: str
    html_body: Optional[str] = None


@dataclass
class DeliveryReceipt:
    delivered: bool
    transport: str
    message_id: Optional[str] = None
    error: Optional[str] = None


_HTML_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #b4472b; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{paragraphs}
{action}
        <div class="footer">
            <p>{brand}</p>
{footer}
        </div>
    </div>
</body>
</html>
"""


def _render_html(
    brand: str,
    title: str,
    paragraphs: Iterable[str],
    *,
    action_url: Optional[str] = None,
    action_label: Optional[str] = None,
) -> str:
    body = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
    action = ""
    footer = ""
    if action_url:
        url = html.escape(action_url, quote=True)
        action = (
            f'        <p style="margin: 30px 0;">'
            f'<a href="{url}" class="button">{html.escape(action_label or "Open")}</a></p>'
        )
        footer = f"            <p>If the button doesn't work, copy and paste this URL: {url}</p>"
    return _HTML_SHELL.format(
        title=html.escape(title),
        paragraphs=body,
        action=action,
        brand=html.escape(brand),
        footer=footer,
    )


def _render_text(brand: str, title: str, paragraphs: Iterable[str], action_url: Optional[str]) -> str:
    parts = [title, ""]
    for paragraph in paragraphs:
        parts.extend([paragraph, ""])
    if action_url:
        parts.extend([action_url, ""])
    parts.extend(["---", brand, ""])
    return "\n".join(parts)


class EmailService:
    """Transactional mail over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which is the normal mode for development and tests. Delivery problems are
    reported through the returned :class:`DeliveryReceipt`; nothing here
    raises on a transport failure.
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
        from_name: str = "Storefront",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:5173").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_mime(self, message: MailMessage, message_id: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(message.text_body, "plain"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def _deliver(self, message: MailMessage, message_id: str) -> None:
        payload = self._build_mime(message, message_id).as_string()
        context = ssl.create_default_context()
        # 465 speaks TLS from the first byte
        if self.smtp_use_tls and self.smtp_port != SMTPS_PORT:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [message.to], payload)
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [message.to], payload)

    def send(self, message: MailMessage) -> DeliveryReceipt:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(message.to),
                subject=message.subject,
                body_length=len(message.text_body),
            )
            return DeliveryReceipt(delivered=True, transport="log")

        message_id = make_msgid(domain=self.from_email.split("@")[-1])
        try:
            self._deliver(message, message_id)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(message.to),
                host=self.smtp_host,
                error=str(exc),
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return DeliveryReceipt(delivered=False, transport="smtp", error="auth_failed")
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(message.to),
                error=str(exc),
            )
            return DeliveryReceipt(delivered=False, transport="smtp", error="recipient_refused")
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=redact_email(message.to),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryReceipt(delivered=False, transport="smtp", error="smtp_error")
        except (ssl.SSLError, OSError) as exc:
            # covers connection refused, DNS failures and timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(message.to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryReceipt(delivered=False, transport="smtp", error="connect_failed")

        logger.info("email_sent", to=redact_email(message.to), subject=message.subject)
        return DeliveryReceipt(delivered=True, transport="smtp", message_id=message_id)

    def _compose(
        self,
        to_email: str,
        subject: str,
        title: str,
        paragraphs: list[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> MailMessage:
        return MailMessage(
            to=to_email,
            subject=subject,
            text_body=_render_text(self.from_name, title, paragraphs, action_url),
            html_body=_render_html(
                self.from_name,
                title,
                paragraphs,
                action_url=action_url,
                action_label=action_label,
            ),
        )

    def send_email_verification(
        self, to_email: str, token: str, *, ttl_hours: int = 24
    ) -> DeliveryReceipt:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        message = self._compose(
            to_email,
            f"Verify your {self.from_name} email",
            "Verify your email",
            [
                "Thanks for signing up! Please confirm your email address to finish setting up your account.",
                f"This link will expire in {ttl_hours} hours.",
            ],
            action_url=verify_url,
            action_label="Verify Email",
        )
        return self.send(message)

    def send_password_reset(
        self, to_email: str, token: str, *, ttl_minutes: int = 60
    ) -> DeliveryReceipt:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        message = self._compose(
            to_email,
            f"Reset your {self.from_name} password",
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset Password",
        )
        return self.send(message)

    def send_security_alert(
        self,
        to_email: str,
        *,
        account_email: str,
        detected_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeliveryReceipt:
        message = self._compose(
            to_email,
            "Security alert: refresh token reuse detected",
            "Suspicious sign-in activity",
            [
                f"A previously used session token for {account_email} was presented again.",
                f"Time: {detected_at.isoformat()}",
                f"IP address: {ip_address or 'unknown'}",
                f"Device: {user_agent or 'unknown'}",
                "All sessions for this account have been signed out. "
                "Sign in again and change your password if you did not expect this.",
            ],
        )
        return self.send(message)
