from __future__ import annotations

import html
import logging
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Mapping

import httpx
from sqlalchemy.orm import Session

from kars.models import BrandingSettings, EmailProvider
from kars.services.email_templates import get_template, render
from kars.services.settings_store import (
    brevo_api_key,
    get_branding_settings,
    get_smtp_settings,
    smtp_password,
)
from kars.settings import get_settings

logger = logging.getLogger("kars.mailer")

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"
BREVO_ACCOUNT_URL = "https://api.brevo.com/v3/account"
EMAIL_ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str
    html_body: str | None = None


def normalize_email(value: str | None) -> str | None:
    normalized = " ".join((value or "").strip().lower().split())
    if not normalized:
        return None
    if not EMAIL_ADDRESS_PATTERN.match(normalized):
        return None
    return normalized


class NotificationChannel:
    enabled: bool = False
    configured: bool = False
    provider: str = "none"

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError

    def config_status(self) -> dict[str, Any]:
        return {"provider": self.provider, "enabled": self.enabled, "configured": self.configured}


def _skip_result(message: NotificationMessage, mode: str) -> dict[str, Any]:
    logger.info(
        "email_channel_skipped",
        extra={"mode": mode, "subject": message.subject, "recipient_count": len(message.recipients)},
    )
    return {"mode": mode, "sent": 0, "recipients": list(message.recipients)}


class SmtpChannel(NotificationChannel):
    provider = "smtp"

    def __init__(
        self,
        *,
        enabled: bool,
        host: str | None,
        port: int,
        username: str | None,
        password: str | None,
        use_tls: bool,
        from_email: str | None,
        from_name: str | None = None,
    ) -> None:
        self.enabled = enabled
        self.host = (host or "").strip()
        self.port = int(port or 587)
        self.username = (username or "").strip()
        self.password = password or ""
        self.use_tls = use_tls
        self.from_email = (from_email or "").strip()
        self.from_name = (from_name or "").strip()
        self.configured = bool(self.host and self.from_email)

    @classmethod
    def from_env(cls) -> SmtpChannel:
        settings = get_settings()
        return cls(
            enabled=bool(settings.smtp_host and settings.smtp_from),
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from,
        )

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            return _skip_result(message, "disabled")
        if not recipients:
            return _skip_result(message, "skipped_no_recipients")
        if not self.configured:
            return _skip_result(message, "not_configured")

        email_message = EmailMessage()
        email_message["From"] = formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)
        if message.html_body:
            email_message.add_alternative(message.html_body, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=15) as smtp_client:
            if self.use_tls:
                smtp_client.starttls()
            if self.username:
                smtp_client.login(self.username, self.password)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.host:
            missing_fields.append("SMTP_HOST")
        if not self.from_email:
            missing_fields.append("SMTP_FROM")
        return {
            "provider": self.provider,
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_user_set": bool(self.username),
            "smtp_use_tls": bool(self.use_tls),
            "missing_fields": missing_fields,
        }


class BrevoChannel(NotificationChannel):
    provider = "brevo"

    def __init__(
        self,
        *,
        enabled: bool,
        api_key: str | None,
        from_email: str | None,
        from_name: str | None,
        client: httpx.Client | None = None,
    ) -> None:
        self.enabled = enabled
        self.api_key = (api_key or "").strip()
        self.from_email = (from_email or "").strip()
        self.from_name = (from_name or "").strip() or "KARS Notifications"
        self.configured = bool(self.api_key and self.from_email)
        self._client = client

    def _http(self) -> httpx.Client:
        return self._client or httpx.Client(timeout=30.0)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            return _skip_result(message, "disabled")
        if not recipients:
            return _skip_result(message, "skipped_no_recipients")
        if not self.configured:
            return _skip_result(message, "not_configured")

        payload: dict[str, Any] = {
            "sender": {"name": self.from_name, "email": self.from_email},
            "to": [{"email": item} for item in recipients],
            "subject": message.subject,
            "htmlContent": message.html_body or f"<pre>{html.escape(message.body)}</pre>",
        }
        if message.body:
            payload["textContent"] = message.body

        client = self._http()
        try:
            response = client.post(
                BREVO_API_URL,
                headers={"accept": "application/json", "api-key": self.api_key},
                json=payload,
            )
        finally:
            if self._client is None:
                client.close()

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = {}
            detail = error_body.get("message") or error_body.get("error") or f"Brevo API error: {response.status_code}"
            raise RuntimeError(str(detail))

        message_id = None
        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients, "message_id": message_id}

    def verify(self) -> dict[str, Any]:
        if not self.api_key:
            return {"success": False, "error": "Brevo API key is not configured"}
        client = self._http()
        try:
            response = client.get(BREVO_ACCOUNT_URL, headers={"accept": "application/json", "api-key": self.api_key})
        except httpx.HTTPError as exc:
            logger.exception("brevo_verify_failed")
            return {"success": False, "error": str(exc)}
        finally:
            if self._client is None:
                client.close()
        if response.status_code >= 400:
            return {"success": False, "error": f"Brevo API error: {response.status_code}"}
        return {"success": True, "message": "Brevo API connection verified successfully"}


def build_email_channel(db: Session) -> NotificationChannel:
    row = get_smtp_settings(db)
    if not row.enabled:
        return SmtpChannel.from_env()
    if row.email_provider == EmailProvider.BREVO:
        return BrevoChannel(
            enabled=True,
            api_key=brevo_api_key(row),
            from_email=row.from_email,
            from_name=row.from_name,
        )
    return SmtpChannel(
        enabled=True,
        host=row.host,
        port=row.port,
        username=row.username,
        password=smtp_password(row),
        use_tls=bool(row.use_tls),
        from_email=row.from_email,
        from_name=row.from_name,
    )


def is_email_enabled(db: Session) -> bool:
    channel = build_email_channel(db)
    return bool(channel.enabled and channel.configured)


def _safe_send_email(channel: NotificationChannel, message: NotificationMessage) -> dict[str, Any]:
    try:
        return channel.send(message)
    except Exception as exc:
        logger.exception(
            "email_send_failed",
            extra={
                "provider": channel.provider,
                "subject": message.subject,
                "recipients": list(message.recipients),
            },
        )
        return {
            "mode": "send_exception",
            "sent": 0,
            "recipients": list(message.recipients),
            "error": str(exc)[:500],
        }


def _wrap_html(branding: BrandingSettings, content: str) -> str:
    logo_header = ""
    if branding.include_logo_in_emails and branding.logo_data:
        logo_header = (
            '<div style="text-align: center; margin-bottom: 20px;">'
            f'<img src="{html.escape(branding.logo_data, quote=True)}" alt="{html.escape(branding.site_name)}" '
            'style="max-height: 80px; max-width: 300px; object-fit: contain;" /></div>'
        )
    footer = ""
    if branding.footer_label:
        footer = f'<p style="color: #6b7280; font-size: 12px;">{html.escape(branding.footer_label)}</p>'
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"{logo_header}{content}{footer}</div>"
    )


def send_template_email(
    db: Session,
    template_key: str,
    recipients: list[str],
    variables: Mapping[str, Any],
) -> dict[str, Any]:
    """Render a stored (or default) template and deliver it.

    Delivery problems never raise: the result dict carries ``sent`` and
    ``mode`` so callers can count failures per recipient.
    """
    branding = get_branding_settings(db)
    template = get_template(db, template_key)
    context = {"siteName": branding.site_name or get_settings().app_name, **variables}
    message = NotificationMessage(
        recipients=[item for item in (normalize_email(value) for value in recipients) if item],
        subject=render(template.subject, context),
        body=render(template.text_body, context),
        html_body=_wrap_html(branding, render(template.html_body, context)),
    )
    result = _safe_send_email(build_email_channel(db), message)
    logger.info(
        "email_dispatch",
        extra={"template": template_key, "mode": result.get("mode"), "sent": result.get("sent", 0)},
    )
    return result


def was_sent(result: Mapping[str, Any]) -> bool:
    return int(result.get("sent", 0) or 0) > 0


def send_test_email(db: Session, recipient: str) -> dict[str, Any]:
    channel = build_email_channel(db)
    if not channel.enabled:
        return {"success": False, "error": "Email settings are not enabled. Please enable them first."}
    if not channel.configured:
        return {"success": False, "error": "Email settings are incomplete.", "channel": channel.config_status()}
    result = send_template_email(db, "test_email", [recipient], {})
    if was_sent(result):
        return {"success": True, "message": f"Test email sent to {recipient}"}
    return {"success": False, "error": str(result.get("error") or result.get("mode") or "EMAIL_NOT_SENT")}
