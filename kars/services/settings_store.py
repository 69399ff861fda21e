from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy.orm import Session

from kars.errors import ApiError, validation_error
from kars.models import BrandingSettings, EmailProvider, OidcSettings, SmtpSettings, SystemSettings
from kars.services.encryption import decrypt_secret, encrypt_secret
from kars.settings import get_app_url, get_passkey_origin, get_passkey_rp_id, get_settings

SETTINGS_ROW_ID = 1
DEFAULT_RATE_LIMIT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 100
VALID_PROXY_TYPES = {"cloudflare", "standard", "custom"}

SettingsRow = TypeVar("SettingsRow", SmtpSettings, BrandingSettings, SystemSettings, OidcSettings)


def _get_or_create(db: Session, model: type[SettingsRow]) -> SettingsRow:
    row = db.get(model, SETTINGS_ROW_ID)
    if row is None:
        row = model(id=SETTINGS_ROW_ID)
        db.add(row)
        db.flush()
    return row


def get_smtp_settings(db: Session) -> SmtpSettings:
    return _get_or_create(db, SmtpSettings)


def get_branding_settings(db: Session) -> BrandingSettings:
    return _get_or_create(db, BrandingSettings)


def get_system_settings(db: Session) -> SystemSettings:
    return _get_or_create(db, SystemSettings)


def get_oidc_settings(db: Session) -> OidcSettings:
    return _get_or_create(db, OidcSettings)


def resolve_app_url(db: Session) -> str:
    return get_app_url(get_branding_settings(db).app_url)


# Notification (SMTP / Brevo) settings


def serialize_smtp_settings(row: SmtpSettings) -> dict[str, Any]:
    return {
        "enabled": bool(row.enabled),
        "email_provider": row.email_provider.value if row.email_provider else EmailProvider.SMTP.value,
        "host": row.host,
        "port": row.port,
        "use_tls": bool(row.use_tls),
        "username": row.username,
        "has_password": bool(row.password_enc),
        "has_brevo_api_key": bool(row.brevo_api_key_enc),
        "from_name": row.from_name,
        "from_email": row.from_email,
        "default_recipient": row.default_recipient,
    }


def update_smtp_settings(db: Session, changes: dict[str, Any]) -> SmtpSettings:
    row = get_smtp_settings(db)
    for field in ("enabled", "host", "port", "use_tls", "username", "from_name", "from_email", "default_recipient"):
        if field in changes:
            setattr(row, field, changes[field])

    if "email_provider" in changes and changes["email_provider"] is not None:
        try:
            row.email_provider = EmailProvider(changes["email_provider"])
        except ValueError as exc:
            raise ApiError(
                status_code=400,
                code="VALIDATION_ERROR",
                message="email_provider must be 'smtp' or 'brevo'",
            ) from exc

    if changes.get("clear_password"):
        row.password_enc = None
    elif changes.get("password"):
        row.password_enc = encrypt_secret(changes["password"])

    if changes.get("clear_brevo_api_key"):
        row.brevo_api_key_enc = None
    elif changes.get("brevo_api_key"):
        row.brevo_api_key_enc = encrypt_secret(changes["brevo_api_key"])

    if row.enabled:
        if row.email_provider == EmailProvider.BREVO and not row.brevo_api_key_enc:
            raise validation_error("Brevo API key is required")
        if row.email_provider == EmailProvider.SMTP and not (row.host or "").strip():
            raise validation_error("SMTP host is required")
        if not (row.from_email or "").strip():
            raise validation_error("From email is required")
    db.commit()
    db.refresh(row)
    return row


def smtp_password(row: SmtpSettings) -> str | None:
    return decrypt_secret(row.password_enc)


def brevo_api_key(row: SmtpSettings) -> str | None:
    return decrypt_secret(row.brevo_api_key_enc)


# Branding


def serialize_branding(row: BrandingSettings) -> dict[str, Any]:
    return {
        "site_name": row.site_name,
        "sub_title": row.sub_title,
        "logo_data": row.logo_data,
        "logo_filename": row.logo_filename,
        "favicon_data": row.favicon_data,
        "primary_color": row.primary_color,
        "app_url": row.app_url,
        "include_logo_in_emails": bool(row.include_logo_in_emails),
        "footer_label": row.footer_label,
    }


def update_branding(db: Session, changes: dict[str, Any]) -> BrandingSettings:
    row = get_branding_settings(db)
    for field in (
        "site_name",
        "sub_title",
        "logo_data",
        "logo_filename",
        "favicon_data",
        "primary_color",
        "app_url",
        "include_logo_in_emails",
        "footer_label",
    ):
        if field in changes:
            setattr(row, field, changes[field])
    if not (row.site_name or "").strip():
        row.site_name = "KARS"
    db.commit()
    db.refresh(row)
    return row


# System settings (proxy, rate limiting, passkeys)


def _effective(db_value: Any, env_value: Any, default: Any) -> dict[str, Any]:
    if db_value is not None:
        return {"value": db_value, "source": "database"}
    if env_value is not None:
        return {"value": env_value, "source": "env"}
    return {"value": default, "source": "default"}


def effective_rate_limit(row: SystemSettings) -> dict[str, dict[str, Any]]:
    settings = get_settings()
    return {
        "enabled": _effective(row.rate_limit_enabled, settings.rate_limit_enabled, True),
        "windowMs": _effective(row.rate_limit_window_ms, settings.rate_limit_window_ms, DEFAULT_RATE_LIMIT_WINDOW_MS),
        "maxRequests": _effective(
            row.rate_limit_max_requests,
            settings.rate_limit_max_requests,
            DEFAULT_RATE_LIMIT_MAX_REQUESTS,
        ),
    }


def effective_proxy(row: SystemSettings) -> dict[str, dict[str, Any]]:
    settings = get_settings()
    return {
        "enabled": _effective(row.trust_proxy, settings.trust_proxy, False),
        "type": _effective(row.proxy_type, settings.proxy_type, "standard"),
        "trustLevel": _effective(row.proxy_trust_level, settings.proxy_trust_level, 1),
    }


def serialize_system_settings(row: SystemSettings) -> dict[str, Any]:
    return {
        "proxy": effective_proxy(row),
        "rateLimiting": effective_rate_limit(row),
    }


def update_system_settings(db: Session, changes: dict[str, Any]) -> tuple[SystemSettings, bool]:
    row = get_system_settings(db)
    restart_required = False

    proxy = changes.get("proxy") or {}
    if "enabled" in proxy:
        row.trust_proxy = proxy["enabled"]
        restart_required = True
    if "type" in proxy:
        proxy_type = proxy["type"]
        if proxy_type is not None and proxy_type not in VALID_PROXY_TYPES:
            raise validation_error("Invalid proxy type")
        row.proxy_type = proxy_type
        restart_required = True
    if "trustLevel" in proxy:
        level = proxy["trustLevel"]
        if level is not None and int(level) < 0:
            raise validation_error("trustLevel must be >= 0")
        row.proxy_trust_level = level
        restart_required = True

    rate_limiting = changes.get("rateLimiting") or {}
    if "enabled" in rate_limiting:
        row.rate_limit_enabled = rate_limiting["enabled"]
        restart_required = True
    if "windowMs" in rate_limiting:
        window_ms = rate_limiting["windowMs"]
        if window_ms is not None and int(window_ms) < 1000:
            raise validation_error("windowMs must be at least 1000")
        row.rate_limit_window_ms = window_ms
        restart_required = True
    if "maxRequests" in rate_limiting:
        max_requests = rate_limiting["maxRequests"]
        if max_requests is not None and int(max_requests) < 1:
            raise validation_error("maxRequests must be at least 1")
        row.rate_limit_max_requests = max_requests
        restart_required = True

    db.commit()
    db.refresh(row)
    return row, restart_required


def serialize_passkey_settings(row: SystemSettings) -> dict[str, Any]:
    return {
        "enabled": bool(row.passkey_enabled),
        "rp_id": get_passkey_rp_id(row.passkey_rp_id),
        "rp_name": row.passkey_rp_name or get_settings().passkey_rp_name,
        "origin": get_passkey_origin(row.passkey_origin),
        "managed_by_env": bool(get_settings().passkey_rp_id or get_settings().passkey_origin),
    }


def update_passkey_settings(db: Session, changes: dict[str, Any]) -> SystemSettings:
    row = get_system_settings(db)
    if "enabled" in changes and changes["enabled"] is not None:
        row.passkey_enabled = bool(changes["enabled"])
    for source, target in (("rp_id", "passkey_rp_id"), ("rp_name", "passkey_rp_name"), ("origin", "passkey_origin")):
        if source in changes:
            value = changes[source]
            setattr(row, target, value.strip() if isinstance(value, str) and value.strip() else None)
    db.commit()
    db.refresh(row)
    return row


# OIDC


def resolve_oidc_config(db: Session) -> dict[str, Any]:
    """Database row wins over environment once an issuer has been stored there."""
    row = get_oidc_settings(db)
    settings = get_settings()
    if row.issuer_url:
        return {
            "enabled": bool(row.enabled),
            "issuer_url": row.issuer_url,
            "client_id": row.client_id,
            "client_secret": decrypt_secret(row.client_secret_enc),
            "redirect_uri": row.redirect_uri,
            "scope": row.scope,
            "role_claim_path": row.role_claim_path,
            "default_role": row.default_role,
            "button_text": row.button_text,
        }
    return {
        "enabled": bool(settings.oidc_enabled),
        "issuer_url": settings.oidc_issuer_url,
        "client_id": settings.oidc_client_id,
        "client_secret": settings.oidc_client_secret,
        "redirect_uri": settings.oidc_redirect_uri,
        "scope": settings.oidc_scope,
        "role_claim_path": settings.oidc_role_claim_path,
        "default_role": settings.oidc_default_role,
        "button_text": row.button_text,
    }


def serialize_oidc_settings(row: OidcSettings) -> dict[str, Any]:
    return {
        "enabled": bool(row.enabled),
        "issuer_url": row.issuer_url,
        "client_id": row.client_id,
        "has_client_secret": bool(row.client_secret_enc),
        "redirect_uri": row.redirect_uri,
        "scope": row.scope,
        "role_claim_path": row.role_claim_path,
        "default_role": row.default_role,
        "button_text": row.button_text,
    }


def update_oidc_settings(db: Session, changes: dict[str, Any]) -> OidcSettings:
    row = get_oidc_settings(db)
    for field in ("enabled", "issuer_url", "client_id", "redirect_uri", "scope", "role_claim_path", "button_text"):
        if field in changes and changes[field] is not None:
            setattr(row, field, changes[field])
    if "default_role" in changes and changes["default_role"] is not None:
        if changes["default_role"] not in {"admin", "manager", "coordinator", "employee"}:
            raise validation_error("Invalid default role")
        row.default_role = changes["default_role"]
    if changes.get("clear_client_secret"):
        row.client_secret_enc = None
    elif changes.get("client_secret"):
        row.client_secret_enc = encrypt_secret(changes["client_secret"])

    if row.enabled and not (row.issuer_url and row.client_id and row.redirect_uri):
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="issuer_url, client_id and redirect_uri are required when OIDC is enabled",
        )
    db.commit()
    db.refresh(row)
    return row
