from functools import lru_cache
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/kars.db"
    auto_create_schema: bool = True
    schema_guard_strict: bool = False
    jwt_secret: str = "change-me"
    jwt_issuer: str = "kars"
    jwt_audience: str = "kars-api"
    access_token_minutes: int = 7 * 24 * 60
    app_name: str = "KARS"
    log_level: str = "INFO"
    cors_allow_origins: str = "http://127.0.0.1:3000,http://localhost:3000"
    frontend_url: str | None = None
    base_url: str | None = None
    admin_email: str | None = None

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_pass: str | None = None
    smtp_from: str | None = None
    smtp_use_tls: bool = True

    kars_master_key: str | None = None

    passkey_rp_id: str | None = None
    passkey_rp_name: str = "KARS - KeyData Asset Registration System"
    passkey_origin: str | None = None
    passkey_challenge_minutes: int = 5

    oidc_enabled: bool = False
    oidc_issuer_url: str | None = None
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_redirect_uri: str | None = None
    oidc_scope: str = "openid email profile"
    oidc_role_claim_path: str = "roles"
    oidc_default_role: str = "employee"
    oidc_state_ttl_seconds: int = 600

    mfa_step_seconds: int = 30
    mfa_window_steps: int = 1
    mfa_session_seconds: int = 300
    mfa_backup_code_count: int = 10

    password_reset_minutes: int = 60
    email_verification_hours: int = 24

    rate_limit_enabled: bool | None = None
    rate_limit_window_ms: int | None = None
    rate_limit_max_requests: int | None = None
    auth_rate_limit_max_requests: int = 10
    password_reset_rate_limit_max_requests: int = 3

    trust_proxy: bool | None = None
    proxy_type: str | None = None
    proxy_trust_level: int | None = None

    attestation_scheduler_enabled: bool = False
    attestation_scheduler_interval_seconds: int = 24 * 60 * 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_cors_origins() -> list[str]:
    raw = get_settings().cors_allow_origins
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_app_url(branding_app_url: str | None = None) -> str:
    settings = get_settings()
    for candidate in (branding_app_url, settings.frontend_url, settings.base_url):
        if candidate and candidate.strip():
            return candidate.strip().rstrip("/")
    return "http://localhost:3000"


def get_passkey_origin(override: str | None = None) -> str:
    if override and override.strip():
        return override.strip().rstrip("/")
    settings = get_settings()
    if settings.passkey_origin:
        return settings.passkey_origin.rstrip("/")
    return get_app_url()


def get_passkey_rp_id(override: str | None = None) -> str:
    if override and override.strip():
        return override.strip().lower()
    settings = get_settings()
    if settings.passkey_rp_id:
        return settings.passkey_rp_id.strip().lower()

    parsed = urlparse(get_passkey_origin())
    host = (parsed.hostname or "").strip().lower()
    if not host:
        return "localhost"
    return host
