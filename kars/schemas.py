from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from kars.models import AssetStatus, CampaignTargetType, UserRole


# Auth


class RegisterRequest(BaseModel):
    email: str | None = None
    password: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    manager_name: str | None = None
    manager_first_name: str | None = None
    manager_last_name: str | None = None
    manager_email: str | None = None


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class MfaVerifyLoginRequest(BaseModel):
    mfaSessionId: str = Field(min_length=1)
    token: str = Field(min_length=1, max_length=64)
    useBackupCode: bool = False


class MfaCodeRequest(BaseModel):
    token: str = Field(min_length=1, max_length=64)


class MfaDisableRequest(BaseModel):
    password: str = Field(min_length=1)
    token: str = Field(min_length=1, max_length=64)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


class EmailChangeRequest(BaseModel):
    newEmail: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1)


class ProfileUpdateRequest(BaseModel):
    first_name: str = Field(min_length=1, max_length=128)
    last_name: str = Field(min_length=1, max_length=128)
    manager_first_name: str | None = Field(default=None, max_length=128)
    manager_last_name: str | None = Field(default=None, max_length=128)
    manager_email: str | None = Field(default=None, max_length=255)
    profile_image: str | None = None


class CompleteProfileRequest(BaseModel):
    manager_first_name: str = Field(min_length=1, max_length=128)
    manager_last_name: str = Field(min_length=1, max_length=128)
    manager_email: str = Field(min_length=3, max_length=255)


class ChangePasswordRequest(BaseModel):
    currentPassword: str = Field(min_length=1)
    newPassword: str = Field(min_length=1)
    confirmPassword: str = Field(min_length=1)


class RoleUpdateRequest(BaseModel):
    role: str = Field(min_length=1, max_length=32)


class UserRead(BaseModel):
    id: int
    email: str
    name: str
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole
    manager_first_name: str | None = None
    manager_last_name: str | None = None
    manager_email: str | None = None
    mfa_enabled: bool
    profile_complete: bool
    profile_image: str | None = None
    email_verified: bool
    oidc_linked: bool = False
    created_at: datetime | None = None
    last_login: datetime | None = None


class PasskeyRegistrationVerifyRequest(BaseModel):
    challenge_id: int = Field(ge=1)
    credential: dict[str, Any]
    name: str | None = Field(default=None, max_length=128)


class PasskeyAuthOptionsRequest(BaseModel):
    email: str | None = Field(default=None, max_length=255)


class PasskeyAuthVerifyRequest(BaseModel):
    challenge_id: int = Field(ge=1)
    credential: dict[str, Any]


class PasskeyRead(BaseModel):
    id: int
    name: str
    credential_id: str
    transports: list[str] | None = None
    created_at: datetime
    last_used_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


# Assets, companies, asset types


class AssetCreate(BaseModel):
    employee_first_name: str | None = Field(default=None, max_length=128)
    employee_last_name: str | None = Field(default=None, max_length=128)
    employee_email: str | None = Field(default=None, max_length=255)
    manager_first_name: str | None = Field(default=None, max_length=128)
    manager_last_name: str | None = Field(default=None, max_length=128)
    manager_email: str | None = Field(default=None, max_length=255)
    company_id: int | None = Field(default=None, ge=1)
    company_name: str | None = Field(default=None, max_length=255)
    asset_type: str | None = Field(default=None, max_length=64)
    make: str | None = Field(default=None, max_length=128)
    model: str | None = Field(default=None, max_length=128)
    serial_number: str | None = Field(default=None, max_length=128)
    asset_tag: str | None = Field(default=None, max_length=128)
    status: str | None = None
    issued_date: date | None = None
    returned_date: date | None = None
    notes: str | None = None


class AssetUpdate(AssetCreate):
    pass


class AssetStatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    notes: str | None = None


class AssetBulkStatusRequest(BaseModel):
    ids: list[int] = Field(min_length=1)
    status: str = Field(min_length=1, max_length=32)


class AssetBulkDeleteRequest(BaseModel):
    ids: list[int] = Field(min_length=1)


class AssetRead(BaseModel):
    id: int
    employee_first_name: str | None = None
    employee_last_name: str | None = None
    employee_name: str
    employee_email: str
    owner_id: int | None = None
    manager_first_name: str | None = None
    manager_last_name: str | None = None
    manager_name: str
    manager_email: str | None = None
    manager_id: int | None = None
    company_id: int | None = None
    company_name: str | None = None
    asset_type: str
    make: str | None = None
    model: str | None = None
    serial_number: str
    asset_tag: str
    status: AssetStatus
    issued_date: date | None = None
    returned_date: date | None = None
    notes: str | None = None
    registration_date: datetime | None = None
    last_updated: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None


class CompanyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class CompanyRead(BaseModel):
    id: int
    name: str
    description: str | None = None
    created_date: datetime

    model_config = ConfigDict(from_attributes=True)


class AssetTypeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=128)
    sort_order: int = 0


class AssetTypeUpdate(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=128)
    is_active: bool | None = None
    sort_order: int | None = None


class AssetTypeRead(BaseModel):
    id: int
    name: str
    display_name: str
    is_active: bool
    sort_order: int

    model_config = ConfigDict(from_attributes=True)


class ImportResult(BaseModel):
    imported: int
    failed: int
    errors: list[dict[str, Any]] = Field(default_factory=list)


# Attestation


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    reminder_days: int = Field(default=7, ge=1, le=365)
    escalation_days: int = Field(default=10, ge=1, le=365)
    unregistered_reminder_days: int = Field(default=7, ge=1, le=365)
    target_type: CampaignTargetType = CampaignTargetType.ALL
    target_user_ids: list[int] | None = None
    target_company_ids: list[int] | None = None


class CampaignUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    reminder_days: int | None = Field(default=None, ge=1, le=365)
    escalation_days: int | None = Field(default=None, ge=1, le=365)
    unregistered_reminder_days: int | None = Field(default=None, ge=1, le=365)
    target_type: CampaignTargetType | None = None
    target_user_ids: list[int] | None = None
    target_company_ids: list[int] | None = None


class EscalateRequest(BaseModel):
    message: str | None = Field(default=None, max_length=2000)


class AssetReviewRequest(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    notes: str | None = None


class AttestationNewAssetRequest(BaseModel):
    asset_type: str | None = Field(default=None, max_length=64)
    make: str | None = Field(default=None, max_length=128)
    model: str | None = Field(default=None, max_length=128)
    serial_number: str | None = Field(default=None, max_length=128)
    asset_tag: str | None = Field(default=None, max_length=128)
    company_id: int | None = Field(default=None, ge=1)
    notes: str | None = None


# Administration


class NotificationSettingsUpdate(BaseModel):
    enabled: bool | None = None
    email_provider: Literal["smtp", "brevo"] | None = None
    host: str | None = Field(default=None, max_length=255)
    port: int | None = Field(default=None, ge=1, le=65535)
    use_tls: bool | None = None
    username: str | None = Field(default=None, max_length=255)
    password: str | None = None
    clear_password: bool = False
    brevo_api_key: str | None = None
    clear_brevo_api_key: bool = False
    from_name: str | None = Field(default=None, max_length=255)
    from_email: str | None = Field(default=None, max_length=255)
    default_recipient: str | None = Field(default=None, max_length=255)


class NotificationTestRequest(BaseModel):
    recipient: str | None = Field(default=None, max_length=255)


class EmailTemplateUpdate(BaseModel):
    subject: str | None = Field(default=None, min_length=1, max_length=512)
    html_body: str | None = Field(default=None, min_length=1)
    text_body: str | None = Field(default=None, min_length=1)


class BrandingUpdate(BaseModel):
    site_name: str | None = Field(default=None, max_length=255)
    sub_title: str | None = Field(default=None, max_length=255)
    logo_data: str | None = None
    logo_filename: str | None = Field(default=None, max_length=255)
    favicon_data: str | None = None
    primary_color: str | None = Field(default=None, max_length=16)
    app_url: str | None = Field(default=None, max_length=512)
    include_logo_in_emails: bool | None = None
    footer_label: str | None = Field(default=None, max_length=255)


class ProxySettingsUpdate(BaseModel):
    enabled: bool | None = None
    type: Literal["cloudflare", "standard", "custom"] | None = None
    trustLevel: int | None = Field(default=None, ge=0)


class RateLimitSettingsUpdate(BaseModel):
    enabled: bool | None = None
    windowMs: int | None = Field(default=None, ge=1000)
    maxRequests: int | None = Field(default=None, ge=1)


class SystemSettingsUpdate(BaseModel):
    proxy: ProxySettingsUpdate | None = None
    rateLimiting: RateLimitSettingsUpdate | None = None


class PasskeySettingsUpdate(BaseModel):
    enabled: bool | None = None
    rp_id: str | None = Field(default=None, max_length=255)
    rp_name: str | None = Field(default=None, max_length=255)
    origin: str | None = Field(default=None, max_length=512)


class OidcSettingsUpdate(BaseModel):
    enabled: bool | None = None
    issuer_url: str | None = Field(default=None, max_length=512)
    client_id: str | None = Field(default=None, max_length=255)
    client_secret: str | None = None
    clear_client_secret: bool = False
    redirect_uri: str | None = Field(default=None, max_length=512)
    scope: str | None = Field(default=None, max_length=255)
    role_claim_path: str | None = Field(default=None, max_length=255)
    default_role: str | None = Field(default=None, max_length=32)
    button_text: str | None = Field(default=None, max_length=128)


class DangerZoneRequest(BaseModel):
    confirmation: str = Field(min_length=1)
