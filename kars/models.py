from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kars.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    COORDINATOR = "coordinator"
    EMPLOYEE = "employee"


class AssetStatus(str, enum.Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"
    RETIRED = "retired"


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CampaignTargetType(str, enum.Enum):
    ALL = "all"
    SELECTED = "selected"
    COMPANIES = "companies"


class RecordStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class VerificationTokenType(str, enum.Enum):
    REGISTRATION = "registration"
    EMAIL_CHANGE = "email_change"


class EmailProvider(str, enum.Enum):
    SMTP = "smtp"
    BREVO = "brevo"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"),
        nullable=False,
        default=UserRole.EMPLOYEE,
    )
    manager_first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manager_last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manager_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    profile_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    profile_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    mfa_secret_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    oidc_sub: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    passkeys: Mapped[list[UserPasskey]] = relationship(back_populates="user", cascade="all, delete-orphan")
    attestation_records: Mapped[list[AttestationRecord]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
    )

    @property
    def manager_name(self) -> str | None:
        parts = [part for part in (self.manager_first_name, self.manager_last_name) if part]
        return " ".join(parts) or None


class MfaRecoveryCode(Base):
    __tablename__ = "mfa_recovery_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    assets: Mapped[list[Asset]] = relationship(back_populates="company")


class AssetType(Base):
    __tablename__ = "asset_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    employee_last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    employee_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    owner_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    manager_first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manager_last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    manager_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    company_id: Mapped[int | None] = mapped_column(
        ForeignKey("companies.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    asset_type: Mapped[str] = mapped_column(String(64), nullable=False, default="laptop")
    make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    serial_number: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    asset_tag: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[AssetStatus] = mapped_column(
        _enum_column(AssetStatus, "asset_status"),
        nullable=False,
        default=AssetStatus.ACTIVE,
    )
    issued_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    returned_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    registration_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=_utcnow,
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    company: Mapped[Company | None] = relationship(back_populates="assets")

    @property
    def employee_name(self) -> str:
        parts = [part for part in (self.employee_first_name, self.employee_last_name) if part]
        return " ".join(parts)

    @property
    def manager_name(self) -> str:
        parts = [part for part in (self.manager_first_name, self.manager_last_name) if part]
        return " ".join(parts)

    @property
    def company_name(self) -> str | None:
        return self.company.name if self.company is not None else None


class AttestationCampaign(Base):
    __tablename__ = "attestation_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    escalation_days: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    unregistered_reminder_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    status: Mapped[CampaignStatus] = mapped_column(
        _enum_column(CampaignStatus, "campaign_status"),
        nullable=False,
        default=CampaignStatus.DRAFT,
    )
    target_type: Mapped[CampaignTargetType] = mapped_column(
        _enum_column(CampaignTargetType, "campaign_target_type"),
        nullable=False,
        default=CampaignTargetType.ALL,
    )
    target_user_ids: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    target_company_ids: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    records: Mapped[list[AttestationRecord]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
    )
    pending_invites: Mapped[list[AttestationPendingInvite]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
    )


class AttestationRecord(Base):
    __tablename__ = "attestation_records"
    __table_args__ = (UniqueConstraint("campaign_id", "user_id", name="uq_attestation_records_campaign_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    campaign_id: Mapped[int] = mapped_column(
        ForeignKey("attestation_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[RecordStatus] = mapped_column(
        _enum_column(RecordStatus, "attestation_record_status"),
        nullable=False,
        default=RecordStatus.PENDING,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    campaign: Mapped[AttestationCampaign] = relationship(back_populates="records")
    user: Mapped[User] = relationship(back_populates="attestation_records")
    asset_reviews: Mapped[list[AttestationAssetReview]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
    )
    new_assets: Mapped[list[AttestationNewAsset]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
    )


class AttestationAssetReview(Base):
    __tablename__ = "attestation_asset_reviews"
    __table_args__ = (
        UniqueConstraint("attestation_record_id", "asset_id", name="uq_attestation_asset_reviews_record_asset"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attestation_record_id: Mapped[int] = mapped_column(
        ForeignKey("attestation_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    asset_id: Mapped[int] = mapped_column(ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    attested_status: Mapped[AssetStatus] = mapped_column(
        _enum_column(AssetStatus, "asset_status"),
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    attested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    record: Mapped[AttestationRecord] = relationship(back_populates="asset_reviews")


class AttestationNewAsset(Base):
    __tablename__ = "attestation_new_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attestation_record_id: Mapped[int] = mapped_column(
        ForeignKey("attestation_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    asset_type: Mapped[str] = mapped_column(String(64), nullable=False)
    make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    serial_number: Mapped[str] = mapped_column(String(128), nullable=False)
    asset_tag: Mapped[str] = mapped_column(String(128), nullable=False)
    company_id: Mapped[int | None] = mapped_column(ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    record: Mapped[AttestationRecord] = relationship(back_populates="new_assets")


class AttestationPendingInvite(Base):
    __tablename__ = "attestation_pending_invites"
    __table_args__ = (
        UniqueConstraint("campaign_id", "employee_email", name="uq_attestation_pending_invites_campaign_email"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    campaign_id: Mapped[int] = mapped_column(
        ForeignKey("attestation_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    employee_first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    employee_last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invite_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    invite_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_record_id: Mapped[int | None] = mapped_column(
        ForeignKey("attestation_records.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    campaign: Mapped[AttestationCampaign] = relationship(back_populates="pending_invites")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    entity_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True,
    )


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EmailVerificationToken(Base):
    __tablename__ = "email_verification_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    token_type: Mapped[VerificationTokenType] = mapped_column(
        _enum_column(VerificationTokenType, "verification_token_type"),
        nullable=False,
        default=VerificationTokenType.REGISTRATION,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class UserPasskey(Base):
    __tablename__ = "user_passkeys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, default="Passkey")
    credential_id: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    sign_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transports: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship(back_populates="passkeys")


class WebAuthnChallenge(Base):
    __tablename__ = "webauthn_challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    challenge: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SmtpSettings(Base):
    __tablename__ = "smtp_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_provider: Mapped[EmailProvider] = mapped_column(
        _enum_column(EmailProvider, "email_provider"),
        nullable=False,
        default=EmailProvider.SMTP,
    )
    host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=587)
    use_tls: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    brevo_api_key_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_name: Mapped[str] = mapped_column(String(255), nullable=False, default="KARS Notifications")
    from_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    default_recipient: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class BrandingSettings(Base):
    __tablename__ = "branding_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_name: Mapped[str] = mapped_column(String(255), nullable=False, default="KARS")
    sub_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    logo_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    logo_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    favicon_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#3B82F6")
    app_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    include_logo_in_emails: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    footer_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class SystemSettings(Base):
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trust_proxy: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    proxy_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    proxy_trust_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    rate_limit_window_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_max_requests: Mapped[int | None] = mapped_column(Integer, nullable=True)
    passkey_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    passkey_rp_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    passkey_rp_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    passkey_origin: Mapped[str | None] = mapped_column(String(512), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class OidcSettings(Base):
    __tablename__ = "oidc_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    issuer_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_secret_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
    redirect_uri: Mapped[str | None] = mapped_column(String(512), nullable=True)
    scope: Mapped[str] = mapped_column(String(255), nullable=False, default="openid email profile")
    role_claim_path: Mapped[str] = mapped_column(String(255), nullable=False, default="roles")
    default_role: Mapped[str] = mapped_column(String(32), nullable=False, default="employee")
    button_text: Mapped[str] = mapped_column(String(128), nullable=False, default="Sign in with SSO")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    html_body: Mapped[str] = mapped_column(Text, nullable=False)
    text_body: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

