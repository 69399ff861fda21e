"""Initial asset compliance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="employee"),
        sa.Column("manager_first_name", sa.String(length=128), nullable=True),
        sa.Column("manager_last_name", sa.String(length=128), nullable=True),
        sa.Column("manager_email", sa.String(length=255), nullable=True),
        sa.Column("profile_image", sa.Text(), nullable=True),
        sa.Column("profile_complete", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("mfa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("mfa_secret_enc", sa.Text(), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("oidc_sub", sa.String(length=255), nullable=True),
        _created_at(),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("oidc_sub", name="uq_users_oidc_sub"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_manager_email", "users", ["manager_email"], unique=False)

    op.create_table(
        "mfa_recovery_codes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("code_hash", sa.String(length=255), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_mfa_recovery_codes_user_id", "mfa_recovery_codes", ["user_id"], unique=False)

    op.create_table(
        "companies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "created_date",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("name", name="uq_companies_name"),
    )

    op.create_table(
        "asset_types",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("name", name="uq_asset_types_name"),
    )

    op.create_table(
        "assets",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_first_name", sa.String(length=128), nullable=True),
        sa.Column("employee_last_name", sa.String(length=128), nullable=True),
        sa.Column("employee_email", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=True),
        sa.Column("manager_first_name", sa.String(length=128), nullable=True),
        sa.Column("manager_last_name", sa.String(length=128), nullable=True),
        sa.Column("manager_email", sa.String(length=255), nullable=True),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("asset_type", sa.String(length=64), nullable=False, server_default="laptop"),
        sa.Column("make", sa.String(length=128), nullable=True),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("serial_number", sa.String(length=128), nullable=False),
        sa.Column("asset_tag", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("issued_date", sa.Date(), nullable=True),
        sa.Column("returned_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("registration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["manager_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("serial_number", name="uq_assets_serial_number"),
        sa.UniqueConstraint("asset_tag", name="uq_assets_asset_tag"),
    )
    op.create_index("ix_assets_employee_email", "assets", ["employee_email"], unique=False)
    op.create_index("ix_assets_owner_id", "assets", ["owner_id"], unique=False)
    op.create_index("ix_assets_manager_email", "assets", ["manager_email"], unique=False)
    op.create_index("ix_assets_manager_id", "assets", ["manager_id"], unique=False)
    op.create_index("ix_assets_company_id", "assets", ["company_id"], unique=False)

    op.create_table(
        "attestation_campaigns",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_days", sa.Integer(), nullable=False, server_default=sa.text("7")),
        sa.Column("escalation_days", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("unregistered_reminder_days", sa.Integer(), nullable=False, server_default=sa.text("7")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("target_type", sa.String(length=32), nullable=False, server_default="all"),
        sa.Column("target_user_ids", sa.JSON(), nullable=True),
        sa.Column("target_company_ids", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "attestation_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_sent_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["campaign_id"], ["attestation_campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("campaign_id", "user_id", name="uq_attestation_records_campaign_user"),
    )
    op.create_index("ix_attestation_records_campaign_id", "attestation_records", ["campaign_id"], unique=False)
    op.create_index("ix_attestation_records_user_id", "attestation_records", ["user_id"], unique=False)

    op.create_table(
        "attestation_asset_reviews",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("attestation_record_id", sa.Integer(), nullable=False),
        sa.Column("asset_id", sa.Integer(), nullable=False),
        sa.Column("attested_status", sa.String(length=32), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "attested_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["attestation_record_id"], ["attestation_records.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "attestation_record_id",
            "asset_id",
            name="uq_attestation_asset_reviews_record_asset",
        ),
    )
    op.create_index(
        "ix_attestation_asset_reviews_attestation_record_id",
        "attestation_asset_reviews",
        ["attestation_record_id"],
        unique=False,
    )

    op.create_table(
        "attestation_new_assets",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("attestation_record_id", sa.Integer(), nullable=False),
        sa.Column("asset_type", sa.String(length=64), nullable=False),
        sa.Column("make", sa.String(length=128), nullable=True),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("serial_number", sa.String(length=128), nullable=False),
        sa.Column("asset_tag", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["attestation_record_id"], ["attestation_records.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_attestation_new_assets_attestation_record_id",
        "attestation_new_assets",
        ["attestation_record_id"],
        unique=False,
    )

    op.create_table(
        "attestation_pending_invites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("employee_email", sa.String(length=255), nullable=False),
        sa.Column("employee_first_name", sa.String(length=128), nullable=True),
        sa.Column("employee_last_name", sa.String(length=128), nullable=True),
        sa.Column("invite_token", sa.String(length=128), nullable=False),
        sa.Column("invite_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("registered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_record_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["campaign_id"], ["attestation_campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["converted_record_id"], ["attestation_records.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("invite_token", name="uq_attestation_pending_invites_invite_token"),
        sa.UniqueConstraint(
            "campaign_id",
            "employee_email",
            name="uq_attestation_pending_invites_campaign_email",
        ),
    )
    op.create_index(
        "ix_attestation_pending_invites_campaign_id",
        "attestation_pending_invites",
        ["campaign_id"],
        unique=False,
    )
    op.create_index(
        "ix_attestation_pending_invites_employee_email",
        "attestation_pending_invites",
        ["employee_email"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("entity_name", sa.String(length=255), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.String(length=255), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"], unique=False)
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"], unique=False)
    op.create_index("ix_audit_logs_performed_by", "audit_logs", ["performed_by"], unique=False)
    op.create_index("ix_audit_logs_timestamp", "audit_logs", ["timestamp"], unique=False)

    op.create_table(
        "password_reset_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("token", name="uq_password_reset_tokens_token"),
    )
    op.create_index("ix_password_reset_tokens_user_id", "password_reset_tokens", ["user_id"], unique=False)

    op.create_table(
        "email_verification_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("token_type", sa.String(length=32), nullable=False, server_default="registration"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("token", name="uq_email_verification_tokens_token"),
    )
    op.create_index(
        "ix_email_verification_tokens_user_id",
        "email_verification_tokens",
        ["user_id"],
        unique=False,
    )

    op.create_table(
        "user_passkeys",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False, server_default="Passkey"),
        sa.Column("credential_id", sa.String(length=512), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column("sign_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("transports", sa.JSON(), nullable=True),
        _created_at(),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("credential_id", name="uq_user_passkeys_credential_id"),
    )
    op.create_index("ix_user_passkeys_user_id", "user_passkeys", ["user_id"], unique=False)

    op.create_table(
        "webauthn_challenges",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("purpose", sa.String(length=32), nullable=False),
        sa.Column("challenge", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "smtp_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_provider", sa.String(length=32), nullable=False, server_default="smtp"),
        sa.Column("host", sa.String(length=255), nullable=True),
        sa.Column("port", sa.Integer(), nullable=False, server_default=sa.text("587")),
        sa.Column("use_tls", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("password_enc", sa.Text(), nullable=True),
        sa.Column("brevo_api_key_enc", sa.Text(), nullable=True),
        sa.Column("from_name", sa.String(length=255), nullable=False, server_default="KARS Notifications"),
        sa.Column("from_email", sa.String(length=255), nullable=True),
        sa.Column("default_recipient", sa.String(length=255), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "branding_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("site_name", sa.String(length=255), nullable=False, server_default="KARS"),
        sa.Column("sub_title", sa.String(length=255), nullable=True),
        sa.Column("logo_data", sa.Text(), nullable=True),
        sa.Column("logo_filename", sa.String(length=255), nullable=True),
        sa.Column("favicon_data", sa.Text(), nullable=True),
        sa.Column("primary_color", sa.String(length=16), nullable=False, server_default="#3B82F6"),
        sa.Column("app_url", sa.String(length=512), nullable=True),
        sa.Column("include_logo_in_emails", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("footer_label", sa.String(length=255), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("trust_proxy", sa.Boolean(), nullable=True),
        sa.Column("proxy_type", sa.String(length=32), nullable=True),
        sa.Column("proxy_trust_level", sa.Integer(), nullable=True),
        sa.Column("rate_limit_enabled", sa.Boolean(), nullable=True),
        sa.Column("rate_limit_window_ms", sa.Integer(), nullable=True),
        sa.Column("rate_limit_max_requests", sa.Integer(), nullable=True),
        sa.Column("passkey_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("passkey_rp_id", sa.String(length=255), nullable=True),
        sa.Column("passkey_rp_name", sa.String(length=255), nullable=True),
        sa.Column("passkey_origin", sa.String(length=512), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "oidc_settings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("issuer_url", sa.String(length=512), nullable=True),
        sa.Column("client_id", sa.String(length=255), nullable=True),
        sa.Column("client_secret_enc", sa.Text(), nullable=True),
        sa.Column("redirect_uri", sa.String(length=512), nullable=True),
        sa.Column("scope", sa.String(length=255), nullable=False, server_default="openid email profile"),
        sa.Column("role_claim_path", sa.String(length=255), nullable=False, server_default="roles"),
        sa.Column("default_role", sa.String(length=32), nullable=False, server_default="employee"),
        sa.Column("button_text", sa.String(length=128), nullable=False, server_default="Sign in with SSO"),
        _updated_at(),
    )

    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("html_body", sa.Text(), nullable=False),
        sa.Column("text_body", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=True),
        sa.Column("is_custom", sa.Boolean(), nullable=False, server_default=sa.false()),
        _updated_at(),
        sa.UniqueConstraint("template_key", name="uq_email_templates_template_key"),
    )


def downgrade() -> None:
    op.drop_table("email_templates")
    op.drop_table("oidc_settings")
    op.drop_table("system_settings")
    op.drop_table("branding_settings")
    op.drop_table("smtp_settings")
    op.drop_table("webauthn_challenges")
    op.drop_index("ix_user_passkeys_user_id", table_name="user_passkeys")
    op.drop_table("user_passkeys")
    op.drop_index("ix_email_verification_tokens_user_id", table_name="email_verification_tokens")
    op.drop_table("email_verification_tokens")
    op.drop_index("ix_password_reset_tokens_user_id", table_name="password_reset_tokens")
    op.drop_table("password_reset_tokens")
    op.drop_table("audit_logs")
    op.drop_table("attestation_pending_invites")
    op.drop_table("attestation_new_assets")
    op.drop_table("attestation_asset_reviews")
    op.drop_table("attestation_records")
    op.drop_table("attestation_campaigns")
    op.drop_table("assets")
    op.drop_table("asset_types")
    op.drop_table("companies")
    op.drop_table("mfa_recovery_codes")
    op.drop_table("users")
