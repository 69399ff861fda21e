from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from kars.errors import not_found, validation_error
from kars.models import EmailTemplate

_VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


@dataclass(frozen=True, slots=True)
class TemplateDefinition:
    key: str
    name: str
    description: str
    subject: str
    html_body: str
    text_body: str
    variables: tuple[str, ...]


DEFAULT_TEMPLATES: dict[str, TemplateDefinition] = {
    item.key: item
    for item in (
        TemplateDefinition(
            key="test_email",
            name="Test Email",
            description="Sent from the notification settings page to verify delivery.",
            subject="{{siteName}} - Test Email",
            html_body=(
                "<h2>Email configuration test</h2>"
                "<p>This is a test email from {{siteName}}.</p>"
                "<p>If you received this, your email settings are working.</p>"
            ),
            text_body="This is a test email from {{siteName}}. If you received this, your email settings are working.",
            variables=("siteName",),
        ),
        TemplateDefinition(
            key="password_reset",
            name="Password Reset",
            description="Password reset link requested from the sign-in page.",
            subject="{{siteName}} - Password Reset Request",
            html_body=(
                "<h2>Password reset</h2>"
                "<p>We received a request to reset your password.</p>"
                '<p><a href="{{resetUrl}}">Reset your password</a></p>'
                "<p>This link expires in {{expiryTime}}. If you did not request it, ignore this email.</p>"
            ),
            text_body=(
                "We received a request to reset your password.\n\n"
                "Reset it here: {{resetUrl}}\n\n"
                "This link expires in {{expiryTime}}. If you did not request it, ignore this email."
            ),
            variables=("siteName", "resetUrl", "expiryTime"),
        ),
        TemplateDefinition(
            key="email_verification",
            name="Email Verification",
            description="Confirms a new account or a changed email address.",
            subject="{{siteName}} - Verify your email address",
            html_body=(
                "<h2>Verify your email</h2>"
                "<p>Hi {{firstName}},</p>"
                '<p>Please confirm your email address: <a href="{{verificationUrl}}">Verify email</a></p>'
                "<p>This link expires in {{expiryTime}}.</p>"
            ),
            text_body=(
                "Hi {{firstName}},\n\nPlease confirm your email address: {{verificationUrl}}\n\n"
                "This link expires in {{expiryTime}}."
            ),
            variables=("siteName", "firstName", "verificationUrl", "expiryTime"),
        ),
        TemplateDefinition(
            key="attestation_ready",
            name="Attestation Ready",
            description="Sent to registered employees when a campaign starts.",
            subject="{{siteName}} - Asset attestation required: {{campaignName}}",
            html_body=(
                "<h2>{{campaignName}}</h2>"
                "<p>Hi {{firstName}},</p>"
                "<p>{{campaignDescription}}</p>"
                "<p>Please review and attest to the assets assigned to you by {{endDate}}.</p>"
                '<p><a href="{{attestationUrl}}">Start attestation</a></p>'
            ),
            text_body=(
                "Hi {{firstName}},\n\n{{campaignDescription}}\n\n"
                "Please review and attest to the assets assigned to you by {{endDate}}.\n\n{{attestationUrl}}"
            ),
            variables=("siteName", "firstName", "campaignName", "campaignDescription", "endDate", "attestationUrl"),
        ),
        TemplateDefinition(
            key="attestation_reminder",
            name="Attestation Reminder",
            description="Reminder for employees who have not completed their attestation.",
            subject="{{siteName}} - Reminder: {{campaignName}}",
            html_body=(
                "<h2>Attestation reminder</h2>"
                "<p>Hi {{firstName}},</p>"
                "<p>Your attestation for <strong>{{campaignName}}</strong> is still pending.</p>"
                '<p><a href="{{attestationUrl}}">Complete attestation</a></p>'
            ),
            text_body=(
                "Hi {{firstName}},\n\nYour attestation for {{campaignName}} is still pending.\n\n{{attestationUrl}}"
            ),
            variables=("siteName", "firstName", "campaignName", "endDate", "attestationUrl"),
        ),
        TemplateDefinition(
            key="attestation_escalation",
            name="Attestation Escalation",
            description="Sent to the manager of an employee with an overdue attestation.",
            subject="{{siteName}} - Overdue attestation: {{employeeName}}",
            html_body=(
                "<h2>Overdue attestation</h2>"
                "<p>Hi {{managerName}},</p>"
                "<p>{{employeeName}} ({{employeeEmail}}) has not completed the attestation for "
                "<strong>{{campaignName}}</strong> after {{escalationDays}} days.</p>"
                "<p>{{customMessage}}</p>"
            ),
            text_body=(
                "Hi {{managerName}},\n\n{{employeeName}} ({{employeeEmail}}) has not completed the attestation for "
                "{{campaignName}} after {{escalationDays}} days.\n\n{{customMessage}}"
            ),
            variables=(
                "siteName",
                "managerName",
                "employeeName",
                "employeeEmail",
                "campaignName",
                "escalationDays",
                "customMessage",
            ),
        ),
        TemplateDefinition(
            key="attestation_registration_invite",
            name="Attestation Registration Invite",
            description="Invites an asset owner without an account to register and attest.",
            subject="{{siteName}} - Action required: {{campaignName}}",
            html_body=(
                "<h2>{{campaignName}}</h2>"
                "<p>Hi {{firstName}} {{lastName}},</p>"
                "<p>{{campaignDescription}}</p>"
                "<p>You have {{assetCount}} asset(s) registered to you. Please create an account and complete "
                "your attestation by {{endDate}}.</p>"
                '<p><a href="{{registerUrl}}">Register now</a></p>'
            ),
            text_body=(
                "Hi {{firstName}} {{lastName}},\n\n{{campaignDescription}}\n\n"
                "You have {{assetCount}} asset(s) registered to you. Please create an account and complete "
                "your attestation by {{endDate}}.\n\n{{registerUrl}}"
            ),
            variables=(
                "siteName",
                "firstName",
                "lastName",
                "assetCount",
                "campaignName",
                "campaignDescription",
                "endDate",
                "registerUrl",
            ),
        ),
        TemplateDefinition(
            key="attestation_unregistered_reminder",
            name="Attestation Unregistered Reminder",
            description="Reminder for invited asset owners who have not registered yet.",
            subject="{{siteName}} - Reminder: register for {{campaignName}}",
            html_body=(
                "<h2>Reminder: {{campaignName}}</h2>"
                "<p>Hi {{firstName}} {{lastName}},</p>"
                "<p>{{campaignDescription}}</p>"
                "<p>You still have {{assetCount}} asset(s) awaiting attestation. The campaign ends {{endDate}}.</p>"
                '<p><a href="{{registerUrl}}">Register now</a></p>'
            ),
            text_body=(
                "Hi {{firstName}} {{lastName}},\n\n{{campaignDescription}}\n\n"
                "You still have {{assetCount}} asset(s) awaiting attestation. The campaign ends {{endDate}}.\n\n"
                "{{registerUrl}}"
            ),
            variables=(
                "siteName",
                "firstName",
                "lastName",
                "assetCount",
                "campaignName",
                "campaignDescription",
                "endDate",
                "registerUrl",
            ),
        ),
        TemplateDefinition(
            key="attestation_unregistered_escalation",
            name="Attestation Unregistered Escalation",
            description="Tells a manager that one of their reports has not registered for a campaign.",
            subject="{{siteName}} - Unregistered employee: {{employeeName}}",
            html_body=(
                "<h2>Unregistered employee</h2>"
                "<p>Hi {{managerName}},</p>"
                "<p>{{employeeName}} ({{employeeEmail}}) has {{assetCount}} asset(s) in the "
                "<strong>{{campaignName}}</strong> campaign but has not registered. The campaign ends {{endDate}}.</p>"
            ),
            text_body=(
                "Hi {{managerName}},\n\n{{employeeName}} ({{employeeEmail}}) has {{assetCount}} asset(s) in the "
                "{{campaignName}} campaign but has not registered. The campaign ends {{endDate}}."
            ),
            variables=(
                "siteName",
                "managerName",
                "employeeName",
                "employeeEmail",
                "campaignName",
                "assetCount",
                "endDate",
            ),
        ),
    )
}


def render(template: str | None, variables: Mapping[str, Any]) -> str:
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _VARIABLE_PATTERN.sub(_replace, template)


def _require_definition(key: str) -> TemplateDefinition:
    definition = DEFAULT_TEMPLATES.get(key)
    if definition is None:
        raise not_found("Email template")
    return definition


def _row_from_definition(definition: TemplateDefinition) -> EmailTemplate:
    return EmailTemplate(
        template_key=definition.key,
        name=definition.name,
        description=definition.description,
        subject=definition.subject,
        html_body=definition.html_body,
        text_body=definition.text_body,
        variables=list(definition.variables),
        is_custom=False,
    )


def seed_email_templates(db: Session) -> int:
    existing = set(db.scalars(select(EmailTemplate.template_key)).all())
    created = 0
    for key, definition in DEFAULT_TEMPLATES.items():
        if key in existing:
            continue
        db.add(_row_from_definition(definition))
        created += 1
    if created:
        db.commit()
    return created


def get_template(db: Session, key: str) -> EmailTemplate:
    row = db.scalar(select(EmailTemplate).where(EmailTemplate.template_key == key))
    if row is not None:
        return row
    return _row_from_definition(_require_definition(key))


def list_templates(db: Session) -> list[EmailTemplate]:
    rows = {row.template_key: row for row in db.scalars(select(EmailTemplate)).all()}
    return [rows.get(key) or _row_from_definition(definition) for key, definition in DEFAULT_TEMPLATES.items()]


def update_template(db: Session, key: str, changes: Mapping[str, Any]) -> EmailTemplate:
    definition = _require_definition(key)
    row = db.scalar(select(EmailTemplate).where(EmailTemplate.template_key == key))
    if row is None:
        row = _row_from_definition(definition)
        db.add(row)
    for field in ("subject", "html_body", "text_body"):
        value = changes.get(field)
        if value is not None:
            if not str(value).strip():
                raise validation_error(f"{field} cannot be empty")
            setattr(row, field, value)
    row.is_custom = True
    db.commit()
    db.refresh(row)
    return row


def reset_template(db: Session, key: str) -> EmailTemplate:
    definition = _require_definition(key)
    row = db.scalar(select(EmailTemplate).where(EmailTemplate.template_key == key))
    if row is None:
        row = _row_from_definition(definition)
        db.add(row)
    else:
        row.subject = definition.subject
        row.html_body = definition.html_body
        row.text_body = definition.text_body
        row.variables = list(definition.variables)
        row.is_custom = False
    db.commit()
    db.refresh(row)
    return row


def serialize_template(row: EmailTemplate) -> dict[str, Any]:
    return {
        "key": row.template_key,
        "name": row.name,
        "description": row.description,
        "subject": row.subject,
        "html_body": row.html_body,
        "text_body": row.text_body,
        "variables": list(row.variables or []),
        "is_custom": bool(row.is_custom),
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
