from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.db import get_db
from kars.errors import ApiError
from kars.models import User, UserRole
from kars.schemas import (
    BrandingUpdate,
    DangerZoneRequest,
    EmailTemplateUpdate,
    NotificationSettingsUpdate,
    NotificationTestRequest,
    OidcSettingsUpdate,
    PasskeySettingsUpdate,
    SystemSettingsUpdate,
)
from kars.security import require_roles
from kars.services.email_templates import get_template, list_templates, reset_template, serialize_template, update_template
from kars.services.mailer import normalize_email, send_test_email
from kars.services.maintenance import danger_zone_counts, database_info, wipe
from kars.services.oidc import clear_discovery_cache
from kars.services.settings_store import (
    get_branding_settings,
    get_oidc_settings,
    get_smtp_settings,
    get_system_settings,
    serialize_branding,
    serialize_oidc_settings,
    serialize_passkey_settings,
    serialize_smtp_settings,
    serialize_system_settings,
    update_branding,
    update_oidc_settings,
    update_passkey_settings,
    update_smtp_settings,
    update_system_settings,
)

router = APIRouter(tags=["admin"])

require_admin = require_roles(UserRole.ADMIN)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _audit_settings(db: Session, request: Request, user: User, *, entity_type: str, details: dict[str, Any]) -> None:
    log_audit(
        db,
        action="UPDATE",
        entity_type=entity_type,
        details=details,
        performed_by=user.email,
        request_id=_request_id(request),
    )


# Notifications


@router.get("/api/admin/notification-settings")
def get_notification_settings(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, Any]:
    row = get_smtp_settings(db)
    db.commit()
    return serialize_smtp_settings(row)


@router.put("/api/admin/notification-settings")
def put_notification_settings(
    payload: NotificationSettingsUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row = update_smtp_settings(db, changes)
    secret_fields = {"password", "brevo_api_key"}
    _audit_settings(
        db,
        request,
        user,
        entity_type="smtp_settings",
        details={"fields": sorted(key for key in changes if key not in secret_fields)},
    )
    return serialize_smtp_settings(row)


@router.post("/api/admin/notification-settings/test")
def post_notification_test(
    request: Request,
    payload: NotificationTestRequest | None = None,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    row = get_smtp_settings(db)
    recipient = normalize_email(payload.recipient if payload is not None else None)
    recipient = recipient or normalize_email(row.default_recipient) or user.email
    result = send_test_email(db, recipient)
    log_audit(
        db,
        action="TEST_EMAIL",
        entity_type="smtp_settings",
        details={"recipient": recipient, "success": result["success"]},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    if not result["success"]:
        raise ApiError(status_code=400, code="EMAIL_TEST_FAILED", message=result["error"])
    return result


# Email templates


@router.get("/api/admin/email-templates")
def get_email_templates(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> list[dict[str, Any]]:
    return [serialize_template(row) for row in list_templates(db)]


@router.get("/api/admin/email-templates/{key}")
def get_email_template(
    key: str,
    _user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return serialize_template(get_template(db, key))


@router.put("/api/admin/email-templates/{key}")
def put_email_template(
    key: str,
    payload: EmailTemplateUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row = update_template(db, key, changes)
    log_audit(
        db,
        action="UPDATE",
        entity_type="email_template",
        entity_id=row.id,
        entity_name=key,
        details={"fields": sorted(changes)},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return serialize_template(row)


@router.post("/api/admin/email-templates/{key}/reset")
def post_email_template_reset(
    key: str,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    row = reset_template(db, key)
    log_audit(
        db,
        action="RESET",
        entity_type="email_template",
        entity_id=row.id,
        entity_name=key,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return serialize_template(row)


# Branding


@router.get("/api/branding")
def get_public_branding(db: Session = Depends(get_db)) -> dict[str, Any]:
    row = get_branding_settings(db)
    db.commit()
    return serialize_branding(row)


@router.put("/api/admin/branding")
def put_branding(
    payload: BrandingUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row = update_branding(db, changes)
    _audit_settings(db, request, user, entity_type="branding_settings", details={"fields": sorted(changes)})
    return serialize_branding(row)


# System settings


@router.get("/api/admin/system-settings")
def get_system_settings_endpoint(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, Any]:
    row = get_system_settings(db)
    db.commit()
    return serialize_system_settings(row)


@router.put("/api/admin/system-settings")
def put_system_settings(
    payload: SystemSettingsUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row, restart_required = update_system_settings(db, changes)
    _audit_settings(db, request, user, entity_type="system_settings", details=changes)
    return {**serialize_system_settings(row), "restartRequired": restart_required}


@router.get("/api/admin/passkey-settings")
def get_passkey_settings(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, Any]:
    row = get_system_settings(db)
    db.commit()
    return serialize_passkey_settings(row)


@router.put("/api/admin/passkey-settings")
def put_passkey_settings(
    payload: PasskeySettingsUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row = update_passkey_settings(db, changes)
    _audit_settings(db, request, user, entity_type="passkey_settings", details=changes)
    return serialize_passkey_settings(row)


@router.get("/api/admin/oidc-settings")
def get_oidc_settings_endpoint(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, Any]:
    row = get_oidc_settings(db)
    db.commit()
    return serialize_oidc_settings(row)


@router.put("/api/admin/oidc-settings")
def put_oidc_settings(
    payload: OidcSettingsUpdate,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    row = update_oidc_settings(db, changes)
    clear_discovery_cache()
    _audit_settings(
        db,
        request,
        user,
        entity_type="oidc_settings",
        details={"fields": sorted(key for key in changes if key != "client_secret")},
    )
    return serialize_oidc_settings(row)


# Database


@router.get("/api/admin/database")
def get_database_info(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, Any]:
    return database_info(db)


@router.get("/api/admin/danger-zone/counts")
def get_danger_zone_counts(_user: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, int]:
    return danger_zone_counts(db)


@router.delete("/api/admin/danger-zone/{target}")
def delete_danger_zone(
    target: str,
    payload: DangerZoneRequest,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    deleted = wipe(db, target=target, confirmation=payload.confirmation)
    log_audit(
        db,
        action="DANGER_ZONE_DELETE",
        entity_type=target,
        details=deleted,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": f"Deleted all {target}", "deleted": deleted}
