from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.errors import ApiError, conflict, forbidden, not_found, validation_error
from kars.models import (
    Asset,
    AttestationCampaign,
    EmailVerificationToken,
    MfaRecoveryCode,
    PasswordResetToken,
    User,
    UserRole,
    VerificationTokenType,
    WebAuthnChallenge,
)
from kars.security import hash_password, verify_password
from kars.services.assets import is_referenced_as_manager, link_assets_to_user, sync_manager_on_assets
from kars.services.attestation import convert_pending_invites, has_active_attestations
from kars.services.mailer import is_email_enabled, normalize_email, send_template_email, was_sent
from kars.services.settings_store import resolve_app_url
from kars.services.tokens import (
    get_valid_password_reset_token,
    get_valid_verification_token,
    issue_email_verification_token,
    issue_password_reset_token,
    mark_used,
)
from kars.settings import get_settings
from kars.timeutils import isoformat_or_none

logger = logging.getLogger("kars.users")

MAX_PROFILE_IMAGE_BASE64_LENGTH = 500_000
MIN_RESET_PASSWORD_LENGTH = 8
MIN_CHANGED_PASSWORD_LENGTH = 6
FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset link has been sent."


@dataclass(slots=True)
class RegistrationOutcome:
    user: User
    redirect_to_attestations: bool
    requires_email_verification: bool
    email_verification_sent: bool


def _clean(value: Any) -> str:
    return str(value or "").strip()


def _display_first_name(user: User) -> str:
    return user.first_name or user.name or "User"


def is_profile_complete(user: User) -> bool:
    return bool(user.first_name and user.last_name and user.manager_email)


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role.value,
        "manager_first_name": user.manager_first_name,
        "manager_last_name": user.manager_last_name,
        "manager_email": user.manager_email,
        "mfa_enabled": bool(user.mfa_enabled),
        "profile_complete": bool(user.profile_complete) and is_profile_complete(user),
        "profile_image": user.profile_image,
        "email_verified": bool(user.email_verified),
        "oidc_linked": bool(user.oidc_sub),
        "created_at": isoformat_or_none(user.created_at),
        "last_login": isoformat_or_none(user.last_login),
    }


def get_user_by_email(db: Session, email: str | None) -> User | None:
    normalized = _clean(email).lower()
    if not normalized:
        return None
    return db.scalar(select(User).where(func.lower(User.email) == normalized))


def _user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise not_found("User")
    return user


def _split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _initial_role(db: Session, email: str) -> UserRole:
    admin_email = _clean(get_settings().admin_email).lower()
    if admin_email and admin_email == email:
        return UserRole.ADMIN
    user_count = db.scalar(select(func.count(User.id))) or 0
    return UserRole.ADMIN if user_count == 0 else UserRole.EMPLOYEE


def auto_assign_manager_role(db: Session, manager_email: str | None, *, performed_by: str | None = None) -> bool:
    """Promote the account named as someone's manager when it is still an employee."""
    manager = get_user_by_email(db, manager_email)
    if manager is None or manager.role != UserRole.EMPLOYEE:
        return False
    manager.role = UserRole.MANAGER
    db.commit()
    log_audit(
        db,
        action="update_role",
        entity_type="user",
        entity_id=manager.id,
        entity_name=manager.email,
        details={"old_role": UserRole.EMPLOYEE.value, "new_role": UserRole.MANAGER.value, "auto_assigned": True},
        performed_by=performed_by or "system",
    )
    logger.info("manager_role_auto_assigned", extra={"user_id": manager.id})
    return True


def send_verification_email(db: Session, user: User, row: EmailVerificationToken) -> bool:
    verification_url = f"{resolve_app_url(db)}/verify-email?token={row.token}"
    result = send_template_email(
        db,
        "email_verification",
        [row.email],
        {
            "firstName": _display_first_name(user),
            "verificationUrl": verification_url,
            "expiryTime": f"{get_settings().email_verification_hours} hours",
        },
    )
    return was_sent(result)


def register_user(db: Session, *, payload: Mapping[str, Any], request_id: str | None = None) -> RegistrationOutcome:
    email = _clean(payload.get("email")).lower()
    password = payload.get("password") or ""
    if not email or not password:
        raise validation_error("Email and password are required")
    if normalize_email(email) is None:
        raise validation_error("Invalid email address")

    first_name = _clean(payload.get("first_name"))
    last_name = _clean(payload.get("last_name"))
    name = _clean(payload.get("name"))
    if not name and not (first_name and last_name):
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Either name or both first_name and last_name are required",
        )
    if not (first_name and last_name):
        first_name, last_name = _split_name(name)
    name = name or f"{first_name} {last_name}".strip()

    manager_first_name = _clean(payload.get("manager_first_name"))
    manager_last_name = _clean(payload.get("manager_last_name"))
    if not (manager_first_name and manager_last_name) and _clean(payload.get("manager_name")):
        manager_first_name, manager_last_name = _split_name(_clean(payload.get("manager_name")))
    if not (manager_first_name and manager_last_name):
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Manager first name and last name are required",
        )
    manager_email = normalize_email(payload.get("manager_email"))
    if manager_email is None:
        raise validation_error("Manager email is required")

    if get_user_by_email(db, email) is not None:
        raise conflict("User with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(password),
        name=name,
        first_name=first_name or None,
        last_name=last_name or None,
        role=_initial_role(db, email),
        manager_first_name=manager_first_name,
        manager_last_name=manager_last_name,
        manager_email=manager_email,
        profile_complete=True,
        email_verified=True,
    )
    db.add(user)
    db.flush()

    linked = link_assets_to_user(db, user)
    synced = sync_manager_on_assets(db, user)
    if user.role == UserRole.EMPLOYEE and is_referenced_as_manager(db, email):
        user.role = UserRole.MANAGER
    db.commit()
    db.refresh(user)

    if linked or synced:
        log_audit(
            db,
            action="sync_assets",
            entity_type="user",
            entity_id=user.id,
            entity_name=user.email,
            details={"linked": linked, "manager_synced": synced},
            performed_by="system",
            request_id=request_id,
        )
    auto_assign_manager_role(db, manager_email, performed_by="system")
    log_audit(
        db,
        action="REGISTER",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details={"role": user.role.value, "manager_email": manager_email},
        performed_by=user.email,
        request_id=request_id,
    )

    convert_pending_invites(db, user)

    requires_verification = False
    verification_sent = False
    if is_email_enabled(db):
        row = issue_email_verification_token(db, user, email=user.email)
        user.email_verified = False
        db.commit()
        requires_verification = True
        verification_sent = send_verification_email(db, user, row)
        if not verification_sent:
            logger.warning("registration_verification_email_failed", extra={"user_id": user.id})

    db.refresh(user)
    return RegistrationOutcome(
        user=user,
        redirect_to_attestations=has_active_attestations(db, user),
        requires_email_verification=requires_verification,
        email_verification_sent=verification_sent,
    )


# Password reset


def request_password_reset(db: Session, *, email: str, request_id: str | None = None) -> str:
    user = get_user_by_email(db, email)
    if user is None:
        logger.info("password_reset_unknown_email")
        return FORGOT_PASSWORD_MESSAGE

    row = issue_password_reset_token(db, user)
    reset_url = f"{resolve_app_url(db)}/reset-password?token={row.token}"
    result = send_template_email(
        db,
        "password_reset",
        [user.email],
        {"resetUrl": reset_url, "expiryTime": f"{get_settings().password_reset_minutes} minutes"},
    )
    if not was_sent(result):
        logger.warning("password_reset_email_not_sent", extra={"user_id": user.id, "mode": result.get("mode")})

    log_audit(
        db,
        action="PASSWORD_RESET_REQUEST",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        performed_by=user.email,
        request_id=request_id,
    )
    return FORGOT_PASSWORD_MESSAGE


def reset_password(db: Session, *, token: str, password: str, request_id: str | None = None) -> User:
    if len(password or "") < MIN_RESET_PASSWORD_LENGTH:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Password must be at least 8 characters long",
        )
    row = get_valid_password_reset_token(db, token)
    user = _user_or_404(db, row.user_id)
    user.password_hash = hash_password(password)
    mark_used(db, row)
    db.commit()
    log_audit(
        db,
        action="PASSWORD_RESET",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        performed_by=user.email,
        request_id=request_id,
    )
    return user


# Email verification


def verify_email(db: Session, *, token: str, request_id: str | None = None) -> dict[str, Any]:
    row = get_valid_verification_token(db, token)
    user = _user_or_404(db, row.user_id)

    if row.token_type == VerificationTokenType.EMAIL_CHANGE:
        existing = get_user_by_email(db, row.email)
        if existing is not None and existing.id != user.id:
            raise conflict("Email address is already in use")
        old_email = user.email
        user.email = row.email.lower()
        user.email_verified = True
        db.execute(
            update(Asset).where(func.lower(Asset.employee_email) == old_email.lower()).values(employee_email=user.email)
        )
        db.execute(
            update(Asset).where(func.lower(Asset.manager_email) == old_email.lower()).values(manager_email=user.email)
        )
        mark_used(db, row)
        db.commit()
        log_audit(
            db,
            action="EMAIL_CHANGED",
            entity_type="user",
            entity_id=user.id,
            entity_name=user.email,
            details={"old_email": old_email, "new_email": user.email},
            performed_by=user.email,
            request_id=request_id,
        )
        return {"message": "Email changed successfully", "newEmail": user.email}

    user.email_verified = True
    mark_used(db, row)
    db.commit()
    log_audit(
        db,
        action="EMAIL_VERIFIED",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        performed_by=user.email,
        request_id=request_id,
    )
    return {"message": "Email verified successfully"}


def describe_verification_token(db: Session, *, token: str) -> dict[str, Any]:
    row = get_valid_verification_token(db, token)
    return {"valid": True, "tokenType": row.token_type.value, "email": row.email}


def _require_email_service(db: Session) -> None:
    if not is_email_enabled(db):
        raise ApiError(status_code=503, code="EMAIL_DISABLED", message="Email service not enabled")


def resend_verification(db: Session, *, user: User) -> None:
    if user.email_verified:
        raise ApiError(status_code=400, code="ALREADY_VERIFIED", message="Email is already verified")
    _require_email_service(db)
    row = issue_email_verification_token(db, user, email=user.email)
    if not send_verification_email(db, user, row):
        raise ApiError(status_code=502, code="EMAIL_SEND_FAILED", message="Failed to send verification email")


def request_email_change(
    db: Session,
    *,
    user: User,
    new_email: str,
    password: str,
    request_id: str | None = None,
) -> None:
    normalized = normalize_email(new_email)
    if normalized is None:
        raise validation_error("Invalid email address")
    if not verify_password(password, user.password_hash):
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Password is incorrect")
    if normalized == user.email.lower():
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="New email must be different from current email",
        )
    if get_user_by_email(db, normalized) is not None:
        raise conflict("Email address is already in use")
    _require_email_service(db)

    row = issue_email_verification_token(db, user, email=normalized, token_type=VerificationTokenType.EMAIL_CHANGE)
    if not send_verification_email(db, user, row):
        raise ApiError(status_code=502, code="EMAIL_SEND_FAILED", message="Failed to send verification email")
    log_audit(
        db,
        action="EMAIL_CHANGE_REQUESTED",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details={"new_email": normalized},
        performed_by=user.email,
        request_id=request_id,
    )


# Profile


def _normalize_profile_image(value: Any) -> str | None:
    if not value:
        return None
    if not isinstance(value, str) or not value.startswith("data:image/"):
        raise validation_error("Invalid profile image format")
    _, _, payload = value.partition(",")
    if len(payload) > MAX_PROFILE_IMAGE_BASE64_LENGTH:
        raise validation_error("Profile image too large (max 500KB)")
    return value


def _sync_manager_after_change(db: Session, user: User, *, request_id: str | None) -> None:
    try:
        updated = sync_manager_on_assets(db, user)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("asset_manager_sync_failed", extra={"user_id": user.id})
        return
    if updated:
        log_audit(
            db,
            action="update",
            entity_type="asset",
            entity_name=f"Manager synced for {user.email}",
            details={
                "employee_email": user.email,
                "new_manager_email": user.manager_email,
                "updated_count": updated,
            },
            performed_by=user.email,
            request_id=request_id,
        )
    try:
        auto_assign_manager_role(db, user.manager_email, performed_by=user.email)
    except Exception:
        db.rollback()
        logger.exception("manager_role_auto_assign_failed", extra={"user_id": user.id})


def update_profile(
    db: Session,
    *,
    user: User,
    changes: Mapping[str, Any],
    request_id: str | None = None,
) -> User:
    first_name = _clean(changes.get("first_name"))
    last_name = _clean(changes.get("last_name"))
    if not first_name or not last_name:
        raise validation_error("First name and last name are required")

    previous_manager = (user.manager_first_name, user.manager_last_name, user.manager_email)
    updated_fields = ["first_name", "last_name", "name"]
    if "profile_image" in changes:
        user.profile_image = _normalize_profile_image(changes["profile_image"])
        updated_fields.append("profile_image")
    user.first_name = first_name
    user.last_name = last_name
    user.name = f"{first_name} {last_name}"
    for field in ("manager_first_name", "manager_last_name"):
        if changes.get(field) is not None:
            setattr(user, field, _clean(changes[field]) or None)
            updated_fields.append(field)
    if changes.get("manager_email") is not None:
        manager_email = normalize_email(changes["manager_email"])
        if manager_email is None:
            raise validation_error("Invalid manager email")
        user.manager_email = manager_email
        updated_fields.append("manager_email")
    db.commit()
    db.refresh(user)

    log_audit(
        db,
        action="UPDATE_PROFILE",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details={"updated_fields": updated_fields},
        performed_by=user.email,
        request_id=request_id,
    )
    if user.manager_email and previous_manager != (user.manager_first_name, user.manager_last_name, user.manager_email):
        _sync_manager_after_change(db, user, request_id=request_id)
    db.refresh(user)
    return user


def complete_profile(
    db: Session,
    *,
    user: User,
    manager_first_name: str,
    manager_last_name: str,
    manager_email: str,
    request_id: str | None = None,
) -> User:
    normalized = normalize_email(manager_email)
    if not _clean(manager_first_name) or not _clean(manager_last_name) or normalized is None:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Manager first name, last name and a valid email are required",
        )
    user.manager_first_name = _clean(manager_first_name)
    user.manager_last_name = _clean(manager_last_name)
    user.manager_email = normalized
    user.profile_complete = True
    db.commit()
    db.refresh(user)
    log_audit(
        db,
        action="complete_profile",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details={
            "manager_first_name": user.manager_first_name,
            "manager_last_name": user.manager_last_name,
            "manager_email": user.manager_email,
        },
        performed_by=user.email,
        request_id=request_id,
    )
    _sync_manager_after_change(db, user, request_id=request_id)
    db.refresh(user)
    return user


def change_password(
    db: Session,
    *,
    user: User,
    current_password: str,
    new_password: str,
    confirm_password: str,
    request_id: str | None = None,
) -> None:
    if new_password != confirm_password:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="New password and confirmation do not match",
        )
    if len(new_password) < MIN_CHANGED_PASSWORD_LENGTH:
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="New password must be at least 6 characters long",
        )
    if not verify_password(current_password, user.password_hash):
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Current password is incorrect")
    user.password_hash = hash_password(new_password)
    db.commit()
    log_audit(
        db,
        action="change_password",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details="Password changed successfully",
        performed_by=user.email,
        request_id=request_id,
    )


# User administration


def list_users(db: Session) -> list[User]:
    return list(db.scalars(select(User).order_by(User.created_at.desc(), User.id.desc())).all())


def update_user_role(
    db: Session,
    *,
    actor: User,
    user_id: int,
    role: str,
    request_id: str | None = None,
) -> User:
    try:
        new_role = UserRole(_clean(role).lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in UserRole)
        raise validation_error(f"Invalid role. Must be one of: {allowed}") from exc
    target = _user_or_404(db, user_id)
    if target.id == actor.id:
        raise forbidden("You cannot change your own role")
    old_role = target.role
    target.role = new_role
    db.commit()
    db.refresh(target)
    log_audit(
        db,
        action="update_role",
        entity_type="user",
        entity_id=target.id,
        entity_name=target.email,
        details={"old_role": old_role.value, "new_role": new_role.value},
        performed_by=actor.email,
        request_id=request_id,
    )
    return target


def delete_user(db: Session, *, actor: User, user_id: int, request_id: str | None = None) -> User:
    target = _user_or_404(db, user_id)
    if target.id == actor.id:
        raise forbidden("You cannot delete your own account")
    db.execute(
        update(AttestationCampaign).where(AttestationCampaign.created_by == target.id).values(created_by=None)
    )
    for model in (EmailVerificationToken, PasswordResetToken, MfaRecoveryCode, WebAuthnChallenge):
        db.execute(delete(model).where(model.user_id == target.id))
    db.execute(update(Asset).where(Asset.owner_id == target.id).values(owner_id=None))
    db.execute(update(Asset).where(Asset.manager_id == target.id).values(manager_id=None))
    email, role_value = target.email, target.role.value
    db.delete(target)
    db.commit()
    log_audit(
        db,
        action="delete",
        entity_type="user",
        entity_id=user_id,
        entity_name=email,
        details={"role": role_value},
        performed_by=actor.email,
        request_id=request_id,
    )
    return target
