from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.db import get_db
from kars.errors import ApiError, validation_error
from kars.models import User, UserRole
from kars.schemas import (
    ChangePasswordRequest,
    CompleteProfileRequest,
    EmailChangeRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaVerifyLoginRequest,
    PasskeyAuthOptionsRequest,
    PasskeyAuthVerifyRequest,
    PasskeyRead,
    PasskeyRegistrationVerifyRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    UserRead,
    VerifyEmailRequest,
)
from kars.security import (
    STAFF_ROLES,
    create_access_token,
    ensure_login_attempt_allowed,
    get_current_user,
    register_login_failure,
    register_login_success,
    require_roles,
    verify_password,
)
from kars.services.assets import link_assets_to_user
from kars.services.attestation import convert_pending_invites, has_active_attestations
from kars.services.mfa import (
    complete_enrollment,
    create_login_session,
    disable_mfa,
    get_mfa_status,
    is_user_mfa_enabled,
    mfa_login_sessions,
    start_enrollment,
    verify_second_factor,
)
from kars.services.oidc import build_authorization_url, exchange_code, provision_user, public_config
from kars.services.passkeys import (
    create_authentication_options,
    create_registration_options,
    delete_passkey,
    list_user_passkeys,
    passkey_config,
    verify_authentication,
    verify_registration,
)
from kars.services.tokens import get_valid_password_reset_token
from kars.services.users import (
    change_password,
    complete_profile,
    delete_user,
    describe_verification_token,
    get_user_by_email,
    list_users,
    register_user,
    request_email_change,
    request_password_reset,
    resend_verification,
    reset_password,
    serialize_user,
    update_profile,
    update_user_role,
    verify_email,
)
from kars.timeutils import utc_now

router = APIRouter(tags=["auth"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _session_payload(user: User, *, message: str) -> dict[str, Any]:
    token, expires_in, _claims = create_access_token(user)
    return {
        "message": message,
        "token": token,
        "expires_in": expires_in,
        "user": serialize_user(user),
    }


def _complete_login(db: Session, request: Request, user: User, *, method: str) -> dict[str, Any]:
    user.last_login = utc_now()
    db.commit()
    db.refresh(user)
    request.state.actor = user.role.value
    request.state.actor_id = user.email
    log_audit(
        db,
        action="LOGIN",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        details={"method": method},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return _session_payload(user, message="Login successful")


# Registration / login


@router.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    outcome = register_user(db, payload=payload.model_dump(), request_id=_request_id(request))
    response = _session_payload(outcome.user, message="User registered successfully")
    response.update(
        {
            "redirectToAttestations": outcome.redirect_to_attestations,
            "requiresEmailVerification": outcome.requires_email_verification,
            "emailVerificationSent": outcome.email_verification_sent,
        }
    )
    return response


@router.post("/api/auth/login")
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    ip = _client_ip(request)
    if ip:
        ensure_login_attempt_allowed(ip)

    user = get_user_by_email(db, payload.email)
    if user is None or not verify_password(payload.password, user.password_hash):
        if ip:
            register_login_failure(ip)
        log_audit(
            db,
            action="LOGIN_FAILED",
            entity_type="user",
            entity_id=user.id if user is not None else None,
            entity_name=payload.email.strip().lower(),
            details={"ip": ip},
            performed_by=payload.email.strip().lower(),
            request_id=_request_id(request),
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid credentials")

    if ip:
        register_login_success(ip)

    if is_user_mfa_enabled(user):
        return {
            "requiresMFA": True,
            "mfaSessionId": create_login_session(user),
            "message": "MFA verification required",
        }
    return _complete_login(db, request, user, method="password")


@router.post("/api/auth/mfa/verify-login")
def mfa_verify_login(
    payload: MfaVerifyLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    user_id = mfa_login_sessions.get(payload.mfaSessionId)
    user = db.get(User, user_id) if user_id is not None else None
    if user is None:
        raise ApiError(status_code=401, code="MFA_SESSION_INVALID", message="Invalid or expired MFA session")
    if not verify_second_factor(db, user=user, code=payload.token, use_backup_code=payload.useBackupCode):
        raise ApiError(status_code=401, code="INVALID_MFA_CODE", message="Invalid verification code")
    mfa_login_sessions.delete(payload.mfaSessionId)
    return _complete_login(db, request, user, method="mfa")


# Password reset


@router.post("/api/auth/forgot-password")
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, str]:
    message = request_password_reset(db, email=payload.email, request_id=_request_id(request))
    return {"message": message}


@router.get("/api/auth/verify-reset-token/{token}")
def verify_reset_token(token: str, db: Session = Depends(get_db)) -> dict[str, bool]:
    get_valid_password_reset_token(db, token)
    return {"valid": True}


@router.post("/api/auth/reset-password")
def reset_password_endpoint(
    payload: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, str]:
    reset_password(db, token=payload.token, password=payload.password, request_id=_request_id(request))
    return {"message": "Password has been reset successfully"}


# Email verification


@router.post("/api/auth/verify-email")
def verify_email_endpoint(
    payload: VerifyEmailRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return verify_email(db, token=payload.token, request_id=_request_id(request))


@router.get("/api/auth/verify-email-token/{token}")
def verify_email_token(token: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    return describe_verification_token(db, token=token)


@router.post("/api/auth/resend-verification")
def resend_verification_endpoint(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    resend_verification(db, user=user)
    return {"message": "Verification email sent"}


@router.post("/api/auth/request-email-change")
def request_email_change_endpoint(
    payload: EmailChangeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    request_email_change(
        db,
        user=user,
        new_email=payload.newEmail,
        password=payload.password,
        request_id=_request_id(request),
    )
    return {"message": "Verification email sent to your new email address"}


# Profile


@router.get("/api/auth/me", response_model=UserRead)
def me(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return serialize_user(user)


@router.put("/api/auth/profile")
def update_profile_endpoint(
    payload: ProfileUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    updated = update_profile(
        db,
        user=user,
        changes=payload.model_dump(exclude_unset=True),
        request_id=_request_id(request),
    )
    return {"message": "Profile updated successfully", "user": serialize_user(updated)}


@router.post("/api/auth/complete-profile")
def complete_profile_endpoint(
    payload: CompleteProfileRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    updated = complete_profile(
        db,
        user=user,
        manager_first_name=payload.manager_first_name,
        manager_last_name=payload.manager_last_name,
        manager_email=payload.manager_email,
        request_id=_request_id(request),
    )
    return {"message": "Profile completed successfully", "user": serialize_user(updated)}


@router.put("/api/auth/change-password")
def change_password_endpoint(
    payload: ChangePasswordRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    change_password(
        db,
        user=user,
        current_password=payload.currentPassword,
        new_password=payload.newPassword,
        confirm_password=payload.confirmPassword,
        request_id=_request_id(request),
    )
    return {"message": "Password changed successfully"}


# MFA


@router.get("/api/auth/mfa/status")
def mfa_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict[str, Any]:
    return get_mfa_status(db, user=user)


@router.post("/api/auth/mfa/enroll")
def mfa_enroll(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict[str, str]:
    return start_enrollment(db, user=user)


@router.post("/api/auth/mfa/verify-enrollment")
def mfa_verify_enrollment(
    payload: MfaCodeRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    backup_codes = complete_enrollment(db, user=user, code=payload.token)
    log_audit(
        db,
        action="MFA_ENABLED",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "MFA enabled successfully", "backupCodes": backup_codes}


@router.post("/api/auth/mfa/disable")
def mfa_disable(
    payload: MfaDisableRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    if not user.mfa_enabled:
        raise ApiError(status_code=400, code="MFA_NOT_ENABLED", message="MFA is not enabled")
    if not verify_password(payload.password, user.password_hash):
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Password is incorrect")
    if not verify_second_factor(db, user=user, code=payload.token):
        raise ApiError(status_code=401, code="INVALID_MFA_CODE", message="Invalid verification code")
    disable_mfa(db, user=user)
    log_audit(
        db,
        action="MFA_DISABLED",
        entity_type="user",
        entity_id=user.id,
        entity_name=user.email,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "MFA disabled successfully"}


# Passkeys


@router.get("/api/auth/passkeys", response_model=list[PasskeyRead])
def list_passkeys(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> list[Any]:
    return list_user_passkeys(db, user=user)


@router.get("/api/auth/passkeys/config")
def get_passkey_config(db: Session = Depends(get_db)) -> dict[str, Any]:
    config = passkey_config(db)
    db.commit()
    return config


@router.post("/api/auth/passkeys/registration-options")
def passkey_registration_options(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    challenge, options = create_registration_options(db, user=user)
    return {"challenge_id": challenge.id, "expires_at": challenge.expires_at, "options": options}


@router.post("/api/auth/passkeys/verify-registration", response_model=PasskeyRead)
def passkey_verify_registration(
    payload: PasskeyRegistrationVerifyRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Any:
    passkey = verify_registration(
        db,
        user=user,
        challenge_id=payload.challenge_id,
        credential=payload.credential,
        name=payload.name,
    )
    log_audit(
        db,
        action="PASSKEY_REGISTERED",
        entity_type="passkey",
        entity_id=passkey.id,
        entity_name=passkey.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return passkey


@router.post("/api/auth/passkeys/auth-options")
def passkey_auth_options(
    payload: PasskeyAuthOptionsRequest,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    challenge, options = create_authentication_options(db, email=payload.email)
    return {"challenge_id": challenge.id, "expires_at": challenge.expires_at, "options": options}


@router.post("/api/auth/passkeys/verify-authentication")
def passkey_verify_authentication(
    payload: PasskeyAuthVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    user = verify_authentication(db, challenge_id=payload.challenge_id, credential=payload.credential)
    return _complete_login(db, request, user, method="passkey")


@router.delete("/api/auth/passkeys/{passkey_id}")
def remove_passkey(
    passkey_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    passkey = delete_passkey(db, user=user, passkey_id=passkey_id)
    log_audit(
        db,
        action="PASSKEY_DELETED",
        entity_type="passkey",
        entity_id=passkey_id,
        entity_name=passkey.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"ok": True, "id": passkey_id}


# OIDC


@router.get("/api/auth/oidc/config")
def oidc_config(db: Session = Depends(get_db)) -> dict[str, Any]:
    config = public_config(db)
    db.commit()
    return config


@router.get("/api/auth/oidc/login")
def oidc_login(db: Session = Depends(get_db)) -> dict[str, str]:
    return build_authorization_url(db)


@router.get("/api/auth/oidc/callback")
def oidc_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if error:
        raise ApiError(status_code=400, code="OIDC_PROVIDER_ERROR", message=error_description or error)
    if not code or not state:
        raise validation_error("Missing code or state")

    claims = exchange_code(db, code=code, state=state)
    user, created = provision_user(db, claims)
    if created:
        link_assets_to_user(db, user)
        db.commit()
        log_audit(
            db,
            action="REGISTER",
            entity_type="user",
            entity_id=user.id,
            entity_name=user.email,
            details={"role": user.role.value, "method": "oidc"},
            performed_by=user.email,
            request_id=_request_id(request),
        )
    convert_pending_invites(db, user)
    response = _complete_login(db, request, user, method="oidc")
    response["redirectToAttestations"] = has_active_attestations(db, user)
    return response


# User administration


@router.get("/api/auth/users", response_model=list[UserRead])
def list_users_endpoint(
    _user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return [serialize_user(item) for item in list_users(db)]


@router.put("/api/auth/users/{user_id}/role")
def update_user_role_endpoint(
    user_id: int,
    payload: RoleUpdateRequest,
    request: Request,
    actor: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    target = update_user_role(db, actor=actor, user_id=user_id, role=payload.role, request_id=_request_id(request))
    return {"message": "User role updated successfully", "user": serialize_user(target)}


@router.delete("/api/auth/users/{user_id}")
def delete_user_endpoint(
    user_id: int,
    request: Request,
    actor: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    delete_user(db, actor=actor, user_id=user_id, request_id=_request_id(request))
    return {"message": "User deleted successfully", "id": user_id}
