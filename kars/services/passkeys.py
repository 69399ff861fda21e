from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from kars.errors import ApiError, forbidden, not_found
from kars.models import SystemSettings, User, UserPasskey, WebAuthnChallenge
from kars.services.settings_store import get_system_settings
from kars.settings import get_passkey_origin, get_passkey_rp_id, get_settings
from kars.timeutils import as_utc, utc_now

logger = logging.getLogger("kars.passkeys")

PASSKEY_PURPOSE_REGISTER = "PASSKEY_REGISTER"
PASSKEY_PURPOSE_AUTHENTICATE = "PASSKEY_AUTHENTICATE"


def _bytes_to_base64url(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")


def _rp(row: SystemSettings) -> tuple[str, str, str]:
    rp_id = get_passkey_rp_id(row.passkey_rp_id)
    rp_name = row.passkey_rp_name or get_settings().passkey_rp_name
    origin = get_passkey_origin(row.passkey_origin)
    return rp_id, rp_name, origin


def _ensure_enabled(db: Session) -> SystemSettings:
    row = get_system_settings(db)
    if not row.passkey_enabled:
        raise ApiError(status_code=403, code="PASSKEYS_DISABLED", message="Passkeys are disabled")
    return row


def _build_expiry() -> datetime:
    minutes = max(1, int(get_settings().passkey_challenge_minutes))
    return utc_now() + timedelta(minutes=minutes)


def _load_valid_challenge(db: Session, *, challenge_id: int, purpose: str) -> WebAuthnChallenge:
    challenge = db.get(WebAuthnChallenge, challenge_id)
    if challenge is None or challenge.purpose != purpose:
        raise ApiError(
            status_code=404,
            code="PASSKEY_CHALLENGE_NOT_FOUND",
            message="Passkey challenge not found",
        )
    if challenge.used_at is not None:
        raise ApiError(
            status_code=409,
            code="PASSKEY_CHALLENGE_USED",
            message="Passkey challenge has already been used",
        )
    if as_utc(challenge.expires_at) < utc_now():
        raise ApiError(
            status_code=400,
            code="PASSKEY_CHALLENGE_EXPIRED",
            message="Passkey challenge has expired",
        )
    return challenge


def _store_challenge(db: Session, *, purpose: str, options_json: dict[str, Any], user_id: int | None) -> WebAuthnChallenge:
    challenge_value = str(options_json.get("challenge") or "").strip()
    if not challenge_value:
        raise ApiError(
            status_code=500,
            code="PASSKEY_CHALLENGE_MISSING",
            message="Could not create passkey challenge",
        )
    challenge = WebAuthnChallenge(
        purpose=purpose,
        challenge=challenge_value,
        user_id=user_id,
        expires_at=_build_expiry(),
    )
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    return challenge


def passkey_config(db: Session) -> dict[str, Any]:
    row = get_system_settings(db)
    rp_id, rp_name, origin = _rp(row)
    return {"enabled": bool(row.passkey_enabled), "rp_id": rp_id, "rp_name": rp_name, "origin": origin}


def list_user_passkeys(db: Session, *, user: User) -> list[UserPasskey]:
    return list(
        db.scalars(select(UserPasskey).where(UserPasskey.user_id == user.id).order_by(UserPasskey.id)).all()
    )


def create_registration_options(db: Session, *, user: User) -> tuple[WebAuthnChallenge, dict[str, Any]]:
    row = _ensure_enabled(db)
    rp_id, rp_name, _origin = _rp(row)

    exclude_credentials = [
        PublicKeyCredentialDescriptor(id=base64url_to_bytes(passkey.credential_id))
        for passkey in list_user_passkeys(db, user=user)
    ]
    options = generate_registration_options(
        rp_id=rp_id,
        rp_name=rp_name,
        user_id=str(user.id).encode("utf-8"),
        user_name=user.email,
        user_display_name=user.name or user.email,
        authenticator_selection=AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
        exclude_credentials=exclude_credentials,
    )
    options_json = json.loads(options_to_json(options))
    challenge = _store_challenge(db, purpose=PASSKEY_PURPOSE_REGISTER, options_json=options_json, user_id=user.id)
    return challenge, options_json


def verify_registration(
    db: Session,
    *,
    user: User,
    challenge_id: int,
    credential: dict[str, Any],
    name: str | None = None,
) -> UserPasskey:
    row = _ensure_enabled(db)
    rp_id, _rp_name, origin = _rp(row)
    challenge = _load_valid_challenge(db, challenge_id=challenge_id, purpose=PASSKEY_PURPOSE_REGISTER)
    if challenge.user_id != user.id:
        raise forbidden("Passkey challenge belongs to another user")

    try:
        verification = verify_registration_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(challenge.challenge),
            expected_rp_id=rp_id,
            expected_origin=origin,
            require_user_verification=False,
        )
    except Exception as exc:  # pragma: no cover - depends on browser payload
        logger.warning("passkey_registration_failed", extra={"user_id": user.id, "error": str(exc)[:200]})
        raise ApiError(
            status_code=400,
            code="PASSKEY_REGISTRATION_FAILED",
            message=f"Passkey registration could not be verified: {exc}",
        ) from exc

    credential_id = _bytes_to_base64url(verification.credential_id)
    transports_raw: Any = None
    response = credential.get("response") if isinstance(credential, dict) else None
    if isinstance(response, dict):
        transports_raw = response.get("transports")
    transports = [str(item) for item in transports_raw if item is not None] if isinstance(transports_raw, list) else []

    existing = db.scalar(select(UserPasskey).where(UserPasskey.credential_id == credential_id))
    if existing is not None:
        raise ApiError(status_code=409, code="PASSKEY_EXISTS", message="This passkey is already registered")

    passkey = UserPasskey(
        user_id=user.id,
        name=(name or "").strip() or "Passkey",
        credential_id=credential_id,
        public_key=_bytes_to_base64url(verification.credential_public_key),
        sign_count=int(getattr(verification, "sign_count", 0) or 0),
        transports=transports,
    )
    db.add(passkey)
    challenge.used_at = utc_now()
    db.commit()
    db.refresh(passkey)
    return passkey


def create_authentication_options(
    db: Session,
    *,
    email: str | None = None,
) -> tuple[WebAuthnChallenge, dict[str, Any]]:
    row = _ensure_enabled(db)
    rp_id, _rp_name, _origin = _rp(row)

    allow_credentials: list[PublicKeyCredentialDescriptor] = []
    user_id: int | None = None
    if email:
        user = db.scalar(select(User).where(User.email == email.strip().lower()))
        if user is not None:
            user_id = user.id
            allow_credentials = [
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(passkey.credential_id))
                for passkey in list_user_passkeys(db, user=user)
            ]

    options = generate_authentication_options(
        rp_id=rp_id,
        allow_credentials=allow_credentials,
        user_verification=UserVerificationRequirement.PREFERRED,
    )
    options_json = json.loads(options_to_json(options))
    challenge = _store_challenge(db, purpose=PASSKEY_PURPOSE_AUTHENTICATE, options_json=options_json, user_id=user_id)
    return challenge, options_json


def verify_authentication(db: Session, *, challenge_id: int, credential: dict[str, Any]) -> User:
    row = _ensure_enabled(db)
    rp_id, _rp_name, origin = _rp(row)
    challenge = _load_valid_challenge(db, challenge_id=challenge_id, purpose=PASSKEY_PURPOSE_AUTHENTICATE)

    raw_id = credential.get("id") if isinstance(credential, dict) else None
    credential_id = raw_id.strip() if isinstance(raw_id, str) else ""
    if not credential_id:
        raise ApiError(
            status_code=422,
            code="PASSKEY_CREDENTIAL_ID_MISSING",
            message="Passkey credential id is missing",
        )

    passkey = db.scalar(select(UserPasskey).where(UserPasskey.credential_id == credential_id))
    if passkey is None:
        raise ApiError(status_code=404, code="PASSKEY_NOT_REGISTERED", message="Passkey is not registered")
    if challenge.user_id is not None and challenge.user_id != passkey.user_id:
        raise ApiError(status_code=401, code="PASSKEY_AUTH_FAILED", message="Passkey does not match this account")

    try:
        verification = verify_authentication_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(challenge.challenge),
            expected_rp_id=rp_id,
            expected_origin=origin,
            credential_public_key=base64url_to_bytes(passkey.public_key),
            credential_current_sign_count=passkey.sign_count,
            require_user_verification=False,
        )
    except Exception as exc:  # pragma: no cover - depends on browser payload
        raise ApiError(
            status_code=401,
            code="PASSKEY_AUTH_FAILED",
            message=f"Passkey authentication failed: {exc}",
        ) from exc

    passkey.sign_count = int(getattr(verification, "new_sign_count", passkey.sign_count) or 0)
    passkey.last_used_at = utc_now()
    challenge.used_at = utc_now()
    user = passkey.user
    user.last_login = utc_now()
    db.commit()
    db.refresh(user)
    return user


def delete_passkey(db: Session, *, user: User, passkey_id: int) -> UserPasskey:
    passkey = db.get(UserPasskey, passkey_id)
    if passkey is None or passkey.user_id != user.id:
        raise not_found("Passkey")
    db.delete(passkey)
    db.commit()
    return passkey
