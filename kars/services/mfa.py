from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import struct
from datetime import datetime
from typing import Any
from urllib.parse import quote

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from kars.errors import ApiError
from kars.models import MfaRecoveryCode, User
from kars.security import hash_password, verify_password
from kars.services.encryption import decrypt_secret, encrypt_secret
from kars.services.ttl_store import ExpiringStore
from kars.settings import get_settings
from kars.timeutils import utc_now

RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_RAW_LENGTH = 10

# Pending second-factor logins: session id -> user id.
mfa_login_sessions: ExpiringStore[int] = ExpiringStore(
    max(30, get_settings().mfa_session_seconds),
    name="mfa_login_sessions",
)


def _normalize_totp_secret(raw_secret: str | None) -> bytes | None:
    cleaned = "".join(ch for ch in (raw_secret or "").strip().upper() if ch.isalnum())
    if not cleaned:
        return None
    padding = "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(cleaned + padding, casefold=True)
    except (binascii.Error, ValueError):
        return None


def _hotp(secret: bytes, counter: int, digits: int = 6) -> str:
    packed_counter = struct.pack(">Q", counter)
    digest = hmac.new(secret, packed_counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    otp_int = binary % (10**digits)
    return str(otp_int).zfill(digits)


def _normalize_code(code: str | None) -> str:
    return "".join(ch for ch in (code or "").strip() if ch.isdigit())


def _normalize_recovery_code(value: str | None) -> str:
    return "".join(ch for ch in (value or "").strip().upper() if ch.isalnum())


def _format_recovery_code(raw_code: str) -> str:
    normalized = _normalize_recovery_code(raw_code)
    if len(normalized) <= 5:
        return normalized
    return f"{normalized[:5]}-{normalized[5:]}"


def _generate_recovery_code() -> str:
    return "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_RAW_LENGTH))


def _step_seconds() -> int:
    return max(15, int(get_settings().mfa_step_seconds or 30))


def verify_totp_for_secret(secret_key: str | None, code: str | None, *, now_utc: datetime | None = None) -> bool:
    secret = _normalize_totp_secret(secret_key)
    if secret is None:
        return False

    normalized_code = _normalize_code(code)
    if len(normalized_code) != 6:
        return False

    window_steps = max(0, min(6, int(get_settings().mfa_window_steps or 1)))
    now = now_utc or utc_now()
    base_counter = int(now.timestamp()) // _step_seconds()

    for offset in range(-window_steps, window_steps + 1):
        candidate = _hotp(secret, base_counter + offset, digits=6)
        if hmac.compare_digest(candidate, normalized_code):
            return True
    return False


def build_totp_secret_key() -> str:
    return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")


def build_totp_otpauth_uri(*, account_name: str, secret_key: str, issuer: str | None = None) -> str:
    settings = get_settings()
    normalized_issuer = (issuer or settings.app_name).strip() or "KARS"
    label = f"{normalized_issuer}:{account_name.strip() or 'user'}"
    return (
        f"otpauth://totp/{quote(label)}"
        f"?secret={quote(secret_key.strip())}"
        f"&issuer={quote(normalized_issuer)}"
        f"&algorithm=SHA1&digits=6&period={_step_seconds()}"
    )


def is_user_mfa_enabled(user: User | None) -> bool:
    if user is None:
        return False
    return bool(user.mfa_enabled and (user.mfa_secret_enc or "").strip())


def start_enrollment(db: Session, *, user: User) -> dict[str, str]:
    if user.mfa_enabled:
        raise ApiError(status_code=409, code="MFA_ALREADY_ENABLED", message="MFA is already enabled")
    secret_key = build_totp_secret_key()
    user.mfa_secret_enc = encrypt_secret(secret_key)
    user.mfa_enabled = False
    db.commit()
    issuer = (get_settings().app_name or "KARS").strip()
    return {
        "secret": secret_key,
        "issuer": issuer,
        "otpauth_uri": build_totp_otpauth_uri(account_name=user.email, secret_key=secret_key, issuer=issuer),
    }


def verify_user_totp_code(user: User, code: str | None, *, now_utc: datetime | None = None) -> bool:
    secret_key = decrypt_secret(user.mfa_secret_enc)
    if secret_key is None:
        return False
    return verify_totp_for_secret(secret_key, code, now_utc=now_utc)


def issue_recovery_codes(db: Session, *, user: User, count: int | None = None) -> list[str]:
    code_count = max(4, min(20, int(count or get_settings().mfa_backup_code_count or 10)))
    db.execute(delete(MfaRecoveryCode).where(MfaRecoveryCode.user_id == user.id))

    plain_codes: list[str] = []
    generated_raw_codes: set[str] = set()
    while len(plain_codes) < code_count:
        raw_code = _generate_recovery_code()
        if raw_code in generated_raw_codes:
            continue
        generated_raw_codes.add(raw_code)
        plain_codes.append(_format_recovery_code(raw_code))
        db.add(MfaRecoveryCode(user_id=user.id, code_hash=hash_password(raw_code)))
    return plain_codes


def complete_enrollment(db: Session, *, user: User, code: str | None) -> list[str]:
    if not (user.mfa_secret_enc or "").strip():
        raise ApiError(status_code=400, code="MFA_NOT_STARTED", message="Start MFA enrollment first")
    if not verify_user_totp_code(user, code):
        raise ApiError(status_code=400, code="INVALID_MFA_CODE", message="Invalid verification code")
    user.mfa_enabled = True
    codes = issue_recovery_codes(db, user=user)
    db.commit()
    return codes


def consume_recovery_code(db: Session, *, user: User, recovery_code: str | None) -> bool:
    normalized_code = _normalize_recovery_code(recovery_code)
    if not normalized_code:
        return False
    candidate_rows = list(
        db.scalars(
            select(MfaRecoveryCode).where(
                MfaRecoveryCode.user_id == user.id,
                MfaRecoveryCode.used_at.is_(None),
            )
        ).all()
    )
    for row in candidate_rows:
        if verify_password(normalized_code, row.code_hash):
            row.used_at = utc_now()
            db.commit()
            return True
    return False


def verify_second_factor(db: Session, *, user: User, code: str | None, use_backup_code: bool = False) -> bool:
    if use_backup_code:
        return consume_recovery_code(db, user=user, recovery_code=code)
    if verify_user_totp_code(user, code):
        return True
    # Backup codes contain letters; accept them in the same field.
    if any(ch.isalpha() for ch in (code or "")):
        return consume_recovery_code(db, user=user, recovery_code=code)
    return False


def disable_mfa(db: Session, *, user: User) -> None:
    user.mfa_enabled = False
    user.mfa_secret_enc = None
    db.execute(delete(MfaRecoveryCode).where(MfaRecoveryCode.user_id == user.id))
    db.commit()


def get_mfa_status(db: Session, *, user: User) -> dict[str, Any]:
    rows = list(db.scalars(select(MfaRecoveryCode).where(MfaRecoveryCode.user_id == user.id)).all())
    return {
        "enabled": bool(user.mfa_enabled),
        "has_secret": bool((user.mfa_secret_enc or "").strip()),
        "backup_codes_remaining": sum(1 for row in rows if row.used_at is None),
    }


def create_login_session(user: User) -> str:
    session_id = secrets.token_urlsafe(32)
    mfa_login_sessions.set(session_id, user.id)
    return session_id
