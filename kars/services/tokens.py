from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from kars.errors import ApiError
from kars.models import EmailVerificationToken, PasswordResetToken, User, VerificationTokenType
from kars.settings import get_settings
from kars.timeutils import as_utc, utc_now

logger = logging.getLogger("kars.tokens")


class _SingleUseToken(Protocol):
    used: bool
    expires_at: datetime


def generate_token() -> str:
    return secrets.token_hex(32)


def is_token_usable(row: _SingleUseToken, *, now: datetime | None = None) -> bool:
    if row.used:
        return False
    expires_at = as_utc(row.expires_at)
    return expires_at is not None and expires_at > (now or utc_now())


def issue_password_reset_token(db: Session, user: User) -> PasswordResetToken:
    minutes = max(1, int(get_settings().password_reset_minutes))
    row = PasswordResetToken(
        user_id=user.id,
        token=generate_token(),
        expires_at=utc_now() + timedelta(minutes=minutes),
        used=False,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def get_valid_password_reset_token(db: Session, token: str) -> PasswordResetToken:
    row = db.scalar(select(PasswordResetToken).where(PasswordResetToken.token == token))
    if row is None:
        raise ApiError(status_code=400, code="INVALID_TOKEN", message="Invalid or expired reset token")
    if row.used:
        raise ApiError(status_code=400, code="TOKEN_USED", message="This reset link has already been used")
    if not is_token_usable(row):
        db.execute(delete(PasswordResetToken).where(PasswordResetToken.user_id == row.user_id))
        db.commit()
        raise ApiError(status_code=400, code="TOKEN_EXPIRED", message="This reset link has expired")
    return row


def mark_used(db: Session, row: PasswordResetToken | EmailVerificationToken) -> None:
    row.used = True
    db.flush()


def issue_email_verification_token(
    db: Session,
    user: User,
    *,
    email: str,
    token_type: VerificationTokenType = VerificationTokenType.REGISTRATION,
) -> EmailVerificationToken:
    hours = max(1, int(get_settings().email_verification_hours))
    db.execute(
        delete(EmailVerificationToken).where(
            EmailVerificationToken.user_id == user.id,
            EmailVerificationToken.token_type == token_type,
            EmailVerificationToken.used.is_(False),
        )
    )
    row = EmailVerificationToken(
        user_id=user.id,
        email=email,
        token=generate_token(),
        token_type=token_type,
        expires_at=utc_now() + timedelta(hours=hours),
        used=False,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def get_valid_verification_token(db: Session, token: str) -> EmailVerificationToken:
    row = db.scalar(select(EmailVerificationToken).where(EmailVerificationToken.token == token))
    if row is None:
        raise ApiError(status_code=400, code="INVALID_TOKEN", message="Invalid verification token")
    if row.used:
        raise ApiError(status_code=400, code="TOKEN_USED", message="This verification link has already been used")
    if not is_token_usable(row):
        raise ApiError(status_code=400, code="TOKEN_EXPIRED", message="This verification link has expired")
    return row


def purge_expired_tokens(db: Session, *, now: datetime | None = None) -> int:
    cutoff = now or utc_now()
    reset_result = db.execute(delete(PasswordResetToken).where(PasswordResetToken.expires_at < cutoff))
    verification_result = db.execute(
        delete(EmailVerificationToken).where(EmailVerificationToken.expires_at < cutoff)
    )
    db.commit()
    removed = int(reset_result.rowcount or 0) + int(verification_result.rowcount or 0)
    if removed:
        logger.info("expired_tokens_purged", extra={"removed": removed})
    return removed
