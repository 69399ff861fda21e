from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from kars.settings import get_settings

SECRET_ENC_PREFIX = "ENC1:"

logger = logging.getLogger("kars.encryption")


def _cipher() -> Fernet:
    settings = get_settings()
    material = (
        (settings.kars_master_key or "").strip()
        or (settings.jwt_secret or "").strip()
        or "dev-kars-master-key"
    )
    derived = base64.urlsafe_b64encode(hashlib.sha256(material.encode("utf-8")).digest())
    return Fernet(derived)


def encrypt_secret(value: str | None) -> str | None:
    payload = (value or "").strip()
    if not payload:
        return None
    return SECRET_ENC_PREFIX + _cipher().encrypt(payload.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str | None) -> str | None:
    raw = (token or "").strip()
    if not raw:
        return None
    if not raw.startswith(SECRET_ENC_PREFIX):
        # Rows written before encryption was introduced hold the plain value.
        return raw
    try:
        decoded = _cipher().decrypt(raw[len(SECRET_ENC_PREFIX) :].encode("utf-8"))
    except InvalidToken:
        logger.warning("secret_decrypt_failed")
        return None
    return decoded.decode("utf-8").strip() or None
