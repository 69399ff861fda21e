from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from jose import jwt

from kars.errors import ApiError
from kars.security import (
    decode_access_token,
    ensure_login_attempt_allowed,
    hash_password,
    register_login_failure,
    register_login_success,
    reset_login_attempts,
    verify_password,
)
from kars.services.encryption import SECRET_ENC_PREFIX, decrypt_secret, encrypt_secret
from kars.services.mfa import _hotp, _normalize_totp_secret, build_totp_otpauth_uri, verify_totp_for_secret
from kars.settings import get_settings


class SecurityFeatureTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()
        reset_login_attempts()

    def tearDown(self) -> None:
        get_settings.cache_clear()
        reset_login_attempts()

    def test_totp_verification_with_valid_code(self) -> None:
        fixed_now = datetime(2026, 2, 21, 20, 15, 0, tzinfo=timezone.utc)
        with patch.dict(os.environ, {"MFA_STEP_SECONDS": "30", "MFA_WINDOW_STEPS": "1"}, clear=False):
            get_settings.cache_clear()
            secret = _normalize_totp_secret("JBSWY3DPEHPK3PXP")
            self.assertIsNotNone(secret)
            counter = int(fixed_now.timestamp()) // 30
            valid_code = _hotp(secret, counter, digits=6)  # type: ignore[arg-type]
            previous_code = _hotp(secret, counter - 1, digits=6)  # type: ignore[arg-type]
            stale_code = _hotp(secret, counter - 3, digits=6)  # type: ignore[arg-type]

            self.assertTrue(verify_totp_for_secret("JBSWY3DPEHPK3PXP", valid_code, now_utc=fixed_now))
            self.assertTrue(verify_totp_for_secret("jbsw y3dp ehpk 3pxp", previous_code, now_utc=fixed_now))
            self.assertFalse(verify_totp_for_secret("JBSWY3DPEHPK3PXP", stale_code, now_utc=fixed_now))
            self.assertFalse(verify_totp_for_secret("JBSWY3DPEHPK3PXP", "12345", now_utc=fixed_now))
            self.assertFalse(verify_totp_for_secret("", valid_code, now_utc=fixed_now))

    def test_otpauth_uri_carries_issuer_and_period(self) -> None:
        uri = build_totp_otpauth_uri(account_name="ada@example.com", secret_key="ABC", issuer="KARS")

        self.assertTrue(uri.startswith("otpauth://totp/KARS%3Aada%40example.com?secret=ABC"))
        self.assertIn("&issuer=KARS", uri)
        self.assertIn("&period=30", uri)

    def test_secret_encrypt_decrypt_roundtrip(self) -> None:
        with patch.dict(os.environ, {"KARS_MASTER_KEY": "master-test-key"}, clear=False):
            get_settings.cache_clear()
            encrypted = encrypt_secret("smtp-password")
            self.assertTrue(encrypted.startswith(SECRET_ENC_PREFIX))  # type: ignore[union-attr]
            self.assertNotIn("smtp-password", encrypted)  # type: ignore[operator]
            self.assertEqual(decrypt_secret(encrypted), "smtp-password")

        with patch.dict(os.environ, {"KARS_MASTER_KEY": "another-key"}, clear=False):
            get_settings.cache_clear()
            self.assertIsNone(decrypt_secret(encrypted))

    def test_secret_decrypt_backward_compatible_plain_value(self) -> None:
        self.assertEqual(decrypt_secret("legacy-plain-secret"), "legacy-plain-secret")
        self.assertIsNone(decrypt_secret(""))
        self.assertIsNone(encrypt_secret("   "))

    def test_password_hash_roundtrip(self) -> None:
        hashed = hash_password("Password123!")

        self.assertNotEqual(hashed, "Password123!")
        self.assertTrue(verify_password("Password123!", hashed))
        self.assertFalse(verify_password("password123!", hashed))

    def test_decode_rejects_non_access_tokens(self) -> None:
        settings = get_settings()
        now = datetime.now(timezone.utc)
        claims = {
            "sub": "1",
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=5)).timestamp()),
            "typ": "refresh",
        }
        token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
        expired = jwt.encode(
            {**claims, "typ": "access", "exp": int((now - timedelta(minutes=5)).timestamp())},
            settings.jwt_secret,
            algorithm="HS256",
        )

        with self.assertRaises(ApiError) as wrong_type:
            decode_access_token(token)
        with self.assertRaises(ApiError) as stale:
            decode_access_token(expired)

        self.assertEqual(wrong_type.exception.status_code, 401)
        self.assertEqual(stale.exception.code, "INVALID_TOKEN")

    def test_login_lockout_after_repeated_failures(self) -> None:
        for _ in range(10):
            ensure_login_attempt_allowed("10.1.1.1")
            register_login_failure("10.1.1.1")

        with self.assertRaises(ApiError) as locked:
            ensure_login_attempt_allowed("10.1.1.1")
        self.assertEqual(locked.exception.status_code, 429)
        ensure_login_attempt_allowed("10.1.1.2")

        register_login_success("10.1.1.1")
        ensure_login_attempt_allowed("10.1.1.1")


if __name__ == "__main__":
    unittest.main()
