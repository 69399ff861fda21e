from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from kars.db import get_db
from kars.main import app
from kars.models import AuditLog, User, UserPasskey, WebAuthnChallenge
from kars.security import reset_login_attempts
from kars.services.settings_store import get_system_settings
from kars.timeutils import utc_now
from tests.helpers import auth_headers, create_user, make_session_factory, override_get_db


class PasskeyEndpointsTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        self.client = TestClient(app)
        with self.SessionLocal() as db:
            owner = create_user(db, email="owner@example.com")
            other = create_user(db, email="other@example.com")
            self.owner_id = owner.id
            self.owner_headers = auth_headers(owner)
            self.other_headers = auth_headers(other)
            passkey = UserPasskey(
                user_id=owner.id,
                name="Laptop",
                credential_id="cred-owner",
                public_key="pk",
                sign_count=0,
            )
            db.add(passkey)
            db.commit()
            self.passkey_id = passkey.id

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_auth_options_store_challenge(self) -> None:
        response = self.client.post("/api/auth/passkeys/auth-options", json={"email": "owner@example.com"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertIn("challenge", body["options"])
        with self.SessionLocal() as db:
            challenge = db.get(WebAuthnChallenge, body["challenge_id"])
            self.assertEqual(challenge.purpose, "PASSKEY_AUTHENTICATE")
            self.assertEqual(challenge.user_id, self.owner_id)
            self.assertEqual(challenge.challenge, body["options"]["challenge"])

    def test_unknown_credential_and_used_challenge_are_rejected(self) -> None:
        options = self.client.post("/api/auth/passkeys/auth-options", json={}).json()

        unknown = self.client.post(
            "/api/auth/passkeys/verify-authentication",
            json={"challenge_id": options["challenge_id"], "credential": {"id": "cred-missing"}},
        )
        with self.SessionLocal() as db:
            db.get(WebAuthnChallenge, options["challenge_id"]).used_at = utc_now()
            db.commit()
        replay = self.client.post(
            "/api/auth/passkeys/verify-authentication",
            json={"challenge_id": options["challenge_id"], "credential": {"id": "cred-owner"}},
        )

        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(unknown.json()["error"]["code"], "PASSKEY_NOT_REGISTERED")
        self.assertEqual(replay.status_code, 409)
        self.assertEqual(replay.json()["error"]["code"], "PASSKEY_CHALLENGE_USED")

    @patch("kars.routers.auth.verify_authentication")
    def test_verified_passkey_logs_the_user_in(self, mock_verify_authentication) -> None:
        mock_verify_authentication.side_effect = lambda db, **_kwargs: db.get(User, self.owner_id)

        response = self.client.post(
            "/api/auth/passkeys/verify-authentication",
            json={"challenge_id": 5, "credential": {"id": "cred-owner"}},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["token"])
        self.assertEqual(body["user"]["email"], "owner@example.com")
        with self.SessionLocal() as db:
            audit = db.scalar(select(AuditLog).where(AuditLog.action == "LOGIN"))
            self.assertIn("passkey", audit.details)

    def test_disabled_passkeys_are_refused(self) -> None:
        with self.SessionLocal() as db:
            get_system_settings(db).passkey_enabled = False
            db.commit()

        response = self.client.post("/api/auth/passkeys/registration-options", headers=self.owner_headers)
        config = self.client.get("/api/auth/passkeys/config")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "PASSKEYS_DISABLED")
        self.assertFalse(config.json()["enabled"])

    def test_list_and_delete_only_own_passkeys(self) -> None:
        listed = self.client.get("/api/auth/passkeys", headers=self.owner_headers)
        foreign_delete = self.client.delete(f"/api/auth/passkeys/{self.passkey_id}", headers=self.other_headers)
        own_delete = self.client.delete(f"/api/auth/passkeys/{self.passkey_id}", headers=self.owner_headers)

        self.assertEqual([item["name"] for item in listed.json()], ["Laptop"])
        self.assertEqual(foreign_delete.status_code, 404)
        self.assertEqual(own_delete.status_code, 200)
        with self.SessionLocal() as db:
            self.assertEqual(db.scalars(select(UserPasskey)).all(), [])


if __name__ == "__main__":
    unittest.main()
