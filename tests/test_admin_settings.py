from __future__ import annotations

import unittest

from fastapi.testclient import TestClient
from sqlalchemy import select

from kars.audit import parse_details
from kars.db import get_db
from kars.main import app
from kars.models import Asset, AttestationCampaign, AuditLog, Company, SmtpSettings, UserRole
from kars.security import reset_login_attempts
from kars.services.encryption import SECRET_ENC_PREFIX, decrypt_secret
from tests.helpers import (
    auth_headers,
    create_asset,
    create_campaign,
    create_company,
    create_user,
    make_session_factory,
    override_get_db,
)


class AdminSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        self.client = TestClient(app)
        with self.SessionLocal() as db:
            self.admin_headers = auth_headers(create_user(db, email="admin@example.com", role=UserRole.ADMIN))
            self.manager_headers = auth_headers(create_user(db, email="mgr@example.com", role=UserRole.MANAGER))

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_admin_endpoints_reject_other_roles(self) -> None:
        for path in (
            "/api/admin/notification-settings",
            "/api/admin/system-settings",
            "/api/admin/email-templates",
            "/api/admin/danger-zone/counts",
        ):
            response = self.client.get(path, headers=self.manager_headers)
            self.assertEqual(response.status_code, 403, path)
            self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_smtp_secrets_are_encrypted_and_never_returned(self) -> None:
        response = self.client.put(
            "/api/admin/notification-settings",
            headers=self.admin_headers,
            json={
                "enabled": True,
                "email_provider": "smtp",
                "host": "smtp.example.com",
                "port": 587,
                "username": "mailer",
                "password": "hunter2",
                "from_email": "noreply@example.com",
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["has_password"])
        self.assertNotIn("password", body)
        self.assertNotIn("hunter2", response.text)
        with self.SessionLocal() as db:
            row = db.scalar(select(SmtpSettings))
            self.assertTrue(row.password_enc.startswith(SECRET_ENC_PREFIX))
            self.assertEqual(decrypt_secret(row.password_enc), "hunter2")
            audit = db.scalar(select(AuditLog).where(AuditLog.entity_type == "smtp_settings"))
            self.assertNotIn("password", parse_details(audit.details)["fields"])

    def test_enabling_smtp_without_host_is_rejected(self) -> None:
        response = self.client.put(
            "/api/admin/notification-settings",
            headers=self.admin_headers,
            json={"enabled": True, "from_email": "noreply@example.com"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_system_settings_report_restart_required(self) -> None:
        response = self.client.put(
            "/api/admin/system-settings",
            headers=self.admin_headers,
            json={
                "proxy": {"enabled": True, "type": "cloudflare", "trustLevel": 2},
                "rateLimiting": {"windowMs": 60000, "maxRequests": 50},
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["restartRequired"])
        self.assertEqual(body["proxy"]["type"], {"value": "cloudflare", "source": "database"})
        self.assertEqual(body["rateLimiting"]["maxRequests"]["value"], 50)

        fetched = self.client.get("/api/admin/system-settings", headers=self.admin_headers).json()
        self.assertEqual(fetched["proxy"]["trustLevel"]["value"], 2)

    def test_branding_is_public_and_admin_editable(self) -> None:
        updated = self.client.put(
            "/api/admin/branding",
            headers=self.admin_headers,
            json={"site_name": "Acme Assets", "primary_color": "#112233"},
        )
        public = self.client.get("/api/branding")

        self.assertEqual(updated.status_code, 200)
        self.assertEqual(public.status_code, 200)
        self.assertEqual(public.json()["site_name"], "Acme Assets")
        self.assertEqual(public.json()["primary_color"], "#112233")

    def test_email_template_update_and_reset(self) -> None:
        updated = self.client.put(
            "/api/admin/email-templates/attestation_reminder",
            headers=self.admin_headers,
            json={"subject": "Custom reminder"},
        )
        self.assertEqual(updated.status_code, 200)
        fetched = self.client.get("/api/admin/email-templates/attestation_reminder", headers=self.admin_headers)
        self.assertEqual(fetched.json()["subject"], "Custom reminder")

        reset = self.client.post("/api/admin/email-templates/attestation_reminder/reset", headers=self.admin_headers)
        self.assertEqual(reset.status_code, 200)
        self.assertNotEqual(reset.json()["subject"], "Custom reminder")
        self.assertFalse(reset.json()["is_custom"])

    def test_danger_zone_requires_exact_phrase(self) -> None:
        with self.SessionLocal() as db:
            company = create_company(db)
            create_asset(db, employee_email="a@example.com", serial_number="SN-1", company=company)
            create_asset(db, employee_email="b@example.com", serial_number="SN-2")
            create_campaign(db)

        unknown = self.client.request(
            "DELETE",
            "/api/admin/danger-zone/users",
            headers=self.admin_headers,
            json={"confirmation": "DELETE ALL USERS"},
        )
        mismatch = self.client.request(
            "DELETE",
            "/api/admin/danger-zone/assets",
            headers=self.admin_headers,
            json={"confirmation": "delete all assets"},
        )
        forbidden = self.client.request(
            "DELETE",
            "/api/admin/danger-zone/assets",
            headers=self.manager_headers,
            json={"confirmation": "DELETE ALL ASSETS"},
        )

        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(mismatch.status_code, 400)
        self.assertEqual(mismatch.json()["error"]["code"], "CONFIRMATION_MISMATCH")
        self.assertEqual(forbidden.status_code, 403)
        counts = self.client.get("/api/admin/danger-zone/counts", headers=self.admin_headers).json()
        self.assertEqual(counts["assets"], 2)

        wiped = self.client.request(
            "DELETE",
            "/api/admin/danger-zone/companies",
            headers=self.admin_headers,
            json={"confirmation": "DELETE ALL COMPANIES"},
        )

        self.assertEqual(wiped.status_code, 200)
        self.assertEqual(wiped.json()["deleted"], {"companies": 1, "assets": 2})
        with self.SessionLocal() as db:
            self.assertEqual(db.scalars(select(Company)).all(), [])
            self.assertEqual(db.scalars(select(Asset)).all(), [])
            self.assertEqual(len(db.scalars(select(AttestationCampaign)).all()), 1)
            self.assertIsNotNone(db.scalar(select(AuditLog).where(AuditLog.action == "DANGER_ZONE_DELETE")))

    def test_database_info_lists_tables(self) -> None:
        response = self.client.get("/api/admin/database", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["engine"], "sqlite")
        names = {table["name"] for table in response.json()["tables"]}
        self.assertIn("attestation_campaigns", names)


if __name__ == "__main__":
    unittest.main()
