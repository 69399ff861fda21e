from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from kars.audit import log_audit
from kars.db import get_db
from kars.main import app
from kars.models import AssetStatus, AttestationRecord, CampaignStatus, RecordStatus, UserRole
from kars.security import reset_login_attempts
from kars.services.reports import build_compliance, build_summary
from tests.helpers import (
    auth_headers,
    create_asset,
    create_campaign,
    create_company,
    create_user,
    make_session_factory,
    override_get_db,
)


class AuditLogScopeTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        self.client = TestClient(app)
        with self.SessionLocal() as db:
            self.admin_headers = auth_headers(create_user(db, email="admin@example.com", role=UserRole.ADMIN))
            self.manager_headers = auth_headers(create_user(db, email="mgr@example.com", role=UserRole.MANAGER))
            self.employee_headers = auth_headers(
                create_user(db, email="emp@example.com", manager_email="mgr@example.com")
            )
            create_user(db, email="stranger@example.com")

            log_audit(db, action="LOGIN", entity_type="user", entity_name="emp@example.com", performed_by="emp@example.com")
            log_audit(db, action="UPDATE", entity_type="user", entity_name="emp@example.com", performed_by="admin@example.com")
            log_audit(db, action="LOGIN", entity_type="user", entity_name="mgr@example.com", performed_by="mgr@example.com")
            log_audit(
                db,
                action="CREATE",
                entity_type="asset",
                entity_name="laptop SN-9",
                performed_by="stranger@example.com",
                details={"serial": "SN-9"},
            )

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _actors(self, headers: dict[str, str], query: str = "") -> list[tuple[str, str]]:
        response = self.client.get(f"/api/audit/logs{query}", headers=headers)
        self.assertEqual(response.status_code, 200)
        return sorted((item["action"], item["performed_by"]) for item in response.json())

    def test_employee_sees_only_rows_about_themselves(self) -> None:
        self.assertEqual(
            self._actors(self.employee_headers),
            [("LOGIN", "emp@example.com"), ("UPDATE", "admin@example.com")],
        )

    def test_manager_also_sees_direct_reports(self) -> None:
        self.assertEqual(
            self._actors(self.manager_headers),
            [("LOGIN", "emp@example.com"), ("LOGIN", "mgr@example.com"), ("UPDATE", "admin@example.com")],
        )

    def test_admin_sees_everything_and_can_filter(self) -> None:
        self.assertEqual(len(self._actors(self.admin_headers)), 4)
        self.assertEqual(self._actors(self.admin_headers, "?entityType=asset"), [("CREATE", "stranger@example.com")])

        logs = self.client.get("/api/audit/logs?action=CREATE", headers=self.admin_headers).json()
        self.assertEqual(logs[0]["details"], {"serial": "SN-9"})

    def test_stats_are_scoped_like_logs(self) -> None:
        stats = self.client.get("/api/audit/stats", headers=self.employee_headers).json()

        self.assertEqual(stats["total"], 2)
        self.assertEqual(
            sorted((item["action"], item["count"]) for item in stats["byAction"]),
            [("LOGIN", 1), ("UPDATE", 1)],
        )
        self.assertEqual(stats["byEntityType"], [{"entity_type": "user", "count": 2}])

    def test_export_returns_csv(self) -> None:
        response = self.client.get("/api/audit/export", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertIn("stranger@example.com", response.text)


class ReportTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_reports_are_limited_to_admins_and_managers(self) -> None:
        with self.SessionLocal() as db:
            manager_headers = auth_headers(create_user(db, email="mgr@example.com", role=UserRole.MANAGER))
            coordinator_headers = auth_headers(create_user(db, email="co@example.com", role=UserRole.COORDINATOR))
            employee_headers = auth_headers(create_user(db, email="emp@example.com"))

        self.assertEqual(self.client.get("/api/reports/summary", headers=manager_headers).status_code, 200)
        self.assertEqual(self.client.get("/api/reports/compliance", headers=coordinator_headers).status_code, 403)
        self.assertEqual(self.client.get("/api/reports/trends", headers=employee_headers).status_code, 403)

    def test_summary_breakdowns(self) -> None:
        with self.SessionLocal() as db:
            acme = create_company(db, name="Acme")
            create_asset(db, employee_email="a@example.com", serial_number="A-1", company=acme)
            create_asset(db, employee_email="b@example.com", serial_number="A-2", company=acme, status=AssetStatus.LOST)
            create_asset(db, employee_email="c@example.com", serial_number="A-3")
            summary = build_summary(db, now=datetime.now(timezone.utc) + timedelta(minutes=5))

        self.assertEqual(summary["total"], 3)
        self.assertEqual(summary["byStatus"]["active"], 2)
        self.assertEqual(summary["byStatus"]["lost"], 1)
        self.assertEqual(summary["byStatus"]["retired"], 0)
        self.assertEqual(summary["byCompany"], [{"name": "Acme", "count": 2}, {"name": "Unknown", "count": 1}])
        self.assertEqual(summary["byManager"], [{"name": "No Manager", "email": "N/A", "count": 3}])
        self.assertEqual(summary["byType"], {"laptop": 3})

    def test_compliance_score_combines_completion_and_risk(self) -> None:
        now = datetime.now(timezone.utc)
        with self.SessionLocal() as db:
            company = create_company(db, name="Acme")
            for index in range(3):
                create_asset(db, employee_email=f"u{index}@example.com", serial_number=f"C-{index}", company=company)
            create_asset(db, employee_email="u3@example.com", serial_number="C-3", company=company, status=AssetStatus.LOST)

            users = [create_user(db, email=f"r{index}@example.com") for index in range(4)]
            user_ids = [user.id for user in users]
            campaign = create_campaign(
                db,
                status=CampaignStatus.ACTIVE,
                start_date=now - timedelta(days=20),
                escalation_days=10,
            )
            for index, user_id in enumerate(user_ids):
                completed = index < 3
                db.add(
                    AttestationRecord(
                        campaign_id=campaign.id,
                        user_id=user_id,
                        status=RecordStatus.COMPLETED if completed else RecordStatus.PENDING,
                        completed_at=now if completed else None,
                    )
                )
            db.commit()
            report = build_compliance(db, now=now)

        self.assertEqual(report["score"], 56)
        self.assertEqual(report["overdueAttestations"], 1)
        self.assertEqual(report["attestedThisQuarter"], 3)
        self.assertEqual(report["atRiskAssets"], 1)
        self.assertEqual(report["campaigns"][0]["progress"], 75.0)
        indicator_types = {item["type"] for item in report["riskIndicators"]}
        self.assertEqual(indicator_types, {"overdue_attestations", "lost_assets"})
        checklist = {item["item"]: item["done"] for item in report["checklist"]}
        self.assertTrue(checklist["Active attestation campaign running"])
        self.assertTrue(checklist["All assets assigned to a company"])
        self.assertFalse(checklist["No overdue attestations"])
        self.assertFalse(checklist["Email notifications configured"])


if __name__ == "__main__":
    unittest.main()
