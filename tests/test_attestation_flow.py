from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from kars.db import get_db
from kars.main import app
from kars.models import (
    Asset,
    AssetStatus,
    AttestationPendingInvite,
    AttestationRecord,
    CampaignStatus,
    CampaignTargetType,
    RecordStatus,
    User,
    UserRole,
)
from kars.security import reset_login_attempts
from kars.services import attestation as attestation_service
from kars.services.attestation import build_dashboard, is_record_overdue, resolve_targets
from tests.helpers import (
    auth_headers,
    create_asset,
    create_campaign,
    create_company,
    create_user,
    make_session_factory,
    override_get_db,
    sent_result,
)


class AttestationFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        self.client = TestClient(app)

        with self.SessionLocal() as db:
            admin = create_user(db, email="admin@example.com", role=UserRole.ADMIN)
            coordinator = create_user(db, email="coord@example.com", role=UserRole.COORDINATOR)
            employee = create_user(
                db,
                email="emp@example.com",
                first_name="Eve",
                last_name="Employee",
                manager_email="boss@example.com",
            )
            self.admin_id, self.coordinator_id, self.employee_id = admin.id, coordinator.id, employee.id
            self.admin_headers = auth_headers(admin)
            self.coordinator_headers = auth_headers(coordinator)
            self.employee_headers = auth_headers(employee)
            self.laptop_id = create_asset(
                db,
                employee_email="emp@example.com",
                serial_number="SN-1",
                owner=employee,
            ).id
            create_asset(db, employee_email="ghost@example.com", serial_number="SN-2")
            create_asset(
                db,
                employee_email="retired@example.com",
                serial_number="SN-3",
                status=AssetStatus.RETIRED,
            )

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _create_and_start(self, **payload) -> dict:
        body = {"name": "Annual Review", "escalation_days": 10, **payload}
        created = self.client.post("/api/attestation/campaigns", headers=self.admin_headers, json=body)
        self.assertEqual(created.status_code, 201, created.text)
        campaign_id = created.json()["campaign"]["id"]
        started = self.client.post(f"/api/attestation/campaigns/{campaign_id}/start", headers=self.admin_headers)
        self.assertEqual(started.status_code, 200, started.text)
        return started.json()

    def _employee_record_id(self) -> int:
        with self.SessionLocal() as db:
            return db.scalar(select(AttestationRecord.id).where(AttestationRecord.user_id == self.employee_id))

    def test_campaign_management_permissions(self) -> None:
        by_coordinator = self.client.post(
            "/api/attestation/campaigns",
            headers=self.coordinator_headers,
            json={"name": "Nope"},
        )
        listed_by_coordinator = self.client.get("/api/attestation/campaigns", headers=self.coordinator_headers)
        listed_by_employee = self.client.get("/api/attestation/campaigns", headers=self.employee_headers)

        self.assertEqual(by_coordinator.status_code, 403)
        self.assertEqual(listed_by_coordinator.status_code, 200)
        self.assertEqual(listed_by_employee.status_code, 403)

    def test_start_creates_records_and_invites_for_active_assets(self) -> None:
        result = self._create_and_start()

        self.assertEqual(result["campaign"]["status"], "active")
        self.assertEqual(result["recordsCreated"], 3)
        self.assertEqual(result["invitesCreated"], 1)
        self.assertEqual(result["emailsSent"], 0)
        with self.SessionLocal() as db:
            invites = list(db.scalars(select(AttestationPendingInvite)).all())
        self.assertEqual([invite.employee_email for invite in invites], ["ghost@example.com"])

        campaign_id = result["campaign"]["id"]
        again = self.client.post(f"/api/attestation/campaigns/{campaign_id}/start", headers=self.admin_headers)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["code"], "INVALID_CAMPAIGN_STATE")

    def test_start_sends_ready_emails_when_enabled(self) -> None:
        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch("kars.services.attestation.send_template_email", return_value=sent_result("x@example.com")) as send,
        ):
            result = self._create_and_start()

        self.assertEqual(result["emailsSent"], 4)
        self.assertEqual(result["emailsFailed"], 0)
        template_keys = [call.args[1] for call in send.call_args_list]
        self.assertEqual(template_keys.count("attestation_ready"), 3)
        self.assertEqual(template_keys.count("attestation_registration_invite"), 1)

    def test_companies_target_uses_assets_in_selected_companies(self) -> None:
        with self.SessionLocal() as db:
            company = create_company(db, name="Globex")
            create_asset(db, employee_email="emp@example.com", serial_number="SN-10", company=company)
            create_asset(
                db,
                employee_email="contractor@example.com",
                serial_number="SN-11",
                company=company,
                status=AssetStatus.LOST,
            )
            campaign = create_campaign(
                db,
                target_type=CampaignTargetType.COMPANIES,
                target_company_ids=[company.id],
            )
            targets = resolve_targets(db, campaign)

        self.assertEqual([user.email for user in targets.users], ["emp@example.com"])
        self.assertEqual([owner.email for owner in targets.unregistered], ["contractor@example.com"])

    def test_employee_completes_attestation_with_new_asset(self) -> None:
        self._create_and_start()
        record_id = self._employee_record_id()

        mine = self.client.get("/api/attestation/my-attestations", headers=self.employee_headers)
        self.assertEqual(mine.status_code, 200)
        self.assertEqual([item["id"] for item in mine.json()], [record_id])

        detail = self.client.get(f"/api/attestation/records/{record_id}", headers=self.employee_headers)
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["record"]["status"], "in_progress")
        self.assertEqual([asset["serial_number"] for asset in detail.json()["assets"]], ["SN-1"])

        reviewed = self.client.put(
            f"/api/attestation/records/{record_id}/assets/{self.laptop_id}",
            headers=self.employee_headers,
            json={"status": "damaged", "notes": "Cracked screen"},
        )
        self.assertEqual(reviewed.status_code, 200)
        self.assertEqual(reviewed.json()["attested_status"], "damaged")

        added = self.client.post(
            f"/api/attestation/records/{record_id}/assets/new",
            headers=self.employee_headers,
            json={"asset_type": "monitor", "serial_number": "MON-1", "asset_tag": "TAG-MON-1"},
        )
        self.assertEqual(added.status_code, 201)

        completed = self.client.post(f"/api/attestation/records/{record_id}/complete", headers=self.employee_headers)
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()["record"]["status"], "completed")
        self.assertEqual(completed.json()["assetsAdded"], 1)

        again = self.client.post(f"/api/attestation/records/{record_id}/complete", headers=self.employee_headers)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["code"], "RECORD_COMPLETED")

        with self.SessionLocal() as db:
            laptop = db.get(Asset, self.laptop_id)
            monitor = db.scalar(select(Asset).where(Asset.serial_number == "MON-1"))
            self.assertEqual(laptop.status, AssetStatus.DAMAGED)
            self.assertIsNotNone(monitor)
            self.assertEqual(monitor.employee_email, "emp@example.com")
            self.assertEqual(monitor.owner_id, self.employee_id)

    def test_new_asset_requires_identifiers(self) -> None:
        self._create_and_start()
        record_id = self._employee_record_id()

        response = self.client.post(
            f"/api/attestation/records/{record_id}/assets/new",
            headers=self.employee_headers,
            json={"asset_type": "monitor", "serial_number": "MON-2"},
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_other_users_record_is_forbidden_but_staff_can_read(self) -> None:
        self._create_and_start()
        with self.SessionLocal() as db:
            other = create_user(db, email="other@example.com")
            other_headers = auth_headers(other)
        record_id = self._employee_record_id()

        forbidden = self.client.get(f"/api/attestation/records/{record_id}", headers=other_headers)
        staff = self.client.get(f"/api/attestation/records/{record_id}", headers=self.coordinator_headers)

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(staff.status_code, 200)
        self.assertEqual(staff.json()["record"]["status"], "pending")

    def test_overdue_is_strictly_after_escalation_window(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with self.SessionLocal() as db:
            campaign = create_campaign(db, status=CampaignStatus.ACTIVE, start_date=start, escalation_days=10)
            record = AttestationRecord(campaign_id=campaign.id, user_id=self.employee_id, status=RecordStatus.PENDING)
            db.add(record)
            db.commit()

            self.assertFalse(is_record_overdue(record, campaign, now=start + timedelta(days=10)))
            self.assertTrue(is_record_overdue(record, campaign, now=start + timedelta(days=11)))
            record.status = RecordStatus.COMPLETED
            self.assertFalse(is_record_overdue(record, campaign, now=start + timedelta(days=30)))

    def test_dashboard_totals(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        with self.SessionLocal() as db:
            campaign = create_campaign(db, status=CampaignStatus.ACTIVE, start_date=start, escalation_days=5)
            db.add_all(
                [
                    AttestationRecord(campaign_id=campaign.id, user_id=self.admin_id, status=RecordStatus.COMPLETED),
                    AttestationRecord(campaign_id=campaign.id, user_id=self.employee_id, status=RecordStatus.PENDING),
                    AttestationRecord(
                        campaign_id=campaign.id,
                        user_id=self.coordinator_id,
                        status=RecordStatus.IN_PROGRESS,
                    ),
                    AttestationPendingInvite(
                        campaign_id=campaign.id,
                        employee_email="ghost@example.com",
                        invite_token="tok-1",
                    ),
                ]
            )
            db.commit()
            dashboard = build_dashboard(db, campaign_id=campaign.id, now=start + timedelta(days=6))

        self.assertEqual(
            dashboard["totals"],
            {
                "total": 3,
                "completed": 1,
                "pending": 1,
                "in_progress": 1,
                "overdue": 2,
                "unregistered": 1,
                "completion_rate": 33.3,
            },
        )

    def test_remind_requires_email_and_sends_when_enabled(self) -> None:
        self._create_and_start()
        record_id = self._employee_record_id()

        disabled = self.client.post(f"/api/attestation/records/{record_id}/remind", headers=self.admin_headers)
        self.assertEqual(disabled.status_code, 400)
        self.assertEqual(disabled.json()["error"]["code"], "EMAIL_DISABLED")

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch(
                "kars.services.attestation.send_template_email",
                return_value=sent_result("emp@example.com"),
            ) as send,
        ):
            reminded = self.client.post(f"/api/attestation/records/{record_id}/remind", headers=self.admin_headers)

        self.assertEqual(reminded.status_code, 200)
        self.assertIsNotNone(reminded.json()["record"]["reminder_sent_at"])
        self.assertEqual(send.call_args.args[1], "attestation_reminder")
        self.assertEqual(send.call_args.args[2], ["emp@example.com"])

    def test_remind_reports_send_failure(self) -> None:
        self._create_and_start()
        record_id = self._employee_record_id()

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch(
                "kars.services.attestation.send_template_email",
                return_value={"mode": "failed", "sent": 0, "recipients": []},
            ),
        ):
            response = self.client.post(f"/api/attestation/records/{record_id}/remind", headers=self.admin_headers)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["error"]["code"], "EMAIL_SEND_FAILED")

    def test_escalate_sends_to_manager(self) -> None:
        self._create_and_start()
        record_id = self._employee_record_id()

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch(
                "kars.services.attestation.send_template_email",
                return_value=sent_result("boss@example.com"),
            ) as send,
        ):
            response = self.client.post(
                f"/api/attestation/records/{record_id}/escalate",
                headers=self.admin_headers,
                json={"message": "Please follow up"},
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(send.call_args.args[2], ["boss@example.com"])
        self.assertEqual(send.call_args.args[3]["customMessage"], "Please follow up")

    def test_complete_and_cancel_require_an_active_campaign(self) -> None:
        created = self.client.post("/api/attestation/campaigns", headers=self.admin_headers, json={"name": "Draft"})
        campaign_id = created.json()["campaign"]["id"]

        completed = self.client.post(f"/api/attestation/campaigns/{campaign_id}/complete", headers=self.admin_headers)
        cancelled = self.client.post(f"/api/attestation/campaigns/{campaign_id}/cancel", headers=self.admin_headers)

        for response in (completed, cancelled):
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.json()["error"]["code"], "INVALID_CAMPAIGN_STATE")

    def test_cancel_keeps_completed_records(self) -> None:
        campaign_id = self._create_and_start()["campaign"]["id"]
        record_id = self._employee_record_id()
        self.client.post(f"/api/attestation/records/{record_id}/complete", headers=self.employee_headers)

        response = self.client.post(f"/api/attestation/campaigns/{campaign_id}/cancel", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["campaign"]["status"], "cancelled")
        with self.SessionLocal() as db:
            record = db.get(AttestationRecord, record_id)
            self.assertEqual(record.status, RecordStatus.COMPLETED)
            self.assertIsNotNone(record.completed_at)

    def test_delete_refuses_active_and_cascades_after_cancel(self) -> None:
        campaign_id = self._create_and_start()["campaign"]["id"]

        refused = self.client.delete(f"/api/attestation/campaigns/{campaign_id}", headers=self.admin_headers)
        self.client.post(f"/api/attestation/campaigns/{campaign_id}/cancel", headers=self.admin_headers)
        deleted = self.client.delete(f"/api/attestation/campaigns/{campaign_id}", headers=self.admin_headers)

        self.assertEqual(refused.status_code, 409)
        self.assertEqual(refused.json()["error"]["code"], "INVALID_CAMPAIGN_STATE")
        self.assertEqual(deleted.status_code, 200)
        with self.SessionLocal() as db:
            self.assertEqual(db.scalars(select(AttestationRecord)).all(), [])
            self.assertEqual(db.scalars(select(AttestationPendingInvite)).all(), [])

    def test_bulk_remind_counts_sent_and_failed(self) -> None:
        campaign_id = self._create_and_start()["campaign"]["id"]

        def fake_send(_db, _template_key, recipients, _variables):
            if recipients == ["coord@example.com"]:
                raise RuntimeError("smtp connection reset")
            if recipients == ["admin@example.com"]:
                return {"mode": "failed", "sent": 0, "recipients": []}
            return sent_result(*recipients)

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch("kars.services.attestation.send_template_email", side_effect=fake_send),
        ):
            response = self.client.post(
                f"/api/attestation/campaigns/{campaign_id}/bulk-remind",
                headers=self.admin_headers,
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["sent"], 1)
        self.assertEqual(response.json()["failed"], 2)
        with self.SessionLocal() as db:
            reminded = db.scalars(
                select(AttestationRecord.user_id).where(AttestationRecord.reminder_sent_at.is_not(None))
            ).all()
        self.assertEqual(reminded, [self.employee_id])

    def test_reminders_and_invites_refused_once_campaign_is_not_active(self) -> None:
        campaign_id = self._create_and_start()["campaign"]["id"]
        record_id = self._employee_record_id()
        with self.SessionLocal() as db:
            invite_id = db.scalar(select(AttestationPendingInvite.id))
        self.client.post(f"/api/attestation/campaigns/{campaign_id}/cancel", headers=self.admin_headers)

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch("kars.services.attestation.send_template_email", return_value=sent_result("x@example.com")) as send,
        ):
            responses = [
                self.client.post(f"/api/attestation/campaigns/{campaign_id}/bulk-remind", headers=self.admin_headers),
                self.client.post(f"/api/attestation/records/{record_id}/remind", headers=self.admin_headers),
                self.client.post(f"/api/attestation/records/{record_id}/escalate", headers=self.admin_headers, json={}),
                self.client.post(f"/api/attestation/pending-invites/{invite_id}/resend", headers=self.admin_headers),
            ]

        for response in responses:
            self.assertEqual(response.status_code, 409, response.text)
            self.assertEqual(response.json()["error"]["code"], "INVALID_CAMPAIGN_STATE")
        send.assert_not_called()

    def test_resend_invite_stamps_sent_time(self) -> None:
        self._create_and_start()
        with self.SessionLocal() as db:
            invite_id = db.scalar(select(AttestationPendingInvite.id))

        with (
            patch("kars.services.attestation.is_email_enabled", return_value=True),
            patch(
                "kars.services.attestation.send_template_email",
                return_value=sent_result("ghost@example.com"),
            ) as send,
        ):
            response = self.client.post(f"/api/attestation/pending-invites/{invite_id}/resend", headers=self.admin_headers)

        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["invite"]["invite_sent_at"])
        self.assertEqual(send.call_args.args[2], ["ghost@example.com"])
        with self.SessionLocal() as db:
            self.assertIsNotNone(db.get(AttestationPendingInvite, invite_id).invite_sent_at)

    def test_registration_ignores_invites_of_inactive_campaigns(self) -> None:
        with self.SessionLocal() as db:
            for status in (CampaignStatus.DRAFT, CampaignStatus.COMPLETED, CampaignStatus.CANCELLED):
                campaign = create_campaign(db, name=f"{status.value} campaign", status=status)
                db.add(
                    AttestationPendingInvite(
                        campaign_id=campaign.id,
                        employee_email="late@example.com",
                        invite_token=f"tok-{status.value}",
                    )
                )
            db.commit()

        response = self.client.post(
            "/api/auth/register",
            json={
                "email": "late@example.com",
                "password": "StrongPass123!",
                "first_name": "Lee",
                "last_name": "Late",
                "manager_first_name": "Grace",
                "manager_last_name": "Hopper",
                "manager_email": "grace@example.com",
            },
        )

        self.assertEqual(response.status_code, 201, response.text)
        self.assertFalse(response.json()["redirectToAttestations"])
        with self.SessionLocal() as db:
            invites = db.scalars(select(AttestationPendingInvite)).all()
            self.assertTrue(all(invite.registered_at is None for invite in invites))
            self.assertEqual(db.scalars(select(AttestationRecord)).all(), [])

    def test_explicit_zero_day_settings_are_kept(self) -> None:
        with self.SessionLocal() as db:
            admin = db.get(User, self.admin_id)
            campaign = attestation_service.create_campaign(
                db,
                creator=admin,
                payload={"name": "Same day", "reminder_days": 0, "escalation_days": 0, "unregistered_reminder_days": 0},
            )
            defaults = attestation_service.create_campaign(db, creator=admin, payload={"name": "Defaults"})

            self.assertEqual(
                (campaign.reminder_days, campaign.escalation_days, campaign.unregistered_reminder_days),
                (0, 0, 0),
            )
            self.assertEqual(
                (defaults.reminder_days, defaults.escalation_days, defaults.unregistered_reminder_days),
                (7, 10, 7),
            )

    def test_export_returns_csv_roster(self) -> None:
        result = self._create_and_start()
        campaign_id = result["campaign"]["id"]

        response = self.client.get(
            f"/api/attestation/campaigns/{campaign_id}/export",
            headers=self.coordinator_headers,
        )
        invalid = self.client.get(
            f"/api/attestation/campaigns/{campaign_id}/export?format=pdf",
            headers=self.coordinator_headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertIn("attachment;", response.headers["content-disposition"])
        body = response.text
        self.assertIn("Employee Email", body)
        self.assertIn("emp@example.com", body)
        self.assertIn("ghost@example.com", body)
        self.assertEqual(invalid.status_code, 400)


if __name__ == "__main__":
    unittest.main()
