from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from kars.models import (
    AttestationCampaign,
    AttestationPendingInvite,
    AttestationRecord,
    CampaignStatus,
    RecordStatus,
)
from kars.services import attestation_scheduler
from kars.services.attestation_scheduler import (
    auto_close_expired_campaigns,
    process_escalations,
    process_reminders,
    process_unregistered_escalations,
    process_unregistered_reminders,
    run_scheduled_tasks,
)
from tests.helpers import create_asset, create_campaign, create_user, make_session_factory, sent_result

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class AttestationSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.SessionLocal = make_session_factory()
        with self.SessionLocal() as db:
            employee = create_user(db, email="emp@example.com", manager_email="boss@example.com")
            campaign = create_campaign(
                db,
                status=CampaignStatus.ACTIVE,
                start_date=START,
                end_date=START + timedelta(days=30),
                reminder_days=7,
                escalation_days=10,
                unregistered_reminder_days=5,
            )
            db.add(AttestationRecord(campaign_id=campaign.id, user_id=employee.id, status=RecordStatus.PENDING))
            db.add(
                AttestationPendingInvite(
                    campaign_id=campaign.id,
                    employee_email="ghost@example.com",
                    employee_first_name="Gus",
                    invite_token="ghost-token",
                )
            )
            db.commit()
            create_asset(db, employee_email="ghost@example.com", serial_number="G-1", manager_email="lead@example.com")
            self.campaign_id = campaign.id

    @patch("kars.services.attestation.send_template_email")
    def test_reminders_wait_for_threshold_and_send_once(self, send_mock: MagicMock) -> None:
        send_mock.return_value = sent_result("emp@example.com")

        with self.SessionLocal() as db:
            self.assertEqual(process_reminders(START + timedelta(days=6), db=db), 0)
            self.assertEqual(process_reminders(START + timedelta(days=7), db=db), 1)
            self.assertEqual(process_reminders(START + timedelta(days=8), db=db), 0)

        self.assertEqual(send_mock.call_count, 1)
        self.assertEqual(send_mock.call_args.args[1], "attestation_reminder")
        with self.SessionLocal() as db:
            record = db.scalar(select(AttestationRecord))
            self.assertIsNotNone(record.reminder_sent_at)

    @patch("kars.services.attestation.send_template_email")
    def test_reminder_not_marked_when_send_fails(self, send_mock: MagicMock) -> None:
        send_mock.return_value = {"mode": "disabled", "sent": 0, "recipients": []}

        with self.SessionLocal() as db:
            self.assertEqual(process_reminders(START + timedelta(days=7), db=db), 0)
            record = db.scalar(select(AttestationRecord))
            self.assertIsNone(record.reminder_sent_at)

    @patch("kars.services.attestation.send_template_email")
    def test_escalation_goes_to_manager_after_window(self, send_mock: MagicMock) -> None:
        send_mock.return_value = sent_result("boss@example.com")

        with self.SessionLocal() as db:
            self.assertEqual(process_escalations(START + timedelta(days=9), db=db), 0)
            self.assertEqual(process_escalations(START + timedelta(days=10), db=db), 1)
            self.assertEqual(process_escalations(START + timedelta(days=12), db=db), 0)

        self.assertEqual(send_mock.call_args.args[1], "attestation_escalation")
        self.assertEqual(send_mock.call_args.args[2], ["boss@example.com"])

    @patch("kars.services.attestation.send_template_email")
    def test_completed_records_are_skipped(self, send_mock: MagicMock) -> None:
        with self.SessionLocal() as db:
            record = db.scalar(select(AttestationRecord))
            record.status = RecordStatus.COMPLETED
            db.commit()
            self.assertEqual(process_reminders(START + timedelta(days=20), db=db), 0)
            self.assertEqual(process_escalations(START + timedelta(days=20), db=db), 0)
        send_mock.assert_not_called()

    @patch("kars.services.attestation.send_template_email")
    def test_unregistered_reminder_uses_own_threshold(self, send_mock: MagicMock) -> None:
        send_mock.return_value = sent_result("ghost@example.com")

        with self.SessionLocal() as db:
            self.assertEqual(process_unregistered_reminders(START + timedelta(days=4), db=db), 0)
            self.assertEqual(process_unregistered_reminders(START + timedelta(days=5), db=db), 1)
            self.assertEqual(process_unregistered_reminders(START + timedelta(days=6), db=db), 0)

        self.assertEqual(send_mock.call_args.args[1], "attestation_unregistered_reminder")
        self.assertEqual(send_mock.call_args.args[2], ["ghost@example.com"])

    @patch("kars.services.attestation_scheduler.send_template_email")
    def test_unregistered_escalation_targets_asset_manager(self, send_mock: MagicMock) -> None:
        send_mock.return_value = sent_result("lead@example.com")

        with self.SessionLocal() as db:
            self.assertEqual(process_unregistered_escalations(START + timedelta(days=10), db=db), 1)
            self.assertEqual(process_unregistered_escalations(START + timedelta(days=11), db=db), 0)

        self.assertEqual(send_mock.call_args.args[1], "attestation_unregistered_escalation")
        self.assertEqual(send_mock.call_args.args[2], ["lead@example.com"])
        self.assertEqual(send_mock.call_args.args[3]["assetCount"], 1)

    def test_auto_close_completes_expired_campaigns(self) -> None:
        with self.SessionLocal() as db:
            undated = create_campaign(db, name="Open ended", status=CampaignStatus.ACTIVE, start_date=START)
            undated_id = undated.id
            self.assertEqual(auto_close_expired_campaigns(START + timedelta(days=30), db=db), 0)
            self.assertEqual(auto_close_expired_campaigns(START + timedelta(days=31), db=db), 1)

        with self.SessionLocal() as db:
            self.assertEqual(db.get(AttestationCampaign, self.campaign_id).status, CampaignStatus.COMPLETED)
            self.assertEqual(db.get(AttestationCampaign, undated_id).status, CampaignStatus.ACTIVE)

    def test_run_scheduled_tasks_isolates_failing_steps(self) -> None:
        def broken(_now):
            raise RuntimeError("smtp down")

        steps = (
            ("reminders", lambda _now: 2),
            ("escalations", broken),
            ("auto_closed", lambda _now: 0),
        )
        with patch.object(attestation_scheduler, "SCHEDULED_STEPS", steps):
            summary = run_scheduled_tasks(START)

        self.assertEqual(summary, {"reminders": 2, "escalations": None, "auto_closed": 0})


if __name__ == "__main__":
    unittest.main()
