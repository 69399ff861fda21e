from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kars.db import SessionLocal
from kars.models import (
    Asset,
    AttestationCampaign,
    AttestationPendingInvite,
    CampaignStatus,
    RecordStatus,
)
from kars.services.attestation import (
    campaign_invites,
    campaign_records,
    days_elapsed,
    send_escalation,
    send_invite_email,
    send_reminder_email,
)
from kars.services.mailer import send_template_email, was_sent
from kars.services.tokens import purge_expired_tokens
from kars.timeutils import as_utc, utc_now

logger = logging.getLogger("kars.scheduler")


def _active_campaigns(session: Session) -> list[AttestationCampaign]:
    return list(
        session.scalars(
            select(AttestationCampaign)
            .where(AttestationCampaign.status == CampaignStatus.ACTIVE)
            .order_by(AttestationCampaign.id)
        ).all()
    )


def process_reminders(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return process_reminders(now_utc, db=managed_db)

    session = db
    reference_utc = now_utc or utc_now()
    sent = 0
    for campaign in _active_campaigns(session):
        if days_elapsed(campaign.start_date, now=reference_utc) < campaign.reminder_days:
            continue
        for record in campaign_records(session, campaign.id):
            if record.status != RecordStatus.PENDING or record.reminder_sent_at is not None:
                continue
            if was_sent(send_reminder_email(session, record)):
                record.reminder_sent_at = reference_utc
                sent += 1
        session.commit()
    return sent


def process_escalations(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return process_escalations(now_utc, db=managed_db)

    session = db
    reference_utc = now_utc or utc_now()
    sent = 0
    for campaign in _active_campaigns(session):
        if days_elapsed(campaign.start_date, now=reference_utc) < campaign.escalation_days:
            continue
        for record in campaign_records(session, campaign.id):
            if record.status != RecordStatus.PENDING or record.escalation_sent_at is not None:
                continue
            result = send_escalation(session, record)
            if result is not None and was_sent(result):
                record.escalation_sent_at = reference_utc
                sent += 1
        session.commit()
    return sent


def process_unregistered_reminders(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return process_unregistered_reminders(now_utc, db=managed_db)

    session = db
    reference_utc = now_utc or utc_now()
    sent = 0
    for campaign in _active_campaigns(session):
        reminder_days = campaign.unregistered_reminder_days or 7
        if days_elapsed(campaign.start_date, now=reference_utc) < reminder_days:
            continue
        for invite in campaign_invites(session, campaign.id, open_only=True):
            if invite.reminder_sent_at is not None:
                continue
            result = send_invite_email(session, campaign, invite, template_key="attestation_unregistered_reminder")
            if was_sent(result):
                invite.reminder_sent_at = reference_utc
                sent += 1
        session.commit()
    return sent


def _first_asset_for(session: Session, email: str) -> tuple[Asset | None, int]:
    assets = list(
        session.scalars(
            select(Asset).where(func.lower(Asset.employee_email) == email.lower()).order_by(Asset.id)
        ).all()
    )
    return (assets[0] if assets else None), len(assets)


def _send_unregistered_escalation(
    session: Session,
    campaign: AttestationCampaign,
    invite: AttestationPendingInvite,
) -> dict[str, Any] | None:
    first_asset, asset_count = _first_asset_for(session, invite.employee_email)
    if first_asset is None or not first_asset.manager_email:
        return None
    end_date = as_utc(campaign.end_date)
    return send_template_email(
        session,
        "attestation_unregistered_escalation",
        [first_asset.manager_email],
        {
            "managerName": first_asset.manager_name or first_asset.manager_email,
            "employeeName": (
                f"{invite.employee_first_name or ''} {invite.employee_last_name or ''}".strip()
                or invite.employee_email
            ),
            "employeeEmail": invite.employee_email,
            "campaignName": campaign.name,
            "assetCount": asset_count,
            "endDate": end_date.strftime("%Y-%m-%d") if end_date is not None else "No end date",
        },
    )


def process_unregistered_escalations(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return process_unregistered_escalations(now_utc, db=managed_db)

    session = db
    reference_utc = now_utc or utc_now()
    sent = 0
    for campaign in _active_campaigns(session):
        if days_elapsed(campaign.start_date, now=reference_utc) < campaign.escalation_days:
            continue
        for invite in campaign_invites(session, campaign.id, open_only=True):
            if invite.escalation_sent_at is not None:
                continue
            result = _send_unregistered_escalation(session, campaign, invite)
            if result is not None and was_sent(result):
                invite.escalation_sent_at = reference_utc
                sent += 1
        session.commit()
    return sent


def auto_close_expired_campaigns(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return auto_close_expired_campaigns(now_utc, db=managed_db)

    session = db
    reference_utc = now_utc or utc_now()
    closed = 0
    for campaign in _active_campaigns(session):
        end_date = as_utc(campaign.end_date)
        if end_date is None or reference_utc <= end_date:
            continue
        campaign.status = CampaignStatus.COMPLETED
        closed += 1
        logger.info("attestation_campaign_auto_closed", extra={"campaign_id": campaign.id})
    session.commit()
    return closed


def purge_tokens(now_utc: datetime | None = None, *, db: Session | None = None) -> int:
    if db is None:
        with SessionLocal() as managed_db:
            return purge_tokens(now_utc, db=managed_db)
    return purge_expired_tokens(db, now=now_utc or utc_now())


SCHEDULED_STEPS: tuple[tuple[str, Callable[..., int]], ...] = (
    ("reminders", process_reminders),
    ("escalations", process_escalations),
    ("unregistered_reminders", process_unregistered_reminders),
    ("unregistered_escalations", process_unregistered_escalations),
    ("auto_closed", auto_close_expired_campaigns),
    ("expired_tokens", purge_tokens),
)


def run_scheduled_tasks(now_utc: datetime | None = None) -> dict[str, int | None]:
    """Run every step in its own session; a failing step is logged and reported as ``None``."""
    reference_utc = now_utc or utc_now()
    summary: dict[str, int | None] = {}
    for name, step in SCHEDULED_STEPS:
        try:
            summary[name] = step(reference_utc)
        except Exception:
            logger.exception("attestation_scheduler_step_failed", extra={"step": name})
            summary[name] = None
    logger.info("attestation_scheduler_tick", extra=summary)
    return summary
