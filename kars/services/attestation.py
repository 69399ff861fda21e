from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from kars.errors import ApiError, forbidden, not_found, validation_error
from kars.models import (
    Asset,
    AssetStatus,
    AttestationAssetReview,
    AttestationCampaign,
    AttestationNewAsset,
    AttestationPendingInvite,
    AttestationRecord,
    CampaignStatus,
    CampaignTargetType,
    RecordStatus,
    User,
    UserRole,
)
from kars.security import has_role
from kars.services.assets import count_assets_for_email, parse_asset_status
from kars.services.mailer import is_email_enabled, send_template_email, was_sent
from kars.services.settings_store import resolve_app_url
from kars.timeutils import as_utc, isoformat_or_none, utc_now

logger = logging.getLogger("kars.attestation")

SECONDS_PER_DAY = 24 * 60 * 60
CAMPAIGN_EDITABLE_FIELDS = (
    "name",
    "description",
    "start_date",
    "end_date",
    "reminder_days",
    "escalation_days",
    "unregistered_reminder_days",
    "target_type",
    "target_user_ids",
    "target_company_ids",
)


@dataclass(slots=True)
class UnregisteredOwner:
    email: str
    first_name: str | None = None
    last_name: str | None = None


@dataclass(slots=True)
class CampaignTargets:
    users: list[User] = field(default_factory=list)
    unregistered: list[UnregisteredOwner] = field(default_factory=list)


# Time bookkeeping


def days_elapsed(start_date: datetime | None, *, now: datetime | None = None) -> int:
    start = as_utc(start_date)
    if start is None:
        return 0
    delta = (now or utc_now()) - start
    return int(delta.total_seconds() // SECONDS_PER_DAY)


def is_record_overdue(record: AttestationRecord, campaign: AttestationCampaign, *, now: datetime | None = None) -> bool:
    if record.status == RecordStatus.COMPLETED:
        return False
    return days_elapsed(campaign.start_date, now=now) > campaign.escalation_days


def _format_end_date(campaign: AttestationCampaign) -> str:
    end_date = as_utc(campaign.end_date)
    return end_date.strftime("%Y-%m-%d") if end_date is not None else "No end date"


def _display_name(first_name: str | None, last_name: str | None, fallback: str) -> str:
    return f"{first_name or ''} {last_name or ''}".strip() or fallback


# Campaign CRUD


def _campaign_or_404(db: Session, campaign_id: int) -> AttestationCampaign:
    campaign = db.get(AttestationCampaign, campaign_id)
    if campaign is None:
        raise not_found("Campaign")
    return campaign


def _require_status(campaign: AttestationCampaign, *allowed: CampaignStatus, action: str) -> None:
    if campaign.status not in allowed:
        raise ApiError(
            status_code=409,
            code="INVALID_CAMPAIGN_STATE",
            message=f"Cannot {action} a campaign in '{campaign.status.value}' status",
        )


def _validate_targets(target_type: CampaignTargetType, user_ids: list[int] | None, company_ids: list[int] | None) -> None:
    if target_type == CampaignTargetType.SELECTED and not user_ids:
        raise validation_error("Select at least one employee")
    if target_type == CampaignTargetType.COMPANIES and not company_ids:
        raise validation_error("Select at least one company")


def list_campaigns(db: Session) -> list[AttestationCampaign]:
    return list(db.scalars(select(AttestationCampaign).order_by(AttestationCampaign.created_at.desc())).all())


def get_campaign(db: Session, campaign_id: int) -> AttestationCampaign:
    return _campaign_or_404(db, campaign_id)


def _day_count(payload: Mapping[str, Any], key: str, default: int) -> int:
    value = payload.get(key)
    return default if value is None else int(value)


def create_campaign(db: Session, *, creator: User, payload: Mapping[str, Any]) -> AttestationCampaign:
    name = (payload.get("name") or "").strip()
    if not name:
        raise validation_error("Campaign name is required")
    target_type = CampaignTargetType(payload.get("target_type") or CampaignTargetType.ALL.value)
    user_ids = list(payload.get("target_user_ids") or []) or None
    company_ids = list(payload.get("target_company_ids") or []) or None
    _validate_targets(target_type, user_ids, company_ids)

    campaign = AttestationCampaign(
        name=name,
        description=payload.get("description"),
        start_date=payload.get("start_date") or utc_now(),
        end_date=payload.get("end_date"),
        reminder_days=_day_count(payload, "reminder_days", 7),
        escalation_days=_day_count(payload, "escalation_days", 10),
        unregistered_reminder_days=_day_count(payload, "unregistered_reminder_days", 7),
        status=CampaignStatus.DRAFT,
        target_type=target_type,
        target_user_ids=user_ids,
        target_company_ids=company_ids,
        created_by=creator.id,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def update_campaign(db: Session, *, campaign_id: int, changes: Mapping[str, Any]) -> AttestationCampaign:
    campaign = _campaign_or_404(db, campaign_id)
    _require_status(campaign, CampaignStatus.DRAFT, action="edit")
    for name in CAMPAIGN_EDITABLE_FIELDS:
        if name not in changes or changes[name] is None:
            continue
        value = changes[name]
        if name == "target_type":
            value = CampaignTargetType(value)
        elif name in {"target_user_ids", "target_company_ids"}:
            value = list(value) or None
        elif name == "name":
            value = value.strip()
            if not value:
                raise validation_error("Campaign name is required")
        setattr(campaign, name, value)
    _validate_targets(campaign.target_type, campaign.target_user_ids, campaign.target_company_ids)
    db.commit()
    db.refresh(campaign)
    return campaign


def delete_campaign(db: Session, *, campaign_id: int) -> AttestationCampaign:
    campaign = _campaign_or_404(db, campaign_id)
    if campaign.status == CampaignStatus.ACTIVE:
        raise ApiError(
            status_code=409,
            code="INVALID_CAMPAIGN_STATE",
            message="Cancel the campaign before deleting it",
        )
    db.delete(campaign)
    db.commit()
    return campaign


def complete_campaign(db: Session, *, campaign_id: int) -> AttestationCampaign:
    campaign = _campaign_or_404(db, campaign_id)
    _require_status(campaign, CampaignStatus.ACTIVE, action="complete")
    campaign.status = CampaignStatus.COMPLETED
    db.commit()
    db.refresh(campaign)
    return campaign


def cancel_campaign(db: Session, *, campaign_id: int) -> AttestationCampaign:
    campaign = _campaign_or_404(db, campaign_id)
    _require_status(campaign, CampaignStatus.ACTIVE, action="cancel")
    campaign.status = CampaignStatus.CANCELLED
    db.commit()
    db.refresh(campaign)
    return campaign


# Start


def _unregistered_from_assets(db: Session, assets: list[Asset]) -> list[UnregisteredOwner]:
    registered = {email.lower() for email in db.scalars(select(User.email)).all()}
    owners: dict[str, UnregisteredOwner] = {}
    for asset in assets:
        email = (asset.employee_email or "").strip().lower()
        if not email or email in registered or email in owners:
            continue
        owners[email] = UnregisteredOwner(
            email=email,
            first_name=asset.employee_first_name,
            last_name=asset.employee_last_name,
        )
    return list(owners.values())


def resolve_targets(db: Session, campaign: AttestationCampaign) -> CampaignTargets:
    if campaign.target_type == CampaignTargetType.SELECTED:
        ids = [int(item) for item in campaign.target_user_ids or []]
        users = list(db.scalars(select(User).where(User.id.in_(ids)).order_by(User.id)).all()) if ids else []
        return CampaignTargets(users=users)

    if campaign.target_type == CampaignTargetType.COMPANIES:
        company_ids = [int(item) for item in campaign.target_company_ids or []]
        if not company_ids:
            return CampaignTargets()
        assets = list(db.scalars(select(Asset).where(Asset.company_id.in_(company_ids)).order_by(Asset.id)).all())
        emails = {(asset.employee_email or "").lower() for asset in assets if asset.employee_email}
        owner_ids = {asset.owner_id for asset in assets if asset.owner_id is not None}
        users = list(
            db.scalars(
                select(User)
                .where(or_(User.id.in_(owner_ids), func.lower(User.email).in_(emails)))
                .order_by(User.id)
            ).all()
        ) if (emails or owner_ids) else []
        return CampaignTargets(users=users, unregistered=_unregistered_from_assets(db, assets))

    users = list(db.scalars(select(User).order_by(User.id)).all())
    active_assets = list(
        db.scalars(select(Asset).where(Asset.status == AssetStatus.ACTIVE).order_by(Asset.id)).all()
    )
    return CampaignTargets(users=users, unregistered=_unregistered_from_assets(db, active_assets))


def _attestation_url(db: Session) -> str:
    return f"{resolve_app_url(db)}/my-attestations"


def _register_url(db: Session, invite: AttestationPendingInvite) -> str:
    return f"{resolve_app_url(db)}/register?invite={invite.invite_token}&email={invite.employee_email}"


def send_ready_email(db: Session, campaign: AttestationCampaign, user: User) -> dict[str, Any]:
    return send_template_email(
        db,
        "attestation_ready",
        [user.email],
        {
            "firstName": user.first_name or user.name or user.email,
            "campaignName": campaign.name,
            "campaignDescription": campaign.description or "",
            "endDate": _format_end_date(campaign),
            "attestationUrl": _attestation_url(db),
        },
    )


def send_invite_email(
    db: Session,
    campaign: AttestationCampaign,
    invite: AttestationPendingInvite,
    *,
    template_key: str = "attestation_registration_invite",
) -> dict[str, Any]:
    return send_template_email(
        db,
        template_key,
        [invite.employee_email],
        {
            "firstName": invite.employee_first_name or "",
            "lastName": invite.employee_last_name or "",
            "assetCount": count_assets_for_email(db, invite.employee_email),
            "campaignName": campaign.name,
            "campaignDescription": campaign.description or "",
            "endDate": _format_end_date(campaign),
            "registerUrl": _register_url(db, invite),
        },
    )


def start_campaign(db: Session, *, campaign_id: int) -> dict[str, Any]:
    """Activate a draft campaign, fan out records/invites and notify targets."""
    campaign = _campaign_or_404(db, campaign_id)
    _require_status(campaign, CampaignStatus.DRAFT, action="start")
    targets = resolve_targets(db, campaign)

    records: list[tuple[AttestationRecord, User]] = []
    for user in targets.users:
        record = AttestationRecord(campaign_id=campaign.id, user_id=user.id, status=RecordStatus.PENDING)
        db.add(record)
        records.append((record, user))

    invites: list[AttestationPendingInvite] = []
    for owner in targets.unregistered:
        invite = AttestationPendingInvite(
            campaign_id=campaign.id,
            employee_email=owner.email,
            employee_first_name=owner.first_name,
            employee_last_name=owner.last_name,
            invite_token=secrets.token_urlsafe(32),
        )
        db.add(invite)
        invites.append(invite)

    campaign.status = CampaignStatus.ACTIVE
    db.commit()

    emails_sent = 0
    emails_failed = 0
    if is_email_enabled(db):
        for _record, user in records:
            try:
                result = send_ready_email(db, campaign, user)
            except Exception:
                logger.exception("attestation_ready_email_failed", extra={"campaign_id": campaign.id, "user_id": user.id})
                emails_failed += 1
                continue
            if was_sent(result):
                emails_sent += 1
            else:
                emails_failed += 1
        now = utc_now()
        for invite in invites:
            try:
                result = send_invite_email(db, campaign, invite)
            except Exception:
                logger.exception("attestation_invite_email_failed", extra={"campaign_id": campaign.id, "invite_id": invite.id})
                emails_failed += 1
                continue
            if was_sent(result):
                invite.invite_sent_at = now
                emails_sent += 1
            else:
                emails_failed += 1
        db.commit()

    logger.info(
        "attestation_campaign_started",
        extra={
            "campaign_id": campaign.id,
            "records_created": len(records),
            "invites_created": len(invites),
            "emails_sent": emails_sent,
            "emails_failed": emails_failed,
        },
    )
    db.refresh(campaign)
    return {
        "campaign": campaign,
        "recordsCreated": len(records),
        "invitesCreated": len(invites),
        "emailsSent": emails_sent,
        "emailsFailed": emails_failed,
    }


# Invite conversion


def convert_pending_invites(db: Session, user: User) -> int:
    """Turn open invites for ``user.email`` on active campaigns into records.

    Never raises: registration must succeed even if conversion fails.
    """
    try:
        invites = list(
            db.scalars(
                select(AttestationPendingInvite)
                .join(AttestationCampaign, AttestationPendingInvite.campaign_id == AttestationCampaign.id)
                .where(
                    func.lower(AttestationPendingInvite.employee_email) == user.email.lower(),
                    AttestationPendingInvite.registered_at.is_(None),
                    AttestationCampaign.status == CampaignStatus.ACTIVE,
                )
            ).all()
        )
        converted = 0
        now = utc_now()
        for invite in invites:
            record = db.scalar(
                select(AttestationRecord).where(
                    AttestationRecord.campaign_id == invite.campaign_id,
                    AttestationRecord.user_id == user.id,
                )
            )
            if record is None:
                record = AttestationRecord(campaign_id=invite.campaign_id, user_id=user.id, status=RecordStatus.PENDING)
                db.add(record)
                db.flush()
            invite.registered_at = now
            invite.converted_record_id = record.id
            converted += 1
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("attestation_invite_conversion_failed", extra={"user_id": user.id})
        return 0
    if converted:
        logger.info("attestation_invites_converted", extra={"user_id": user.id, "converted": converted})
    return converted


def has_active_attestations(db: Session, user: User) -> bool:
    count = db.scalar(
        select(func.count(AttestationRecord.id))
        .join(AttestationCampaign, AttestationRecord.campaign_id == AttestationCampaign.id)
        .where(
            AttestationRecord.user_id == user.id,
            AttestationRecord.status != RecordStatus.COMPLETED,
            AttestationCampaign.status == CampaignStatus.ACTIVE,
        )
    )
    return bool(count)


# Dashboard


def serialize_campaign(campaign: AttestationCampaign) -> dict[str, Any]:
    return {
        "id": campaign.id,
        "name": campaign.name,
        "description": campaign.description,
        "start_date": isoformat_or_none(campaign.start_date),
        "end_date": isoformat_or_none(campaign.end_date),
        "reminder_days": campaign.reminder_days,
        "escalation_days": campaign.escalation_days,
        "unregistered_reminder_days": campaign.unregistered_reminder_days,
        "status": campaign.status.value,
        "target_type": campaign.target_type.value,
        "target_user_ids": campaign.target_user_ids or [],
        "target_company_ids": campaign.target_company_ids or [],
        "created_by": campaign.created_by,
        "created_at": isoformat_or_none(campaign.created_at),
        "updated_at": isoformat_or_none(campaign.updated_at),
    }


def serialize_record(record: AttestationRecord, *, now: datetime | None = None) -> dict[str, Any]:
    user = record.user
    return {
        "id": record.id,
        "campaign_id": record.campaign_id,
        "user_id": record.user_id,
        "user_email": user.email if user else None,
        "user_name": _display_name(user.first_name, user.last_name, user.name) if user else None,
        "manager_email": user.manager_email if user else None,
        "status": record.status.value,
        "started_at": isoformat_or_none(record.started_at),
        "completed_at": isoformat_or_none(record.completed_at),
        "reminder_sent_at": isoformat_or_none(record.reminder_sent_at),
        "escalation_sent_at": isoformat_or_none(record.escalation_sent_at),
        "days_elapsed": days_elapsed(record.campaign.start_date, now=now),
        "is_overdue": is_record_overdue(record, record.campaign, now=now),
    }


def serialize_invite(invite: AttestationPendingInvite) -> dict[str, Any]:
    return {
        "id": invite.id,
        "campaign_id": invite.campaign_id,
        "employee_email": invite.employee_email,
        "employee_first_name": invite.employee_first_name,
        "employee_last_name": invite.employee_last_name,
        "invite_sent_at": isoformat_or_none(invite.invite_sent_at),
        "reminder_sent_at": isoformat_or_none(invite.reminder_sent_at),
        "escalation_sent_at": isoformat_or_none(invite.escalation_sent_at),
        "registered_at": isoformat_or_none(invite.registered_at),
        "converted_record_id": invite.converted_record_id,
    }


def campaign_records(db: Session, campaign_id: int) -> list[AttestationRecord]:
    return list(
        db.scalars(
            select(AttestationRecord)
            .options(selectinload(AttestationRecord.user), selectinload(AttestationRecord.campaign))
            .where(AttestationRecord.campaign_id == campaign_id)
            .order_by(AttestationRecord.id)
        ).all()
    )


def campaign_invites(db: Session, campaign_id: int, *, open_only: bool = False) -> list[AttestationPendingInvite]:
    statement = select(AttestationPendingInvite).where(AttestationPendingInvite.campaign_id == campaign_id)
    if open_only:
        statement = statement.where(AttestationPendingInvite.registered_at.is_(None))
    return list(db.scalars(statement.order_by(AttestationPendingInvite.id)).all())


def build_dashboard(db: Session, *, campaign_id: int, now: datetime | None = None) -> dict[str, Any]:
    campaign = _campaign_or_404(db, campaign_id)
    current = now or utc_now()
    records = [serialize_record(record, now=current) for record in campaign_records(db, campaign.id)]
    invites = [serialize_invite(invite) for invite in campaign_invites(db, campaign.id, open_only=True)]
    total = len(records)
    completed = sum(1 for item in records if item["status"] == RecordStatus.COMPLETED.value)
    return {
        "campaign": serialize_campaign(campaign),
        "days_elapsed": days_elapsed(campaign.start_date, now=current),
        "records": records,
        "pendingInvites": invites,
        "totals": {
            "total": total,
            "completed": completed,
            "pending": sum(1 for item in records if item["status"] == RecordStatus.PENDING.value),
            "in_progress": sum(1 for item in records if item["status"] == RecordStatus.IN_PROGRESS.value),
            "overdue": sum(1 for item in records if item["is_overdue"]),
            "unregistered": len(invites),
            "completion_rate": round(completed / total * 100, 1) if total else 0.0,
        },
    }


# Manual reminder / escalation


def _ensure_email_enabled(db: Session) -> None:
    if not is_email_enabled(db):
        raise ApiError(status_code=400, code="EMAIL_DISABLED", message="Email notifications are not configured")


def _record_or_404(db: Session, record_id: int) -> AttestationRecord:
    record = db.get(AttestationRecord, record_id)
    if record is None:
        raise not_found("Attestation record")
    return record


def send_reminder_email(db: Session, record: AttestationRecord) -> dict[str, Any]:
    user = record.user
    return send_template_email(
        db,
        "attestation_reminder",
        [user.email],
        {
            "firstName": user.first_name or user.name or user.email,
            "campaignName": record.campaign.name,
            "endDate": _format_end_date(record.campaign),
            "attestationUrl": _attestation_url(db),
        },
    )


def remind_record(db: Session, *, record_id: int) -> AttestationRecord:
    record = _record_or_404(db, record_id)
    _require_status(record.campaign, CampaignStatus.ACTIVE, action="remind on")
    if record.status == RecordStatus.COMPLETED:
        raise ApiError(status_code=409, code="RECORD_COMPLETED", message="Attestation is already completed")
    _ensure_email_enabled(db)
    if not was_sent(send_reminder_email(db, record)):
        raise ApiError(status_code=502, code="EMAIL_SEND_FAILED", message="Reminder email could not be sent")
    record.reminder_sent_at = utc_now()
    db.commit()
    db.refresh(record)
    return record


def send_escalation(
    db: Session,
    record: AttestationRecord,
    *,
    custom_message: str | None = None,
) -> dict[str, Any] | None:
    user = record.user
    if not user.manager_email:
        return None
    return send_template_email(
        db,
        "attestation_escalation",
        [user.manager_email],
        {
            "managerName": user.manager_name or user.manager_email,
            "employeeName": _display_name(user.first_name, user.last_name, user.name or user.email),
            "employeeEmail": user.email,
            "campaignName": record.campaign.name,
            "escalationDays": record.campaign.escalation_days,
            "customMessage": custom_message or "",
        },
    )


def escalate_record(db: Session, *, record_id: int, custom_message: str | None = None) -> AttestationRecord:
    record = _record_or_404(db, record_id)
    _require_status(record.campaign, CampaignStatus.ACTIVE, action="escalate on")
    if record.status == RecordStatus.COMPLETED:
        raise ApiError(status_code=409, code="RECORD_COMPLETED", message="Attestation is already completed")
    if not record.user.manager_email:
        raise ApiError(status_code=400, code="NO_MANAGER", message="Employee has no manager email on file")
    _ensure_email_enabled(db)
    result = send_escalation(db, record, custom_message=custom_message)
    if result is None or not was_sent(result):
        raise ApiError(status_code=502, code="EMAIL_SEND_FAILED", message="Escalation email could not be sent")
    record.escalation_sent_at = utc_now()
    db.commit()
    db.refresh(record)
    return record


def bulk_remind(db: Session, *, campaign_id: int) -> dict[str, int]:
    campaign = _campaign_or_404(db, campaign_id)
    _require_status(campaign, CampaignStatus.ACTIVE, action="remind on")
    _ensure_email_enabled(db)
    sent = 0
    failed = 0
    for record in campaign_records(db, campaign.id):
        if record.status == RecordStatus.COMPLETED:
            continue
        try:
            result = send_reminder_email(db, record)
        except Exception:
            logger.exception("attestation_bulk_reminder_failed", extra={"record_id": record.id})
            failed += 1
            continue
        if was_sent(result):
            record.reminder_sent_at = utc_now()
            sent += 1
        else:
            failed += 1
    db.commit()
    return {"sent": sent, "failed": failed}


def resend_invite(db: Session, *, invite_id: int) -> AttestationPendingInvite:
    invite = db.get(AttestationPendingInvite, invite_id)
    if invite is None:
        raise not_found("Pending invite")
    _require_status(invite.campaign, CampaignStatus.ACTIVE, action="resend invites for")
    if invite.registered_at is not None:
        raise ApiError(status_code=409, code="INVITE_REGISTERED", message="This employee has already registered")
    _ensure_email_enabled(db)
    if not was_sent(send_invite_email(db, invite.campaign, invite)):
        raise ApiError(status_code=502, code="EMAIL_SEND_FAILED", message="Invite email could not be sent")
    invite.invite_sent_at = utc_now()
    db.commit()
    db.refresh(invite)
    return invite


# Employee flow


def my_attestations(db: Session, user: User) -> list[dict[str, Any]]:
    records = db.scalars(
        select(AttestationRecord)
        .options(selectinload(AttestationRecord.campaign), selectinload(AttestationRecord.user))
        .join(AttestationCampaign, AttestationRecord.campaign_id == AttestationCampaign.id)
        .where(AttestationRecord.user_id == user.id, AttestationCampaign.status == CampaignStatus.ACTIVE)
        .order_by(AttestationRecord.id.desc())
    ).all()
    return [{**serialize_record(record), "campaign": serialize_campaign(record.campaign)} for record in records]


def _owned_assets(db: Session, user: User) -> list[Asset]:
    return list(
        db.scalars(
            select(Asset)
            .options(selectinload(Asset.company))
            .where(or_(Asset.owner_id == user.id, func.lower(Asset.employee_email) == user.email.lower()))
            .order_by(Asset.id)
        ).all()
    )


def _load_own_record(db: Session, *, user: User, record_id: int) -> AttestationRecord:
    record = _record_or_404(db, record_id)
    if record.user_id != user.id:
        raise forbidden()
    if record.status == RecordStatus.COMPLETED:
        raise ApiError(status_code=409, code="RECORD_COMPLETED", message="Attestation is already completed")
    if record.campaign.status != CampaignStatus.ACTIVE:
        raise ApiError(status_code=409, code="INVALID_CAMPAIGN_STATE", message="Campaign is not active")
    return record


def get_record_detail(db: Session, *, user: User, record_id: int) -> dict[str, Any]:
    record = _record_or_404(db, record_id)
    if record.user_id != user.id and not has_role(user, UserRole.ADMIN, UserRole.COORDINATOR):
        raise forbidden()

    if record.user_id == user.id and record.status == RecordStatus.PENDING:
        record.status = RecordStatus.IN_PROGRESS
        record.started_at = utc_now()
        db.commit()
        db.refresh(record)

    reviews = {review.asset_id: review for review in record.asset_reviews}
    assets = [
        {
            "id": asset.id,
            "asset_type": asset.asset_type,
            "make": asset.make,
            "model": asset.model,
            "serial_number": asset.serial_number,
            "asset_tag": asset.asset_tag,
            "status": asset.status.value,
            "company_name": asset.company_name,
            "attested_status": reviews[asset.id].attested_status.value if asset.id in reviews else None,
            "attested_notes": reviews[asset.id].notes if asset.id in reviews else None,
            "attested_at": isoformat_or_none(reviews[asset.id].attested_at) if asset.id in reviews else None,
        }
        for asset in _owned_assets(db, record.user)
    ]
    new_assets = [
        {
            "id": item.id,
            "asset_type": item.asset_type,
            "make": item.make,
            "model": item.model,
            "serial_number": item.serial_number,
            "asset_tag": item.asset_tag,
            "company_id": item.company_id,
            "notes": item.notes,
            "created_at": isoformat_or_none(item.created_at),
        }
        for item in record.new_assets
    ]
    return {
        "record": serialize_record(record),
        "campaign": serialize_campaign(record.campaign),
        "assets": assets,
        "newAssets": new_assets,
    }


def review_asset(
    db: Session,
    *,
    user: User,
    record_id: int,
    asset_id: int,
    status: str,
    notes: str | None = None,
) -> AttestationAssetReview:
    record = _load_own_record(db, user=user, record_id=record_id)
    asset = db.get(Asset, asset_id)
    owns_asset = asset is not None and (
        asset.owner_id == user.id or (asset.employee_email or "").lower() == user.email.lower()
    )
    if not owns_asset:
        raise not_found("Asset")

    attested_status = parse_asset_status(status)
    review = db.scalar(
        select(AttestationAssetReview).where(
            AttestationAssetReview.attestation_record_id == record.id,
            AttestationAssetReview.asset_id == asset_id,
        )
    )
    if review is None:
        review = AttestationAssetReview(attestation_record_id=record.id, asset_id=asset_id, attested_status=attested_status)
        db.add(review)
    review.attested_status = attested_status
    review.notes = notes
    review.attested_at = utc_now()
    asset.status = attested_status
    if record.status == RecordStatus.PENDING:
        record.status = RecordStatus.IN_PROGRESS
        record.started_at = utc_now()
    db.commit()
    db.refresh(review)
    return review


def add_new_asset(db: Session, *, user: User, record_id: int, payload: Mapping[str, Any]) -> AttestationNewAsset:
    record = _load_own_record(db, user=user, record_id=record_id)
    serial_number = (payload.get("serial_number") or "").strip()
    asset_tag = (payload.get("asset_tag") or "").strip()
    asset_type = (payload.get("asset_type") or "").strip()
    if not (serial_number and asset_tag and asset_type):
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message="Asset type, serial number and asset tag are required",
        )
    item = AttestationNewAsset(
        attestation_record_id=record.id,
        asset_type=asset_type,
        make=payload.get("make"),
        model=payload.get("model"),
        serial_number=serial_number,
        asset_tag=asset_tag,
        company_id=payload.get("company_id"),
        notes=payload.get("notes"),
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def complete_record(db: Session, *, user: User, record_id: int) -> tuple[AttestationRecord, int]:
    """Finish an attestation, moving any newly reported assets into inventory."""
    record = _load_own_record(db, user=user, record_id=record_id)
    transferred = 0
    for item in record.new_assets:
        duplicate = db.scalar(
            select(Asset.id).where(or_(Asset.serial_number == item.serial_number, Asset.asset_tag == item.asset_tag))
        )
        if duplicate is not None:
            raise ApiError(
                status_code=409,
                code="CONFLICT",
                message=f"An asset with serial number '{item.serial_number}' or tag '{item.asset_tag}' already exists",
            )
        db.add(
            Asset(
                employee_first_name=user.first_name,
                employee_last_name=user.last_name,
                employee_email=user.email,
                owner_id=user.id,
                manager_first_name=user.manager_first_name,
                manager_last_name=user.manager_last_name,
                manager_email=user.manager_email,
                company_id=item.company_id,
                asset_type=item.asset_type,
                make=item.make,
                model=item.model,
                serial_number=item.serial_number,
                asset_tag=item.asset_tag,
                status=AssetStatus.ACTIVE,
                notes=item.notes,
            )
        )
        transferred += 1

    now = utc_now()
    record.status = RecordStatus.COMPLETED
    record.started_at = record.started_at or now
    record.completed_at = now
    db.commit()
    db.refresh(record)
    logger.info("attestation_record_completed", extra={"record_id": record.id, "assets_transferred": transferred})
    return record, transferred
