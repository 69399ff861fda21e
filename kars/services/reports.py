from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from kars.models import (
    Asset,
    AssetStatus,
    AttestationCampaign,
    AttestationPendingInvite,
    AttestationRecord,
    AuditLog,
    CampaignStatus,
    RecordStatus,
)
from kars.services.attestation import is_record_overdue
from kars.services.mailer import is_email_enabled
from kars.timeutils import as_utc, utc_now

TREND_SAMPLE_POINTS = 10
AT_RISK_STATUSES = (AssetStatus.LOST, AssetStatus.DAMAGED)


def _clamp_period(period: int | None, *, default: int = 30) -> int:
    try:
        value = int(period or default)
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, 365))


def _registered_assets(db: Session) -> list[Asset]:
    return list(db.scalars(select(Asset).options(selectinload(Asset.company)).order_by(Asset.id)).all())


def _registered_on_or_before(assets: Iterable[Asset], moment: datetime) -> list[Asset]:
    # Assets without a registration date cannot be placed on the timeline.
    result: list[Asset] = []
    for asset in assets:
        registered = as_utc(asset.registration_date)
        if registered is not None and registered <= moment:
            result.append(asset)
    return result


def _status_breakdown(assets: Iterable[Asset]) -> dict[str, int]:
    breakdown = {status.value: 0 for status in AssetStatus}
    for asset in assets:
        breakdown[asset.status.value] += 1
    return breakdown


def _company_breakdown(assets: Iterable[Asset]) -> list[dict[str, Any]]:
    counts = Counter(asset.company_name or "Unknown" for asset in assets)
    return [{"name": name, "count": count} for name, count in counts.most_common()]


def _manager_breakdown(assets: Iterable[Asset]) -> list[dict[str, Any]]:
    counts: Counter[tuple[str, str]] = Counter()
    for asset in assets:
        name = asset.manager_name if asset.manager_first_name and asset.manager_last_name else "No Manager"
        counts[(name, asset.manager_email or "N/A")] += 1
    return [{"name": name, "email": email, "count": count} for (name, email), count in counts.most_common()]


def _type_breakdown(assets: Iterable[Asset]) -> dict[str, int]:
    return dict(Counter(asset.asset_type for asset in assets))


def build_summary(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    current = now or utc_now()
    assets = _registered_on_or_before(_registered_assets(db), current)
    return {
        "total": len(assets),
        "byStatus": _status_breakdown(assets),
        "byCompany": _company_breakdown(assets),
        "byManager": _manager_breakdown(assets),
        "byType": _type_breakdown(assets),
    }


def build_enhanced_summary(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    current = now or utc_now()
    all_assets = _registered_assets(db)
    current_assets = _registered_on_or_before(all_assets, current)
    previous_assets = _registered_on_or_before(all_assets, current - timedelta(days=30))
    summary = build_summary(db, now=current)
    summary["totalChange"] = len(current_assets) - len(previous_assets)
    summary["previousTotal"] = len(previous_assets)
    return summary


def build_statistics(db: Session, *, period: int | None = 30, now: datetime | None = None) -> dict[str, Any]:
    days = _clamp_period(period)
    current = now or utc_now()
    since = current - timedelta(days=days)
    logs = list(db.scalars(select(AuditLog).where(AuditLog.timestamp >= since).order_by(AuditLog.timestamp)).all())

    by_day: Counter[str] = Counter()
    for entry in logs:
        stamp = as_utc(entry.timestamp)
        if stamp is not None:
            by_day[stamp.date().isoformat()] += 1
    activity = []
    for offset in range(days, -1, -1):
        day = (current - timedelta(days=offset)).date().isoformat()
        activity.append({"date": day, "count": by_day.get(day, 0)})

    actions = Counter(entry.action for entry in logs)
    users = Counter(entry.performed_by or "system" for entry in logs)
    return {
        "period": days,
        "activityByDay": activity,
        "actionBreakdown": [{"action": action, "count": count} for action, count in actions.most_common()],
        "topUsers": [{"user": user, "count": count} for user, count in users.most_common(10)],
    }


def _quarter_start(moment: datetime) -> datetime:
    month = ((moment.month - 1) // 3) * 3 + 1
    return moment.replace(month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def build_compliance(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    current = now or utc_now()
    assets = _registered_assets(db)
    active_campaigns = list(
        db.scalars(
            select(AttestationCampaign)
            .options(selectinload(AttestationCampaign.records))
            .where(AttestationCampaign.status == CampaignStatus.ACTIVE)
            .order_by(AttestationCampaign.id)
        ).all()
    )

    campaigns: list[dict[str, Any]] = []
    total_records = 0
    completed_records = 0
    overdue = 0
    for campaign in active_campaigns:
        records = campaign.records
        completed = sum(1 for record in records if record.status == RecordStatus.COMPLETED)
        overdue += sum(1 for record in records if is_record_overdue(record, campaign, now=current))
        total_records += len(records)
        completed_records += completed
        campaigns.append(
            {
                "id": campaign.id,
                "name": campaign.name,
                "total": len(records),
                "completed": completed,
                "progress": round(completed / len(records) * 100, 1) if records else 0.0,
            }
        )

    quarter_start = _quarter_start(current)
    attested_this_quarter = sum(
        1
        for completed_at in db.scalars(
            select(AttestationRecord.completed_at).where(AttestationRecord.status == RecordStatus.COMPLETED)
        ).all()
        if (as_utc(completed_at) or current) >= quarter_start
    )
    at_risk = [asset for asset in assets if asset.status in AT_RISK_STATUSES]
    unassigned_company = sum(1 for asset in assets if asset.company_id is None)
    open_invites = len(
        db.scalars(
            select(AttestationPendingInvite.id)
            .join(AttestationCampaign, AttestationPendingInvite.campaign_id == AttestationCampaign.id)
            .where(
                AttestationPendingInvite.registered_at.is_(None),
                AttestationCampaign.status == CampaignStatus.ACTIVE,
            )
        ).all()
    )

    completion_rate = completed_records / total_records * 100 if total_records else 100.0
    at_risk_ratio = len(at_risk) / len(assets) if assets else 0.0
    score = max(0, min(100, round(completion_rate * (1 - at_risk_ratio))))

    risk_indicators: list[dict[str, Any]] = []
    if overdue:
        risk_indicators.append(
            {"type": "overdue_attestations", "severity": "high", "count": overdue, "message": f"{overdue} overdue attestation(s)"}
        )
    for status in AT_RISK_STATUSES:
        count = sum(1 for asset in at_risk if asset.status == status)
        if count:
            risk_indicators.append(
                {"type": f"{status.value}_assets", "severity": "medium", "count": count, "message": f"{count} {status.value} asset(s)"}
            )
    if open_invites:
        risk_indicators.append(
            {"type": "unregistered_owners", "severity": "low", "count": open_invites, "message": f"{open_invites} asset owner(s) not registered"}
        )

    checklist = [
        {"item": "Active attestation campaign running", "done": bool(active_campaigns)},
        {"item": "No overdue attestations", "done": overdue == 0},
        {"item": "All assets assigned to a company", "done": unassigned_company == 0},
        {"item": "No lost or damaged assets", "done": not at_risk},
        {"item": "Email notifications configured", "done": is_email_enabled(db)},
    ]
    return {
        "score": score,
        "overdueAttestations": overdue,
        "attestedThisQuarter": attested_this_quarter,
        "atRiskAssets": len(at_risk),
        "campaigns": campaigns,
        "riskIndicators": risk_indicators,
        "checklist": checklist,
    }


def _period_metrics(assets: list[Asset], start: datetime, end: datetime) -> dict[str, int]:
    existing = _registered_on_or_before(assets, end)
    new_assets = [asset for asset in existing if (as_utc(asset.registration_date) or end) > start]
    return {
        "totalAssets": len(existing),
        "newAssets": len(new_assets),
        "activeAssets": sum(1 for asset in existing if asset.status == AssetStatus.ACTIVE),
    }


def build_trends(db: Session, *, period: int | None = 30, now: datetime | None = None) -> dict[str, Any]:
    days = _clamp_period(period)
    current = now or utc_now()
    assets = _registered_assets(db)
    period_start = current - timedelta(days=days)
    step = timedelta(days=days) / TREND_SAMPLE_POINTS

    asset_growth: list[dict[str, Any]] = []
    status_changes: list[dict[str, Any]] = []
    for index in range(TREND_SAMPLE_POINTS + 1):
        moment = period_start + step * index
        snapshot = _registered_on_or_before(assets, moment)
        label = moment.date().isoformat()
        asset_growth.append({"date": label, "count": len(snapshot)})
        status_changes.append({"date": label, **_status_breakdown(snapshot)})

    current_metrics = _period_metrics(assets, period_start, current)
    previous_metrics = _period_metrics(assets, period_start - timedelta(days=days), period_start)
    return {
        "period": days,
        "assetGrowth": asset_growth,
        "statusChanges": status_changes,
        "metricsComparison": {
            "current": current_metrics,
            "previous": previous_metrics,
            "change": {key: current_metrics[key] - previous_metrics[key] for key in current_metrics},
        },
    }
