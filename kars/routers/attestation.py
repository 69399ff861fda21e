from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.db import get_db
from kars.models import User, UserRole
from kars.schemas import (
    AssetReviewRequest,
    AttestationNewAssetRequest,
    CampaignCreate,
    CampaignUpdate,
    EscalateRequest,
)
from kars.security import get_current_user, require_roles
from kars.services.attestation import (
    add_new_asset,
    build_dashboard,
    bulk_remind,
    cancel_campaign,
    complete_campaign,
    complete_record,
    create_campaign,
    delete_campaign,
    escalate_record,
    get_campaign,
    get_record_detail,
    list_campaigns,
    my_attestations,
    remind_record,
    resend_invite,
    review_asset,
    serialize_campaign,
    serialize_invite,
    serialize_record,
    start_campaign,
    update_campaign,
)
from kars.services.exports import build_campaign_export, media_type_for, normalize_format

router = APIRouter(tags=["attestation"])

CAMPAIGN_READERS = (UserRole.ADMIN, UserRole.COORDINATOR)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


# Campaigns


@router.get("/api/attestation/campaigns")
def get_campaigns(
    _user: User = Depends(require_roles(*CAMPAIGN_READERS)),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return [serialize_campaign(campaign) for campaign in list_campaigns(db)]


@router.get("/api/attestation/campaigns/{campaign_id}")
def get_campaign_detail(
    campaign_id: int,
    _user: User = Depends(require_roles(*CAMPAIGN_READERS)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return serialize_campaign(get_campaign(db, campaign_id))


@router.post("/api/attestation/campaigns", status_code=status.HTTP_201_CREATED)
def post_campaign(
    payload: CampaignCreate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    campaign = create_campaign(db, creator=user, payload=payload.model_dump())
    log_audit(
        db,
        action="CREATE",
        entity_type="attestation_campaign",
        entity_id=campaign.id,
        entity_name=campaign.name,
        details={"target_type": campaign.target_type.value},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign created successfully", "campaign": serialize_campaign(campaign)}


@router.put("/api/attestation/campaigns/{campaign_id}")
def put_campaign(
    campaign_id: int,
    payload: CampaignUpdate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    campaign = update_campaign(db, campaign_id=campaign_id, changes=changes)
    log_audit(
        db,
        action="UPDATE",
        entity_type="attestation_campaign",
        entity_id=campaign.id,
        entity_name=campaign.name,
        details={"fields": sorted(changes)},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign updated successfully", "campaign": serialize_campaign(campaign)}


@router.delete("/api/attestation/campaigns/{campaign_id}")
def remove_campaign(
    campaign_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    campaign = get_campaign(db, campaign_id)
    name = campaign.name
    delete_campaign(db, campaign_id=campaign_id)
    log_audit(
        db,
        action="DELETE",
        entity_type="attestation_campaign",
        entity_id=campaign_id,
        entity_name=name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign deleted successfully", "id": campaign_id}


@router.post("/api/attestation/campaigns/{campaign_id}/start")
def post_start_campaign(
    campaign_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    result = start_campaign(db, campaign_id=campaign_id)
    campaign = result.pop("campaign")
    log_audit(
        db,
        action="START",
        entity_type="attestation_campaign",
        entity_id=campaign.id,
        entity_name=campaign.name,
        details=result,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign started successfully", "campaign": serialize_campaign(campaign), **result}


@router.post("/api/attestation/campaigns/{campaign_id}/complete")
def post_complete_campaign(
    campaign_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    campaign = complete_campaign(db, campaign_id=campaign_id)
    log_audit(
        db,
        action="COMPLETE",
        entity_type="attestation_campaign",
        entity_id=campaign.id,
        entity_name=campaign.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign completed", "campaign": serialize_campaign(campaign)}


@router.post("/api/attestation/campaigns/{campaign_id}/cancel")
def post_cancel_campaign(
    campaign_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    campaign = cancel_campaign(db, campaign_id=campaign_id)
    log_audit(
        db,
        action="CANCEL",
        entity_type="attestation_campaign",
        entity_id=campaign.id,
        entity_name=campaign.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Campaign cancelled", "campaign": serialize_campaign(campaign)}


@router.get("/api/attestation/campaigns/{campaign_id}/dashboard")
def get_campaign_dashboard(
    campaign_id: int,
    _user: User = Depends(require_roles(*CAMPAIGN_READERS)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return build_dashboard(db, campaign_id=campaign_id)


@router.get("/api/attestation/campaigns/{campaign_id}/export")
def export_campaign(
    campaign_id: int,
    request: Request,
    export_format: str | None = Query(default=None, alias="format"),
    user: User = Depends(require_roles(*CAMPAIGN_READERS)),
    db: Session = Depends(get_db),
) -> Response:
    normalized = normalize_format(export_format)
    payload, filename = build_campaign_export(db, campaign_id=campaign_id, export_format=normalized)
    log_audit(
        db,
        action="EXPORT",
        entity_type="attestation_campaign",
        entity_id=campaign_id,
        details={"format": normalized},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return Response(
        content=payload,
        media_type=media_type_for(normalized),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/api/attestation/campaigns/{campaign_id}/bulk-remind")
def post_bulk_remind(
    campaign_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    result = bulk_remind(db, campaign_id=campaign_id)
    log_audit(
        db,
        action="BULK_REMIND",
        entity_type="attestation_campaign",
        entity_id=campaign_id,
        details=result,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": f"Sent {result['sent']} reminder(s)", **result}


# Admin record actions


@router.post("/api/attestation/records/{record_id}/remind")
def post_remind_record(
    record_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    record = remind_record(db, record_id=record_id)
    log_audit(
        db,
        action="REMIND",
        entity_type="attestation_record",
        entity_id=record.id,
        entity_name=record.user.email,
        details={"campaign_id": record.campaign_id},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Reminder sent", "record": serialize_record(record)}


@router.post("/api/attestation/records/{record_id}/escalate")
def post_escalate_record(
    record_id: int,
    request: Request,
    payload: EscalateRequest | None = None,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    custom_message = payload.message if payload is not None else None
    record = escalate_record(db, record_id=record_id, custom_message=custom_message)
    log_audit(
        db,
        action="ESCALATE",
        entity_type="attestation_record",
        entity_id=record.id,
        entity_name=record.user.email,
        details={"campaign_id": record.campaign_id, "manager_email": record.user.manager_email},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Escalation sent", "record": serialize_record(record)}


@router.post("/api/attestation/pending-invites/{invite_id}/resend")
def post_resend_invite(
    invite_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    invite = resend_invite(db, invite_id=invite_id)
    log_audit(
        db,
        action="RESEND_INVITE",
        entity_type="attestation_invite",
        entity_id=invite.id,
        entity_name=invite.employee_email,
        details={"campaign_id": invite.campaign_id},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Invite resent", "invite": serialize_invite(invite)}


# Employee flow


@router.get("/api/attestation/my-attestations")
def get_my_attestations(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return my_attestations(db, user)


@router.get("/api/attestation/records/{record_id}")
def get_record(
    record_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return get_record_detail(db, user=user, record_id=record_id)


@router.put("/api/attestation/records/{record_id}/assets/{asset_id}")
def put_asset_review(
    record_id: int,
    asset_id: int,
    payload: AssetReviewRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    review = review_asset(
        db,
        user=user,
        record_id=record_id,
        asset_id=asset_id,
        status=payload.status,
        notes=payload.notes,
    )
    log_audit(
        db,
        action="ATTEST_ASSET",
        entity_type="asset",
        entity_id=asset_id,
        details={"record_id": record_id, "status": review.attested_status.value},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {
        "message": "Asset attested",
        "asset_id": asset_id,
        "attested_status": review.attested_status.value,
        "notes": review.notes,
    }


@router.post("/api/attestation/records/{record_id}/assets/new", status_code=status.HTTP_201_CREATED)
def post_new_asset(
    record_id: int,
    payload: AttestationNewAssetRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    item = add_new_asset(db, user=user, record_id=record_id, payload=payload.model_dump())
    log_audit(
        db,
        action="ADD_ASSET",
        entity_type="attestation_record",
        entity_id=record_id,
        entity_name=item.serial_number,
        details={"asset_type": item.asset_type, "asset_tag": item.asset_tag},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Asset added to attestation", "id": item.id}


@router.post("/api/attestation/records/{record_id}/complete")
def post_complete_record(
    record_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    record, transferred = complete_record(db, user=user, record_id=record_id)
    log_audit(
        db,
        action="COMPLETE",
        entity_type="attestation_record",
        entity_id=record.id,
        entity_name=user.email,
        details={"campaign_id": record.campaign_id, "assets_added": transferred},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Attestation completed", "record": serialize_record(record), "assetsAdded": transferred}
