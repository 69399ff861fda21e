from typing import Any

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.db import get_db
from kars.errors import validation_error
from kars.models import Asset, User, UserRole
from kars.schemas import (
    AssetBulkDeleteRequest,
    AssetBulkStatusRequest,
    AssetCreate,
    AssetRead,
    AssetStatusUpdate,
    AssetTypeCreate,
    AssetTypeRead,
    AssetTypeUpdate,
    AssetUpdate,
    ImportResult,
)
from kars.security import STAFF_ROLES, get_current_user, has_role, require_roles
from kars.services.assets import (
    build_stats,
    bulk_delete,
    bulk_update_status,
    create_asset,
    create_asset_type,
    delete_asset,
    delete_asset_type,
    get_asset_for_user,
    import_assets_csv,
    list_asset_types,
    list_assets,
    update_asset,
    update_asset_status,
    update_asset_type,
)

router = APIRouter(tags=["assets"])

MAX_IMPORT_BYTES = 5 * 1024 * 1024


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _asset_label(asset: Asset) -> str:
    return f"{asset.asset_type} {asset.serial_number}".strip()


async def read_csv_upload(file: UploadFile) -> str:
    raw = await file.read(MAX_IMPORT_BYTES + 1)
    if len(raw) > MAX_IMPORT_BYTES:
        raise validation_error("CSV file is too large")
    if not raw.strip():
        raise validation_error("CSV file is empty")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise validation_error("CSV file must be UTF-8 encoded") from exc


@router.get("/api/assets", response_model=list[AssetRead])
def get_assets(
    status_filter: str | None = Query(default=None, alias="status"),
    company_id: int | None = Query(default=None, ge=1),
    search: str | None = Query(default=None, max_length=255),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[Asset]:
    return list_assets(db, user=user, status=status_filter, company_id=company_id, search=search)


@router.patch("/api/assets/bulk/status")
def bulk_status(
    payload: AssetBulkStatusRequest,
    request: Request,
    user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    updated = bulk_update_status(db, user=user, asset_ids=payload.ids, status=payload.status)
    log_audit(
        db,
        action="BULK_UPDATE",
        entity_type="asset",
        details={"ids": payload.ids, "status": payload.status, "updated": updated},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": f"Updated {updated} asset(s)", "updated": updated}


@router.get("/api/assets/{asset_id}", response_model=AssetRead)
def get_asset(
    asset_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Asset:
    return get_asset_for_user(db, user=user, asset_id=asset_id)


@router.post("/api/assets", response_model=AssetRead, status_code=status.HTTP_201_CREATED)
def post_asset(
    payload: AssetCreate,
    request: Request,
    user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db),
) -> Asset:
    asset = create_asset(db, user=user, payload=payload.model_dump(exclude_unset=True))
    log_audit(
        db,
        action="CREATE",
        entity_type="asset",
        entity_id=asset.id,
        entity_name=_asset_label(asset),
        details={"employee_email": asset.employee_email, "status": asset.status.value},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return asset


@router.put("/api/assets/{asset_id}", response_model=AssetRead)
def put_asset(
    asset_id: int,
    payload: AssetUpdate,
    request: Request,
    user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db),
) -> Asset:
    changes = payload.model_dump(exclude_unset=True)
    asset = update_asset(db, user=user, asset_id=asset_id, changes=changes)
    log_audit(
        db,
        action="UPDATE",
        entity_type="asset",
        entity_id=asset.id,
        entity_name=_asset_label(asset),
        details={"fields": sorted(changes)},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return asset


@router.patch("/api/assets/{asset_id}/status", response_model=AssetRead)
def patch_asset_status(
    asset_id: int,
    payload: AssetStatusUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Asset:
    asset, previous = update_asset_status(
        db,
        user=user,
        asset_id=asset_id,
        status=payload.status,
        notes=payload.notes,
    )
    log_audit(
        db,
        action="STATUS_CHANGE",
        entity_type="asset",
        entity_id=asset.id,
        entity_name=_asset_label(asset),
        details={"old_status": previous.value, "new_status": asset.status.value, "notes": payload.notes},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return asset


@router.delete("/api/assets/{asset_id}")
def remove_asset(
    asset_id: int,
    request: Request,
    user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    asset = get_asset_for_user(db, user=user, asset_id=asset_id)
    label = _asset_label(asset)
    delete_asset(db, user=user, asset_id=asset_id)
    log_audit(
        db,
        action="DELETE",
        entity_type="asset",
        entity_id=asset_id,
        entity_name=label,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Asset deleted successfully", "id": asset_id}


@router.post("/api/assets/bulk/delete")
def bulk_remove(
    payload: AssetBulkDeleteRequest,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    deleted = bulk_delete(db, user=user, asset_ids=payload.ids)
    log_audit(
        db,
        action="BULK_DELETE",
        entity_type="asset",
        details={"ids": payload.ids, "deleted": deleted},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": f"Deleted {deleted} asset(s)", "deleted": deleted}


@router.post("/api/assets/import", response_model=ImportResult)
async def import_assets(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    content = await read_csv_upload(file)
    result = import_assets_csv(db, user=user, content=content)
    log_audit(
        db,
        action="IMPORT",
        entity_type="asset",
        entity_name=file.filename,
        details={"imported": result["imported"], "failed": result["failed"]},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return result


# Asset types


@router.get("/api/asset-types", response_model=list[AssetTypeRead])
def get_asset_types(
    include_inactive: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[Any]:
    return list_asset_types(db, include_inactive=include_inactive and has_role(user, UserRole.ADMIN))


@router.post("/api/asset-types", response_model=AssetTypeRead, status_code=status.HTTP_201_CREATED)
def post_asset_type(
    payload: AssetTypeCreate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> Any:
    row = create_asset_type(db, name=payload.name, display_name=payload.display_name, sort_order=payload.sort_order)
    log_audit(
        db,
        action="CREATE",
        entity_type="asset_type",
        entity_id=row.id,
        entity_name=row.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return row


@router.put("/api/asset-types/{asset_type_id}", response_model=AssetTypeRead)
def put_asset_type(
    asset_type_id: int,
    payload: AssetTypeUpdate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> Any:
    changes = payload.model_dump(exclude_unset=True)
    row = update_asset_type(db, asset_type_id=asset_type_id, changes=changes)
    log_audit(
        db,
        action="UPDATE",
        entity_type="asset_type",
        entity_id=row.id,
        entity_name=row.name,
        details=changes,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return row


@router.delete("/api/asset-types/{asset_type_id}")
def remove_asset_type(
    asset_type_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    row = delete_asset_type(db, asset_type_id=asset_type_id)
    log_audit(
        db,
        action="DELETE",
        entity_type="asset_type",
        entity_id=asset_type_id,
        entity_name=row.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Asset type deleted successfully", "id": asset_type_id}


@router.get("/api/stats")
def get_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict[str, Any]:
    return build_stats(db, user=user)
