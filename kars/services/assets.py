from __future__ import annotations

import csv
import io
import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.sql.elements import ColumnElement

from kars.errors import ApiError, conflict, forbidden, not_found, validation_error
from kars.models import Asset, AssetStatus, AssetType, Company, User, UserRole
from kars.security import has_role

logger = logging.getLogger("kars.assets")

ASSET_EDITABLE_FIELDS = (
    "employee_first_name",
    "employee_last_name",
    "employee_email",
    "manager_first_name",
    "manager_last_name",
    "manager_email",
    "company_id",
    "asset_type",
    "make",
    "model",
    "serial_number",
    "asset_tag",
    "status",
    "issued_date",
    "returned_date",
    "notes",
)

DEFAULT_ASSET_TYPES: tuple[tuple[str, str], ...] = (
    ("laptop", "Laptop"),
    ("mobile_phone", "Mobile Phone"),
    ("tablet", "Tablet"),
    ("desktop", "Desktop"),
    ("monitor", "Monitor"),
    ("other", "Other"),
)


def _lower(value: str | None) -> str | None:
    cleaned = (value or "").strip().lower()
    return cleaned or None


def parse_asset_status(value: Any) -> AssetStatus:
    try:
        return AssetStatus(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in AssetStatus)
        raise ApiError(
            status_code=400,
            code="VALIDATION_ERROR",
            message=f"Invalid status. Must be one of: {allowed}",
        ) from exc


def visibility_filter(user: User) -> ColumnElement[bool] | None:
    """Row filter for assets the user may see; ``None`` means unrestricted."""
    if has_role(user, UserRole.ADMIN, UserRole.COORDINATOR):
        return None
    own = or_(Asset.owner_id == user.id, func.lower(Asset.employee_email) == user.email.lower())
    if has_role(user, UserRole.MANAGER):
        return or_(own, Asset.manager_id == user.id, func.lower(Asset.manager_email) == user.email.lower())
    return own


def can_view_asset(user: User, asset: Asset) -> bool:
    if has_role(user, UserRole.ADMIN, UserRole.COORDINATOR):
        return True
    email = user.email.lower()
    if asset.owner_id == user.id or (asset.employee_email or "").lower() == email:
        return True
    if has_role(user, UserRole.MANAGER):
        return asset.manager_id == user.id or (asset.manager_email or "").lower() == email
    return False


def list_assets(
    db: Session,
    *,
    user: User,
    status: str | None = None,
    company_id: int | None = None,
    search: str | None = None,
) -> list[Asset]:
    statement = select(Asset).options(selectinload(Asset.company)).order_by(Asset.id.desc())
    scope = visibility_filter(user)
    if scope is not None:
        statement = statement.where(scope)
    if status:
        statement = statement.where(Asset.status == parse_asset_status(status))
    if company_id is not None:
        statement = statement.where(Asset.company_id == company_id)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        statement = statement.where(
            or_(
                func.lower(Asset.serial_number).like(pattern),
                func.lower(Asset.asset_tag).like(pattern),
                func.lower(Asset.employee_email).like(pattern),
                func.lower(Asset.employee_first_name).like(pattern),
                func.lower(Asset.employee_last_name).like(pattern),
                func.lower(Asset.make).like(pattern),
                func.lower(Asset.model).like(pattern),
            )
        )
    return list(db.scalars(statement).all())


def get_asset_for_user(db: Session, *, user: User, asset_id: int) -> Asset:
    asset = db.get(Asset, asset_id)
    if asset is None:
        raise not_found("Asset")
    if not can_view_asset(user, asset):
        raise forbidden()
    return asset


def _resolve_company_id(db: Session, payload: Mapping[str, Any]) -> int | None:
    company_id = payload.get("company_id")
    if company_id is not None:
        if db.get(Company, company_id) is None:
            raise validation_error("Company not found")
        return int(company_id)
    company_name = (payload.get("company_name") or "").strip()
    if not company_name:
        return None
    company = db.scalar(select(Company).where(func.lower(Company.name) == company_name.lower()))
    if company is None:
        raise validation_error(f"Company '{company_name}' not found")
    return company.id


def _ensure_known_asset_type(db: Session, asset_type: str) -> str:
    normalized = asset_type.strip().lower()
    known = set(db.scalars(select(AssetType.name).where(AssetType.is_active.is_(True))).all())
    if known and normalized not in known:
        raise validation_error(f"Unknown asset type '{asset_type}'")
    return normalized


def _link_users(db: Session, asset: Asset) -> None:
    owner = db.scalar(select(User).where(User.email == (asset.employee_email or "").lower()))
    asset.owner_id = owner.id if owner is not None else None
    manager_email = _lower(asset.manager_email)
    manager = db.scalar(select(User).where(User.email == manager_email)) if manager_email else None
    asset.manager_id = manager.id if manager is not None else None


def _commit_asset(db: Session, asset: Asset) -> Asset:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(
            status_code=409,
            code="CONFLICT",
            message="An asset with this serial number or asset tag already exists",
        ) from exc
    db.refresh(asset)
    return asset


def create_asset(db: Session, *, user: User, payload: Mapping[str, Any]) -> Asset:
    data = dict(payload)
    if not has_role(user, UserRole.ADMIN, UserRole.COORDINATOR, UserRole.MANAGER):
        # Employees can only register assets for themselves.
        data["employee_email"] = user.email
        data.setdefault("employee_first_name", user.first_name)
        data.setdefault("employee_last_name", user.last_name)
        data.setdefault("manager_first_name", user.manager_first_name)
        data.setdefault("manager_last_name", user.manager_last_name)
        data.setdefault("manager_email", user.manager_email)

    employee_email = _lower(data.get("employee_email"))
    if not employee_email:
        raise validation_error("Employee email is required")
    serial_number = (data.get("serial_number") or "").strip()
    asset_tag = (data.get("asset_tag") or "").strip()
    if not serial_number or not asset_tag:
        raise validation_error("Serial number and asset tag are required")

    asset = Asset(
        employee_first_name=data.get("employee_first_name"),
        employee_last_name=data.get("employee_last_name"),
        employee_email=employee_email,
        manager_first_name=data.get("manager_first_name"),
        manager_last_name=data.get("manager_last_name"),
        manager_email=_lower(data.get("manager_email")),
        company_id=_resolve_company_id(db, data),
        asset_type=_ensure_known_asset_type(db, data.get("asset_type") or "laptop"),
        make=data.get("make"),
        model=data.get("model"),
        serial_number=serial_number,
        asset_tag=asset_tag,
        status=parse_asset_status(data.get("status") or AssetStatus.ACTIVE.value),
        issued_date=data.get("issued_date"),
        returned_date=data.get("returned_date"),
        notes=data.get("notes"),
    )
    _link_users(db, asset)
    db.add(asset)
    return _commit_asset(db, asset)


def update_asset(db: Session, *, user: User, asset_id: int, changes: Mapping[str, Any]) -> Asset:
    asset = get_asset_for_user(db, user=user, asset_id=asset_id)
    privileged = has_role(user, UserRole.ADMIN, UserRole.COORDINATOR, UserRole.MANAGER)
    for field in ASSET_EDITABLE_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == "employee_email" and not privileged:
            continue
        if field == "status":
            value = parse_asset_status(value)
        elif field in {"employee_email", "manager_email"}:
            value = _lower(value)
            if field == "employee_email" and not value:
                raise validation_error("Employee email is required")
        elif field == "company_id" and value is not None:
            value = _resolve_company_id(db, {"company_id": value})
        elif field == "asset_type" and value:
            value = _ensure_known_asset_type(db, value)
        setattr(asset, field, value)
    if "company_name" in changes and "company_id" not in changes:
        asset.company_id = _resolve_company_id(db, changes)
    _link_users(db, asset)
    return _commit_asset(db, asset)


def update_asset_status(
    db: Session,
    *,
    user: User,
    asset_id: int,
    status: str,
    notes: str | None = None,
) -> tuple[Asset, AssetStatus]:
    asset = get_asset_for_user(db, user=user, asset_id=asset_id)
    previous = asset.status
    asset.status = parse_asset_status(status)
    if notes is not None:
        asset.notes = notes
    db.commit()
    db.refresh(asset)
    return asset, previous


def delete_asset(db: Session, *, user: User, asset_id: int) -> Asset:
    asset = get_asset_for_user(db, user=user, asset_id=asset_id)
    db.delete(asset)
    db.commit()
    return asset


def bulk_update_status(db: Session, *, user: User, asset_ids: Iterable[int], status: str) -> int:
    new_status = parse_asset_status(status)
    updated = 0
    for asset_id in asset_ids:
        asset = db.get(Asset, asset_id)
        if asset is None or not can_view_asset(user, asset):
            continue
        asset.status = new_status
        updated += 1
    db.commit()
    return updated


def bulk_delete(db: Session, *, user: User, asset_ids: Iterable[int]) -> int:
    deleted = 0
    for asset_id in asset_ids:
        asset = db.get(Asset, asset_id)
        if asset is None or not can_view_asset(user, asset):
            continue
        db.delete(asset)
        deleted += 1
    db.commit()
    return deleted


def import_assets_csv(db: Session, *, user: User, content: str) -> dict[str, Any]:
    reader = csv.DictReader(io.StringIO(content.lstrip("﻿")))
    imported = 0
    errors: list[dict[str, Any]] = []
    for line_number, row in enumerate(reader, start=2):
        normalized = {(key or "").strip().lower(): (value or "").strip() for key, value in row.items()}
        payload = {key: value or None for key, value in normalized.items()}
        if payload.get("company") and not payload.get("company_name"):
            payload["company_name"] = payload["company"]
        try:
            create_asset(db, user=user, payload=payload)
        except ApiError as exc:
            errors.append({"row": line_number, "error": exc.message})
            continue
        imported += 1
    logger.info("asset_csv_import", extra={"imported": imported, "failed": len(errors)})
    return {"imported": imported, "failed": len(errors), "errors": errors}


def link_assets_to_user(db: Session, user: User) -> int:
    """Attach pre-loaded assets to a newly registered account by email."""
    email = user.email.lower()
    owned = db.execute(
        update(Asset).where(func.lower(Asset.employee_email) == email).values(owner_id=user.id)
    )
    managed = db.execute(
        update(Asset).where(func.lower(Asset.manager_email) == email).values(manager_id=user.id)
    )
    return int(owned.rowcount or 0) + int(managed.rowcount or 0)


def sync_manager_on_assets(db: Session, user: User) -> int:
    manager_email = _lower(user.manager_email)
    manager = db.scalar(select(User).where(User.email == manager_email)) if manager_email else None
    result = db.execute(
        update(Asset)
        .where(or_(Asset.owner_id == user.id, func.lower(Asset.employee_email) == user.email.lower()))
        .values(
            manager_first_name=user.manager_first_name,
            manager_last_name=user.manager_last_name,
            manager_email=manager_email,
            manager_id=manager.id if manager is not None else None,
        )
    )
    return int(result.rowcount or 0)


def is_referenced_as_manager(db: Session, email: str) -> bool:
    normalized = email.lower()
    on_users = db.scalar(select(func.count(User.id)).where(func.lower(User.manager_email) == normalized)) or 0
    on_assets = db.scalar(select(func.count(Asset.id)).where(func.lower(Asset.manager_email) == normalized)) or 0
    return (on_users + on_assets) > 0


def count_assets_for_email(db: Session, email: str) -> int:
    return int(
        db.scalar(select(func.count(Asset.id)).where(func.lower(Asset.employee_email) == email.lower())) or 0
    )


# Asset types


def seed_asset_types(db: Session) -> int:
    existing = set(db.scalars(select(AssetType.name)).all())
    created = 0
    for sort_order, (name, display_name) in enumerate(DEFAULT_ASSET_TYPES):
        if name in existing:
            continue
        db.add(AssetType(name=name, display_name=display_name, sort_order=sort_order, is_active=True))
        created += 1
    if created:
        db.commit()
    return created


def list_asset_types(db: Session, *, include_inactive: bool = False) -> list[AssetType]:
    statement = select(AssetType).order_by(AssetType.sort_order, AssetType.name)
    if not include_inactive:
        statement = statement.where(AssetType.is_active.is_(True))
    return list(db.scalars(statement).all())


def create_asset_type(db: Session, *, name: str, display_name: str, sort_order: int = 0) -> AssetType:
    normalized = name.strip().lower().replace(" ", "_")
    if not normalized:
        raise validation_error("Asset type name is required")
    if db.scalar(select(AssetType).where(AssetType.name == normalized)) is not None:
        raise conflict("Asset type already exists")
    row = AssetType(name=normalized, display_name=display_name.strip() or normalized, sort_order=sort_order)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def update_asset_type(db: Session, *, asset_type_id: int, changes: Mapping[str, Any]) -> AssetType:
    row = db.get(AssetType, asset_type_id)
    if row is None:
        raise not_found("Asset type")
    for field in ("display_name", "is_active", "sort_order"):
        if field in changes and changes[field] is not None:
            setattr(row, field, changes[field])
    db.commit()
    db.refresh(row)
    return row


def delete_asset_type(db: Session, *, asset_type_id: int) -> AssetType:
    row = db.get(AssetType, asset_type_id)
    if row is None:
        raise not_found("Asset type")
    in_use = db.scalar(select(func.count(Asset.id)).where(Asset.asset_type == row.name)) or 0
    if in_use:
        raise ApiError(
            status_code=409,
            code="CONFLICT",
            message=f"Asset type is used by {in_use} asset(s) and cannot be deleted",
        )
    db.delete(row)
    db.commit()
    return row


def build_stats(db: Session, *, user: User) -> dict[str, Any]:
    scope = visibility_filter(user)
    statement = select(Asset.status, func.count(Asset.id)).group_by(Asset.status)
    if scope is not None:
        statement = statement.where(scope)
    by_status = {item.value: 0 for item in AssetStatus}
    for status, count in db.execute(statement).all():
        by_status[AssetStatus(status).value] = int(count)
    return {
        "assets": sum(by_status.values()),
        "assetsByStatus": by_status,
        "companies": int(db.scalar(select(func.count(Company.id))) or 0),
        "users": int(db.scalar(select(func.count(User.id))) or 0),
    }
