from __future__ import annotations

import csv
import io
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kars.errors import ApiError, conflict, not_found, validation_error
from kars.models import Asset, Company

SEARCH_DEFAULT_LIMIT = 20
SEARCH_MAX_LIMIT = 50


def clamp_search_limit(raw_limit: Any) -> int:
    try:
        limit = int(raw_limit)
    except (TypeError, ValueError):
        limit = SEARCH_DEFAULT_LIMIT
    if limit <= 0:
        limit = SEARCH_DEFAULT_LIMIT
    return min(limit, SEARCH_MAX_LIMIT)


def list_companies(db: Session) -> list[Company]:
    return list(db.scalars(select(Company).order_by(Company.name)).all())


def list_company_names(db: Session) -> list[dict[str, Any]]:
    rows = db.execute(select(Company.id, Company.name).order_by(Company.name)).all()
    return [{"id": row.id, "name": row.name} for row in rows]


def search_companies(db: Session, query: str | None = "", limit: Any = SEARCH_DEFAULT_LIMIT) -> list[Company]:
    statement = select(Company).order_by(Company.name).limit(clamp_search_limit(limit))
    cleaned = (query or "").strip().lower()
    if cleaned:
        statement = statement.where(func.lower(Company.name).like(f"%{cleaned}%"))
    return list(db.scalars(statement).all())


def _company_or_404(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if company is None:
        raise not_found("Company")
    return company


def _name_taken(db: Session, name: str, *, exclude_id: int | None = None) -> bool:
    statement = select(Company.id).where(func.lower(Company.name) == name.lower())
    if exclude_id is not None:
        statement = statement.where(Company.id != exclude_id)
    return db.scalar(statement) is not None


def create_company(db: Session, *, name: str, description: str | None = None) -> Company:
    cleaned = (name or "").strip()
    if not cleaned:
        raise validation_error("Company name is required")
    if _name_taken(db, cleaned):
        raise conflict("A company with this name already exists")
    company = Company(name=cleaned, description=description)
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


def update_company(db: Session, *, company_id: int, changes: Mapping[str, Any]) -> Company:
    company = _company_or_404(db, company_id)
    if changes.get("name") is not None:
        cleaned = changes["name"].strip()
        if not cleaned:
            raise validation_error("Company name is required")
        if _name_taken(db, cleaned, exclude_id=company.id):
            raise conflict("A company with this name already exists")
        company.name = cleaned
    if "description" in changes:
        company.description = changes["description"]
    db.commit()
    db.refresh(company)
    return company


def delete_company(db: Session, *, company_id: int) -> Company:
    company = _company_or_404(db, company_id)
    asset_count = db.scalar(select(func.count(Asset.id)).where(Asset.company_id == company.id)) or 0
    if asset_count:
        raise ApiError(
            status_code=409,
            code="CONFLICT",
            message=f"Cannot delete company with {asset_count} assigned asset(s)",
        )
    db.delete(company)
    db.commit()
    return company


def import_companies_csv(db: Session, content: str) -> dict[str, Any]:
    reader = csv.DictReader(io.StringIO(content.lstrip("﻿")))
    imported = 0
    errors: list[dict[str, Any]] = []
    for line_number, row in enumerate(reader, start=2):
        normalized = {(key or "").strip().lower(): (value or "").strip() for key, value in row.items()}
        try:
            create_company(db, name=normalized.get("name", ""), description=normalized.get("description") or None)
        except ApiError as exc:
            errors.append({"row": line_number, "error": exc.message})
            continue
        imported += 1
    return {"imported": imported, "failed": len(errors), "errors": errors}
