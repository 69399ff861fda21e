from typing import Any

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from kars.audit import log_audit
from kars.db import get_db
from kars.models import Company, User, UserRole
from kars.routers.assets import read_csv_upload
from kars.schemas import CompanyCreate, CompanyRead, CompanyUpdate, ImportResult
from kars.security import get_current_user, require_roles
from kars.services.companies import (
    create_company,
    delete_company,
    import_companies_csv,
    list_companies,
    list_company_names,
    search_companies,
    update_company,
)

router = APIRouter(tags=["companies"])


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@router.get("/api/companies", response_model=list[CompanyRead])
def get_companies(
    _user: User = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR, UserRole.MANAGER)),
    db: Session = Depends(get_db),
) -> list[Company]:
    return list_companies(db)


@router.get("/api/companies/names")
def get_company_names(
    _user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    return list_company_names(db)


@router.get("/api/companies/search", response_model=list[CompanyRead])
def get_company_search(
    q: str = Query(default=""),
    limit: str | None = Query(default=None),
    _user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[Company]:
    return search_companies(db, q, limit)


@router.post("/api/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def post_company(
    payload: CompanyCreate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> Company:
    company = create_company(db, name=payload.name, description=payload.description)
    log_audit(
        db,
        action="CREATE",
        entity_type="company",
        entity_id=company.id,
        entity_name=company.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return company


@router.put("/api/companies/{company_id}", response_model=CompanyRead)
def put_company(
    company_id: int,
    payload: CompanyUpdate,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> Company:
    changes = payload.model_dump(exclude_unset=True)
    company = update_company(db, company_id=company_id, changes=changes)
    log_audit(
        db,
        action="UPDATE",
        entity_type="company",
        entity_id=company.id,
        entity_name=company.name,
        details=changes,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return company


@router.delete("/api/companies/{company_id}")
def remove_company(
    company_id: int,
    request: Request,
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    company = delete_company(db, company_id=company_id)
    log_audit(
        db,
        action="DELETE",
        entity_type="company",
        entity_id=company_id,
        entity_name=company.name,
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return {"message": "Company deleted successfully", "id": company_id}


@router.post("/api/companies/import", response_model=ImportResult)
async def import_companies(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    content = await read_csv_upload(file)
    result = import_companies_csv(db, content)
    log_audit(
        db,
        action="IMPORT",
        entity_type="company",
        entity_name=file.filename,
        details={"imported": result["imported"], "failed": result["failed"]},
        performed_by=user.email,
        request_id=_request_id(request),
    )
    return result
