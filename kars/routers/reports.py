from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from kars.db import get_db
from kars.models import User, UserRole
from kars.security import require_roles
from kars.services.reports import (
    build_compliance,
    build_enhanced_summary,
    build_statistics,
    build_summary,
    build_trends,
)

router = APIRouter(tags=["reports"])

report_reader = require_roles(UserRole.ADMIN, UserRole.MANAGER)


@router.get("/api/reports/summary")
def get_summary(_user: User = Depends(report_reader), db: Session = Depends(get_db)) -> dict[str, Any]:
    return build_summary(db)


@router.get("/api/reports/summary-enhanced")
def get_summary_enhanced(_user: User = Depends(report_reader), db: Session = Depends(get_db)) -> dict[str, Any]:
    return build_enhanced_summary(db)


@router.get("/api/reports/statistics-enhanced")
def get_statistics_enhanced(
    period: int = Query(default=30, ge=1, le=365),
    _user: User = Depends(report_reader),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return build_statistics(db, period=period)


@router.get("/api/reports/compliance")
def get_compliance(_user: User = Depends(report_reader), db: Session = Depends(get_db)) -> dict[str, Any]:
    return build_compliance(db)


@router.get("/api/reports/trends")
def get_trends(
    period: int = Query(default=30, ge=1, le=365),
    _user: User = Depends(report_reader),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return build_trends(db, period=period)
