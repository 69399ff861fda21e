from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import Session

from kars.audit import log_audit, parse_details
from kars.db import get_db
from kars.models import AuditLog, User, UserRole
from kars.security import get_current_user, has_role
from kars.services.exports import build_audit_export, media_type_for, normalize_format
from kars.timeutils import isoformat_or_none

router = APIRouter(tags=["audit"])

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
EXPORT_LIMIT = 10_000


def _visible_emails(db: Session, user: User) -> list[str] | None:
    """Emails whose audit rows ``user`` may see; ``None`` means unrestricted."""
    if has_role(user, UserRole.ADMIN, UserRole.COORDINATOR):
        return None
    emails = [user.email.lower()]
    if has_role(user, UserRole.MANAGER):
        reports = db.scalars(select(User.email).where(func.lower(User.manager_email) == user.email.lower())).all()
        emails.extend(email.lower() for email in reports)
    return emails


def _filtered_statement(
    db: Session,
    user: User,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    user_email: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> Select[tuple[AuditLog]]:
    stmt = select(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    visible = _visible_emails(db, user)
    if visible is not None:
        stmt = stmt.where(
            or_(
                func.lower(AuditLog.performed_by).in_(visible),
                func.lower(AuditLog.entity_name).in_(visible),
            )
        )
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if user_email:
        stmt = stmt.where(func.lower(AuditLog.performed_by).like(f"%{user_email.strip().lower()}%"))
    if start_date is not None:
        stmt = stmt.where(AuditLog.timestamp >= datetime.combine(start_date, time.min, tzinfo=timezone.utc))
    if end_date is not None:
        stmt = stmt.where(
            AuditLog.timestamp < datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )
    return stmt


def _serialize(log: AuditLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "action": log.action,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "entity_name": log.entity_name,
        "details": parse_details(log.details),
        "performed_by": log.performed_by,
        "timestamp": isoformat_or_none(log.timestamp),
    }


@router.get("/api/audit/logs")
def list_audit_logs(
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: str | None = Query(default=None, alias="entityId"),
    action: str | None = Query(default=None),
    user_email: str | None = Query(default=None, alias="userEmail"),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    stmt = _filtered_statement(
        db,
        user,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        user_email=user_email,
        start_date=start_date,
        end_date=end_date,
    ).limit(limit)
    return [_serialize(log) for log in db.scalars(stmt).all()]


@router.get("/api/audit/export")
def export_audit_logs(
    request: Request,
    entity_type: str | None = Query(default=None, alias="entityType"),
    action: str | None = Query(default=None),
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    export_format: str | None = Query(default=None, alias="format"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    normalized = normalize_format(export_format)
    stmt = _filtered_statement(
        db,
        user,
        entity_type=entity_type,
        action=action,
        start_date=start_date,
        end_date=end_date,
    ).limit(EXPORT_LIMIT)
    logs = list(db.scalars(stmt).all())
    payload, filename = build_audit_export(logs, export_format=normalized)
    log_audit(
        db,
        action="EXPORT",
        entity_type="audit_log",
        details={"format": normalized, "rows": len(logs)},
        performed_by=user.email,
        request_id=getattr(request.state, "request_id", None),
    )
    return Response(
        content=payload,
        media_type=media_type_for(normalized),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/api/audit/stats")
def audit_stats(
    start_date: date | None = Query(default=None, alias="startDate"),
    end_date: date | None = Query(default=None, alias="endDate"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    scoped = _filtered_statement(db, user, start_date=start_date, end_date=end_date).order_by(None).subquery()
    by_action = db.execute(
        select(scoped.c.action, func.count()).group_by(scoped.c.action).order_by(func.count().desc())
    ).all()
    by_entity = db.execute(
        select(scoped.c.entity_type, func.count()).group_by(scoped.c.entity_type).order_by(func.count().desc())
    ).all()
    return {
        "total": sum(int(count) for _action, count in by_action),
        "byAction": [{"action": action, "count": int(count)} for action, count in by_action],
        "byEntityType": [{"entity_type": entity_type, "count": int(count)} for entity_type, count in by_entity],
    }
