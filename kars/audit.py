from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from kars.models import AuditLog

logger = logging.getLogger("kars.audit")


def _serialize_details(details: dict[str, Any] | str | None) -> str | None:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return json.dumps(details, default=str, ensure_ascii=False)


def log_audit(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: int | str | None = None,
    entity_name: str | None = None,
    details: dict[str, Any] | str | None = None,
    performed_by: str | None = None,
    request_id: str | None = None,
) -> None:
    audit = AuditLog(
        timestamp=datetime.now(timezone.utc),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        entity_name=entity_name,
        details=_serialize_details(details),
        performed_by=performed_by,
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": audit.entity_id,
                "performed_by": performed_by,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": audit.entity_id,
            "entity_name": entity_name,
            "performed_by": performed_by,
        },
    )


def parse_details(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw
