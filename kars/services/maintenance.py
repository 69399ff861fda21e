from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from kars.db import Base
from kars.errors import ApiError
from kars.models import (
    Asset,
    AttestationAssetReview,
    AttestationCampaign,
    AttestationNewAsset,
    AttestationPendingInvite,
    AttestationRecord,
    Company,
)

logger = logging.getLogger("kars.maintenance")

CONFIRMATION_PHRASES = {
    "companies": "DELETE ALL COMPANIES",
    "assets": "DELETE ALL ASSETS",
    "attestations": "DELETE ALL ATTESTATIONS",
}


def _count(db: Session, model: type[Base]) -> int:
    return int(db.scalar(select(func.count()).select_from(model)) or 0)


def database_info(db: Session) -> dict[str, Any]:
    bind = db.get_bind()
    url = make_url(str(bind.url))
    tables = []
    for table in Base.metadata.sorted_tables:
        tables.append({"name": table.name, "rows": int(db.scalar(select(func.count()).select_from(table)) or 0)})
    return {
        "engine": bind.dialect.name,
        "driver": bind.dialect.driver,
        "database": url.database,
        "host": url.host,
        "tables": tables,
    }


def danger_zone_counts(db: Session) -> dict[str, int]:
    return {
        "companies": _count(db, Company),
        "assets": _count(db, Asset),
        "campaigns": _count(db, AttestationCampaign),
        "records": _count(db, AttestationRecord),
        "invites": _count(db, AttestationPendingInvite),
    }


def _delete_assets(db: Session) -> int:
    db.execute(delete(AttestationAssetReview))
    return int(db.execute(delete(Asset)).rowcount or 0)


def _delete_attestations(db: Session) -> int:
    db.execute(delete(AttestationAssetReview))
    db.execute(delete(AttestationNewAsset))
    db.execute(delete(AttestationPendingInvite))
    db.execute(delete(AttestationRecord))
    return int(db.execute(delete(AttestationCampaign)).rowcount or 0)


def wipe(db: Session, *, target: str, confirmation: str) -> dict[str, Any]:
    """Bulk-delete one data category once the exact confirmation phrase is supplied."""
    phrase = CONFIRMATION_PHRASES.get(target)
    if phrase is None:
        raise ApiError(status_code=404, code="NOT_FOUND", message="Unknown data category")
    if confirmation != phrase:
        raise ApiError(
            status_code=400,
            code="CONFIRMATION_MISMATCH",
            message=f'Type "{phrase}" to confirm',
        )

    counts = danger_zone_counts(db)
    if target == "companies":
        _delete_assets(db)
        db.execute(update(AttestationNewAsset).values(company_id=None))
        deleted = int(db.execute(delete(Company)).rowcount or 0)
        result = {"companies": deleted, "assets": counts["assets"]}
    elif target == "assets":
        result = {"assets": _delete_assets(db)}
    else:
        result = {
            "campaigns": _delete_attestations(db),
            "records": counts["records"],
            "invites": counts["invites"],
        }
    db.commit()
    logger.warning("danger_zone_wipe", extra={"target": target, **result})
    return result
