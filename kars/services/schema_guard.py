from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "email", "role", "manager_email", "mfa_enabled", "oidc_sub"},
    "assets": {"id", "employee_email", "owner_id", "manager_id", "serial_number", "asset_tag", "registration_date"},
    "companies": {"id", "name"},
    "attestation_campaigns": {"id", "status", "target_type", "unregistered_reminder_days"},
    "attestation_records": {"id", "campaign_id", "user_id", "reminder_sent_at", "escalation_sent_at"},
    "attestation_pending_invites": {"id", "invite_token", "registered_at", "converted_record_id"},
    "audit_logs": {"id", "action", "entity_type", "performed_by"},
    "email_templates": {"id", "template_key", "is_custom"},
}


def verify_runtime_schema(engine: Engine, *, require_alembic: bool = True) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    if "alembic_version" not in existing_tables:
        message = "ALEMBIC_VERSION_TABLE_MISSING"
        if require_alembic:
            issues.append(message)
        else:
            warnings.append(message)
    else:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        if not (str(row).strip() if row is not None else ""):
            issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
