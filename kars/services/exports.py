from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Iterable, Literal, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet
from sqlalchemy.orm import Session

from kars.errors import validation_error
from kars.models import AuditLog
from kars.services.attestation import (
    campaign_invites,
    campaign_records,
    days_elapsed,
    get_campaign,
    is_record_overdue,
)
from kars.timeutils import as_utc, utc_now

ExportFormat = Literal["csv", "xlsx"]

CSV_MEDIA_TYPE = "text/csv"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CAMPAIGN_HEADERS = [
    "Employee Name",
    "Employee Email",
    "Status",
    "Started At",
    "Completed At",
    "Reminder Sent At",
    "Escalation Sent At",
    "Days Elapsed",
    "Overdue",
]
INVITE_HEADERS = [
    "Employee Name",
    "Employee Email",
    "Invite Sent At",
    "Reminder Sent At",
    "Escalation Sent At",
    "Registered At",
]
AUDIT_HEADERS = ["Timestamp", "Action", "Entity Type", "Entity ID", "Entity Name", "Performed By", "Details"]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="1E3A8A")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F5F8FF")
ALERT_FILL = PatternFill(fill_type="solid", fgColor="FDE2E4")
HEADER_FONT = Font(bold=True, color="FFFFFF")
THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def normalize_format(value: str | None) -> ExportFormat:
    normalized = (value or "csv").strip().lower()
    if normalized not in {"csv", "xlsx"}:
        raise validation_error("format must be csv or xlsx")
    return normalized  # type: ignore[return-value]


def media_type_for(export_format: ExportFormat) -> str:
    return XLSX_MEDIA_TYPE if export_format == "xlsx" else CSV_MEDIA_TYPE


def _to_excel_datetime(value: datetime | None) -> datetime | None:
    normalized = as_utc(value)
    if normalized is None:
        return None
    return normalized.astimezone(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized is not None else ""


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _style_rows(ws: Worksheet, *, highlight_col: int | None = None) -> None:
    if ws.max_row < 2:
        ws.freeze_panes = "A2"
        return
    ws.auto_filter.ref = f"A1:{get_column_letter(ws.max_column)}{ws.max_row}"
    ws.freeze_panes = "A2"
    for row_idx in range(2, ws.max_row + 1):
        for col_idx in range(1, ws.max_column + 1):
            cell = ws.cell(row=row_idx, column=col_idx)
            cell.border = THIN_BORDER
            if row_idx % 2 == 0:
                cell.fill = ZEBRA_FILL
        if highlight_col is not None and ws.cell(row=row_idx, column=highlight_col).value == "Yes":
            ws.cell(row=row_idx, column=highlight_col).fill = ALERT_FILL


def _write_sheet(
    ws: Worksheet,
    headers: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    highlight_col: int | None = None,
) -> None:
    ws.append(list(headers))
    for row in rows:
        ws.append(list(row))
    _style_header(ws)
    _style_rows(ws, highlight_col=highlight_col)
    _auto_width(ws)


def _workbook_bytes(wb: Workbook) -> bytes:
    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()


def _csv_bytes(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue().encode("utf-8")


def _safe_filename(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in name.strip())
    return cleaned.strip("_") or "export"


def build_campaign_export(
    db: Session,
    *,
    campaign_id: int,
    export_format: ExportFormat = "csv",
    now: datetime | None = None,
) -> tuple[bytes, str]:
    """Roster of a campaign. Returns ``(payload, filename)``."""
    campaign = get_campaign(db, campaign_id)
    current = now or utc_now()
    records = campaign_records(db, campaign.id)
    invites = campaign_invites(db, campaign.id, open_only=True)
    elapsed = days_elapsed(campaign.start_date, now=current)
    filename = f"attestation_{_safe_filename(campaign.name)}_{current.date().isoformat()}.{export_format}"

    def _record_rows(excel: bool) -> list[list[Any]]:
        stamp = _to_excel_datetime if excel else _iso
        rows: list[list[Any]] = []
        for record in records:
            user = record.user
            rows.append(
                [
                    f"{user.first_name or ''} {user.last_name or ''}".strip() or user.name,
                    user.email,
                    record.status.value,
                    stamp(record.started_at),
                    stamp(record.completed_at),
                    stamp(record.reminder_sent_at),
                    stamp(record.escalation_sent_at),
                    elapsed,
                    "Yes" if is_record_overdue(record, campaign, now=current) else "No",
                ]
            )
        return rows

    def _invite_rows(excel: bool) -> list[list[Any]]:
        stamp = _to_excel_datetime if excel else _iso
        return [
            [
                f"{invite.employee_first_name or ''} {invite.employee_last_name or ''}".strip(),
                invite.employee_email,
                stamp(invite.invite_sent_at),
                stamp(invite.reminder_sent_at),
                stamp(invite.escalation_sent_at),
                stamp(invite.registered_at),
            ]
            for invite in invites
        ]

    if export_format == "xlsx":
        wb = Workbook()
        ws = wb.active
        ws.title = "Attestations"
        _write_sheet(ws, CAMPAIGN_HEADERS, _record_rows(True), highlight_col=len(CAMPAIGN_HEADERS))
        _write_sheet(wb.create_sheet("Unregistered"), INVITE_HEADERS, _invite_rows(True))
        return _workbook_bytes(wb), filename

    rows = _record_rows(False)
    if invites:
        rows.append([])
        rows.append(["Unregistered asset owners"])
        rows.append(INVITE_HEADERS)
        rows.extend(_invite_rows(False))
    return _csv_bytes(CAMPAIGN_HEADERS, rows), filename


def build_audit_export(
    logs: Sequence[AuditLog],
    *,
    export_format: ExportFormat = "csv",
    now: datetime | None = None,
) -> tuple[bytes, str]:
    current = now or utc_now()
    filename = f"audit-logs-{current.date().isoformat()}.{export_format}"
    if export_format == "xlsx":
        wb = Workbook()
        ws = wb.active
        ws.title = "Audit Logs"
        _write_sheet(
            ws,
            AUDIT_HEADERS,
            (
                [
                    _to_excel_datetime(log.timestamp),
                    log.action,
                    log.entity_type,
                    log.entity_id,
                    log.entity_name,
                    log.performed_by,
                    log.details,
                ]
                for log in logs
            ),
        )
        return _workbook_bytes(wb), filename

    return (
        _csv_bytes(
            AUDIT_HEADERS,
            (
                [
                    _iso(log.timestamp),
                    log.action,
                    log.entity_type,
                    log.entity_id,
                    log.entity_name,
                    log.performed_by,
                    log.details,
                ]
                for log in logs
            ),
        ),
        filename,
    )
