from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
META_LABEL_FILL = PatternFill(fill_type="solid", fgColor="EAF4F9")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
WARNING_FILL = PatternFill(fill_type="solid", fgColor="FFF3CD")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")
TITLE_FONT = Font(bold=True, color="0B4F73", size=14)

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def _to_excel_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _minutes_to_hhmm(minutes: int) -> str:
    value = max(0, int(minutes))
    return f"{value // 60:02d}:{value % 60:02d}"


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _style_rows(ws: Worksheet, *, start_row: int, fill: PatternFill | None = None) -> None:
    for row_idx in range(start_row, ws.max_row + 1):
        row_fill = fill or (ZEBRA_FILL if (row_idx - start_row) % 2 else None)
        for cell in ws[row_idx]:
            cell.border = THIN_BORDER
            if row_fill is not None:
                cell.fill = row_fill


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def _write_table(ws: Worksheet, headers: list[str], rows: list[list[Any]], *, fill: PatternFill | None = None) -> None:
    ws.append(headers)
    _style_header(ws)
    for row in rows:
        ws.append(row)
    _style_rows(ws, start_row=2, fill=fill)
    ws.freeze_panes = "A2"
    _auto_width(ws)


def _build_summary_sheet(ws: Worksheet, report: dict[str, Any]) -> None:
    ws.title = "Summary"
    ws.cell(row=1, column=1, value="Time report").font = TITLE_FONT
    metadata = [
        ("From", report["from"].isoformat()),
        ("To", report["to"].isoformat()),
        ("Worker filter", report.get("worker_id") or "all"),
        ("Total minutes", report["total_minutes"]),
        ("Total hours", report["total_hours"]),
        ("Total (hh:mm)", _minutes_to_hhmm(report["total_minutes"])),
        ("Open sessions", len(report["incomplete"])),
    ]
    for offset, (label, value) in enumerate(metadata, start=3):
        label_cell = ws.cell(row=offset, column=1, value=label)
        label_cell.font = BOLD_FONT
        label_cell.fill = META_LABEL_FILL
        label_cell.border = THIN_BORDER
        value_cell = ws.cell(row=offset, column=2, value=value)
        value_cell.border = THIN_BORDER
    _auto_width(ws)


def build_report_xlsx_bytes(report: dict[str, Any]) -> bytes:
    wb = Workbook()
    _build_summary_sheet(wb.active, report)

    _write_table(
        wb.create_sheet("Workers"),
        ["Worker ID", "Worker", "Minutes", "Hours", "Shifts", "Sessions"],
        [
            [item["worker_id"], item["worker_name"], item["minutes"], item["hours"], item["jobs_count"], item["sessions"]]
            for item in report["by_worker"]
        ],
    )
    _write_table(
        wb.create_sheet("Sites"),
        ["Site ID", "Site", "Minutes", "Hours", "Shifts", "Sessions"],
        [
            [item["site_id"], item["site_name"], item["minutes"], item["hours"], item["jobs_count"], item["sessions"]]
            for item in report["by_site"]
        ],
    )
    _write_table(
        wb.create_sheet("Entries"),
        ["Shift ID", "Date", "Worker", "Site", "Started (UTC)", "Ended (UTC)", "Minutes", "Duration"],
        [
            [
                item["job_id"],
                item["job_date"],
                item["worker_name"],
                item["site_name"],
                _to_excel_datetime(item["started_at"]),
                _to_excel_datetime(item["ended_at"]),
                item["minutes"],
                _minutes_to_hhmm(item["minutes"]),
            ]
            for item in report["entries"]
        ],
    )
    _write_table(
        wb.create_sheet("Incomplete"),
        ["Shift ID", "Worker ID", "Worker", "Site", "Started (UTC)"],
        [
            [
                item["job_id"],
                item["worker_id"],
                item["worker_name"],
                item["site_name"],
                _to_excel_datetime(item["started_at"]),
            ]
            for item in report["incomplete"]
        ],
        fill=WARNING_FILL,
    )

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
