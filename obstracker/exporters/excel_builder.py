# obstracker/exporters/excel_builder.py

from __future__ import annotations

from io import BytesIO
from typing import Any, Iterable, Mapping

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from obstracker.core.codes import ObservationStatus, RiskRating, coerce_code
from obstracker.core.records import F_RISK, F_STATUS
from obstracker.exporters.csv_builder import EXPORT_HEADERS, export_row

HEADER_FILL = PatternFill(start_color="1F2937", end_color="1F2937", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)
RISK_FILLS = {
    RiskRating.CRITICAL: "FECACA",
    RiskRating.HIGH: "FED7AA",
    RiskRating.MODERATE: "FEF08A",
    RiskRating.LOW: "BBF7D0",
}
STATUS_FILLS = {
    ObservationStatus.OVERDUE: "FEE2E2",
    ObservationStatus.CLOSED: "DCFCE7",
}


def _autosize_columns(ws) -> None:
    for col in ws.columns:
        max_length = 0
        column = col[0].column_letter
        for cell in col:
            if cell.value is not None and len(str(cell.value)) > max_length:
                max_length = len(str(cell.value))
        ws.column_dimensions[column].width = min(max_length + 2, 60)


def _fill(color: str) -> PatternFill:
    return PatternFill(start_color=color, end_color=color, fill_type="solid")


def build_xlsx_from_observations(observations: Iterable[Mapping[str, Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Observations"

    ws.append(EXPORT_HEADERS)
    for cell in ws[1]:
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

    risk_col = EXPORT_HEADERS.index("Risk Rating") + 1
    status_col = EXPORT_HEADERS.index("Status") + 1
    for obs in observations:
        ws.append(export_row(obs))
        row_idx = ws.max_row
        for cell in ws[row_idx]:
            cell.border = THIN_BORDER
            cell.alignment = Alignment(vertical="top", wrap_text=True)
        risk = coerce_code(RiskRating, obs.get(F_RISK))
        if risk in RISK_FILLS:
            ws.cell(row=row_idx, column=risk_col).fill = _fill(RISK_FILLS[risk])
        status = coerce_code(ObservationStatus, obs.get(F_STATUS))
        if status in STATUS_FILLS:
            ws.cell(row=row_idx, column=status_col).fill = _fill(STATUS_FILLS[status])

    ws.freeze_panes = "A2"
    _autosize_columns(ws)

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()
