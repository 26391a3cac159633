"""
reporter.py — Excel Report Generator.

Produces the governance workbook for finance and project controllers:
colour-coded priority/severity rows, frozen headers, auto-fitted columns
and a cover sheet with KPI tiles.

Sheets:
    1. Summary        — KPI tiles, approval queue totals, alerts by type
    2. Active Alerts  — one row per active alert, coloured by prioridad
    3. Audit Log      — flat audit records, coloured by severity

build_audit_workbook() produces the single-sheet workbook behind
AuditLog.export('xlsx').
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.utils.dataframe import dataframe_to_rows

from governance.models import AlertaFinanciera

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Colour palette
# ---------------------------------------------------------------------------
COLOURS = {
    "navy":         "1F4E79",
    "dark_red":     "C00000",
    "dark_green":   "375623",
    "gold":         "BF8F00",
    "light_grey":   "F2F2F2",
    "white":        "FFFFFF",
    "critical_row": "FFCCCC",
    "high_row":     "FFE5CC",
    "medium_row":   "FFFFE0",
    "low_row":      "E2EFDA",
    "header_font":  "FFFFFF",
}

PRIORITY_ROW_COLOURS = {
    "critica": COLOURS["critical_row"],
    "alta":    COLOURS["high_row"],
    "media":   COLOURS["medium_row"],
    "baja":    COLOURS["low_row"],
}

SEVERITY_ROW_COLOURS = {
    "critical": COLOURS["critical_row"],
    "warning":  COLOURS["medium_row"],
    "info":     COLOURS["light_grey"],
}

THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

AUDIT_HEADERS = {
    "id":               "Entry ID",
    "timestamp":        "Timestamp (UTC)",
    "severity":         "Severity",
    "action":           "Action",
    "entity_type":      "Entity Type",
    "entity_id":        "Entity ID",
    "entity_name":      "Entity",
    "user_id":          "User ID",
    "user_name":        "User",
    "project_id":       "Project",
    "description":      "Description",
    "financial_impact": "Financial Impact",
    "changes":          "Changes",
}

ALERT_HEADERS = {
    "prioridad":          "Prioridad",
    "tipo":               "Tipo",
    "proyecto_nombre":    "Proyecto",
    "fase_numero":        "Fase",
    "titulo":             "Título",
    "mensaje":            "Mensaje",
    "accion_recomendada": "Acción recomendada",
    "factura_id":         "Factura",
    "updated_at":         "Actualizada",
}


def _make_fill(hex_colour: str) -> PatternFill:
    return PatternFill(fill_type="solid", fgColor=hex_colour)


def _make_header_font(bold: bool = True) -> Font:
    return Font(name="Calibri", bold=bold, color=COLOURS["header_font"], size=11)


def _make_title_font(size: int = 14) -> Font:
    return Font(name="Calibri", bold=True, color=COLOURS["navy"], size=size)


def _auto_fit_columns(ws, min_width: int = 10, max_width: int = 60) -> None:
    """Set each column's width to its longest cell value, within bounds."""
    for col in ws.columns:
        col_letter = get_column_letter(col[0].column)
        max_len = max((len(str(cell.value)) for cell in col if cell.value is not None), default=0)
        ws.column_dimensions[col_letter].width = min(max(max_len + 4, min_width), max_width)


def _write_kpi_tile(ws, row: int, col: int, label: str, value: str, colour: str) -> None:
    """Write a two-cell KPI tile (label above, value below)."""
    label_cell = ws.cell(row=row, column=col, value=label)
    label_cell.fill = _make_fill(colour)
    label_cell.font = _make_header_font()
    label_cell.alignment = Alignment(horizontal="center", vertical="center")
    label_cell.border = THIN_BORDER

    value_cell = ws.cell(row=row + 1, column=col, value=value)
    value_cell.font = Font(name="Calibri", bold=True, size=16, color=colour)
    value_cell.alignment = Alignment(horizontal="center", vertical="center")
    value_cell.fill = _make_fill(COLOURS["light_grey"])
    value_cell.border = THIN_BORDER


def _write_table(
    ws,
    df: pd.DataFrame,
    headers: dict[str, str],
    header_colour: str,
    colour_column: str,
    row_colours: dict[str, str],
) -> None:
    """Write a DataFrame as a styled table with per-row colouring.

    Args:
        ws: Target worksheet.
        df: Rows to write; only columns named in `headers` are kept.
        headers: Column name → display header, in display order.
        header_colour: Hex fill for the header row.
        colour_column: Column whose value selects the row colour.
        row_colours: Value → hex fill.
    """
    cols = [c for c in headers if c in df.columns]
    display = df[cols]

    for col_i, name in enumerate(cols, start=1):
        cell = ws.cell(row=1, column=col_i, value=headers[name])
        cell.fill = _make_fill(header_colour)
        cell.font = _make_header_font()
        cell.alignment = Alignment(horizontal="center", wrap_text=True)
        cell.border = THIN_BORDER
    ws.row_dimensions[1].height = 24
    ws.freeze_panes = "A2"

    colour_idx = cols.index(colour_column) if colour_column in cols else None
    for row_i, row in enumerate(dataframe_to_rows(display, index=False, header=False), start=2):
        key = str(row[colour_idx]) if colour_idx is not None else ""
        fill = _make_fill(row_colours.get(key, COLOURS["light_grey"]))
        for col_i, val in enumerate(row, start=1):
            cell = ws.cell(row=row_i, column=col_i, value=None if pd.isna(val) else val)
            cell.fill = fill
            cell.border = THIN_BORDER
            cell.alignment = Alignment(wrap_text=False, vertical="center")
            if cols[col_i - 1] == "financial_impact":
                cell.number_format = "#,##0.00"

    if cols:
        ws.auto_filter.ref = f"A1:{get_column_letter(len(cols))}1"
    _auto_fit_columns(ws)


def alerts_dataframe(alerts: Iterable[AlertaFinanciera]) -> pd.DataFrame:
    rows = [
        {
            "prioridad": a.prioridad.value,
            "tipo": a.tipo.value,
            "proyecto_nombre": a.proyecto_nombre,
            "fase_numero": a.fase_numero,
            "titulo": a.titulo,
            "mensaje": a.mensaje,
            "accion_recomendada": a.accion_recomendada,
            "factura_id": a.factura_id,
            "updated_at": a.updated_at.strftime("%Y-%m-%d %H:%M"),
        }
        for a in alerts
    ]
    return pd.DataFrame(rows, columns=list(ALERT_HEADERS))


# ---------------------------------------------------------------------------
# Workbooks
# ---------------------------------------------------------------------------

def build_audit_workbook(audit_df: pd.DataFrame) -> Workbook:
    """Single-sheet workbook of flat audit records."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Audit Log"
    ws.sheet_properties.tabColor = COLOURS["navy"]
    _write_table(ws, audit_df, AUDIT_HEADERS, COLOURS["navy"], "severity", SEVERITY_ROW_COLOURS)
    return wb


def _build_summary_sheet(
    ws,
    alert_stats: dict[str, Any],
    expense_stats: dict[str, Any],
    project_name: str,
    currency: str,
    run_date: str,
) -> None:
    ws.sheet_properties.tabColor = COLOURS["navy"]
    ws.row_dimensions[1].height = 30

    ws.merge_cells("A1:H1")
    title = ws["A1"]
    title.value = f"{project_name.upper()} — GOVERNANCE SUMMARY"
    title.font = Font(name="Calibri", bold=True, size=16, color=COLOURS["white"])
    title.fill = _make_fill(COLOURS["navy"])
    title.alignment = Alignment(horizontal="center", vertical="center")

    ws.merge_cells("A2:H2")
    sub = ws["A2"]
    sub.value = f"Report Date: {run_date}  |  Currency: {currency}"
    sub.font = Font(name="Calibri", italic=True, size=10, color=COLOURS["navy"])
    sub.alignment = Alignment(horizontal="center", vertical="center")

    by_status = expense_stats.get("by_status", {})
    kpi_tiles = [
        ("EXPENSES",        f"{expense_stats.get('total', 0):,}",                 COLOURS["navy"]),
        ("NEED REVIEW",     f"{expense_stats.get('needing_review', 0):,}",        COLOURS["gold"]),
        ("APPROVED",        f"{by_status.get('approved', 0):,}",                  COLOURS["dark_green"]),
        ("APPROVED AMOUNT", f"{expense_stats.get('approved_amount', 0.0):,.2f}", COLOURS["dark_green"]),
        ("ACTIVE ALERTS",   str(alert_stats.get("total", 0)),                     COLOURS["navy"]),
        ("CRÍTICAS",        str(alert_stats.get("criticas", 0)),                  "CC0000"),
        ("ALTAS",           str(alert_stats.get("altas", 0)),                     "C65911"),
    ]
    for i, (label, value, colour) in enumerate(kpi_tiles, start=1):
        _write_kpi_tile(ws, row=4, col=i, label=label, value=value, colour=colour)
    ws.row_dimensions[4].height = 22
    ws.row_dimensions[5].height = 30

    ws.cell(row=7, column=1, value="ACTIVE ALERTS BY TYPE").font = _make_title_font(12)
    for col_i, h in enumerate(["Tipo", "Alertas"], start=1):
        cell = ws.cell(row=8, column=col_i, value=h)
        cell.fill = _make_fill(COLOURS["dark_red"])
        cell.font = _make_header_font()
        cell.border = THIN_BORDER
    for row_i, (tipo, count) in enumerate(alert_stats.get("por_tipo", {}).items(), start=9):
        ws.cell(row=row_i, column=1, value=tipo).border = THIN_BORDER
        ws.cell(row=row_i, column=2, value=count).border = THIN_BORDER

    ws.cell(row=7, column=4, value="EXPENSES BY STATUS").font = _make_title_font(12)
    for col_i, h in enumerate(["Status", "Expenses"], start=4):
        cell = ws.cell(row=8, column=col_i, value=h)
        cell.fill = _make_fill(COLOURS["navy"])
        cell.font = _make_header_font()
        cell.border = THIN_BORDER
    for row_i, (status, count) in enumerate(by_status.items(), start=9):
        ws.cell(row=row_i, column=4, value=status).border = THIN_BORDER
        ws.cell(row=row_i, column=5, value=count).border = THIN_BORDER

    _auto_fit_columns(ws)


def generate_report(
    alerts: Iterable[AlertaFinanciera],
    audit_df: pd.DataFrame,
    alert_stats: dict[str, Any],
    expense_stats: dict[str, Any],
    cfg: dict[str, Any],
) -> Path:
    """Generate the governance workbook and write it to the output directory.

    Args:
        alerts: Active alerts, already in display order.
        audit_df: Flat audit records (AuditLog.to_dataframe()).
        alert_stats: AlertEngine.alert_stats() result.
        expense_stats: ApprovalWorkflow.stats() result.
        cfg: Merged configuration.

    Returns:
        Path to the generated .xlsx file.

    Raises:
        OSError: If output directory cannot be created.
    """
    run_date = datetime.today().strftime("%Y-%m-%d")
    output_dir = Path(cfg["paths"]["output_dir"])
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / cfg["paths"]["report_filename"].format(date=run_date)

    wb = Workbook()
    wb.remove(wb.active)

    _build_summary_sheet(
        wb.create_sheet("Summary"),
        alert_stats,
        expense_stats,
        cfg["project"]["name"],
        cfg["project"]["currency"],
        run_date,
    )
    logger.info("Built Summary sheet")

    alerts_df = alerts_dataframe(alerts)
    ws_alerts = wb.create_sheet("Active Alerts")
    ws_alerts.sheet_properties.tabColor = COLOURS["dark_red"]
    _write_table(ws_alerts, alerts_df, ALERT_HEADERS, COLOURS["dark_red"], "prioridad", PRIORITY_ROW_COLOURS)
    logger.info("Built Active Alerts sheet (%d rows)", len(alerts_df))

    ws_audit = wb.create_sheet("Audit Log")
    ws_audit.sheet_properties.tabColor = COLOURS["dark_green"]
    _write_table(ws_audit, audit_df, AUDIT_HEADERS, COLOURS["dark_green"], "severity", SEVERITY_ROW_COLOURS)
    logger.info("Built Audit Log sheet (%d rows)", len(audit_df))

    wb.save(output_path)
    logger.info("Excel report saved to %s", output_path)
    return output_path
