"""
Report Workbook Export

Writes any tabular report to a styled Excel workbook: title band, bold
header row, rupee and gram number formats, alternating row fill and
auto-fitted columns.

Reports that are not a flat list (series, daily report, rosters with a
summary) are exported through their row list; nested values are skipped.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import openpyxl
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from config.export_styles import ExportStyle, get_export_style
from src.data.report_models import (
    AccessControlRoster,
    CashFlowSeries,
    DailyReport,
    InflowSeries,
    MarketRates,
    OutflowSeries,
    ReportModel,
)
from src.tools.money import format_inr

logger = logging.getLogger(__name__)

# Column-name fragments that decide a cell's number format
_CURRENCY_HINTS = ("amount", "total", "collect", "paid", "target", "inflow", "outflow", "net", "rate", "average")
_GRAMS_HINTS = ("grams",)
_PERCENT_HINTS = ("achievement",)
_COUNT_HINTS = ("count", "payments", "enrollments", "withdrawals", "customers", "staff", "days")


@dataclass
class ExportResult:
    """Where the workbook went and what it holds."""
    file_path: str
    row_count: int
    column_count: int


def report_totals(report: Any) -> Dict[str, Any]:
    """Headline amounts shown in the subtitle band, keyed by label."""
    if isinstance(report, (InflowSeries, OutflowSeries)):
        return {"Total": report.total_amount}
    if isinstance(report, CashFlowSeries):
        return {
            "Inflow": report.total_inflow,
            "Outflow": report.total_outflow,
            "Net": report.net_cash_flow,
        }
    if isinstance(report, DailyReport):
        return {"Collected": report.total_amount}
    return {}


def report_rows(report: Any) -> List[Dict[str, Any]]:
    """
    Flatten a report into a list of camelCase row dicts.

    Lists export one row per item; composite reports export their main row
    list; a single summary object exports as one row.
    """
    if report is None:
        return []
    if isinstance(report, (InflowSeries, OutflowSeries, CashFlowSeries)):
        items = report.daily
    elif isinstance(report, DailyReport):
        items = report.payments
    elif isinstance(report, MarketRates):
        items = report.history
    elif isinstance(report, AccessControlRoster):
        items = report.entries
    elif isinstance(report, (list, tuple)):
        items = report
    else:
        items = [report]

    rows = []
    for item in items:
        row = item.to_dict() if isinstance(item, ReportModel) else dict(item)
        rows.append({k: v for k, v in row.items() if not isinstance(v, (list, dict))})
    return rows


def _number_format(column: str, style: ExportStyle) -> Optional[str]:
    name = column.lower()
    if any(name.endswith(h) for h in _COUNT_HINTS):
        return None
    if any(h in name for h in _PERCENT_HINTS):
        return style.percent_format
    if any(h in name for h in _GRAMS_HINTS):
        return style.grams_format
    if any(h in name for h in _CURRENCY_HINTS):
        return style.currency_format
    return None


def _header_label(column: str) -> str:
    """camelCase -> Title Case."""
    words, current = [], ""
    for ch in column:
        if ch.isupper() and current:
            words.append(current)
            current = ch
        else:
            current += ch
    words.append(current)
    return " ".join(w[:1].upper() + w[1:] for w in words if w)


class ReportWorkbookExporter:
    """
    Export reports to .xlsx with consistent styling.
    """

    def __init__(self, output_dir: str = ".outputs", style: Optional[ExportStyle] = None):
        self.output_dir = Path(output_dir)
        self.style = style or get_export_style()
        self._setup_styles()

    def _setup_styles(self):
        colors, typography = self.style.colors, self.style.typography
        self.band_fill = PatternFill(start_color=colors.header_bg, end_color=colors.header_bg, fill_type="solid")
        self.title_font = Font(
            name=typography.family, size=typography.title_size, bold=True, color=colors.header_text,
        )
        self.subtitle_font = Font(name=typography.family, size=typography.small_size, color=colors.header_text)
        self.header_font = Font(name=typography.family, size=typography.header_size, bold=True)
        self.data_font = Font(name=typography.family, size=typography.body_size)
        self.alt_row_fill = PatternFill(start_color=colors.alt_row_bg, end_color=colors.alt_row_bg, fill_type="solid")
        self.header_border = Border(bottom=Side(style="thin", color=colors.border))
        # Net columns are coloured by sign
        self.positive_font = Font(name=typography.family, size=typography.body_size, color=colors.positive)
        self.negative_font = Font(name=typography.family, size=typography.body_size, color=colors.negative)

    def _value_font(self, column: str, value: Any) -> Font:
        if not column.lower().startswith("net") or not isinstance(value, (int, float)) or value == 0:
            return self.data_font
        return self.positive_font if value > 0 else self.negative_font

    def export(
        self,
        report: Any,
        title: str,
        file_path: Optional[Union[str, Path]] = None,
        columns: Optional[List[str]] = None,
    ) -> ExportResult:
        """
        Write a report to a workbook.

        Args:
            report: Report object or list of report rows
            title: Title shown in the band above the table (also the default filename)
            file_path: Target path; defaults to `<output_dir>/<title>_<timestamp>.xlsx`
            columns: camelCase columns to include (default: all, in row order)

        Returns:
            ExportResult with the written path and table size
        """
        rows = report_rows(report)
        if columns is None:
            columns = list(dict.fromkeys(k for row in rows for k in row))
        width = max(len(columns), 1)

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "".join(c for c in title if c not in "\\/?*[]:")[:31] or "Report"

        # Title band
        if width > 1:
            ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=width)
            ws.merge_cells(start_row=2, start_column=1, end_row=2, end_column=width)
        cell = ws.cell(row=1, column=1, value=title)
        cell.font = self.title_font
        cell.fill = self.band_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")
        ws.row_dimensions[1].height = 28

        subtitle = f"Generated: {datetime.now().strftime('%d %b %Y %H:%M')}"
        for label, amount in report_totals(report).items():
            subtitle += f"  |  {label}: {format_inr(amount)}"
        cell = ws.cell(row=2, column=1, value=subtitle)
        cell.font = self.subtitle_font
        cell.fill = self.band_fill
        cell.alignment = Alignment(horizontal="center")

        header_row = 4
        for col_idx, column in enumerate(columns, 1):
            cell = ws.cell(row=header_row, column=col_idx, value=_header_label(column))
            cell.font = self.header_font
            cell.border = self.header_border
            cell.alignment = Alignment(horizontal="center")

        formats = {column: _number_format(column, self.style) for column in columns}
        for row_idx, row in enumerate(rows, header_row + 1):
            for col_idx, column in enumerate(columns, 1):
                value = row.get(column)
                if isinstance(value, Decimal):
                    value = float(value)
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                cell.font = self._value_font(column, value)
                if isinstance(value, (int, float)) and not isinstance(value, bool) and formats[column]:
                    cell.number_format = formats[column]
                if (row_idx - header_row) % 2 == 0:
                    cell.fill = self.alt_row_fill

        for col_idx, column in enumerate(columns, 1):
            longest = max(
                [len(_header_label(column))] + [len(str(row.get(column, ""))) for row in rows]
            )
            ws.column_dimensions[get_column_letter(col_idx)].width = min(longest + 2, self.style.max_column_width)
        ws.freeze_panes = ws.cell(row=header_row + 1, column=1)

        if file_path is None:
            safe_title = "".join(c if c.isalnum() else "_" for c in title)
            file_path = self.output_dir / f"{safe_title}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.xlsx"
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        wb.save(file_path)

        logger.info(f"Exported {len(rows)} row(s) of '{title}' to {file_path}")
        return ExportResult(file_path=str(file_path), row_count=len(rows), column_count=len(columns))
