"""
Workbook export styling.

Centralized colours and fonts for report workbooks so every exported sheet
looks the same regardless of which report produced it.
"""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ColorPalette:
    """Export colour configuration (hex, no leading #)."""
    header_bg: str = "7A5C12"          # Antique gold band
    header_text: str = "FFFFFF"
    alt_row_bg: str = "F7F3E8"         # Alternating rows
    border: str = "A0A0A0"
    positive: str = "1E7B34"           # Net inflow
    negative: str = "B3261E"           # Net outflow


@dataclass
class Typography:
    """Font configuration."""
    family: str = "Calibri"
    title_size: int = 14
    header_size: int = 11
    body_size: int = 10
    small_size: int = 9


@dataclass
class ExportStyle:
    """Complete workbook style."""
    colors: ColorPalette = field(default_factory=ColorPalette)
    typography: Typography = field(default_factory=Typography)

    # Excel number formats
    currency_format: str = '"₹"#,##0.00'
    grams_format: str = '0.000" g"'
    percent_format: str = '0"%"'

    max_column_width: int = 50


# Global instance
_export_style: Optional[ExportStyle] = None

def get_export_style() -> ExportStyle:
    """Get the global export style."""
    global _export_style
    if _export_style is None:
        _export_style = ExportStyle()
    return _export_style

def set_export_style(style: ExportStyle):
    """Set custom export style."""
    global _export_style
    _export_style = style
