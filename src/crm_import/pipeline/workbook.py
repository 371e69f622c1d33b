"""
Workbook loading.

Reads an uploaded .xlsx/.xlsm file with openpyxl into plain Worksheet views
(display text per cell, plus the solid fill colour of cells in the header
scan window). Legacy binary .xls files are rejected.
"""

from datetime import date, datetime
from io import BytesIO
from pathlib import PurePath
from typing import Any
from zipfile import BadZipFile

import structlog
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..config import Config
from ..errors import ValidationError, WorkbookError
from ..models.spreadsheet import SheetCell, Worksheet

logger = structlog.get_logger(__name__)

SUPPORTED_SUFFIXES = ('.xlsx', '.xlsm')


def validate_upload(
    filename: str | None,
    size: int,
    max_bytes: int | None = None,
) -> None:
    """
    Reject uploads the importer cannot read.

    Raises:
        ValidationError: unsupported extension, empty file, or too large
    """
    max_bytes = max_bytes if max_bytes is not None else Config.MAX_UPLOAD_BYTES
    suffix = PurePath(filename or '').suffix.lower()

    if suffix == '.xls':
        raise ValidationError(
            'Legacy .xls workbooks are not supported; save the file as .xlsx',
            context={'filename': filename},
        )
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValidationError(
            f'Unsupported file type: {suffix or "(none)"}',
            context={'filename': filename},
        )
    if size <= 0:
        raise ValidationError('Uploaded file is empty', context={'filename': filename})
    if size > max_bytes:
        raise ValidationError(
            f'File too large: {size} bytes (limit {max_bytes})',
            context={'filename': filename, 'size': size, 'max_bytes': max_bytes},
        )


def cell_text(value: Any) -> str:
    """Display text for a cell value; integral floats lose their '.0'."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def fill_argb(cell: Any) -> str | None:
    """ARGB of a cell's solid fill; theme and indexed colours are ignored."""
    fill = getattr(cell, 'fill', None)
    if fill is None or getattr(fill, 'fill_type', None) is None:
        return None
    for color in (getattr(fill, 'fgColor', None), getattr(fill, 'bgColor', None)):
        if color is not None and getattr(color, 'type', None) == 'rgb':
            rgb = color.rgb
            if isinstance(rgb, str):
                return rgb
    return None


def read_workbook(
    data: bytes,
    filename: str | None = None,
    color_rows: int | None = None,
) -> list[Worksheet]:
    """
    Load every worksheet of a workbook.

    Args:
        data: Raw file content
        filename: Original file name, for error context
        color_rows: Number of leading rows whose fill colours are read

    Returns:
        Worksheets in workbook order

    Raises:
        WorkbookError: the content is not a readable workbook
    """
    color_rows = color_rows or Config.HEADER_SCAN_ROWS
    try:
        workbook = load_workbook(BytesIO(data), data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, ValueError, OSError) as e:
        raise WorkbookError(
            f'Could not read workbook: {e}',
            context={'filename': filename, 'error_type': type(e).__name__},
        ) from e

    sheets = []
    try:
        for ws in workbook.worksheets:
            rows = []
            for row_number, row in enumerate(ws.iter_rows(), start=1):
                with_color = row_number <= color_rows
                rows.append([
                    SheetCell(
                        text=cell_text(cell.value),
                        argb=fill_argb(cell) if with_color else None,
                    )
                    for cell in row
                ])
            sheets.append(Worksheet(name=ws.title, rows=rows))
    finally:
        workbook.close()

    logger.info(
        'workbook.loaded',
        filename=filename,
        sheets=[s.name for s in sheets],
        rows=sum(s.row_count for s in sheets),
    )
    return sheets
