"""
Header classification for uploaded worksheets.

Finds the header row by keyword scoring over the first rows of a sheet and
tags each header column with a colour group derived from its fill:

- near-black fill -> contact columns
- grey (low saturation) fill -> company columns
- green-dominant fill -> deal columns

Colour is an additive signal only; a sheet without any fills still imports
through keyword matching alone.
"""

from dataclasses import dataclass
from typing import Sequence

import structlog

from ..config import Config
from ..models.spreadsheet import ColorGroup, HeaderCell, SheetCell, Worksheet

logger = structlog.get_logger(__name__)

HEADER_KEYWORDS = ('company', 'deal', 'name', 'email', 'phone', 'note', 'stage')
SHEET_KEYWORDS = ('company', 'deal', 'contact', 'email', 'phone')

# Colour thresholds on 0-255 channels
_BLACK_MAX_CHANNEL = 40
_GREY_MAX_SPREAD = 20
_GREEN_DOMINANCE = 30


@dataclass(frozen=True)
class HeaderDetection:
    """Chosen header row (0-based) and its keyword score."""

    index: int
    score: int

    @property
    def found(self) -> bool:
        return self.score > 0


def _is_header_text(text: str) -> bool:
    t = text.lower()
    if any(keyword in t for keyword in HEADER_KEYWORDS):
        return True
    return 'time' in t and 'zone' in t


def score_header_row(cells: Sequence[SheetCell]) -> int:
    """Number of cells whose text looks like a header keyword."""
    return sum(1 for cell in cells if cell.text and _is_header_text(cell.text))


def detect_header_row(sheet: Worksheet, scan_rows: int | None = None) -> HeaderDetection:
    """
    Pick the header row among the first scan_rows rows.

    The highest score wins; ties go to the earliest row. A score of 0
    means no header was found.
    """
    scan_rows = scan_rows or Config.HEADER_SCAN_ROWS
    best = HeaderDetection(index=0, score=0)
    for index in range(min(scan_rows, sheet.row_count)):
        score = score_header_row(sheet.row(index))
        if score > best.score:
            best = HeaderDetection(index=index, score=score)
    return best


def sheet_score(sheet: Worksheet, scan_rows: int | None = None) -> int:
    """Keyword hits over the first scan_rows rows, used to choose a sheet."""
    scan_rows = scan_rows or Config.HEADER_SCAN_ROWS
    score = 0
    for index in range(min(scan_rows, sheet.row_count)):
        for cell in sheet.row(index):
            t = cell.text.lower()
            if t:
                score += sum(1 for keyword in SHEET_KEYWORDS if keyword in t)
    return score


def select_worksheet(
    sheets: Sequence[Worksheet],
    scan_rows: int | None = None,
) -> Worksheet | None:
    """The sheet with the best keyword score; the first sheet wins ties."""
    best: Worksheet | None = None
    best_score = -1
    for sheet in sheets:
        score = sheet_score(sheet, scan_rows)
        if score > best_score:
            best, best_score = sheet, score
    return best


def _rgb_channels(argb: str) -> tuple[int, int, int] | None:
    hex_value = argb.strip().lstrip('#')
    if len(hex_value) == 8:
        hex_value = hex_value[2:]
    if len(hex_value) != 6:
        return None
    try:
        return (
            int(hex_value[0:2], 16),
            int(hex_value[2:4], 16),
            int(hex_value[4:6], 16),
        )
    except ValueError:
        return None


def classify_color(argb: str | None) -> ColorGroup | None:
    """
    Map a header fill colour to a column group.

    Args:
        argb: 'AARRGGBB' (or 'RRGGBB', optionally '#'-prefixed)

    Returns:
        ColorGroup, or None for no fill or an unrecognized colour
    """
    if not argb:
        return None
    channels = _rgb_channels(argb)
    if channels is None:
        return None

    r, g, b = channels
    high, low = max(channels), min(channels)
    if high < _BLACK_MAX_CHANNEL:
        return ColorGroup.CONTACT
    if high - low < _GREY_MAX_SPREAD:
        return ColorGroup.COMPANY
    if g > r + _GREEN_DOMINANCE and g > b + _GREEN_DOMINANCE:
        return ColorGroup.DEAL
    return None


def classify_headers(sheet: Worksheet, header_index: int) -> list[HeaderCell]:
    """Ordered header columns of the given row; blank header cells are skipped."""
    headers = []
    for column, cell in enumerate(sheet.row(header_index)):
        name = cell.text.strip()
        if not name:
            continue
        headers.append(HeaderCell(index=column, name=name, group=classify_color(cell.argb)))

    logger.debug(
        'header_classifier.headers_classified',
        sheet=sheet.name,
        header_row=header_index + 1,
        headers=[h.name for h in headers],
        grouped=sum(1 for h in headers if h.group is not None),
    )
    return headers
