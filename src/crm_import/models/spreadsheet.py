"""
Spreadsheet-side models: cells, worksheets, classified headers and the
typed per-row record produced by the row mapper.

Worksheet is a plain in-memory view (display text + header fill colour per
cell) so the classifier and mapper never touch openpyxl objects directly.
"""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict


class ColorGroup(str, Enum):
    """Semantic column group derived from a header cell's fill colour."""

    COMPANY = 'company'
    DEAL = 'deal'
    CONTACT = 'contact'


@dataclass(frozen=True)
class SheetCell:
    """One worksheet cell: its display text and optional ARGB fill colour."""

    text: str = ''
    argb: str | None = None


@dataclass
class Worksheet:
    """A worksheet as ordered rows of cells (row 0 is the first sheet row)."""

    name: str
    rows: list[list[SheetCell]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def row(self, index: int) -> list[SheetCell]:
        if 0 <= index < len(self.rows):
            return self.rows[index]
        return []

    def cell_text(self, row_index: int, column: int) -> str:
        row = self.row(row_index)
        if 0 <= column < len(row):
            return row[column].text
        return ''


@dataclass(frozen=True)
class HeaderCell:
    """Classified header column: position, header text and colour group."""

    index: int
    name: str
    group: ColorGroup | None = None

    @property
    def key(self) -> str:
        return self.name.lower()


class SpreadsheetRow(BaseModel):
    """
    Flat record extracted from one spreadsheet row.

    All values are trimmed, non-empty strings or None. The row is discarded
    once it has been staged into companies, contacts and deals.
    """

    model_config = ConfigDict(frozen=True)

    company_name: str | None = None
    deal_name: str | None = None
    sales_stage: str | None = None
    notes: str | None = None
    timezone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def has_content(self) -> bool:
        """True when the row carries anything worth staging."""
        return any((
            self.first_name,
            self.last_name,
            self.email,
            self.phone,
            self.company_name,
            self.deal_name,
            self.notes,
        ))
