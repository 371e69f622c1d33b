"""
Row mapping: one worksheet row + classified headers -> SpreadsheetRow.

Header names are matched by keyword substrings. Each target field takes the
first non-empty value offered to it. Header colour groups only decide
columns that no keyword rule claimed, e.g. a bare "Name" column is a
personal name under the contact colour but a company name under the
company colour.
"""

from typing import Sequence

from ..models.spreadsheet import ColorGroup, HeaderCell, SheetCell, SpreadsheetRow

ROW_FIELDS = (
    'company_name',
    'deal_name',
    'sales_stage',
    'notes',
    'timezone',
    'first_name',
    'last_name',
    'email',
    'phone',
)


class RowBuilder:
    """
    Accumulates field values for one row; the first assignment per field wins.

    A full name is kept aside and only split into first/last name at build
    time, and only when no dedicated first or last name column filled them.
    """

    def __init__(self):
        self._values: dict[str, str] = {}
        self._full_name: str | None = None

    def set(self, field: str, value: str | None) -> bool:
        """Assign a field unless already filled. Returns True if assigned."""
        if field not in ROW_FIELDS:
            raise KeyError(f'Unknown row field: {field}')
        value = (value or '').strip()
        if not value or field in self._values:
            return False
        self._values[field] = value
        return True

    def set_full_name(self, value: str | None) -> bool:
        value = (value or '').strip()
        if not value or self._full_name is not None:
            return False
        self._full_name = value
        return True

    def has(self, field: str) -> bool:
        return field in self._values

    def build(self) -> SpreadsheetRow | None:
        """The typed row, or None when nothing worth staging was found."""
        values = dict(self._values)
        if self._full_name and 'first_name' not in values and 'last_name' not in values:
            first, _, last = self._full_name.partition(' ')
            values['first_name'] = first
            if last.strip():
                values['last_name'] = last.strip()

        row = SpreadsheetRow(**values)
        return row if row.has_content else None


def _apply_keywords(builder: RowBuilder, key: str, value: str) -> bool:
    """Keyword rules for one header. Returns True if any rule matched."""
    matched = False
    if 'company name' in key:
        builder.set('company_name', value)
        matched = True
    if 'deal name' in key:
        builder.set('deal_name', value)
        matched = True
    if 'stage' in key:
        builder.set('sales_stage', value)
        matched = True
    if 'note' in key:
        builder.set('notes', value)
        matched = True
    if 'time' in key and 'zone' in key:
        builder.set('timezone', value)
        matched = True
    if 'first' in key and 'name' in key:
        builder.set('first_name', value)
        matched = True
    if 'last' in key and 'name' in key:
        builder.set('last_name', value)
        matched = True
    if 'email' in key:
        builder.set('email', value)
        matched = True
    if 'phone' in key:
        builder.set('phone', value)
        matched = True
    if 'full name' in key:
        builder.set_full_name(value)
        matched = True
    return matched


def _apply_group(builder: RowBuilder, group: ColorGroup, key: str, value: str) -> None:
    """Colour-group rules for a header no keyword rule claimed."""
    if group is ColorGroup.COMPANY:
        if 'company' in key or 'name' in key:
            builder.set('company_name', value)
    elif group is ColorGroup.DEAL:
        if 'deal' in key or 'name' in key:
            builder.set('deal_name', value)
    elif group is ColorGroup.CONTACT:
        if 'first' in key:
            builder.set('first_name', value)
        elif 'last' in key:
            builder.set('last_name', value)
        elif 'mail' in key:
            builder.set('email', value)
        elif 'name' in key:
            builder.set_full_name(value)


def map_row(cells: Sequence[SheetCell], headers: Sequence[HeaderCell]) -> SpreadsheetRow | None:
    """
    Build a SpreadsheetRow from one worksheet row.

    Args:
        cells: The row's cells, indexed by column
        headers: Classified header columns

    Returns:
        SpreadsheetRow, or None if the row carries no content
    """
    builder = RowBuilder()
    for header in headers:
        if header.index >= len(cells):
            continue
        value = cells[header.index].text.strip()
        if not value:
            continue

        key = header.key
        if not _apply_keywords(builder, key, value) and header.group is not None:
            _apply_group(builder, header.group, key, value)

    return builder.build()
