"""
Pytest configuration and shared fixtures.

Key fixtures:
- store: in-memory FakeQueryClient implementing the store query interface
- pipeline_id / pipeline_row: a pipeline seeded into the fake store
- make_sheet: builds a Worksheet from plain rows of header/cell text

Workbook-level tests build real .xlsx bytes in memory with openpyxl via
the xlsx_bytes helper.
"""

import copy
import sys
import uuid
from contextlib import asynccontextmanager
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

# Load environment variables
from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / '.env'
if env_file.exists():
    load_dotenv(env_file)

from crm_import.errors import StoreConstraintError  # noqa: E402
from crm_import.models.spreadsheet import SheetCell, Worksheet  # noqa: E402

TABLES = ('companies', 'contacts', 'deals', 'notes', 'pipelines')

PIPELINE_ID = '7d4c3a1e-2b8f-4f6a-9c1d-0e5b6a7c8d9f'

E2E_HEADER = [
    'Company Name',
    'Deal Name',
    'Client First Name',
    'Client Last Name',
    "Client's Email",
    "Client's Phone",
    'Sales Stage',
    'Notes',
]


class FakeQueryClient:
    """
    In-memory store with the select/insert/transaction interface.

    Options:
    - hide_returning: tables whose inserts return no rows (as under RLS)
    - fail_on: table -> exception raised by inserts into that table
    - supports_transactions: snapshot tables on enter, restore on error
    """

    def __init__(
        self,
        tables: dict[str, list[dict[str, Any]]] | None = None,
        hide_returning: set[str] | None = None,
        fail_on: dict[str, Exception] | None = None,
        supports_transactions: bool = False,
    ):
        self.tables: dict[str, list[dict[str, Any]]] = {name: [] for name in TABLES}
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(r) for r in rows]
        self.hide_returning = set(hide_returning or ())
        self.fail_on = dict(fail_on or {})
        self.supports_transactions = supports_transactions
        self.insert_calls: list[tuple[str, list[dict[str, Any]]]] = []
        self.select_calls: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.rollbacks = 0
        self.closed = False

    async def select(self, table, columns=None, filters=None, in_filters=None):
        self.select_calls.append((table, dict(filters or {}), dict(in_filters or {})))
        rows = self.tables[table]
        for name, value in (filters or {}).items():
            rows = [r for r in rows if r.get(name) == value]
        for name, values in (in_filters or {}).items():
            rows = [r for r in rows if r.get(name) in set(values)]
        if columns:
            return [{c: r.get(c) for c in columns} for r in rows]
        return [dict(r) for r in rows]

    async def insert(self, table, rows, returning=None):
        self.insert_calls.append((table, [dict(r) for r in rows]))
        if table in self.fail_on:
            raise self.fail_on[table]
        created = []
        for row in rows:
            stored = {'id': str(uuid.uuid4()), **row}
            self.tables[table].append(stored)
            created.append(stored)
        if not returning or table in self.hide_returning:
            return []
        return [{c: r.get(c) for c in returning} for r in created]

    @asynccontextmanager
    async def transaction(self):
        if not self.supports_transactions:
            yield
            return
        snapshot = copy.deepcopy(self.tables)
        try:
            yield
        except Exception:
            self.tables = snapshot
            self.rollbacks += 1
            raise

    async def verify_connectivity(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    def inserted(self, table: str) -> list[dict[str, Any]]:
        """Rows passed to insert() for a table, across all calls."""
        return [row for name, rows in self.insert_calls if name == table for row in rows]


def make_sheet(
    rows: list[list[str]],
    name: str = 'Sheet1',
    colors: dict[tuple[int, int], str] | None = None,
) -> Worksheet:
    """Worksheet from plain text rows; colors maps (row, col) -> ARGB."""
    colors = colors or {}
    return Worksheet(
        name=name,
        rows=[
            [SheetCell(text=text, argb=colors.get((r, c))) for c, text in enumerate(row)]
            for r, row in enumerate(rows)
        ],
    )


def xlsx_bytes(
    sheets: dict[str, list[list[Any]]],
    fills: dict[tuple[str, int, int], str] | None = None,
) -> bytes:
    """Build .xlsx content; fills maps (sheet, row, col) 1-based -> RRGGBB."""
    from openpyxl import Workbook
    from openpyxl.styles import PatternFill

    fills = fills or {}
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    for (title, row, col), rgb in fills.items():
        wb[title].cell(row=row, column=col).fill = PatternFill(
            fill_type='solid', start_color=rgb, end_color=rgb
        )
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def pipeline_id() -> str:
    return PIPELINE_ID


@pytest.fixture
def pipeline_row() -> dict[str, Any]:
    return {
        'id': PIPELINE_ID,
        'name': 'Outbound Funnel',
        'stages': [{'name': 'Not Contacted'}, {'name': 'Interested'}],
        'is_active': True,
    }


@pytest.fixture
def store(pipeline_row) -> FakeQueryClient:
    """Empty store holding one pipeline."""
    return FakeQueryClient(tables={'pipelines': [pipeline_row]})


@pytest.fixture
def constraint_error() -> StoreConstraintError:
    return StoreConstraintError(
        'Store constraint violation: duplicate key value',
        context={'code': '23505'},
    )


@pytest.fixture
def e2e_rows() -> list[list[str]]:
    return [
        E2E_HEADER,
        ['Acme', 'Acme Renewal', 'Jo', 'Lee', 'jo@acme.com', '6049002048', 'Proposal', 'Send MSA'],
    ]
