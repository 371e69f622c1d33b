"""
Direct Postgres client for the CRM bulk importer.

Uses SQLAlchemy 2.0 async engine + asyncpg with lightweight table()/column()
constructs, so no ORM mapping of the CRM schema is needed. Unlike the
PostgREST client, this one can hold a single transaction across the whole
companies -> contacts -> deals -> notes write sequence.

Tables used:
- companies (id, name, timezone)
- contacts (id, company_id, first_name, last_name, email, phone, timezone)
- deals (id, name, company_id, primary_contact_id, timezone, stage, pipeline_id)
- notes (id, deal_id, contact_id, company_id, content, note_type)
- pipelines (id, name, stages, is_active)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse
from uuid import UUID

import structlog
from sqlalchemy import column, insert, select, table, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..errors import StoreQueryError, wrap_store_error

logger = structlog.get_logger(__name__)

_TABLES = {
    'companies': table('companies', column('id'), column('name'), column('timezone')),
    'contacts': table(
        'contacts',
        column('id'),
        column('company_id'),
        column('first_name'),
        column('last_name'),
        column('email'),
        column('phone'),
        column('timezone'),
    ),
    'deals': table(
        'deals',
        column('id'),
        column('name'),
        column('company_id'),
        column('primary_contact_id'),
        column('timezone'),
        column('stage'),
        column('pipeline_id'),
    ),
    'notes': table(
        'notes',
        column('id'),
        column('deal_id'),
        column('contact_id'),
        column('company_id'),
        column('content'),
        column('note_type'),
    ),
    'pipelines': table(
        'pipelines',
        column('id'),
        column('name'),
        column('stages'),
        column('is_active'),
    ),
}


def _sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand.

    Hosted pooler URLs include ``channel_binding=require`` and ``sslmode=require``
    which are libpq parameters. asyncpg rejects unknown connection params.
    """
    _STRIP_PARAMS = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in _STRIP_PARAMS}
    new_query = urlencode(filtered, doseq=True)
    return urlunparse(parsed._replace(query=new_query))


def _to_plain(value: Any) -> Any:
    """asyncpg returns UUID objects; the importer works with string ids."""
    if isinstance(value, UUID):
        return str(value)
    return value


def _table(name: str):
    try:
        return _TABLES[name]
    except KeyError:
        raise StoreQueryError(f'Unknown table: {name}', context={'table': name}) from None


def _columns(tbl, names: Sequence[str] | None):
    if not names:
        return list(tbl.c)
    try:
        return [tbl.c[n] for n in names]
    except KeyError as e:
        raise StoreQueryError(
            f'Unknown column {e.args[0]!r} on {tbl.name}',
            context={'table': tbl.name},
        ) from None


class PostgresClient:
    """
    Async Postgres client implementing the importer's query interface.

    Statements autocommit individually unless issued inside transaction(),
    in which case they share one connection and commit (or roll back)
    together.
    """

    supports_transactions = True

    def __init__(self, database_url: str | None = None):
        """
        Initialize with a Postgres connection URL.

        Args:
            database_url: Postgres connection URL. 'postgres://' and
                          'postgresql://' prefixes are converted to use asyncpg.
        """
        self._engine: AsyncEngine | None = None
        self._database_url = database_url
        self._conn: AsyncConnection | None = None

    async def connect(self, database_url: str | None = None) -> None:
        """
        Create the async engine. Idempotent; no-op if already connected.

        Args:
            database_url: Override the URL from __init__.
        """
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        url = _sanitize_url(url)

        if url.startswith('postgres://'):
            url = url.replace('postgres://', 'postgresql+asyncpg://', 1)
        elif url.startswith('postgresql://') and '+asyncpg' not in url:
            url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)

        self._engine = create_async_engine(
            url,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            pool_timeout=30,
            # Poolers (PgBouncer) don't support prepared statements.
            connect_args={'prepared_statement_cache_size': 0},
        )
        logger.info('postgres_client.connected')

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('postgres_client.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('PostgresClient not connected, call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except Exception:
            logger.exception('postgres_client.connectivity_check_failed')
            return False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run every statement issued inside the block in one transaction.

        Nested calls join the outer transaction.
        """
        if self._conn is not None:
            yield
            return

        try:
            async with self.engine.begin() as conn:
                self._conn = conn
                try:
                    yield
                finally:
                    self._conn = None
        except (SQLAlchemyError, OSError) as exc:
            raise wrap_store_error(exc) from exc

    async def _run(self, stmt, returns_rows: bool = True) -> list[dict[str, Any]]:
        """Execute on the open transaction, or in a short one of its own."""
        try:
            if self._conn is not None:
                result = await self._conn.execute(stmt)
                return self._rows(result) if returns_rows else []

            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
                return self._rows(result) if returns_rows else []
        except (SQLAlchemyError, OSError) as exc:
            raise wrap_store_error(exc) from exc

    @staticmethod
    def _rows(result) -> list[dict[str, Any]]:
        return [
            {key: _to_plain(value) for key, value in row.items()}
            for row in result.mappings().all()
        ]

    async def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        filters: dict[str, Any] | None = None,
        in_filters: dict[str, Sequence[Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching all equality and membership filters."""
        tbl = _table(table)
        stmt = select(*_columns(tbl, columns))
        for name, value in (filters or {}).items():
            col = _columns(tbl, [name])[0]
            stmt = stmt.where(col.is_(None) if value is None else col == value)
        for name, values in (in_filters or {}).items():
            if not values:
                return []
            stmt = stmt.where(_columns(tbl, [name])[0].in_(list(values)))

        rows = await self._run(stmt)
        logger.debug('postgres_client.select', table=table, rows=len(rows))
        return rows

    async def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        returning: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Multi-row INSERT, optionally with RETURNING."""
        if not rows:
            return []
        tbl = _table(table)
        _columns(tbl, list(rows[0].keys()))

        stmt = insert(tbl).values(rows)
        if returning:
            stmt = stmt.returning(*_columns(tbl, returning))

        returned = await self._run(stmt, returns_rows=bool(returning))
        logger.debug(
            'postgres_client.insert',
            table=table,
            inserted=len(rows),
            returned=len(returned),
        )
        return returned
