"""
PostgREST (Supabase) client for the CRM bulk importer.

Speaks the REST dialect of the hosted database directly over httpx:
- GET  /rest/v1/<table>?select=...&col=eq.value&col=in.(a,b)
- POST /rest/v1/<table> with Prefer: return=representation

Reads are retried on connection failures and 5xx responses. Inserts are
never retried; a repeated insert could duplicate rows.

Row-level security can hide freshly inserted rows from the caller, in
which case an insert succeeds with an empty representation. Callers must
treat an empty insert result as "ids unknown", not as failure.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Config
from ..errors import (
    StoreConnectionError,
    StoreConstraintError,
    StoreError,
    StorePermissionError,
    StoreQueryError,
)

logger = structlog.get_logger(__name__)

# Postgres SQLSTATE codes surfaced by PostgREST in the error body
_CONSTRAINT_CODES = {'23505', '23503', '23502', '23514', '22P02'}
_PERMISSION_CODES = {'42501', 'PGRST301', 'PGRST302'}


def _quote_in_value(value: Any) -> str:
    """Quote one value for a PostgREST in.(...) list."""
    text = str(value).replace('\\', '\\\\').replace('"', '\\"')
    return f'"{text}"'


def _in_filter(values: Sequence[Any]) -> str:
    return 'in.(' + ','.join(_quote_in_value(v) for v in values) + ')'


def _eq_filter(value: Any) -> str:
    if value is None:
        return 'is.null'
    if isinstance(value, bool):
        return f'eq.{str(value).lower()}'
    return f'eq.{value}'


def _error_from_response(response: httpx.Response, table: str) -> StoreError:
    """Map a non-2xx PostgREST response to the store error hierarchy."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = str(body.get('code') or '')
    message = body.get('message') or response.text or f'HTTP {response.status_code}'
    ctx = {
        'table': table,
        'status_code': response.status_code,
        'code': code,
        'details': body.get('details'),
        'hint': body.get('hint'),
    }

    if response.status_code in (401, 403) or code in _PERMISSION_CODES:
        return StorePermissionError(f'Store permission denied: {message}', context=ctx)
    if response.status_code == 409 or code in _CONSTRAINT_CODES:
        return StoreConstraintError(f'Store constraint violation: {message}', context=ctx)
    if response.status_code in (502, 503, 504):
        return StoreConnectionError(f'Store unavailable: {message}', context=ctx)
    return StoreQueryError(f'Store query error: {message}', context=ctx)


class SupabaseClient:
    """
    Async PostgREST client.

    Configuration via environment variables:
    - SUPABASE_URL: Project URL (e.g., https://xyz.supabase.co)
    - SUPABASE_KEY: API key (anon or service role)
    """

    supports_transactions = False

    def __init__(
        self,
        url: str | None = None,
        key: str | None = None,
        access_token: str | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize the PostgREST client.

        Args:
            url: Project URL (defaults to SUPABASE_URL)
            key: API key sent as the apikey header (defaults to SUPABASE_KEY)
            access_token: User JWT; when set, RLS policies apply as that user
            timeout: Request timeout in seconds
        """
        self.url = (url or Config.SUPABASE_URL).rstrip('/')
        self.key = key or Config.SUPABASE_KEY
        self.access_token = access_token
        self.timeout = timeout if timeout is not None else Config.STORE_TIMEOUT_SECONDS

        if not self.url:
            raise ValueError('SUPABASE_URL environment variable is required')
        if not self.key:
            raise ValueError('SUPABASE_KEY environment variable is required')

        self._http: httpx.AsyncClient | None = None

    @property
    def rest_url(self) -> str:
        return f'{self.url}/rest/v1'

    def _headers(self) -> dict[str, str]:
        return {
            'apikey': self.key,
            'Authorization': f'Bearer {self.access_token or self.key}',
            'Content-Type': 'application/json',
        }

    async def connect(self) -> None:
        """Create the HTTP connection pool. Idempotent."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.rest_url,
                headers=self._headers(),
                timeout=self.timeout,
            )

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            await self.connect()
        return self._http

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """PostgREST has no multi-request transactions; statements autocommit."""
        yield

    async def verify_connectivity(self) -> bool:
        """Return True if the REST root answers."""
        try:
            client = await self._client()
            response = await client.get('/')
            return response.status_code < 400
        except httpx.HTTPError:
            logger.exception('supabase_client.connectivity_check_failed')
            return False

    @retry(
        retry=retry_if_exception_type(StoreConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        filters: dict[str, Any] | None = None,
        in_filters: dict[str, Sequence[Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Select rows from a table.

        Args:
            table: Collection name
            columns: Columns to return (all when None)
            filters: column -> value equality filters
            in_filters: column -> values membership filters

        Returns:
            List of row dicts
        """
        params: list[tuple[str, str]] = [('select', ','.join(columns) if columns else '*')]
        for column, value in (filters or {}).items():
            params.append((column, _eq_filter(value)))
        for column, values in (in_filters or {}).items():
            if not values:
                return []
            params.append((column, _in_filter(values)))

        client = await self._client()
        try:
            response = await client.get(f'/{table}', params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise StoreConnectionError(
                f'Store request failed: {e}', context={'table': table}
            ) from e

        if response.status_code >= 400:
            raise _error_from_response(response, table)

        rows = response.json()
        logger.debug('supabase_client.select', table=table, rows=len(rows))
        return rows

    async def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        returning: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Insert rows into a table in one request.

        Args:
            table: Collection name
            rows: Row dicts; all rows must share the same keys
            returning: Columns to read back (no representation when None)

        Returns:
            The returned representation, possibly empty under RLS
        """
        if not rows:
            return []

        params: list[tuple[str, str]] = []
        if returning:
            headers = {'Prefer': 'return=representation'}
            params.append(('select', ','.join(returning)))
        else:
            headers = {'Prefer': 'return=minimal'}

        client = await self._client()
        try:
            response = await client.post(f'/{table}', json=rows, params=params, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise StoreConnectionError(
                f'Store request failed: {e}', context={'table': table}
            ) from e

        if response.status_code >= 400:
            raise _error_from_response(response, table)

        if not returning or not response.content:
            return []
        returned = response.json()
        logger.debug(
            'supabase_client.insert',
            table=table,
            inserted=len(rows),
            returned=len(returned),
        )
        return returned
