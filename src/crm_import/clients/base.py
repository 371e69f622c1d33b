"""
The query interface every backing-store client implements.

The importer only ever needs filtered selects and batched inserts over the
named collections (companies, contacts, deals, notes, pipelines), plus an
optional transaction scope for stores that can offer one.
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, Sequence, runtime_checkable


@runtime_checkable
class QueryClient(Protocol):
    """Async select/insert client over named collections."""

    supports_transactions: bool

    async def select(
        self,
        table: str,
        columns: Sequence[str] | None = None,
        filters: dict[str, Any] | None = None,
        in_filters: dict[str, Sequence[Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows matching all equality and membership filters."""
        ...

    async def insert(
        self,
        table: str,
        rows: list[dict[str, Any]],
        returning: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Insert rows and return the requested columns of the created rows.

        May return fewer rows than inserted (or none) when the caller is not
        allowed to read back what it wrote.
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Scope in which every statement shares one transaction, if supported."""
        ...

    async def verify_connectivity(self) -> bool:
        ...

    async def close(self) -> None:
        ...
