"""
Collection-level repository for the CRM bulk importer.

Provides the handful of reads and batched writes the importer performs
against companies, contacts, deals, notes and pipelines, on top of any
QueryClient implementation.

Key design decisions:
- Natural-key lookups (company name; contact email or name+phone) are
  exposed separately so that ids can be recovered when an insert does not
  return them.
- pipelines.stages may hold a list of strings or a list of {name: ...}
  objects; stage_names() flattens both to lower-cased labels.
"""

import json
from contextlib import AbstractAsyncContextManager
from typing import Any, Sequence

import structlog

from .clients.base import QueryClient

logger = structlog.get_logger(__name__)

COMPANY_COLUMNS = ('id', 'name')
CONTACT_COLUMNS = ('id', 'email', 'first_name', 'last_name', 'phone')
DEAL_COLUMNS = ('id',)


def stage_names(stages: Any) -> list[str]:
    """Lower-cased stage labels from a pipelines.stages value."""
    if isinstance(stages, str):
        try:
            stages = json.loads(stages)
        except ValueError:
            return []
    if not isinstance(stages, list):
        return []

    names: list[str] = []
    for stage in stages:
        if isinstance(stage, str):
            names.append(stage.lower())
        elif isinstance(stage, dict) and stage.get('name'):
            names.append(str(stage['name']).lower())
    return names


class ImportRepository:
    """
    Reads and batched inserts for one import run.

    All writes go through QueryClient.insert; errors surface as StoreError
    subclasses raised by the client.
    """

    def __init__(self, client: QueryClient):
        self.client = client

    @property
    def supports_transactions(self) -> bool:
        return bool(getattr(self.client, 'supports_transactions', False))

    def transaction(self) -> AbstractAsyncContextManager[None]:
        return self.client.transaction()

    # =========================================================================
    # Pipelines
    # =========================================================================

    async def get_pipeline(self, pipeline_id: str) -> dict[str, Any] | None:
        """
        Fetch a pipeline row by id.

        Args:
            pipeline_id: Pipeline identifier

        Returns:
            Pipeline row (id, name, stages, is_active), or None if not found
        """
        rows = await self.client.select(
            'pipelines',
            columns=['id', 'name', 'stages', 'is_active'],
            filters={'id': pipeline_id},
        )
        if not rows:
            logger.warning('import_repository.pipeline_not_found', pipeline_id=pipeline_id)
            return None
        return rows[0]

    # =========================================================================
    # Existing records (dedup seed)
    # =========================================================================

    async def fetch_existing_companies(self) -> list[dict[str, Any]]:
        return await self.client.select('companies', columns=list(COMPANY_COLUMNS))

    async def fetch_existing_contacts(self) -> list[dict[str, Any]]:
        return await self.client.select('contacts', columns=list(CONTACT_COLUMNS))

    # =========================================================================
    # Natural-key recovery
    # =========================================================================

    async def find_companies_by_name(self, names: Sequence[str]) -> list[dict[str, Any]]:
        if not names:
            return []
        return await self.client.select(
            'companies',
            columns=list(COMPANY_COLUMNS),
            in_filters={'name': list(names)},
        )

    async def find_contacts_by_email(self, emails: Sequence[str]) -> list[dict[str, Any]]:
        if not emails:
            return []
        return await self.client.select(
            'contacts',
            columns=list(CONTACT_COLUMNS),
            in_filters={'email': list(emails)},
        )

    async def find_contacts_by_phone(self, phones: Sequence[str]) -> list[dict[str, Any]]:
        """Contacts by phone; callers narrow to first/last name themselves."""
        if not phones:
            return []
        return await self.client.select(
            'contacts',
            columns=list(CONTACT_COLUMNS),
            in_filters={'phone': list(phones)},
        )

    # =========================================================================
    # Batched inserts
    # =========================================================================

    async def insert_companies(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self.client.insert('companies', rows, returning=COMPANY_COLUMNS)

    async def insert_contacts(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self.client.insert('contacts', rows, returning=CONTACT_COLUMNS)

    async def insert_deals(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self.client.insert('deals', rows, returning=DEAL_COLUMNS)

    async def insert_notes(self, rows: list[dict[str, Any]]) -> None:
        await self.client.insert('notes', rows)
