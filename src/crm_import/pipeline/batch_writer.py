"""
Batch writer: ordered inserts for one staged batch.

companies -> contacts -> deals -> notes

Each step depends on ids resolved by the previous one. Any reference still
pending when a row is written becomes a null foreign key. A failed insert
aborts the batch with a BatchWriteError carrying the partial summary; the
earlier steps stay committed unless the batch ran inside a store
transaction, in which case everything is rolled back.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from ..errors import BatchWriteError, StoreError
from ..models.entities import StagedBatch, ref_to_fk
from ..repository import ImportRepository
from .reconciler import EntityReconciler
from .state import ImportRun, ImportState

logger = structlog.get_logger(__name__)

NOTE_TYPE = 'manual'


@dataclass
class WriteSummary:
    """What one batch write committed, plus non-fatal problems."""

    companies_created: int = 0
    contacts_created: int = 0
    deals_created: int = 0
    notes_created: int = 0
    unresolved_refs: int = 0
    rolled_back: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_created(self) -> int:
        return (
            self.companies_created
            + self.contacts_created
            + self.deals_created
            + self.notes_created
        )

    def mark_rolled_back(self) -> None:
        """Nothing from a rolled-back batch is committed."""
        self.rolled_back = True
        self.companies_created = 0
        self.contacts_created = 0
        self.deals_created = 0
        self.notes_created = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            'companiesCreated': self.companies_created,
            'contactsCreated': self.contacts_created,
            'dealsCreated': self.deals_created,
            'notesCreated': self.notes_created,
            'errors': list(self.errors),
        }


class BatchWriter:
    """
    Writes staged batches through the repository.

    When use_transaction is set and the store supports transactions, each
    batch is written atomically.
    """

    def __init__(
        self,
        repository: ImportRepository,
        reconciler: EntityReconciler,
        use_transaction: bool = True,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.use_transaction = use_transaction

    @property
    def transactional(self) -> bool:
        return self.use_transaction and self.repository.supports_transactions

    async def write(
        self,
        batch: StagedBatch,
        pipeline_id: str | None = None,
        run: ImportRun | None = None,
    ) -> WriteSummary:
        """
        Insert a staged batch in dependency order.

        Args:
            batch: Entities staged since the last drain
            pipeline_id: Pipeline for deals that do not carry one
            run: Run whose state follows the write steps

        Returns:
            WriteSummary of the committed rows

        Raises:
            BatchWriteError: An insert (or the commit) failed
        """
        summary = WriteSummary()

        if not self.transactional:
            try:
                await self._write(batch, pipeline_id, run, summary)
            except BatchWriteError as e:
                self.reconciler.release(batch, failed_step=e.step)
                raise
            return summary

        try:
            async with self.repository.transaction():
                await self._write(batch, pipeline_id, run, summary)
        except (BatchWriteError, StoreError) as e:
            summary.mark_rolled_back()
            self.reconciler.release(batch, include_resolved=True)
            logger.warning('batch_writer.rolled_back', error=str(e))
            if isinstance(e, BatchWriteError):
                raise
            raise BatchWriteError(
                f'Failed to commit import: {e.message}',
                step='commit',
                summary=summary,
                context=e.context,
            ) from e
        return summary

    # =========================================================================
    # Steps
    # =========================================================================

    async def _write(
        self,
        batch: StagedBatch,
        pipeline_id: str | None,
        run: ImportRun | None,
        summary: WriteSummary,
    ) -> None:
        # Companies
        self._advance(run, ImportState.WRITING_COMPANIES)
        if batch.companies:
            rows = [c.to_row() for c in batch.companies]
            inserted = await self._insert('companies', self.repository.insert_companies, rows, summary)
            summary.companies_created = len(rows)
            logger.info('batch_writer.companies_inserted', count=len(rows), returned=len(inserted))
            await self._resolve('companies', self.reconciler.resolve_companies, batch, inserted, summary)

        # Contacts
        self._advance(run, ImportState.WRITING_CONTACTS)
        if batch.contacts:
            rows = [c.to_row() for c in batch.contacts]
            inserted = await self._insert('contacts', self.repository.insert_contacts, rows, summary)
            summary.contacts_created = len(rows)
            logger.info('batch_writer.contacts_inserted', count=len(rows), returned=len(inserted))
            await self._resolve('contacts', self.reconciler.resolve_contacts, batch, inserted, summary)

        # Deals
        self._advance(run, ImportState.WRITING_DEALS)
        inserted_deals: list[dict[str, Any]] = []
        if batch.deals:
            pending = [d for d in batch.deals if d.has_pending_refs]
            if pending:
                summary.unresolved_refs += len(pending)
                source_rows = [d.source_row for d in pending if d.source_row is not None]
                logger.warning('batch_writer.unresolved_refs_nullified', deals=len(pending), rows=source_rows)
                if source_rows:
                    label = 'Row' if len(source_rows) == 1 else 'Rows'
                    summary.warnings.append(
                        f"{label} {', '.join(str(r) for r in source_rows)}: unresolved references written as null"
                    )

            rows = []
            for deal in batch.deals:
                row = deal.to_row()
                if row['pipeline_id'] is None:
                    row['pipeline_id'] = pipeline_id
                rows.append(row)

            inserted_deals = await self._insert('deals', self.repository.insert_deals, rows, summary)
            summary.deals_created = len(rows)
            logger.info('batch_writer.deals_inserted', count=len(rows), returned=len(inserted_deals))

        # Notes
        self._advance(run, ImportState.WRITING_NOTES)
        note_rows = self._note_rows(batch, inserted_deals, summary)
        if note_rows:
            await self._insert('notes', self.repository.insert_notes, note_rows, summary)
            summary.notes_created = len(note_rows)
            logger.info('batch_writer.notes_inserted', count=len(note_rows))

    @staticmethod
    def _advance(run: ImportRun | None, state: ImportState) -> None:
        if run is not None:
            run.advance(state)

    async def _insert(
        self,
        step: str,
        insert: Callable[[list[dict[str, Any]]], Awaitable[Any]],
        rows: list[dict[str, Any]],
        summary: WriteSummary,
    ) -> Any:
        try:
            result = await insert(rows)
        except StoreError as e:
            logger.error('batch_writer.insert_failed', step=step, rows=len(rows), error=str(e))
            raise BatchWriteError(
                f'Failed to insert {step}: {e.message}',
                step=step,
                summary=summary,
                context=e.context,
            ) from e
        return result or []

    async def _resolve(
        self,
        step: str,
        resolve: Callable[[StagedBatch, list[dict[str, Any]]], Awaitable[Any]],
        batch: StagedBatch,
        inserted: list[dict[str, Any]],
        summary: WriteSummary,
    ) -> None:
        """Id recovery failures leave references pending; the rows exist."""
        try:
            await resolve(batch, inserted)
        except StoreError as e:
            logger.warning('batch_writer.id_recovery_failed', step=step, error=str(e))
            summary.warnings.append(f'Could not recover {step} ids: {e.message}')

    @staticmethod
    def _note_rows(
        batch: StagedBatch,
        inserted_deals: list[dict[str, Any]],
        summary: WriteSummary,
    ) -> list[dict[str, Any]]:
        with_notes = [d for d in batch.deals if d.notes]
        if not with_notes:
            return []

        # Deal ids are matched to staged deals by position
        if len(inserted_deals) != len(batch.deals):
            message = f'Notes skipped for {len(with_notes)} deals: deal ids were not returned'
            logger.warning(
                'batch_writer.notes_skipped',
                deals=len(with_notes),
                returned=len(inserted_deals),
                staged=len(batch.deals),
            )
            summary.errors.append(message)
            return []

        return [
            {
                'deal_id': str(row['id']),
                'contact_id': ref_to_fk(deal.primary_contact),
                'company_id': ref_to_fk(deal.company),
                'content': deal.notes,
                'note_type': NOTE_TYPE,
            }
            for deal, row in zip(batch.deals, inserted_deals)
            if deal.notes
        ]
