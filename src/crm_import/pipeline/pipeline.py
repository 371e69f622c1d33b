"""
Import pipeline orchestrator.

Wires the importer stages into one run:

1. Pick the worksheet and detect its header row
2. Load the target pipeline's stages and seed dedup maps from the store
3. Map rows, canonicalize stages, normalize phones and stage entities
4. Write staged batches (companies -> contacts -> deals -> notes)

Handles both run modes:
- Single pass: all rows are staged, then written as one batch; any write
  failure ends the run as failed with partial counts
- Chunked: rows are written every chunk_size parsed rows, up to a row cap;
  a write failure aborts only that chunk and later chunks still run
"""

import asyncio
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

import structlog
from pydantic import BaseModel, Field

from ..clients.base import QueryClient
from ..config import Config
from ..errors import BatchWriteError, StoreError, ValidationError
from ..logging import StageTimings, import_context
from ..models.spreadsheet import HeaderCell, SpreadsheetRow, Worksheet
from ..models.stage import StageConfig
from ..repository import ImportRepository, stage_names
from .batch_writer import BatchWriter, WriteSummary
from .header_classifier import classify_headers, detect_header_row, select_worksheet
from .phone import normalize_phone
from .reconciler import EntityReconciler
from .row_mapper import map_row
from .stage_canonicalizer import StageCanonicalizer
from .state import ImportRun, ImportState
from .workbook import read_workbook, validate_upload

logger = structlog.get_logger(__name__)


# =============================================================================
# Options and Result
# =============================================================================


class ImportOptions(BaseModel):
    """Per-run options; defaults come from Config."""

    pipeline_id: str | None = None
    user_id: str | None = None
    chunked: bool = False
    chunk_size: int = Field(default_factory=lambda: Config.CHUNK_SIZE, ge=1)
    max_rows: int = Field(default_factory=lambda: Config.MAX_ROWS, ge=1)
    max_upload_bytes: int = Field(default_factory=lambda: Config.MAX_UPLOAD_BYTES, ge=1)
    header_scan_rows: int = Field(default_factory=lambda: Config.HEADER_SCAN_ROWS, ge=1)
    default_timezone: str = Field(default_factory=lambda: Config.DEFAULT_TIMEZONE)
    chunk_yield_seconds: float = Field(default_factory=lambda: Config.CHUNK_YIELD_SECONDS, ge=0)
    use_transaction: bool = Field(default_factory=lambda: Config.USE_TRANSACTION)
    # None: required in chunked mode only
    require_contact_name: bool | None = None

    @property
    def requires_contact_name(self) -> bool:
        if self.require_contact_name is None:
            return self.chunked
        return self.require_contact_name


@dataclass
class ImportResult:
    """
    Aggregate result of one import run.

    Counts are what was committed, including the partial counts of a run
    that failed part-way.
    """

    import_id: str
    pipeline_id: str | None
    chunked: bool = False

    companies_created: int = 0
    contacts_created: int = 0
    deals_created: int = 0
    notes_created: int = 0
    parsed_rows: int = 0
    unresolved_refs: int = 0

    state: ImportState = ImportState.IDLE
    failure: str | None = None
    rolled_back: bool = False

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None
    stage_timings: dict[str, float] = field(default_factory=dict)

    # Errors and warnings
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when the run completed; per-row errors do not count."""
        return self.state == ImportState.DONE and self.failure is None

    @property
    def total_created(self) -> int:
        return (
            self.companies_created
            + self.contacts_created
            + self.deals_created
            + self.notes_created
        )

    def add(self, summary: WriteSummary | None) -> None:
        """Fold one batch's summary into the run totals."""
        if summary is None:
            return
        self.companies_created += summary.companies_created
        self.contacts_created += summary.contacts_created
        self.deals_created += summary.deals_created
        self.notes_created += summary.notes_created
        self.unresolved_refs += summary.unresolved_refs
        self.rolled_back = self.rolled_back or summary.rolled_back
        self.errors.extend(summary.errors)
        self.warnings.extend(summary.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            'companiesCreated': self.companies_created,
            'contactsCreated': self.contacts_created,
            'dealsCreated': self.deals_created,
            'notesCreated': self.notes_created,
            'errors': list(self.errors),
            'parsedRows': self.parsed_rows,
            'state': self.state.value,
            'failure': self.failure,
            'rolledBack': self.rolled_back,
            'processingTimeMs': self.processing_time_ms,
        }


@dataclass
class _Sheet:
    """The parsed header context of the worksheet being imported."""

    worksheet: Worksheet
    header_index: int
    headers: list[HeaderCell]


# =============================================================================
# ImportPipeline
# =============================================================================


class ImportPipeline:
    """
    Orchestrates the spreadsheet -> CRM import flow.

    Responsibilities:
    - Choose the worksheet and header row
    - Build typed rows and stage deduplicated entities
    - Write batches in dependency order, once or per chunk
    - Collect counts, per-row errors and timings
    """

    def __init__(self, client: QueryClient, stage_config: StageConfig | None = None):
        """
        Args:
            client: Connected store client
            stage_config: Stage synonyms/allowed set; the store enum by default
        """
        self.repository = ImportRepository(client)
        self.stage_config = stage_config or StageConfig(default=Config.DEFAULT_STAGE)

    async def import_file(
        self,
        data: bytes,
        filename: str | None,
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """
        Validate, load and import an uploaded workbook.

        Raises:
            ValidationError: Unsupported file, bad size, or unknown pipeline
            WorkbookError: The file is not a readable workbook
        """
        options = options or ImportOptions()
        # Chunked runs are capped by rows instead of bytes
        max_bytes = sys.maxsize if options.chunked else options.max_upload_bytes
        validate_upload(filename, len(data), max_bytes)

        sheets = await asyncio.to_thread(
            read_workbook, data, filename, options.header_scan_rows
        )
        if options.chunked:
            return await self.run_chunked(sheets, options)
        return await self.run(sheets, options)

    async def run(
        self,
        sheets: Sequence[Worksheet],
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """Single-pass import: stage every row, then write one batch."""
        options = (options or ImportOptions()).model_copy(update={'chunked': False})
        return await self._execute(sheets, options)

    async def run_chunked(
        self,
        sheets: Sequence[Worksheet],
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """Chunked import: write every chunk_size parsed rows, up to max_rows."""
        options = (options or ImportOptions()).model_copy(update={'chunked': True})
        return await self._execute(sheets, options)

    # =========================================================================
    # Run
    # =========================================================================

    async def _execute(self, sheets: Sequence[Worksheet], options: ImportOptions) -> ImportResult:
        result = ImportResult(
            import_id=str(uuid.uuid4()),
            pipeline_id=options.pipeline_id,
            chunked=options.chunked,
            started_at=datetime.now(tz=timezone.utc),
        )
        run = ImportRun()
        timer = StageTimings()

        with import_context(
            import_id=result.import_id,
            pipeline_id=options.pipeline_id,
            user_id=options.user_id,
        ):
            logger.info('import_pipeline.started', chunked=options.chunked, sheets=len(sheets))
            try:
                await self._run_stages(sheets, options, run, timer, result)
            except StoreError as e:
                # Reads before any write (pipeline, existing records)
                logger.error('import_pipeline.store_error', error=str(e))
                result.failure = e.message
                run.fail()
            finally:
                result.state = run.state
                result.completed_at = datetime.now(tz=timezone.utc)
                result.processing_time_ms = int(timer.elapsed_ms)
                result.stage_timings = timer.as_dict()

            logger.info(
                'import_pipeline.completed',
                state=result.state.value,
                parsed_rows=result.parsed_rows,
                companies=result.companies_created,
                contacts=result.contacts_created,
                deals=result.deals_created,
                notes=result.notes_created,
                errors=len(result.errors),
                processing_time_ms=result.processing_time_ms,
            )
        return result

    async def _run_stages(
        self,
        sheets: Sequence[Worksheet],
        options: ImportOptions,
        run: ImportRun,
        timer: StageTimings,
        result: ImportResult,
    ) -> None:
        # ------------------------------------------------------------------
        # Step 1: Header
        # ------------------------------------------------------------------
        run.advance(ImportState.PARSING_HEADER)
        with timer.measure('parse_header'):
            sheet = self._parse_header(sheets, options)
        if sheet is None:
            result.warnings.append('Nothing to import: no recognizable header row')
            logger.warning('import_pipeline.nothing_to_import', reason='no_header')
            run.advance(ImportState.DONE)
            return

        # ------------------------------------------------------------------
        # Step 2: Pipeline stages + existing records
        # ------------------------------------------------------------------
        with timer.measure('load_existing'):
            canonicalizer = await self._stage_canonicalizer(options.pipeline_id)
            reconciler = EntityReconciler(self.repository)
            await reconciler.load_existing()
        writer = BatchWriter(self.repository, reconciler, use_transaction=options.use_transaction)

        # ------------------------------------------------------------------
        # Step 3+4: Rows and writes
        # ------------------------------------------------------------------
        run.advance(ImportState.PARSING_ROWS)
        first = sheet.header_index + 1
        last = sheet.worksheet.row_count
        if options.chunked and last - first > options.max_rows:
            last = first + options.max_rows
            result.warnings.append(
                f'Row cap reached: only the first {options.max_rows} rows were processed'
            )
            logger.warning('import_pipeline.row_cap_reached', max_rows=options.max_rows)

        chunk_rows = 0
        for index in range(first, last):
            with timer.measure('parse_rows'):
                row = map_row(sheet.worksheet.row(index), sheet.headers)
                if row is None:
                    continue
                result.parsed_rows += 1
                chunk_rows += 1
                self._stage_row(row, index + 1, options, canonicalizer, reconciler, result)

            if options.chunked and chunk_rows >= options.chunk_size:
                await self._write_chunk(writer, reconciler, options, run, timer, result)
                chunk_rows = 0
                await asyncio.sleep(options.chunk_yield_seconds)

        if result.parsed_rows == 0:
            result.warnings.append('Nothing to import: no rows with recognizable values')
            logger.warning('import_pipeline.nothing_to_import', reason='no_rows')
            run.advance(ImportState.DONE)
            return

        if options.chunked:
            if chunk_rows:
                await self._write_chunk(writer, reconciler, options, run, timer, result)
            run.advance(ImportState.DONE)
            return

        batch = reconciler.drain()
        if batch.is_empty:
            run.advance(ImportState.DONE)
            return
        try:
            with timer.measure('write'):
                summary = await writer.write(batch, options.pipeline_id, run)
        except BatchWriteError as e:
            result.add(e.summary)
            result.failure = e.message
            run.fail()
            return
        result.add(summary)
        run.advance(ImportState.DONE)

    def _parse_header(
        self,
        sheets: Sequence[Worksheet],
        options: ImportOptions,
    ) -> _Sheet | None:
        worksheet = select_worksheet(sheets, options.header_scan_rows)
        if worksheet is None:
            return None

        detection = detect_header_row(worksheet, options.header_scan_rows)
        if not detection.found:
            return None

        headers = classify_headers(worksheet, detection.index)
        logger.info(
            'import_pipeline.header_detected',
            sheet=worksheet.name,
            header_row=detection.index + 1,
            score=detection.score,
            headers=[h.name for h in headers],
        )
        return _Sheet(worksheet=worksheet, header_index=detection.index, headers=headers)

    async def _stage_canonicalizer(self, pipeline_id: str | None) -> StageCanonicalizer:
        if not pipeline_id:
            return StageCanonicalizer(self.stage_config)

        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise ValidationError(
                f'Pipeline not found: {pipeline_id}',
                context={'pipeline_id': pipeline_id},
            )
        stages = stage_names(pipeline.get('stages'))
        canonicalizer = StageCanonicalizer(self.stage_config, stages)
        logger.info(
            'import_pipeline.pipeline_loaded',
            pipeline_name=pipeline.get('name'),
            stages=len(stages),
            fallback_stage=canonicalizer.fallback,
        )
        return canonicalizer

    @staticmethod
    def _stage_row(
        row: SpreadsheetRow,
        row_number: int,
        options: ImportOptions,
        canonicalizer: StageCanonicalizer,
        reconciler: EntityReconciler,
        result: ImportResult,
    ) -> None:
        """Register the row's company and contact and stage its deal."""
        if options.requires_contact_name and not (row.first_name and row.last_name):
            result.errors.append(f'Row {row_number}: Missing client name')
            return

        tz = row.timezone or options.default_timezone
        phone = normalize_phone(row.phone)
        company = reconciler.register_company(row.company_name, tz)

        contact = None
        if row.first_name or row.last_name or row.email or phone:
            contact = reconciler.register_contact(
                first_name=row.first_name,
                last_name=row.last_name,
                email=row.email,
                phone=phone,
                company=company,
                timezone=tz,
            )

        if row.deal_name:
            reconciler.stage_deal(
                name=row.deal_name,
                company=company,
                primary_contact=contact,
                timezone=tz,
                stage=canonicalizer.canonicalize(row.sales_stage),
                pipeline_id=options.pipeline_id,
                notes=row.notes,
                source_row=row_number,
            )

    async def _write_chunk(
        self,
        writer: BatchWriter,
        reconciler: EntityReconciler,
        options: ImportOptions,
        run: ImportRun,
        timer: StageTimings,
        result: ImportResult,
    ) -> None:
        """Write one chunk; a failure is recorded and the run moves on."""
        batch = reconciler.drain()
        if batch.is_empty:
            return
        try:
            with timer.measure('write'):
                summary = await writer.write(batch, options.pipeline_id, run)
        except BatchWriteError as e:
            logger.warning('import_pipeline.chunk_failed', step=e.step, error=e.message)
            result.add(e.summary)
            result.errors.append(e.message)
        else:
            result.add(summary)
        run.advance(ImportState.PARSING_ROWS)
