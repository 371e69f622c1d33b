"""
Tests for the ImportPipeline orchestrator.

Runs whole imports against the in-memory store:
- End-to-end single-pass import (company, contact, deal, note)
- Dedup within a run and across runs
- Stage fallback to the target pipeline
- Nothing-to-import outcomes
- Chunked mode: chunk writes, per-row errors, row cap, failed chunks
- Single-pass failure, rollback and store read failures
- import_file on real .xlsx bytes
"""

import pytest

from conftest import E2E_HEADER, FakeQueryClient, make_sheet, xlsx_bytes

from crm_import.errors import StoreConnectionError, ValidationError
from crm_import.pipeline import ImportOptions, ImportPipeline, ImportState


def _row(company, deal, first='Jo', last='Lee', email=None, phone='', stage='', notes=''):
    return [company, deal, first, last, email or '', phone, stage, notes]


def _sheet(*rows):
    return [make_sheet([E2E_HEADER, *rows])]


class FlakyStore(FakeQueryClient):
    """Fails the first insert into each listed table, then behaves."""

    def __init__(self, *args, fail_once=(), error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_once = set(fail_once)
        self.error = error

    async def insert(self, table, rows, returning=None):
        if table in self.fail_once:
            self.fail_once.discard(table)
            self.insert_calls.append((table, [dict(r) for r in rows]))
            raise self.error
        return await super().insert(table, rows, returning)


# =============================================================================
# Single pass
# =============================================================================


class TestSinglePass:
    @pytest.mark.asyncio
    async def test_end_to_end(self, store, pipeline_id, e2e_rows):
        pipeline = ImportPipeline(store)

        result = await pipeline.run([make_sheet(e2e_rows)], ImportOptions(pipeline_id=pipeline_id))

        assert result.success
        assert result.state == ImportState.DONE
        assert result.to_dict()['companiesCreated'] == 1
        assert result.to_dict()['contactsCreated'] == 1
        assert result.to_dict()['dealsCreated'] == 1
        assert result.to_dict()['notesCreated'] == 1
        assert result.errors == []

        [company] = store.tables['companies']
        [contact] = store.tables['contacts']
        [deal] = store.tables['deals']
        [note] = store.tables['notes']
        assert company['name'] == 'Acme'
        assert company['timezone'] == 'PST'
        assert (contact['first_name'], contact['last_name']) == ('Jo', 'Lee')
        assert contact['email'] == 'jo@acme.com'
        assert contact['phone'] == '+16049002048'
        assert contact['company_id'] == company['id']
        assert deal['name'] == 'Acme Renewal'
        assert deal['stage'] == 'proposal / scope'
        assert deal['pipeline_id'] == pipeline_id
        assert deal['company_id'] == company['id']
        assert deal['primary_contact_id'] == contact['id']
        assert note['deal_id'] == deal['id']
        assert note['content'] == 'Send MSA'

    @pytest.mark.asyncio
    async def test_result_carries_timings(self, store, pipeline_id, e2e_rows):
        result = await ImportPipeline(store).run(
            [make_sheet(e2e_rows)], ImportOptions(pipeline_id=pipeline_id)
        )

        assert result.processing_time_ms is not None
        assert set(result.stage_timings) >= {'parse_header', 'load_existing', 'parse_rows', 'write'}
        assert result.parsed_rows == 1
        assert result.import_id

    @pytest.mark.asyncio
    async def test_repeated_company_and_contact_deduplicated(self, store, pipeline_id):
        sheets = _sheet(
            _row('Acme', 'Renewal', email='jo@acme.com'),
            _row('Acme', 'Expansion', email='jo@acme.com'),
        )

        result = await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert (result.companies_created, result.contacts_created, result.deals_created) == (1, 1, 2)
        company_ids = {d['company_id'] for d in store.tables['deals']}
        contact_ids = {d['primary_contact_id'] for d in store.tables['deals']}
        assert company_ids == {store.tables['companies'][0]['id']}
        assert contact_ids == {store.tables['contacts'][0]['id']}

    @pytest.mark.asyncio
    async def test_second_run_reuses_existing_records(self, store, pipeline_id, e2e_rows):
        pipeline = ImportPipeline(store)
        options = ImportOptions(pipeline_id=pipeline_id)

        await pipeline.run([make_sheet(e2e_rows)], options)
        second = await pipeline.run([make_sheet(e2e_rows)], options)

        assert second.companies_created == 0
        assert second.contacts_created == 0
        assert second.deals_created == 1
        assert len(store.tables['companies']) == 1
        assert len(store.tables['contacts']) == 1
        assert {d['company_id'] for d in store.tables['deals']} == {store.tables['companies'][0]['id']}

    @pytest.mark.asyncio
    async def test_seeded_company_not_reinserted(self, pipeline_row, pipeline_id, e2e_rows):
        store = FakeQueryClient(
            tables={
                'pipelines': [pipeline_row],
                'companies': [{'id': 'co-1', 'name': 'Acme', 'timezone': 'EST'}],
            }
        )

        result = await ImportPipeline(store).run([make_sheet(e2e_rows)], ImportOptions(pipeline_id=pipeline_id))

        assert result.companies_created == 0
        assert store.inserted('companies') == []
        assert store.tables['contacts'][0]['company_id'] == 'co-1'
        assert store.tables['deals'][0]['company_id'] == 'co-1'

    @pytest.mark.asyncio
    async def test_unknown_stage_uses_pipeline_first_stage(self, store, pipeline_id):
        sheets = _sheet(_row('Acme', 'Renewal', stage='Mystery Stage'))

        await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert store.tables['deals'][0]['stage'] == 'not contacted'

    @pytest.mark.asyncio
    async def test_fallback_follows_pipeline_stage_order(self, pipeline_id):
        store = FakeQueryClient(
            tables={
                'pipelines': [
                    {'id': pipeline_id, 'name': 'Warm', 'stages': ['Interested', 'Closed Won'], 'is_active': True}
                ]
            }
        )
        sheets = _sheet(_row('Acme', 'Renewal'), _row('Beta', 'New', email='b@beta.io', stage='Won'))

        await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert [d['stage'] for d in store.tables['deals']] == ['interested', 'closed won']

    @pytest.mark.asyncio
    async def test_fallback_skips_pipeline_labels_that_are_only_synonyms(self, pipeline_id):
        store = FakeQueryClient(
            tables={
                'pipelines': [
                    {'id': pipeline_id, 'name': 'Short', 'stages': ['Won', 'Interested'], 'is_active': True}
                ]
            }
        )
        sheets = _sheet(_row('Acme', 'Renewal', stage='Mystery Stage'))

        await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert store.tables['deals'][0]['stage'] == 'interested'

    @pytest.mark.asyncio
    async def test_without_pipeline_uses_default_stage(self, store):
        sheets = _sheet(_row('Acme', 'Renewal', stage='???'))

        result = await ImportPipeline(store).run(sheets, ImportOptions())

        assert result.success
        assert store.tables['deals'][0]['stage'] == 'not contacted'
        assert store.tables['deals'][0]['pipeline_id'] is None

    @pytest.mark.asyncio
    async def test_unknown_pipeline_raises(self, store):
        with pytest.raises(ValidationError, match='Pipeline not found'):
            await ImportPipeline(store).run(
                _sheet(_row('Acme', 'Renewal')), ImportOptions(pipeline_id='missing')
            )
        assert store.insert_calls == []

    @pytest.mark.asyncio
    async def test_row_without_deal_creates_company_and_contact(self, store, pipeline_id):
        sheets = _sheet(_row('Acme', '', email='jo@acme.com'))

        result = await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert (result.companies_created, result.contacts_created, result.deals_created) == (1, 1, 0)
        assert result.state == ImportState.DONE

    @pytest.mark.asyncio
    async def test_missing_name_allowed_in_single_pass(self, store, pipeline_id):
        sheets = _sheet(_row('Acme', 'Renewal', last='', email='jo@acme.com'))

        result = await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert result.errors == []
        assert store.tables['contacts'][0]['last_name'] == ''


# =============================================================================
# Nothing to import
# =============================================================================


class TestNothingToImport:
    @pytest.mark.asyncio
    async def test_no_header_row(self, store):
        sheets = [make_sheet([['alpha', 'beta'], ['1', '2']])]

        result = await ImportPipeline(store).run(sheets)

        assert result.state == ImportState.DONE
        assert result.total_created == 0
        assert 'Nothing to import: no recognizable header row' in result.warnings
        assert store.insert_calls == []

    @pytest.mark.asyncio
    async def test_no_sheets(self, store):
        result = await ImportPipeline(store).run([])

        assert result.state == ImportState.DONE
        assert result.total_created == 0

    @pytest.mark.asyncio
    async def test_header_only(self, store, pipeline_id):
        sheets = [make_sheet([E2E_HEADER, [''] * len(E2E_HEADER)])]

        result = await ImportPipeline(store).run(sheets, ImportOptions(pipeline_id=pipeline_id))

        assert result.state == ImportState.DONE
        assert result.parsed_rows == 0
        assert 'Nothing to import: no rows with recognizable values' in result.warnings
        assert store.insert_calls == []


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_partial_failure_reports_committed_counts(self, pipeline_row, pipeline_id, e2e_rows, constraint_error):
        store = FakeQueryClient(tables={'pipelines': [pipeline_row]}, fail_on={'contacts': constraint_error})

        result = await ImportPipeline(store).run([make_sheet(e2e_rows)], ImportOptions(pipeline_id=pipeline_id))

        assert result.state == ImportState.FAILED
        assert not result.success
        assert result.failure == 'Failed to insert contacts: Store constraint violation: duplicate key value'
        assert result.companies_created == 1
        assert result.contacts_created == 0
        assert result.deals_created == 0
        assert len(store.tables['companies']) == 1
        assert store.inserted('deals') == []
        assert result.to_dict()['state'] == 'failed'

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_everything(self, pipeline_row, pipeline_id, e2e_rows, constraint_error):
        store = FakeQueryClient(
            tables={'pipelines': [pipeline_row]},
            fail_on={'deals': constraint_error},
            supports_transactions=True,
        )

        result = await ImportPipeline(store).run([make_sheet(e2e_rows)], ImportOptions(pipeline_id=pipeline_id))

        assert result.state == ImportState.FAILED
        assert result.rolled_back
        assert result.total_created == 0
        assert store.rollbacks == 1
        assert store.tables['companies'] == []
        assert store.tables['contacts'] == []

    @pytest.mark.asyncio
    async def test_store_read_failure_fails_run(self, e2e_rows):
        store = FlakyStore()

        async def broken_select(*args, **kwargs):
            raise StoreConnectionError('Store connection failed: timeout')

        store.select = broken_select

        result = await ImportPipeline(store).run([make_sheet(e2e_rows)])

        assert result.state == ImportState.FAILED
        assert result.failure == 'Store connection failed: timeout'
        assert store.insert_calls == []


# =============================================================================
# Chunked
# =============================================================================


class TestChunked:
    @pytest.mark.asyncio
    async def test_writes_every_chunk_size_rows(self, store, pipeline_id):
        rows = [_row(f'Co {i}', f'Deal {i}', first=f'F{i}', email=f'p{i}@co.io') for i in range(5)]
        options = ImportOptions(pipeline_id=pipeline_id, chunk_size=2, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(_sheet(*rows), options)

        assert result.state == ImportState.DONE
        assert result.chunked
        assert result.deals_created == 5
        assert [len(rows) for table, rows in store.insert_calls if table == 'companies'] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_dedup_spans_chunks(self, store, pipeline_id):
        rows = [_row('Acme', f'Deal {i}', email='jo@acme.com') for i in range(3)]
        options = ImportOptions(pipeline_id=pipeline_id, chunk_size=1, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(_sheet(*rows), options)

        assert (result.companies_created, result.contacts_created, result.deals_created) == (1, 1, 3)
        assert len({d['company_id'] for d in store.tables['deals']}) == 1

    @pytest.mark.asyncio
    async def test_missing_client_name_recorded_per_row(self, store, pipeline_id):
        sheets = _sheet(
            _row('Acme', 'Renewal', email='jo@acme.com'),
            _row('Beta', 'New', last='', email='x@beta.io'),
        )
        options = ImportOptions(pipeline_id=pipeline_id, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(sheets, options)

        assert result.errors == ['Row 3: Missing client name']
        assert result.state == ImportState.DONE
        assert result.companies_created == 1
        assert [c['name'] for c in store.tables['companies']] == ['Acme']

    @pytest.mark.asyncio
    async def test_row_cap(self, store, pipeline_id):
        rows = [_row(f'Co {i}', f'Deal {i}', email=f'p{i}@co.io') for i in range(3)]
        options = ImportOptions(pipeline_id=pipeline_id, max_rows=2, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(_sheet(*rows), options)

        assert result.parsed_rows == 2
        assert result.deals_created == 2
        assert any(w.startswith('Row cap reached') for w in result.warnings)

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_later_chunks(self, pipeline_row, pipeline_id, constraint_error):
        store = FlakyStore(tables={'pipelines': [pipeline_row]}, fail_once={'deals'}, error=constraint_error)
        rows = [_row(f'Co {i}', f'Deal {i}', first=f'F{i}', email=f'p{i}@co.io') for i in range(4)]
        options = ImportOptions(pipeline_id=pipeline_id, chunk_size=2, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(_sheet(*rows), options)

        assert result.state == ImportState.DONE
        assert result.failure is None
        assert result.errors == ['Failed to insert deals: Store constraint violation: duplicate key value']
        assert result.companies_created == 4
        assert result.contacts_created == 4
        assert result.deals_created == 2
        assert [d['name'] for d in store.tables['deals']] == ['Deal 2', 'Deal 3']

    @pytest.mark.asyncio
    async def test_company_not_duplicated_after_failed_contacts_chunk(self, pipeline_row, pipeline_id, constraint_error):
        store = FlakyStore(
            tables={'pipelines': [pipeline_row]},
            hide_returning={'companies'},
            fail_once={'contacts'},
            error=constraint_error,
        )
        fetch = store.select

        async def select(table, columns=None, filters=None, in_filters=None):
            # Inserted companies stay invisible to the natural-key refetch
            if table == 'companies' and in_filters:
                return []
            return await fetch(table, columns, filters, in_filters)

        store.select = select
        rows = [_row('Acme', 'Renewal', email='jo@acme.com'), _row('Acme', 'Upsell', first='Al', email='al@acme.com')]
        options = ImportOptions(pipeline_id=pipeline_id, chunk_size=1, chunk_yield_seconds=0)

        result = await ImportPipeline(store).run_chunked(_sheet(*rows), options)

        assert result.state == ImportState.DONE
        assert [c['name'] for c in store.tables['companies']] == ['Acme']
        assert len(store.inserted('companies')) == 1
        assert [c['email'] for c in store.tables['contacts']] == ['al@acme.com']
        assert 'Row 3: unresolved references written as null' in result.warnings


# =============================================================================
# import_file
# =============================================================================


class TestImportFile:
    @pytest.mark.asyncio
    async def test_xlsx_with_title_rows_and_colored_name_column(self, store, pipeline_id):
        data = xlsx_bytes(
            {
                'Leads': [
                    ['Q3 Outreach'],
                    ['Exported 2024-05-01'],
                    ['Company Name', 'Deal Name', 'Name', 'Email', 'Phone', 'Stage'],
                    ['Acme', 'Acme Renewal', 'Jo Lee', 'jo@acme.com', 6049002048, 'Won'],
                ]
            },
            fills={('Leads', 3, 3): '000000'},
        )

        result = await ImportPipeline(store).import_file(
            data, 'leads.xlsx', ImportOptions(pipeline_id=pipeline_id)
        )

        assert result.success
        [contact] = store.tables['contacts']
        assert (contact['first_name'], contact['last_name']) == ('Jo', 'Lee')
        assert contact['phone'] == '+16049002048'
        assert store.tables['deals'][0]['stage'] == 'closed won'

    @pytest.mark.asyncio
    async def test_rejects_legacy_xls(self, store):
        with pytest.raises(ValidationError, match='Legacy .xls'):
            await ImportPipeline(store).import_file(b'\xd0\xcf\x11\xe0', 'leads.xls')

    @pytest.mark.asyncio
    async def test_byte_cap_applies_to_single_pass_only(self, store, e2e_rows):
        data = xlsx_bytes({'Sheet1': e2e_rows})

        with pytest.raises(ValidationError):
            await ImportPipeline(store).import_file(data, 'big.xlsx', ImportOptions(max_upload_bytes=10))

        result = await ImportPipeline(store).import_file(
            data, 'big.xlsx', ImportOptions(chunked=True, max_upload_bytes=10, chunk_yield_seconds=0)
        )
        assert result.deals_created == 1
