"""
Entity reconciliation for one import run.

Keeps two natural-key mappings for the whole run:
- company name -> reference
- contact key (email, else first_last_phone) -> reference

Both are seeded from the records already in the store. A key seen for the
first time stages a new entity under a PendingRef, registered immediately so
later rows reuse it before anything has been written. After each insert the
pending references are resolved to persisted ids, either from the rows the
insert returned or by re-querying on natural key when the store did not
return them.
"""

from typing import Any

import structlog

from ..models.entities import (
    EntityRef,
    PendingRef,
    ResolvedRef,
    StagedBatch,
    StagedCompany,
    StagedContact,
    StagedDeal,
    contact_key,
)
from ..repository import ImportRepository

logger = structlog.get_logger(__name__)

# Insert order of a batch write; a failed step leaves the ones before it committed.
WRITE_STEPS = ('companies', 'contacts', 'deals', 'notes')


def _row_contact_key(row: dict[str, Any]) -> str:
    return contact_key(
        row.get('email'),
        row.get('first_name'),
        row.get('last_name'),
        row.get('phone'),
    )


class EntityReconciler:
    """
    Deduplicates companies and contacts and tracks their references.

    Staging lists are drained per batch; the key mappings live for the
    whole run, so a key once registered yields the same reference in every
    later chunk.
    """

    def __init__(self, repository: ImportRepository):
        self.repository = repository
        self.companies: dict[str, EntityRef] = {}
        self.contacts: dict[str, EntityRef] = {}
        self._sequence = {'company': 0, 'contact': 0}
        self._batch = StagedBatch()

    # =========================================================================
    # Seeding
    # =========================================================================

    def seed(
        self,
        companies: list[dict[str, Any]],
        contacts: list[dict[str, Any]],
    ) -> None:
        """Register existing store records under their natural keys."""
        for row in companies:
            if row.get('name') and row.get('id'):
                self.companies.setdefault(row['name'], ResolvedRef(str(row['id'])))
        for row in contacts:
            if row.get('id'):
                self.contacts.setdefault(_row_contact_key(row), ResolvedRef(str(row['id'])))

        logger.info(
            'entity_reconciler.seeded',
            companies=len(self.companies),
            contacts=len(self.contacts),
        )

    async def load_existing(self) -> None:
        """Seed both mappings from the store."""
        companies = await self.repository.fetch_existing_companies()
        contacts = await self.repository.fetch_existing_contacts()
        self.seed(companies, contacts)

    # =========================================================================
    # Staging
    # =========================================================================

    def _next_ref(self, kind: str) -> PendingRef:
        ref = PendingRef(kind=kind, sequence=self._sequence[kind])
        self._sequence[kind] += 1
        return ref

    def register_company(self, name: str | None, timezone: str) -> EntityRef | None:
        """Reference for a company name, staging a new company if unseen."""
        if not name:
            return None
        existing = self.companies.get(name)
        if existing is not None:
            return existing

        ref = self._next_ref('company')
        self._batch.companies.append(StagedCompany(ref=ref, name=name, timezone=timezone))
        self.companies[name] = ref
        return ref

    def register_contact(
        self,
        first_name: str | None,
        last_name: str | None,
        email: str | None,
        phone: str | None,
        company: EntityRef | None,
        timezone: str,
    ) -> EntityRef:
        """Reference for a contact key, staging a new contact if unseen."""
        key = contact_key(email, first_name, last_name, phone)
        existing = self.contacts.get(key)
        if existing is not None:
            return existing

        ref = self._next_ref('contact')
        self._batch.contacts.append(
            StagedContact(
                ref=ref,
                key=key,
                company=company,
                first_name=first_name or '',
                last_name=last_name or '',
                email=email or None,
                phone=phone,
                timezone=timezone,
            )
        )
        self.contacts[key] = ref
        return ref

    def stage_deal(
        self,
        name: str,
        company: EntityRef | None,
        primary_contact: EntityRef | None,
        timezone: str,
        stage: str,
        pipeline_id: str | None,
        notes: str | None = None,
        source_row: int | None = None,
    ) -> StagedDeal:
        deal = StagedDeal(
            name=name,
            company=company,
            primary_contact=primary_contact,
            timezone=timezone,
            stage=stage,
            pipeline_id=pipeline_id,
            notes=notes,
            source_row=source_row,
        )
        self._batch.deals.append(deal)
        return deal

    def drain(self) -> StagedBatch:
        """Hand over everything staged so far and start a new batch."""
        batch, self._batch = self._batch, StagedBatch()
        return batch

    def release(
        self,
        batch: StagedBatch,
        failed_step: str | None = None,
        include_resolved: bool = False,
    ) -> None:
        """
        Forget the keys a batch registered so later chunks stage them again.

        Used when a batch was not (fully) written. Keys are only dropped for
        entities whose insert never committed: failed_step names the insert
        that failed, and the steps before it keep their keys even when still
        pending, since their rows exist. Without failed_step every pending
        key of the batch is dropped. include_resolved drops resolved keys
        too and is meant for a rolled-back batch, where nothing committed.
        """
        if failed_step in WRITE_STEPS and not include_resolved:
            uncommitted = set(WRITE_STEPS[WRITE_STEPS.index(failed_step):])
        else:
            uncommitted = set(WRITE_STEPS)

        if 'companies' in uncommitted:
            for company in batch.companies:
                current = self.companies.get(company.name)
                if current == company.ref or (include_resolved and isinstance(current, ResolvedRef)):
                    del self.companies[company.name]
        if 'contacts' in uncommitted:
            for contact in batch.contacts:
                current = self.contacts.get(contact.key)
                if current == contact.ref or (include_resolved and isinstance(current, ResolvedRef)):
                    del self.contacts[contact.key]

    # =========================================================================
    # Post-insert resolution
    # =========================================================================

    async def resolve_companies(
        self,
        batch: StagedBatch,
        inserted: list[dict[str, Any]],
    ) -> dict[PendingRef, ResolvedRef]:
        """
        Resolve the batch's staged companies after their insert.

        Args:
            batch: The batch being written
            inserted: Rows returned by the insert (may be empty under RLS)

        Returns:
            Mapping of resolved pending refs to persisted refs
        """
        ids_by_name = {row['name']: str(row['id']) for row in inserted if row.get('id')}

        missing = [c.name for c in batch.companies if c.name not in ids_by_name]
        if missing:
            logger.info('entity_reconciler.refetching_companies', missing=len(missing))
            for row in await self.repository.find_companies_by_name(missing):
                if row.get('id'):
                    ids_by_name.setdefault(row['name'], str(row['id']))

        resolved: dict[PendingRef, ResolvedRef] = {}
        for company in batch.companies:
            company_id = ids_by_name.get(company.name)
            if company_id is None:
                logger.warning('entity_reconciler.company_unresolved', name=company.name)
                continue
            ref = ResolvedRef(company_id)
            resolved[company.ref] = ref
            self.companies[company.name] = ref

        for contact in batch.contacts:
            if isinstance(contact.company, PendingRef) and contact.company in resolved:
                contact.company = resolved[contact.company]
        for deal in batch.deals:
            if isinstance(deal.company, PendingRef) and deal.company in resolved:
                deal.company = resolved[deal.company]

        return resolved

    async def _refetch_contacts(self, missing: list[StagedContact]) -> dict[str, str]:
        ids_by_key: dict[str, str] = {}

        emails = [c.email for c in missing if c.email]
        if emails:
            for row in await self.repository.find_contacts_by_email(emails):
                if row.get('id') and row.get('email'):
                    ids_by_key.setdefault(row['email'], str(row['id']))

        # Contacts without email are keyed on first_last_phone
        by_phone = [c for c in missing if not c.email and c.phone]
        if by_phone:
            wanted = {c.key for c in by_phone}
            rows = await self.repository.find_contacts_by_phone([c.phone for c in by_phone])
            for row in rows:
                key = _row_contact_key(row)
                if row.get('id') and key in wanted:
                    ids_by_key.setdefault(key, str(row['id']))

        return ids_by_key

    async def resolve_contacts(
        self,
        batch: StagedBatch,
        inserted: list[dict[str, Any]],
    ) -> dict[PendingRef, ResolvedRef]:
        """
        Resolve the batch's staged contacts after their insert.

        Returned rows are matched on contact key; contacts not returned are
        looked up by email, or by first/last name + phone.
        """
        ids_by_key = {_row_contact_key(row): str(row['id']) for row in inserted if row.get('id')}

        missing = [c for c in batch.contacts if c.key not in ids_by_key]
        if missing:
            logger.info('entity_reconciler.refetching_contacts', missing=len(missing))
            for key, contact_id in (await self._refetch_contacts(missing)).items():
                ids_by_key.setdefault(key, contact_id)

        resolved: dict[PendingRef, ResolvedRef] = {}
        for contact in batch.contacts:
            contact_id = ids_by_key.get(contact.key)
            if contact_id is None:
                logger.warning('entity_reconciler.contact_unresolved', key=contact.key)
                continue
            ref = ResolvedRef(contact_id)
            resolved[contact.ref] = ref
            self.contacts[contact.key] = ref

        for deal in batch.deals:
            if isinstance(deal.primary_contact, PendingRef) and deal.primary_contact in resolved:
                deal.primary_contact = resolved[deal.primary_contact]

        return resolved
