"""
Staged entity models for one import run.

References between staged entities are a sum type:

- PendingRef: an entity staged in this run that has no persisted id yet
- ResolvedRef: a persisted id (pre-existing, or returned after insert)

Whether a foreign key may be written is therefore an isinstance check on
the reference, never a string-prefix check on the id value.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class PendingRef:
    """Temporary reference to an entity staged in the current run."""

    kind: str  # 'company' | 'contact'
    sequence: int

    def __str__(self) -> str:
        return f'pending:{self.kind}:{self.sequence}'


@dataclass(frozen=True)
class ResolvedRef:
    """Reference to a persisted row."""

    id: str

    def __str__(self) -> str:
        return self.id


EntityRef = Union[PendingRef, ResolvedRef]


def ref_to_fk(ref: EntityRef | None) -> str | None:
    """Foreign key value for a reference; pending references become None."""
    if isinstance(ref, ResolvedRef):
        return ref.id
    return None


def contact_key(
    email: str | None,
    first_name: str | None,
    last_name: str | None,
    phone: str | None,
) -> str:
    """Natural dedup key for a contact: email, else first_last_phone."""
    if email:
        return email
    return f"{first_name or ''}_{last_name or ''}_{phone or ''}"


@dataclass
class StagedCompany:
    """A company to be inserted in the current batch."""

    ref: PendingRef
    name: str
    timezone: str

    def to_row(self) -> dict[str, Any]:
        return {'name': self.name, 'timezone': self.timezone}


@dataclass
class StagedContact:
    """A contact to be inserted in the current batch."""

    ref: PendingRef
    key: str
    company: EntityRef | None
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    timezone: str

    def to_row(self) -> dict[str, Any]:
        return {
            'company_id': ref_to_fk(self.company),
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'timezone': self.timezone,
        }


@dataclass
class StagedDeal:
    """A deal to be inserted in the current batch. Notes seed a Note row."""

    name: str
    company: EntityRef | None
    primary_contact: EntityRef | None
    timezone: str
    stage: str
    pipeline_id: str | None
    notes: str | None = None
    source_row: int | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'company_id': ref_to_fk(self.company),
            'primary_contact_id': ref_to_fk(self.primary_contact),
            'timezone': self.timezone,
            'stage': self.stage,
            'pipeline_id': self.pipeline_id,
        }

    @property
    def has_pending_refs(self) -> bool:
        return isinstance(self.company, PendingRef) or isinstance(
            self.primary_contact, PendingRef
        )


@dataclass
class StagedBatch:
    """Everything staged since the last drain, in insert order."""

    companies: list[StagedCompany] = field(default_factory=list)
    contacts: list[StagedContact] = field(default_factory=list)
    deals: list[StagedDeal] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.companies or self.contacts or self.deals)
