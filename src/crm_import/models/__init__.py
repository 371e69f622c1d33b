"""
Data models for the CRM bulk importer.

Provides the stage enumeration and its injectable configuration, the
spreadsheet-side row models, and the staged entity models with their
pending/resolved reference type.
"""

from .entities import (
    EntityRef,
    PendingRef,
    ResolvedRef,
    StagedBatch,
    StagedCompany,
    StagedContact,
    StagedDeal,
    contact_key,
    ref_to_fk,
)
from .spreadsheet import ColorGroup, HeaderCell, SheetCell, SpreadsheetRow, Worksheet
from .stage import (
    ALL_STAGES,
    BASE_STAGES,
    STAGE_SYNONYMS,
    DealStage,
    StageConfig,
    normalize_stage_label,
)

__all__ = [
    # Stages
    'DealStage',
    'StageConfig',
    'ALL_STAGES',
    'BASE_STAGES',
    'STAGE_SYNONYMS',
    'normalize_stage_label',
    # Spreadsheet
    'ColorGroup',
    'HeaderCell',
    'SheetCell',
    'SpreadsheetRow',
    'Worksheet',
    # Staged entities
    'EntityRef',
    'PendingRef',
    'ResolvedRef',
    'StagedBatch',
    'StagedCompany',
    'StagedContact',
    'StagedDeal',
    'contact_key',
    'ref_to_fk',
]
