"""
CRM Bulk Importer

Turns uploaded .xlsx workbooks into CRM companies, contacts, deals and
notes, normalizing free-text deal stages to the store's stage enum and
deduplicating against records that already exist.
"""

__version__ = '0.1.0'

# Re-export key classes for convenience
from .pipeline import (
    ImportPipeline,
    ImportOptions,
    ImportResult,
    ImportState,
    StageCanonicalizer,
    normalize_phone,
)
from .repository import ImportRepository
from .logging import (
    configure_logging,
    import_context,
    StageTimings,
)
from .errors import (
    CrmImportError,
    PipelineError,
    ValidationError,
    WorkbookError,
    BatchWriteError,
    StoreError,
)

__all__ = [
    # Version
    '__version__',
    # Main Pipeline
    'ImportPipeline',
    'ImportOptions',
    'ImportResult',
    'ImportState',
    # Components
    'StageCanonicalizer',
    'normalize_phone',
    # Repository
    'ImportRepository',
    # Logging
    'configure_logging',
    'import_context',
    'StageTimings',
    # Errors
    'CrmImportError',
    'PipelineError',
    'ValidationError',
    'WorkbookError',
    'BatchWriteError',
    'StoreError',
]
