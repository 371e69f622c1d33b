"""
Custom exceptions and error handling for the CRM bulk importer.

Provides:
- Typed exception hierarchy for different failure modes
- Error context preservation for debugging
- Classification of raw driver/HTTP errors into store errors
"""

from typing import Any


class CrmImportError(Exception):
    """Base exception for all importer errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# =============================================================================
# Client Errors
# =============================================================================


class ClientError(CrmImportError):
    """Base class for client-related errors."""

    pass


class StoreError(ClientError):
    """Error from the backing store (PostgREST or Postgres)."""

    pass


class StoreConnectionError(StoreError):
    """Failed to reach the backing store."""

    pass


class StoreQueryError(StoreError):
    """The store rejected or failed to execute a query."""

    pass


class StorePermissionError(StoreError):
    """Row-level security or credentials denied the operation."""

    pass


class StoreConstraintError(StoreError):
    """Constraint violation (unique key, enum value, foreign key)."""

    pass


# =============================================================================
# Pipeline Errors
# =============================================================================


class PipelineError(CrmImportError):
    """Base class for import pipeline errors."""

    pass


class ValidationError(PipelineError):
    """Input validation failed (file type, size, missing pipeline)."""

    pass


class WorkbookError(PipelineError):
    """The uploaded file could not be read as a workbook."""

    pass


class BatchWriteError(PipelineError):
    """
    A batch insert step failed.

    Carries the failed step name and the summary of what was already
    written by earlier steps, which are not rolled back unless the
    store ran the batch inside a transaction.
    """

    def __init__(
        self,
        message: str,
        step: str,
        summary: Any = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.step = step
        self.summary = summary


# =============================================================================
# Error Handling Utilities
# =============================================================================


def wrap_store_error(exc: Exception, context: dict[str, Any] | None = None) -> StoreError:
    """
    Wrap a driver or HTTP exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        Typed StoreError subclass
    """
    if isinstance(exc, StoreError):
        return exc

    error_str = str(exc).lower()
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if 'connection' in error_str or 'connect' in error_str or 'timeout' in error_str:
        return StoreConnectionError(f"Store connection failed: {exc}", context=ctx)
    elif 'permission' in error_str or 'row-level security' in error_str or 'jwt' in error_str:
        return StorePermissionError(f"Store permission denied: {exc}", context=ctx)
    elif (
        'constraint' in error_str
        or 'unique' in error_str
        or 'duplicate key' in error_str
        or 'invalid input value for enum' in error_str
    ):
        return StoreConstraintError(f"Store constraint violation: {exc}", context=ctx)
    else:
        return StoreQueryError(f"Store query error: {exc}", context=ctx)
