"""
Pipeline components for header detection, row mapping, stage
canonicalization, entity reconciliation and batch writing.
"""

from .batch_writer import BatchWriter, WriteSummary
from .header_classifier import (
    HeaderDetection,
    classify_color,
    classify_headers,
    detect_header_row,
    score_header_row,
    select_worksheet,
)
from .phone import normalize_phone
from .pipeline import ImportOptions, ImportPipeline, ImportResult
from .reconciler import EntityReconciler
from .row_mapper import RowBuilder, map_row
from .stage_canonicalizer import StageCanonicalizer
from .state import ImportRun, ImportState, InvalidTransitionError
from .workbook import read_workbook, validate_upload

__all__ = [
    # Main Pipeline
    'ImportPipeline',
    'ImportOptions',
    'ImportResult',
    'ImportRun',
    'ImportState',
    'InvalidTransitionError',
    # Header classification
    'HeaderDetection',
    'classify_color',
    'classify_headers',
    'detect_header_row',
    'score_header_row',
    'select_worksheet',
    # Workbook loading
    'read_workbook',
    'validate_upload',
    # Row mapping
    'RowBuilder',
    'map_row',
    'normalize_phone',
    'StageCanonicalizer',
    # Reconciliation + writing
    'EntityReconciler',
    'BatchWriter',
    'WriteSummary',
]
