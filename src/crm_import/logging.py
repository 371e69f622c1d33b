"""
Logging setup for import runs.

Every log line written while a run is in progress carries the run's
import_id, pipeline_id and user_id, bound through structlog's contextvars.
StageTimings measures the named stages of a run; stages repeated once per
chunk add up.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Iterator

import structlog
from structlog.types import Processor

from .config import config

RUN_CONTEXT_KEYS = ('import_id', 'pipeline_id', 'user_id')

TIMED_STAGES = ('parse_header', 'load_existing', 'parse_rows', 'write')


def configure_logging(json_output: bool = False, log_level: str | None = None) -> None:
    """JSON lines in production, console rendering otherwise."""
    level = getattr(logging, (log_level or config.LOG_LEVEL).upper(), logging.INFO)

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt='iso'),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@contextmanager
def import_context(**ids: str | None) -> Iterator[None]:
    """
    Bind run identifiers to every log line emitted inside the block.

    None values are skipped, so an import without a pipeline logs no
    pipeline_id. The previous bindings come back on exit.

        with import_context(import_id=result.import_id, user_id=user):
            logger.info('import_pipeline.started')
    """
    unknown = set(ids) - set(RUN_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f'Unknown run context keys: {sorted(unknown)}')
    with structlog.contextvars.bound_contextvars(**{k: v for k, v in ids.items() if v is not None}):
        yield


def get_import_context() -> dict[str, str]:
    """Run identifiers currently bound."""
    bound = structlog.contextvars.get_contextvars()
    return {k: bound[k] for k in RUN_CONTEXT_KEYS if k in bound}


class StageTimings:
    """Wall-clock milliseconds per run stage, plus the run's elapsed time."""

    def __init__(self):
        self.started = time.perf_counter()
        self.stages: dict[str, float] = {}

    @contextmanager
    def measure(self, stage: str) -> Iterator[None]:
        if stage not in TIMED_STAGES:
            raise ValueError(f'Unknown stage: {stage}')
        start = time.perf_counter()
        try:
            yield
        finally:
            self.stages[stage] = self.stages.get(stage, 0.0) + (time.perf_counter() - start) * 1000

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def as_dict(self) -> dict[str, float]:
        return {stage: round(ms, 2) for stage, ms in self.stages.items()}


configure_logging()
