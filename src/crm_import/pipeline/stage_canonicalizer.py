"""
Deal stage canonicalization.

Free-text stage labels from a sheet are mapped onto the store's stage enum.
Anything that does not map to an allowed value falls back to the target
pipeline's first allowed stage, then to the configured default, so an
imported deal never carries a stage the store would reject.
"""

from typing import Sequence

import structlog

from ..config import Config
from ..models.stage import StageConfig, normalize_stage_label

logger = structlog.get_logger(__name__)


class StageCanonicalizer:
    """Maps raw stage labels to allowed stage values for one pipeline."""

    def __init__(
        self,
        config: StageConfig | None = None,
        pipeline_stages: Sequence[str] = (),
    ):
        """
        Args:
            config: Synonyms, allowed set and default
            pipeline_stages: Lower-cased stage labels of the target pipeline
        """
        self.config = config or StageConfig(default=Config.DEFAULT_STAGE)
        self.pipeline_stages = list(pipeline_stages)
        self.fallback = self._pipeline_fallback() or self.config.default

    def _pipeline_fallback(self) -> str | None:
        """First pipeline stage that is itself an allowed value; synonyms do not count."""
        for label in self.pipeline_stages:
            stage = label.lower().strip()
            if self.config.is_allowed(stage):
                return stage
        return None

    def canonicalize(self, raw: str | None) -> str:
        """
        Canonical stage for a raw label.

        Always returns a member of the allowed set.
        """
        normalized = normalize_stage_label(raw)
        if not normalized:
            return self.fallback

        candidate = self.config.lookup(normalized)
        if candidate and self.config.is_allowed(candidate):
            return candidate

        logger.debug(
            'stage_canonicalizer.fallback_used',
            raw=raw,
            normalized=normalized,
            fallback=self.fallback,
        )
        return self.fallback
