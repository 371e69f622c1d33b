"""
Deal stage enumeration and the injectable stage configuration.

The backing store types deals.stage as a strict enum, so an imported deal
may only ever carry one of these values. StageConfig bundles the synonym
table, the allowed set and the fallback default so that pipelines with
custom stage sets can be canonicalized (and tested) in isolation.
"""

import re
from enum import Enum

from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator


class DealStage(str, Enum):
    """Canonical deal stage values accepted by the store."""

    # Base outbound funnel
    NOT_CONTACTED = 'not contacted'
    NO_ANSWER_GATEKEEPER = 'no answer / gatekeeper'
    DECISION_MAKER = 'decision maker'
    NURTURING = 'nurturing'
    INTERESTED = 'interested'
    STRATEGY_CALL_BOOKED = 'strategy call booked'
    STRATEGY_CALL_ATTENDED = 'strategy call attended'
    PROPOSAL_SCOPE = 'proposal / scope'
    CLOSED_WON = 'closed won'
    CLOSED_LOST = 'closed lost'

    # Extended set used by the other pipelines
    UNCONTACTED = 'uncontacted'
    DM_CONNECTED = 'dm connected'
    BIZOPS_AUDIT_AGREEMENT_SENT = 'bizops audit agreement sent'
    BIZOPS_AUDIT_PAID_BOOKED = 'bizops audit paid / booked'
    BIZOPS_AUDIT_ATTENDED = 'bizops audit attended'
    MS_AGREEMENT_SENT = 'ms agreement sent'
    BALANCE_PAID_DEAL_WON = 'balance paid / deal won'
    NOT_INTERESTED = 'not interested'
    NOT_QUALIFIED = 'not qualified'
    ONBOARDING_CALL_BOOKED = 'onboarding call booked'
    ONBOARDING_CALL_ATTENDED = 'onboarding call attended'
    ACTIVE_CLIENT_OPERATOR = 'active client (operator)'
    ACTIVE_CLIENT_IN_PROGRESS = 'active client - project in progress'
    PAUSED_CLIENT = 'paused client'
    CANDIDATE_REPLACEMENT = 'candidate replacement'
    PROJECT_RESCOPE_EXPANSION = 'project rescope / expansion'
    ACTIVE_CLIENT_MAINTENANCE = 'active client - project maintenance'
    CANCELLED_COMPLETED = 'cancelled / completed'


BASE_STAGES: tuple[str, ...] = tuple(s.value for s in list(DealStage)[:10])
ALL_STAGES: frozenset[str] = frozenset(s.value for s in DealStage)

# Variants seen in spreadsheets -> canonical value. Canonical values map to
# themselves implicitly (see StageConfig).
STAGE_SYNONYMS: dict[str, str] = {
    'no answer': DealStage.NO_ANSWER_GATEKEEPER.value,
    'no answers / gatekeeper': DealStage.NO_ANSWER_GATEKEEPER.value,
    'gatekeeper': DealStage.NO_ANSWER_GATEKEEPER.value,
    'dm': DealStage.DM_CONNECTED.value,
    'call booked': DealStage.STRATEGY_CALL_BOOKED.value,
    'call attended': DealStage.STRATEGY_CALL_ATTENDED.value,
    'proposal': DealStage.PROPOSAL_SCOPE.value,
    'scope': DealStage.PROPOSAL_SCOPE.value,
    'won': DealStage.CLOSED_WON.value,
    'lost': DealStage.CLOSED_LOST.value,
    'not qualified / disqualified': DealStage.NOT_QUALIFIED.value,
    'disqualified': DealStage.NOT_QUALIFIED.value,
    'do not call': DealStage.NOT_INTERESTED.value,
    'dnc': DealStage.NOT_INTERESTED.value,
    'candidate interview booked': DealStage.STRATEGY_CALL_BOOKED.value,
    'candidate interview attended': DealStage.STRATEGY_CALL_ATTENDED.value,
}

_SEPARATOR_RE = re.compile(r'\s*[/\-]\s*')
_WHITESPACE_RE = re.compile(r'\s+')


def normalize_stage_label(raw: str | None) -> str:
    """
    Normalize a free-text stage label for lookup.

    Lower-cases, trims, rewrites "/" and "-" (with any surrounding spaces)
    to " / " and collapses whitespace runs.
    """
    label = (raw or '').lower().strip()
    if not label:
        return ''
    label = _SEPARATOR_RE.sub(' / ', label)
    return _WHITESPACE_RE.sub(' ', label).strip()


class StageConfig(BaseModel):
    """Synonym table, allowed enum set and fallback default for one store."""

    synonyms: dict[str, str] = Field(default_factory=lambda: dict(STAGE_SYNONYMS))
    allowed: frozenset[str] = Field(default=ALL_STAGES)
    default: str = Field(default=DealStage.NOT_CONTACTED.value)

    _lookup: dict[str, str] = PrivateAttr(default_factory=dict)

    @field_validator('allowed', mode='before')
    @classmethod
    def _lowercase_allowed(cls, value):
        return frozenset(str(v).lower().strip() for v in value)

    @model_validator(mode='after')
    def _build_lookup(self) -> 'StageConfig':
        if self.default not in self.allowed:
            raise ValueError(f'default stage {self.default!r} is not an allowed stage')
        # Keys are stored normalized so that "active client - project
        # maintenance" is found after "-" has been rewritten to " / ".
        lookup = {normalize_stage_label(stage): stage for stage in self.allowed}
        for variant, canonical in self.synonyms.items():
            lookup[normalize_stage_label(variant)] = canonical.lower().strip()
        self._lookup = lookup
        return self

    def lookup(self, normalized: str) -> str | None:
        """Return the canonical value mapped to a normalized label, if any."""
        return self._lookup.get(normalized)

    def is_allowed(self, stage: str) -> bool:
        return stage in self.allowed
