"""
Import run state machine.

idle -> parsing_header -> parsing_rows -> writing_companies ->
writing_contacts -> writing_deals -> writing_notes -> done

failed is terminal and reachable from the parsing and writing states.
In chunked mode a run loops back from the writing states to parsing_rows
for the next chunk, including after a chunk whose write was aborted.
"""

from enum import Enum

from ..errors import PipelineError


class ImportState(str, Enum):
    IDLE = 'idle'
    PARSING_HEADER = 'parsing_header'
    PARSING_ROWS = 'parsing_rows'
    WRITING_COMPANIES = 'writing_companies'
    WRITING_CONTACTS = 'writing_contacts'
    WRITING_DEALS = 'writing_deals'
    WRITING_NOTES = 'writing_notes'
    DONE = 'done'
    FAILED = 'failed'


WRITING_STATES = frozenset({
    ImportState.WRITING_COMPANIES,
    ImportState.WRITING_CONTACTS,
    ImportState.WRITING_DEALS,
    ImportState.WRITING_NOTES,
})

TRANSITIONS: dict[ImportState, frozenset[ImportState]] = {
    ImportState.IDLE: frozenset({ImportState.PARSING_HEADER}),
    ImportState.PARSING_HEADER: frozenset({
        ImportState.PARSING_ROWS,
        ImportState.DONE,
        ImportState.FAILED,
    }),
    ImportState.PARSING_ROWS: frozenset({
        ImportState.WRITING_COMPANIES,
        ImportState.DONE,
        ImportState.FAILED,
    }),
    ImportState.WRITING_COMPANIES: frozenset({
        ImportState.WRITING_CONTACTS,
        ImportState.PARSING_ROWS,
        ImportState.FAILED,
    }),
    ImportState.WRITING_CONTACTS: frozenset({
        ImportState.WRITING_DEALS,
        ImportState.PARSING_ROWS,
        ImportState.FAILED,
    }),
    ImportState.WRITING_DEALS: frozenset({
        ImportState.WRITING_NOTES,
        ImportState.PARSING_ROWS,
        ImportState.FAILED,
    }),
    ImportState.WRITING_NOTES: frozenset({
        ImportState.DONE,
        ImportState.PARSING_ROWS,
        ImportState.FAILED,
    }),
    ImportState.DONE: frozenset(),
    ImportState.FAILED: frozenset(),
}


class InvalidTransitionError(PipelineError):
    """Raised when a disallowed state transition is attempted."""

    pass


class ImportRun:
    """Tracks and enforces the state of one import run."""

    def __init__(self):
        self.state = ImportState.IDLE
        self.history: list[ImportState] = [ImportState.IDLE]

    def can_transition(self, target: ImportState) -> bool:
        return target in TRANSITIONS[self.state]

    def advance(self, target: ImportState) -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f'Transition not allowed: {self.state.value} -> {target.value}',
                context={'current': self.state.value, 'target': target.value},
            )
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        """Move to failed from wherever the run currently is."""
        self.advance(ImportState.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ImportState.DONE, ImportState.FAILED)
