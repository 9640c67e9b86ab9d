"""
Index state machine - lifecycle state and progress for one repository.
"""

from typing import Callable, List, Optional

from codeindex.models.indexing import IndexingStatus, IndexState
from codeindex.utils.logger import get_logger

logger = get_logger(__name__)

ProgressListener = Callable[[IndexingStatus], None]

# Same-state moves are message updates and are always allowed.
VALID_TRANSITIONS = {
    IndexState.STANDBY: {IndexState.INDEXING, IndexState.ERROR},
    IndexState.INDEXING: {IndexState.INDEXED, IndexState.ERROR},
    IndexState.INDEXED: {IndexState.STANDBY},
    IndexState.ERROR: {IndexState.STANDBY},
}


class InvalidStateTransition(ValueError):
    """Raised for a move the lifecycle does not allow."""

    def __init__(self, current: IndexState, requested: IndexState):
        super().__init__(f"Cannot move from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


class IndexStateManager:
    """
    Single source of truth for status queries.

    Listeners receive a fresh IndexingStatus snapshot after every change, in
    the order the changes were made.
    """

    def __init__(self, repository_id: Optional[str] = None):
        self.repository_id = repository_id
        self._state = IndexState.STANDBY
        self._message = ""
        self._progress = 0
        self._blocks_indexed = 0
        self._blocks_found = 0
        self._listeners: List[ProgressListener] = []

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def message(self) -> str:
        return self._message

    def can_transition(self, state: IndexState) -> bool:
        return state == self._state or state in VALID_TRANSITIONS[self._state]

    def set_state(self, state: IndexState, message: str = "") -> None:
        state = IndexState(state)
        if not self.can_transition(state):
            raise InvalidStateTransition(self._state, state)

        if state == IndexState.INDEXING and self._state != IndexState.INDEXING:
            self._reset_counters()

        previous = self._state
        self._state = state
        self._message = message
        if previous != state:
            logger.info(
                "index_state_changed",
                repository_id=self.repository_id,
                previous=previous.value,
                state=state.value,
                message=message,
            )
        self._emit()

    def report_progress(self, blocks_indexed: int, blocks_found: int) -> None:
        self._blocks_indexed = blocks_indexed
        self._blocks_found = blocks_found
        if blocks_found > 0:
            self._progress = min(100, round(blocks_indexed / blocks_found * 100))
        self._emit()

    def get_status(self) -> IndexingStatus:
        return IndexingStatus(
            state=self._state,
            message=self._message,
            progress=self._progress,
            blocks_indexed=self._blocks_indexed,
            blocks_found=self._blocks_found,
            repository_id=self.repository_id,
        )

    def add_listener(self, listener: ProgressListener) -> Callable[[], None]:
        """Subscribe to progress updates. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def dispose(self) -> None:
        self._listeners.clear()

    def _reset_counters(self) -> None:
        self._progress = 0
        self._blocks_indexed = 0
        self._blocks_found = 0

    def _emit(self) -> None:
        status = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.warning("progress_listener_failed", error=str(e))
