"""Lifecycle of one encrypted PCA run."""

import threading
import time
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Tuple

from ..errors import InvalidState


class ComputationState(Enum):
    REGISTERING = 'registering'
    SUBMITTING = 'submitting'
    AGGREGATING = 'aggregating'
    EXTRACTING = 'extracting'
    COMPUTED = 'computed'
    DECRYPTION_REQUESTED = 'decryption_requested'
    DECRYPTED = 'decrypted'


ORDER: Tuple[ComputationState, ...] = tuple(ComputationState)

# Forward only. DECRYPTION_REQUESTED -> DECRYPTION_REQUESTED is a retry that
# supersedes the outstanding request.
TRANSITIONS: Dict[ComputationState, FrozenSet[ComputationState]] = {
    ComputationState.REGISTERING: frozenset({ComputationState.SUBMITTING}),
    ComputationState.SUBMITTING: frozenset({ComputationState.AGGREGATING}),
    ComputationState.AGGREGATING: frozenset({ComputationState.EXTRACTING}),
    ComputationState.EXTRACTING: frozenset({ComputationState.COMPUTED}),
    ComputationState.COMPUTED: frozenset({ComputationState.DECRYPTION_REQUESTED}),
    ComputationState.DECRYPTION_REQUESTED: frozenset({
        ComputationState.DECRYPTION_REQUESTED,
        ComputationState.DECRYPTED,
    }),
    ComputationState.DECRYPTED: frozenset(),
}


class ComputationStateMachine:
    """Explicit transition table with a timestamped history."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._state = ComputationState.REGISTERING
        self._history: List[Tuple[ComputationState, float]] = [(self._state, clock())]
        self._lock = threading.RLock()

    @property
    def state(self) -> ComputationState:
        return self._state

    def can_advance(self, target: ComputationState) -> bool:
        return target in TRANSITIONS[self._state]

    def advance(self, target: ComputationState, operation: str = None) -> None:
        with self._lock:
            if not self.can_advance(target):
                raise InvalidState(operation or f"move to {target.value}", self._state)
            self._state = target
            self._history.append((target, self._clock()))

    def require(self, operation: str, *allowed: ComputationState) -> None:
        if self._state not in allowed:
            raise InvalidState(operation, self._state)

    def is_past(self, state: ComputationState) -> bool:
        return ORDER.index(self._state) > ORDER.index(state)

    def history(self) -> List[Tuple[str, float]]:
        with self._lock:
            return [(s.value, t) for s, t in self._history]
