"""Contributor authorization and the append-only contribution log."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import (
    ComputationAlreadyStarted,
    FeatureCountMismatch,
    InvalidCiphertext,
    InvalidState,
    NotRegistered,
)
from .state_machine import ComputationState, ComputationStateMachine


class ContributorRegistry:
    """Set of identities allowed to submit. Read-only from the engine's side."""

    def __init__(self, identities: Iterable[str] = ()):
        self._identities: Set[str] = set(identities)
        self._lock = threading.Lock()

    def authorize(self, identity: str) -> None:
        with self._lock:
            self._identities.add(identity)

    def revoke(self, identity: str) -> None:
        with self._lock:
            self._identities.discard(identity)

    def is_authorized(self, identity: str) -> bool:
        with self._lock:
            return identity in self._identities

    def identities(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._identities))


@dataclass(frozen=True)
class Contribution:
    contribution_id: int
    owner: str
    submitted_at: float
    vector: Tuple[object, ...]
    description: Optional[str] = None

    def handles(self) -> Tuple[str, ...]:
        return tuple(c.handle for c in self.vector)

    def to_dict(self) -> Dict:
        """Public record: ids, timestamps and handles, never ciphertext payloads."""
        return {
            'contribution_id': self.contribution_id,
            'owner': self.owner,
            'submitted_at': self.submitted_at,
            'description': self.description,
            'feature_count': len(self.vector),
            'handles': list(self.handles()),
        }


class ContributionRegistry:
    """Append-only set of encrypted contributions.

    Args:
        feature_count: Length every vector must have.
        contributors: Authorized identities.
        lifecycle: State machine gating submissions.
        accepts: Predicate telling whether an element is a valid ciphertext.
        events: Optional audit trail receiving 'submitted' events.
        clock: Timestamp source.
    """

    def __init__(
        self,
        feature_count: int,
        contributors: ContributorRegistry,
        lifecycle: ComputationStateMachine,
        accepts: Callable[[object], bool],
        events=None,
        clock: Callable[[], float] = time.time,
    ):
        if feature_count < 1:
            raise ValueError("feature_count must be >= 1")
        self.feature_count = feature_count
        self.contributors = contributors
        self.lifecycle = lifecycle
        self._accepts = accepts
        self.events = events
        self._clock = clock
        self._contributions: List[Contribution] = []
        self._lock = threading.Lock()

    def submit(self, owner: str, vector, description: Optional[str] = None) -> int:
        """Append a contribution.

        Returns:
            The new contribution id (0, 1, 2, ... in submission order).
        """
        state = self.lifecycle.state
        if self.lifecycle.is_past(ComputationState.SUBMITTING):
            raise ComputationAlreadyStarted('submit', state)
        if state is not ComputationState.SUBMITTING:
            raise InvalidState('submit', state)
        vector = tuple(vector)
        if len(vector) != self.feature_count:
            raise FeatureCountMismatch(self.feature_count, len(vector))
        if not all(self._accepts(element) for element in vector):
            raise InvalidCiphertext("Vector elements must be fresh ciphertexts under the engine's public key")
        if not self.contributors.is_authorized(owner):
            raise NotRegistered(owner)

        with self._lock:
            contribution = Contribution(
                contribution_id=len(self._contributions),
                owner=owner,
                submitted_at=self._clock(),
                vector=vector,
                description=description,
            )
            self._contributions.append(contribution)
        if self.events is not None:
            self.events.emit('submitted', contribution_id=contribution.contribution_id, owner=owner)
        return contribution.contribution_id

    def count(self) -> int:
        with self._lock:
            return len(self._contributions)

    def contributions(self) -> Tuple[Contribution, ...]:
        with self._lock:
            return tuple(self._contributions)

    def vectors(self) -> List[Tuple[object, ...]]:
        return [c.vector for c in self.contributions()]

    def owners(self) -> Tuple[str, ...]:
        seen = []
        for c in self.contributions():
            if c.owner not in seen:
                seen.append(c.owner)
        return tuple(seen)

    def stats(self) -> Dict[str, int]:
        """Contribution counts by status.

        Contributions are pending until the computation consumes them and
        processed afterwards.
        """
        total = self.count()
        processed = total if self.lifecycle.is_past(ComputationState.EXTRACTING) else 0
        return {'total': total, 'pending': total - processed, 'processed': processed}
