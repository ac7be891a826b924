"""Audit trail of engine events.

Events carry ids, counts, timestamps and opaque handles only. A field of
any other type is rejected so that ciphertext payloads and plaintext values
can never leak into the trail or the log.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

EVENT_KINDS = (
    'submitted',
    'aggregation_started',
    'aggregation_complete',
    'computation_failed',
    'computed',
    'refreshed',
    'decryption_requested',
    'decryption_failed',
    'decrypted',
)

_ALLOWED_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class AuditEvent:
    kind: str
    timestamp: float
    fields: Dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {'kind': self.kind, 'timestamp': self.timestamp, **self.fields}


def _check_field(name: str, value) -> None:
    if isinstance(value, _ALLOWED_TYPES):
        return
    if isinstance(value, tuple) and all(isinstance(v, str) for v in value):
        return
    raise TypeError(f"Audit field {name!r} must be an id, count, timestamp or handle, got {type(value).__name__}")


class AuditTrail:
    """Append-only event log with synchronous subscribers."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._events: List[AuditEvent] = []
        self._subscribers: List[Callable[[AuditEvent], None]] = []
        self._lock = threading.Lock()

    def emit(self, kind: str, **fields) -> AuditEvent:
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        for name, value in fields.items():
            _check_field(name, value)
        event = AuditEvent(kind, self._clock(), dict(fields))
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        logger.info("%s %s", kind, fields)
        for callback in subscribers:
            callback(event)
        return event

    def subscribe(self, callback: Callable[[AuditEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def events(self) -> Tuple[AuditEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def of_kind(self, kind: str) -> List[AuditEvent]:
        return [e for e in self.events() if e.kind == kind]
