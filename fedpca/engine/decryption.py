"""Threshold decryption requests and proof verification."""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..crypto.threshold import DecryptionProof, bundle_digest, transcript, verify_signature
from ..errors import DecryptionTimeout, ProofVerificationFailed, UnknownRequest

logger = logging.getLogger(__name__)


class RequestStatus(Enum):
    ISSUED = 'issued'
    FULFILLED = 'fulfilled'
    TIMED_OUT = 'timed_out'
    CANCELLED = 'cancelled'


@dataclass
class DecryptionRequest:
    request_id: str
    handles: Tuple[str, ...]
    bundle_digest: str
    ciphertexts: Tuple[object, ...] = field(repr=False)
    issued_at: float
    deadline: float
    status: RequestStatus = RequestStatus.ISSUED
    failed_attempts: int = 0

    def to_dict(self) -> Dict:
        return {
            'request_id': self.request_id,
            'handles': list(self.handles),
            'bundle_digest': self.bundle_digest,
            'issued_at': self.issued_at,
            'deadline': self.deadline,
            'status': self.status.value,
            'failed_attempts': self.failed_attempts,
        }


class ThresholdDecryptionCoordinator:
    """Issues decryption requests and verifies the committee's answers.

    A proof is valid when at least ``threshold`` distinct registered members
    signed sha256(request_id | bundle_digest | plaintext) and no listed
    signature fails to verify.

    Args:
        verification_keys: Member id -> raw Ed25519 public key.
        threshold: Distinct valid signatures required (default: all members).
        timeout: Seconds a request stays answerable.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        verification_keys: Dict[str, bytes],
        threshold: Optional[int] = None,
        timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not verification_keys:
            raise ValueError("At least one committee verification key is required")
        threshold = len(verification_keys) if threshold is None else threshold
        if not 1 <= threshold <= len(verification_keys):
            raise ValueError(f"threshold must be in [1, {len(verification_keys)}], got {threshold}")
        self.verification_keys = dict(verification_keys)
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock
        self._requests: Dict[str, DecryptionRequest] = {}
        self._active: Optional[str] = None
        self._lock = threading.Lock()

    def issue(self, ciphertexts: Sequence) -> DecryptionRequest:
        """Open a request for ``ciphertexts``, cancelling any outstanding one."""
        with self._lock:
            if self._active is not None:
                previous = self._requests[self._active]
                if previous.status is RequestStatus.ISSUED:
                    previous.status = RequestStatus.CANCELLED
            now = self._clock()
            request = DecryptionRequest(
                request_id=secrets.token_hex(16),
                handles=tuple(c.handle for c in ciphertexts),
                bundle_digest=bundle_digest(ciphertexts),
                ciphertexts=tuple(ciphertexts),
                issued_at=now,
                deadline=now + self.timeout,
            )
            self._requests[request.request_id] = request
            self._active = request.request_id
        logger.info("Issued decryption request %s for %d ciphertexts", request.request_id, len(ciphertexts))
        return request

    def get(self, request_id: str) -> DecryptionRequest:
        try:
            return self._requests[request_id]
        except KeyError:
            raise UnknownRequest(request_id) from None

    @property
    def active(self) -> Optional[DecryptionRequest]:
        return self._requests.get(self._active) if self._active else None

    def verify(self, request: DecryptionRequest, plaintext: bytes, proof: DecryptionProof) -> bool:
        message = transcript(request.request_id, request.bundle_digest, plaintext)
        valid = set()
        for member_id, signature in proof.signatures:
            key = self.verification_keys.get(member_id)
            if key is None or not verify_signature(key, message, signature):
                return False
            valid.add(member_id)
        return len(valid) >= self.threshold

    def complete(self, request_id: str, plaintext: bytes, proof: DecryptionProof) -> DecryptionRequest:
        """Accept the committee's answer to an issued request.

        Raises:
            UnknownRequest: No such request, or it is no longer issued.
            DecryptionTimeout: The deadline passed; the request is TIMED_OUT.
            ProofVerificationFailed: Bad or insufficient signatures; the
                request stays ISSUED and can still be answered.
        """
        with self._lock:
            request = self.get(request_id)
            if request.status is not RequestStatus.ISSUED:
                raise UnknownRequest(request_id)
            if self._clock() > request.deadline:
                request.status = RequestStatus.TIMED_OUT
                raise DecryptionTimeout(request_id)
            if not self.verify(request, plaintext, proof):
                request.failed_attempts += 1
                raise ProofVerificationFailed(
                    f"Decryption proof for request {request_id} did not verify "
                    f"(attempt {request.failed_attempts})"
                )
            request.status = RequestStatus.FULFILLED
            self._active = None
        return request

    def cancel(self, request_id: str) -> None:
        with self._lock:
            request = self.get(request_id)
            if request.status is RequestStatus.ISSUED:
                request.status = RequestStatus.CANCELLED
            if self._active == request_id:
                self._active = None

    def check_timeouts(self) -> List[str]:
        """Mark overdue requests TIMED_OUT and return their ids."""
        now = self._clock()
        expired = []
        with self._lock:
            for request in self._requests.values():
                if request.status is RequestStatus.ISSUED and now > request.deadline:
                    request.status = RequestStatus.TIMED_OUT
                    expired.append(request.request_id)
        return expired
