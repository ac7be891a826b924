"""Decryption committee: key-share holders that jointly decrypt results.

Each member holds one additive share of the secret key and an Ed25519
signing key. A decryption request is served by combining every member's
partial decryption; the members then sign a transcript binding the request,
the exact ciphertexts and the resulting plaintext. The engine only ever sees
the plaintext bytes and the signatures.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from ..errors import Unauthorized, ValidationError

logger = logging.getLogger(__name__)


def bundle_digest(ciphertexts: Sequence) -> str:
    """Digest over the serialized ciphertexts of a result, in layout order."""
    h = hashlib.sha256()
    for ct in ciphertexts:
        data = ct.serialize()
        h.update(len(data).to_bytes(8, 'big'))
        h.update(data)
    return h.hexdigest()


def transcript(request_id: str, digest: str, plaintext: bytes) -> bytes:
    h = hashlib.sha256()
    h.update(request_id.encode())
    h.update(b'|')
    h.update(digest.encode())
    h.update(b'|')
    h.update(plaintext)
    return h.digest()


def public_key_bytes(key: ed25519.Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


@dataclass(frozen=True)
class DecryptionProof:
    """Member signatures over the decryption transcript."""
    signatures: Tuple[Tuple[str, bytes], ...]

    def signers(self) -> List[str]:
        return [member_id for member_id, _ in self.signatures]


@dataclass
class CommitteeMember:
    member_id: str
    share: object = field(repr=False)
    signing_key: ed25519.Ed25519PrivateKey = field(repr=False)

    @property
    def verification_key(self) -> bytes:
        return public_key_bytes(self.signing_key.public_key())

    def sign(self, message: bytes) -> bytes:
        return self.signing_key.sign(message)


class DecryptionCommittee:
    """Holders of the secret key shares.

    Args:
        scheme: The scheme the shares belong to (needs ``partial_decrypt``
            and ``combine``).
        members: One member per key share.
        operator: Identity allowed to ask for ciphertext refreshes.
    """

    def __init__(self, scheme, members: Sequence[CommitteeMember], operator: Optional[str] = None):
        if not members:
            raise ValueError("A committee needs at least one member")
        self.scheme = scheme
        self.members = list(members)
        self.operator = operator
        self.refresh_count = 0

    @classmethod
    def from_shares(cls, scheme, shares: Sequence, operator: Optional[str] = None) -> 'DecryptionCommittee':
        members = [
            CommitteeMember(
                member_id=f"member-{i}",
                share=share,
                signing_key=ed25519.Ed25519PrivateKey.generate(),
            )
            for i, share in enumerate(shares)
        ]
        return cls(scheme, members, operator=operator)

    def verification_keys(self) -> Dict[str, bytes]:
        return {m.member_id: m.verification_key for m in self.members}

    def _decrypt(self, ciphertext) -> float:
        partials = [self.scheme.partial_decrypt(ciphertext, m.share) for m in self.members]
        return self.scheme.combine(ciphertext, partials)

    def decrypt_values(self, values: Sequence) -> np.ndarray:
        return np.array([self._decrypt(v.ciphertext) for v in values], dtype=np.float64)

    def decrypt_request(self, request) -> Tuple[bytes, DecryptionProof]:
        """Serve a decryption request.

        Args:
            request: Pending ``DecryptionRequest`` from the coordinator.

        Returns:
            (plaintext, proof) where plaintext is the float64 little-endian
            encoding of the values in the request's layout order.
        """
        if bundle_digest(request.ciphertexts) != request.bundle_digest:
            raise ValidationError(f"Ciphertext bundle of request {request.request_id} does not match its digest")
        values = self.decrypt_values(request.ciphertexts)
        plaintext = values.astype('<f8').tobytes()
        message = transcript(request.request_id, request.bundle_digest, plaintext)
        proof = DecryptionProof(tuple((m.member_id, m.sign(message)) for m in self.members))
        logger.info("Committee decrypted request %s (%d values)", request.request_id, len(values))
        return plaintext, proof

    def refresh(self, values: Sequence, caller: str) -> List:
        """Re-encrypt ``values`` at the top level.

        The committee learns the refreshed values; only the operator may ask.
        """
        if self.operator is None or caller != self.operator:
            raise Unauthorized(caller, 'refresh ciphertexts')
        self.refresh_count += 1
        return [v.arithmetic.encrypt(self._decrypt(v.ciphertext)) for v in values]

    def refresher(self, caller: str) -> Callable[[Sequence], List]:
        """Bind the caller identity so the solver can refresh without knowing it."""
        return lambda values: self.refresh(values, caller)
