from .lwe import LeveledLWEScheme, LWEParams, LWECiphertext, LWEKeyShare
from .probe import DepthProbeScheme, ProbeRefresher
from .fixed_point import FixedPointArithmetic, EncryptedNumber
from .tenseal_scheme import TenSEALScheme, TenSEALParams, available_backends
from .threshold import (
    DecryptionCommittee,
    CommitteeMember,
    DecryptionProof,
    bundle_digest,
    transcript,
    verify_signature,
)

__all__ = [
    'LeveledLWEScheme',
    'LWEParams',
    'LWECiphertext',
    'LWEKeyShare',
    'DepthProbeScheme',
    'ProbeRefresher',
    'FixedPointArithmetic',
    'EncryptedNumber',
    'TenSEALScheme',
    'TenSEALParams',
    'available_backends',
    'DecryptionCommittee',
    'CommitteeMember',
    'DecryptionProof',
    'bundle_digest',
    'transcript',
    'verify_signature',
]
