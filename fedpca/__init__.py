"""Encrypted federated PCA."""

from .config import EngineConfig
from .crypto import DecryptionCommittee, FixedPointArithmetic, LeveledLWEScheme, LWEParams
from .engine import ComputationState, EncryptedPCAPipeline

__version__ = '0.1.0'

__all__ = [
    'EngineConfig',
    'DecryptionCommittee',
    'FixedPointArithmetic',
    'LeveledLWEScheme',
    'LWEParams',
    'ComputationState',
    'EncryptedPCAPipeline',
]
