from .state_machine import ComputationState, ComputationStateMachine, TRANSITIONS
from .events import AuditEvent, AuditTrail, EVENT_KINDS
from .registry import Contribution, ContributionRegistry, ContributorRegistry
from .decryption import DecryptionRequest, RequestStatus, ThresholdDecryptionCoordinator
from .pipeline import EncryptedPCAPipeline

__all__ = [
    'ComputationState',
    'ComputationStateMachine',
    'TRANSITIONS',
    'AuditEvent',
    'AuditTrail',
    'EVENT_KINDS',
    'Contribution',
    'ContributionRegistry',
    'ContributorRegistry',
    'DecryptionRequest',
    'RequestStatus',
    'ThresholdDecryptionCoordinator',
    'EncryptedPCAPipeline',
]
