from .base import PCAModelBase
from .reference_pca import ReferencePCA
from .results import EncryptedCovarianceMatrix, EncryptedPCAResult, PCAResult
from .covariance_aggregator import HomomorphicCovarianceAggregator
from .power_iteration import EncryptedPowerIteration
from .clipping import clip_data, encrypt_rows

__all__ = [
    'PCAModelBase',
    'ReferencePCA',
    'EncryptedCovarianceMatrix',
    'EncryptedPCAResult',
    'PCAResult',
    'HomomorphicCovarianceAggregator',
    'EncryptedPowerIteration',
    'clip_data',
    'encrypt_rows',
]
