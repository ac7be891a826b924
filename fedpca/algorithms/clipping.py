"""Contributor-side preparation of feature vectors."""

from typing import List
import numpy as np


def clip_data(data: np.ndarray, norm_bound: float) -> np.ndarray:
    """Scale every row down to L2 norm at most ``norm_bound``.

    The encrypted solver relies on every contribution respecting the public
    norm bound; rows already inside the ball are returned unchanged.

    Args:
        data: Array of shape (n_samples, n_features) or a single vector.
        norm_bound: Maximum L2 norm.

    Returns:
        Clipped data with the input's shape.
    """
    if norm_bound <= 0:
        raise ValueError("norm_bound must be positive")
    data = np.asarray(data, dtype=np.float64)
    single = data.ndim == 1
    rows = data.reshape(1, -1) if single else data
    norms = np.linalg.norm(rows, axis=1, keepdims=True)
    scale = np.minimum(1.0, norm_bound / (norms + 1e-12))
    clipped = rows * scale
    return clipped[0] if single else clipped


def encrypt_rows(arithmetic, data: np.ndarray, norm_bound: float) -> List[list]:
    """Clip and encrypt each row with the public key, one vector per row."""
    return [arithmetic.encrypt_vector(row) for row in clip_data(np.atleast_2d(data), norm_bound)]
