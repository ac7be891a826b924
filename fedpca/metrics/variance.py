"""Explained-variance comparisons between fitted models."""

from typing import Dict

import numpy as np


def explained_variance_error(model, reference) -> np.ndarray:
    """Relative error of each explained variance against the reference."""
    k = min(len(model.explained_variance_), len(reference.explained_variance_))
    ref = reference.explained_variance_[:k]
    return np.abs(model.explained_variance_[:k] - ref) / (np.abs(ref) + 1e-12)


def cumulative_explained_variance(model) -> np.ndarray:
    return np.cumsum(model.explained_variance_ratio_)


def compare_explained_variance(model, reference) -> Dict[str, float]:
    """Summary of variance agreement between a decrypted and a reference model.

    Args:
        model: Model being evaluated (e.g. a decrypted PCAResult).
        reference: Plaintext baseline with the same conventions.

    Returns:
        Dictionary with the worst relative error on explained variance, the
        total-variance relative error and the gap in retained variance ratio.
    """
    errors = explained_variance_error(model, reference)
    total_ref = reference.total_variance_
    return {
        'max_variance_error': float(np.max(errors)),
        'total_variance_error': float(abs(model.total_variance_ - total_ref) / (abs(total_ref) + 1e-12)),
        'retained_ratio_gap': float(abs(
            cumulative_explained_variance(model)[-1] - cumulative_explained_variance(reference)[-1]
        )),
    }
