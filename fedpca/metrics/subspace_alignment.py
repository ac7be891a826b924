"""Agreement between decrypted components and a plaintext reference."""

import numpy as np


def _as_columns(U: np.ndarray, rows: bool = True) -> np.ndarray:
    U = np.atleast_2d(np.asarray(U, dtype=np.float64))
    return U.T if rows else U


def principal_angles(U: np.ndarray, V: np.ndarray, rows: bool = True) -> np.ndarray:
    """Principal angles between the spans of two component sets.

    Args:
        U: Components, shape (k, n_features) when ``rows`` is True (the
            layout of ``components_``), (n_features, k) otherwise.
        V: Components, same layout as U.
        rows: Whether components are stored one per row.

    Returns:
        Angles in radians in [0, pi/2], sorted ascending.
    """
    U, _ = np.linalg.qr(_as_columns(U, rows))
    V, _ = np.linalg.qr(_as_columns(V, rows))
    s = np.linalg.svd(U.T @ V, compute_uv=False)
    return np.sort(np.arccos(np.clip(s, -1.0, 1.0)))


def subspace_distance(U: np.ndarray, V: np.ndarray, metric: str = 'projection', rows: bool = True) -> float:
    """Distance between spans.

    Args:
        metric: 'projection' (sine of the largest angle) or 'grassmann'
            (root of summed squared angles).
        rows: Whether components are stored one per row.
    """
    angles = principal_angles(U, V, rows)
    if metric == 'projection':
        return float(np.sin(angles[-1])) if len(angles) else 0.0
    if metric == 'grassmann':
        return float(np.sqrt(np.sum(angles ** 2)))
    raise ValueError(f"Unknown metric: {metric}")


def component_correlation(U: np.ndarray, V: np.ndarray) -> np.ndarray:
    """Absolute cosine between corresponding components (sign is arbitrary in PCA)."""
    U = np.atleast_2d(U)
    V = np.atleast_2d(V)
    k = min(U.shape[0], V.shape[0])
    norms = np.linalg.norm(U[:k], axis=1) * np.linalg.norm(V[:k], axis=1) + 1e-12
    return np.abs(np.sum(U[:k] * V[:k], axis=1)) / norms


def sign_aligned_error(U: np.ndarray, V: np.ndarray) -> np.ndarray:
    """Euclidean error per component after flipping V's signs to match U.

    Returns:
        Array of length min(k_U, k_V).
    """
    U = np.atleast_2d(U)
    V = np.atleast_2d(V)
    k = min(U.shape[0], V.shape[0])
    signs = np.sign(np.sum(U[:k] * V[:k], axis=1))
    signs[signs == 0] = 1.0
    return np.linalg.norm(U[:k] - signs[:, None] * V[:k], axis=1)


def angle_to_degrees(angles: np.ndarray) -> np.ndarray:
    return np.degrees(angles)
