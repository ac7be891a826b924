"""Base class for plaintext PCA models (reference fits and decrypted results)."""

from typing import Optional
import numpy as np


class PCAModelBase:
    """Common surface of a fitted PCA model.

    Attributes:
        n_components: Number of principal components.
        centered: Whether the model was computed on mean-centered data.
        components_: Principal components (n_components x n_features), one per row.
        mean_: Mean vector (n_features,); zeros for uncentered models.
        explained_variance_: Variance along each component.
        explained_variance_ratio_: explained_variance_ / total_variance_.
        total_variance_: Trace of the decomposed matrix.
    """

    def __init__(self, n_components: int, centered: bool = False):
        self.n_components = n_components
        self.centered = centered
        self.components_: Optional[np.ndarray] = None
        self.mean_: Optional[np.ndarray] = None
        self.explained_variance_: Optional[np.ndarray] = None
        self.explained_variance_ratio_: Optional[np.ndarray] = None
        self.total_variance_: Optional[float] = None

    def _check_fitted(self) -> None:
        if self.components_ is None or self.mean_ is None:
            raise ValueError("Model has not been fitted. Call fit() first.")

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Project data onto the principal components.

        Args:
            X: Data array of shape (n_samples, n_features).

        Returns:
            Projections of shape (n_samples, n_components).
        """
        self._check_fitted()
        return (X - self.mean_) @ self.components_.T

    def inverse_transform(self, X_transformed: np.ndarray) -> np.ndarray:
        """Map projections back to feature space.

        Args:
            X_transformed: Array of shape (n_samples, n_components).

        Returns:
            Reconstruction of shape (n_samples, n_features).
        """
        self._check_fitted()
        return X_transformed @ self.components_ + self.mean_

    def _set_variance(self, explained: np.ndarray, total: float) -> None:
        self.explained_variance_ = np.asarray(explained, dtype=np.float64)
        self.total_variance_ = float(total)
        if total > 0:
            self.explained_variance_ratio_ = self.explained_variance_ / total
        else:
            self.explained_variance_ratio_ = np.zeros(len(self.explained_variance_))
