"""Plaintext PCA on pooled data.

Used to validate decrypted results: it computes exactly what the encrypted
pipeline approximates, with the same normalization conventions.
"""

from typing import List
import numpy as np

from .base import PCAModelBase


class ReferencePCA(PCAModelBase):
    """Eigendecomposition of the pooled second-moment or covariance matrix.

    With ``centered=False`` the decomposed matrix is (1/n) sum x x^T, with
    ``centered=True`` it is the covariance (1/n) sum (x - mu)(x - mu)^T.
    Eigenvalues use n, not n-1, in both cases.
    """

    def fit(self, client_data: List[np.ndarray]) -> 'ReferencePCA':
        """Fit on data pooled from every contributor.

        Args:
            client_data: List of arrays of shape (n_samples_k, n_features).

        Returns:
            self: Fitted model.
        """
        all_data = np.vstack(client_data)
        n_samples, n_features = all_data.shape

        if self.centered:
            self.mean_ = np.mean(all_data, axis=0)
        else:
            self.mean_ = np.zeros(n_features)

        centered = all_data - self.mean_
        matrix = (centered.T @ centered) / n_samples

        eigenvalues, eigenvectors = np.linalg.eigh(matrix)

        # Sort by eigenvalues (descending)
        idx = np.argsort(eigenvalues)[::-1]
        eigenvalues = eigenvalues[idx]
        eigenvectors = eigenvectors[:, idx]

        self.components_ = eigenvectors[:, :self.n_components].T
        self.matrix_ = matrix
        self._set_variance(eigenvalues[:self.n_components], np.trace(matrix))
        return self

    def fit_single(self, data: np.ndarray) -> 'ReferencePCA':
        return self.fit([data])
