"""Encrypted and decrypted PCA results."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..errors import InsufficientPrecision
from .base import PCAModelBase


@dataclass(frozen=True)
class EncryptedCovarianceMatrix:
    """Symmetric matrix of ciphertexts, scaled by 1 / (n * spectral_bound).

    Only the upper triangle is stored; ``entry(i, j)`` mirrors it, so the
    two halves are the same ciphertext objects.
    """
    feature_count: int
    upper: Dict[Tuple[int, int], object]
    n_contributions: int
    spectral_bound: float
    centered: bool = False
    mean: Optional[Tuple[object, ...]] = None

    def entry(self, i: int, j: int):
        return self.upper[(i, j) if i <= j else (j, i)]

    def rows(self) -> List[List[object]]:
        d = self.feature_count
        return [[self.entry(i, j) for j in range(d)] for i in range(d)]

    def diagonal(self) -> List[object]:
        return [self.upper[(i, i)] for i in range(self.feature_count)]

    @property
    def level(self) -> int:
        return min(v.level for v in self.upper.values())


@dataclass(frozen=True)
class EncryptedPCAResult:
    """Encrypted output of the eigen-solver; the only object ever decrypted.

    Plaintext layout of ``ciphertexts()`` (and of the decrypted bytes):
    components row by row, then explained variances, then total variance,
    then the mean when the run was centered.
    """
    principal_components: Tuple[Tuple[object, ...], ...]
    explained_variance: Tuple[object, ...]
    total_variance: object
    mean: Optional[Tuple[object, ...]] = None
    computed: bool = True

    @property
    def n_components(self) -> int:
        return len(self.principal_components)

    @property
    def feature_count(self) -> int:
        return len(self.principal_components[0])

    @property
    def centered(self) -> bool:
        return self.mean is not None

    def ciphertexts(self) -> List[object]:
        values = [c for row in self.principal_components for c in row]
        values.extend(self.explained_variance)
        values.append(self.total_variance)
        if self.mean is not None:
            values.extend(self.mean)
        return values

    def handles(self) -> List[str]:
        return [c.handle for c in self.ciphertexts()]

    def layout(self) -> Dict[str, int]:
        return {
            'n_components': self.n_components,
            'feature_count': self.feature_count,
            'centered': int(self.centered),
            'n_values': len(self.ciphertexts()),
        }

    def decode(self, plaintext: bytes) -> 'PCAResult':
        """Build the plaintext result from decrypted float64 little-endian bytes."""
        values = np.frombuffer(plaintext, dtype='<f8')
        expected = self.layout()['n_values']
        if len(values) != expected:
            raise ValueError(f"Expected {expected} decrypted values, got {len(values)}")
        return PCAResult.from_values(values, self.n_components, self.feature_count, self.centered)


class PCAResult(PCAModelBase):
    """Decrypted PCA result, usable like a fitted plaintext model."""

    @classmethod
    def from_values(cls, values: np.ndarray, n_components: int, feature_count: int, centered: bool) -> 'PCAResult':
        k, d = n_components, feature_count
        result = cls(n_components=k, centered=centered)
        result.components_ = np.array(values[:k * d], dtype=np.float64).reshape(k, d)
        result._set_variance(values[k * d:k * d + k], values[k * d + k])
        if centered:
            result.mean_ = np.array(values[k * d + k + 1:], dtype=np.float64)
        else:
            result.mean_ = np.zeros(d)
        return result

    def check_precision(self, tolerance: float) -> None:
        """Reject values that fixed-point arithmetic could not have produced correctly.

        Every component must be a unit vector and every variance must lie in
        [0, total], both up to ``tolerance``.

        Raises:
            InsufficientPrecision: Describes the first violated condition.
        """
        norms = np.linalg.norm(self.components_, axis=1)
        for j, norm in enumerate(norms):
            if not abs(norm - 1.0) <= tolerance:
                raise InsufficientPrecision(f"Component {j} has norm {norm:.3g} instead of 1")
        total = self.total_variance_
        slack = tolerance * max(abs(total), 1e-12)
        for j, variance in enumerate(self.explained_variance_):
            if not -slack <= variance <= total + slack:
                raise InsufficientPrecision(
                    f"Variance {variance:.3g} of component {j} is outside [0, {total:.3g}]"
                )

    def to_dict(self) -> Dict:
        return {
            'components': self.components_.tolist(),
            'explained_variance': self.explained_variance_.tolist(),
            'explained_variance_ratio': self.explained_variance_ratio_.tolist(),
            'total_variance': self.total_variance_,
            'mean': self.mean_.tolist(),
            'centered': self.centered,
        }
