"""Homomorphic covariance aggregation.

Combines encrypted contributions into one encrypted second-moment (or
covariance) matrix, the way pooled-covariance PCA combines plaintext
statistics, except that every product and sum happens on ciphertexts and
the division by the public count is a plaintext multiply.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

from ..crypto.fixed_point import EncryptedNumber, FixedPointArithmetic
from ..crypto.probe import DepthProbeScheme
from ..errors import InsufficientContributions
from .results import EncryptedCovarianceMatrix

logger = logging.getLogger(__name__)


class HomomorphicCovarianceAggregator:
    """Encrypted pooled second moment.

    Uncentered (default):  S = (1/n) sum_i x_i x_i^T
    Centered:              S = (1/n) sum_i x_i x_i^T - mu mu^T

    The returned matrix holds S / c, where c is the public spectral bound
    (norm_bound ** 2), so that its eigenvalues lie in [0, 1]. Both divisions
    are folded into one plaintext multiply per entry.

    Map step: the d(d+1)/2 upper-triangle products of each contribution.
    Reduce step: a pairwise tree sum per entry across contributions. Ciphertext
    addition is exact, so the result does not depend on contribution order.
    """

    def __init__(
        self,
        arithmetic: FixedPointArithmetic,
        spectral_bound: float = 1.0,
        centered: bool = False,
        min_contributions: int = 2,
        events=None,
    ):
        if spectral_bound <= 0:
            raise ValueError("spectral_bound must be positive")
        self.arithmetic = arithmetic
        self.spectral_bound = spectral_bound
        self.centered = centered
        self.min_contributions = max(2, min_contributions)
        self.events = events

    def _emit(self, kind: str, **fields) -> None:
        if self.events is not None:
            self.events.emit(kind, **fields)

    def _outer_upper(self, vector: Sequence[EncryptedNumber]) -> List[EncryptedNumber]:
        d = len(vector)
        return [self.arithmetic.mul(vector[i], vector[j]) for i in range(d) for j in range(i, d)]

    def aggregate(self, vectors: Sequence[Sequence[EncryptedNumber]]) -> EncryptedCovarianceMatrix:
        """Aggregate encrypted vectors into an encrypted scaled second moment.

        Args:
            vectors: One encrypted feature vector per contribution.

        Returns:
            EncryptedCovarianceMatrix scaled by 1 / (n * spectral_bound).
        """
        n = len(vectors)
        if n < self.min_contributions:
            raise InsufficientContributions(n, self.min_contributions)
        d = len(vectors[0])
        if any(len(v) != d for v in vectors):
            raise ValueError("All contribution vectors must have the same length")

        self._emit('aggregation_started', contributions=n, feature_count=d)
        arith = self.arithmetic
        pairs: List[Tuple[int, int]] = [(i, j) for i in range(d) for j in range(i, d)]

        # Map: per-contribution outer products
        products = arith.map(self._outer_upper, vectors)

        # Reduce: entrywise tree sum, then one plaintext multiply by 1/(n*c)
        factor = 1.0 / (n * self.spectral_bound)
        upper: Dict[Tuple[int, int], EncryptedNumber] = {}
        sums = arith.map(lambda p: arith.tree_sum([prod[p] for prod in products]), range(len(pairs)))
        for pair, total in zip(pairs, sums):
            upper[pair] = arith.scalar_mul(total, factor)

        mean: Optional[Tuple[EncryptedNumber, ...]] = None
        if self.centered:
            column_sums = [arith.tree_sum([v[i] for v in vectors]) for i in range(d)]
            mean = tuple(arith.scalar_mul(s, 1.0 / n) for s in column_sums)
            scaled_mean = [arith.scalar_mul(s, 1.0 / (n * math.sqrt(self.spectral_bound))) for s in column_sums]
            for (i, j) in pairs:
                upper[(i, j)] = arith.sub(upper[(i, j)], arith.mul(scaled_mean[i], scaled_mean[j]))

        self._emit('aggregation_complete', contributions=n, entries=len(pairs))
        logger.debug("Aggregated %d contributions into %d encrypted entries", n, len(pairs))
        return EncryptedCovarianceMatrix(
            feature_count=d,
            upper=upper,
            n_contributions=n,
            spectral_bound=self.spectral_bound,
            centered=self.centered,
            mean=mean,
        )

    def plan(self, feature_count: int) -> int:
        """Dry-run aggregation on level-only ciphertexts.

        Returns:
            Level of the aggregated matrix.
        """
        probe = FixedPointArithmetic(DepthProbeScheme.mirroring(self.arithmetic.scheme))
        dry = HomomorphicCovarianceAggregator(probe, self.spectral_bound, self.centered)
        vectors = [probe.encrypt_vector([0.0] * feature_count) for _ in range(2)]
        return dry.aggregate(vectors).level
