"""Encrypted power iteration with deflation.

The encrypted counterpart of subspace iteration: one component at a time,
a fixed number of matrix-vector products, each followed by a
renormalization through a polynomial inverse square root. Every step is
data-independent (no branching on encrypted values, no early stopping), so
the schedule and its multiplicative depth are known in advance.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EngineConfig, SEED_VECTORS
from ..crypto.fixed_point import EncryptedNumber, FixedPointArithmetic
from ..crypto.probe import DepthProbeScheme, ProbeRefresher
from ..errors import DepthBudgetExceeded
from .results import EncryptedCovarianceMatrix, EncryptedPCAResult

logger = logging.getLogger(__name__)

Upper = Dict[Tuple[int, int], EncryptedNumber]


class EncryptedPowerIteration:
    """Top-k eigenpairs of an encrypted symmetric matrix.

    Per component j:
        1. v = public unit seed (balanced 1/sqrt(d) for j = 0, pseudo-random
           from RandomState(random_state + j) otherwise), encrypted.
        2. Repeat n_iterations times: w = S v, v = w / ||w||.
        3. u = v / ||v|| with more Newton steps, lambda = u^T S u.
        4. S <- S - lambda u u^T.

    Explained variances and the total variance are reported in the units of
    the original data, i.e. multiplied back by the spectral bound.

    Args:
        arithmetic: Ciphertext arithmetic.
        n_iterations: Power iterations per component.
        newton_iterations: Newton steps per renormalization.
        final_newton_iterations: Newton steps of the final normalization.
        inverse_sqrt_seed: Public Newton seed.
        seed_vector: 'balanced' or 'random' start for the first component.
        random_state: Base seed of the pseudo-random start vectors.
        refresher: Optional callable re-encrypting a list of values at the
            top level. Without it, running out of depth is an error.
        events: Optional audit trail receiving 'refreshed' events.
    """

    def __init__(
        self,
        arithmetic: FixedPointArithmetic,
        n_iterations: int = 10,
        newton_iterations: int = 3,
        final_newton_iterations: int = 6,
        inverse_sqrt_seed: float = 1.0,
        seed_vector: str = 'balanced',
        random_state: int = 0,
        refresher: Optional[Callable[[Sequence[EncryptedNumber]], List[EncryptedNumber]]] = None,
        events=None,
    ):
        if seed_vector not in SEED_VECTORS:
            raise ValueError(f"Unknown seed_vector: {seed_vector}. Use one of {SEED_VECTORS}")
        self.arithmetic = arithmetic
        self.n_iterations = n_iterations
        self.newton_iterations = newton_iterations
        self.final_newton_iterations = final_newton_iterations
        self.inverse_sqrt_seed = inverse_sqrt_seed
        self.seed_vector = seed_vector
        self.random_state = random_state
        self.refresher = refresher
        self.events = events
        self.n_refreshes = 0

    @classmethod
    def from_config(cls, arithmetic: FixedPointArithmetic, config: EngineConfig, refresher=None, events=None):
        return cls(
            arithmetic,
            n_iterations=config.n_iterations,
            newton_iterations=config.newton_iterations,
            final_newton_iterations=config.final_newton_iterations,
            inverse_sqrt_seed=config.inverse_sqrt_seed,
            seed_vector=config.seed_vector,
            random_state=config.random_state,
            refresher=refresher,
            events=events,
        )

    @property
    def iteration_depth(self) -> int:
        # S v, w^T w, inverse sqrt, w * y
        return 2 + FixedPointArithmetic.inverse_sqrt_depth(self.newton_iterations) + 1

    @property
    def finalize_depth(self) -> int:
        # v^T v, inverse sqrt, v * y, S u, u^T S u, lambda * c (deflation fits alongside)
        return 1 + FixedPointArithmetic.inverse_sqrt_depth(self.final_newton_iterations) + 4

    def component_depth(self) -> int:
        return self.n_iterations * self.iteration_depth + self.finalize_depth

    def seed(self, feature_count: int, component: int) -> np.ndarray:
        if component == 0 and self.seed_vector == 'balanced':
            return np.ones(feature_count) / np.sqrt(feature_count)
        rng = np.random.RandomState(self.random_state + component)
        v = rng.randn(feature_count)
        return v / np.linalg.norm(v)

    def _level(self, v: Sequence[EncryptedNumber], upper: Upper) -> int:
        return min(self.arithmetic.level(v), self.arithmetic.level(upper.values()))

    def _ensure(self, v: List[EncryptedNumber], upper: Upper, needed: int, required: int):
        """Make sure the next step can run.

        Without a refresher the whole rest of the component (``required``
        levels) must fit. With one, only the next step (``needed`` levels)
        must, and the values are refreshed when it does not.
        """
        available = self._level(v, upper)
        if self.refresher is None:
            if available < required:
                raise DepthBudgetExceeded(required=required, available=available)
            return v, upper
        if available >= needed:
            return v, upper
        if needed > self.arithmetic.max_level:
            raise DepthBudgetExceeded(required=needed, available=self.arithmetic.max_level)

        keys = list(upper.keys())
        refreshed = self.refresher(list(v) + [upper[key] for key in keys])
        self.n_refreshes += 1
        if self.events is not None:
            self.events.emit('refreshed', values=len(refreshed))
        logger.info("Refreshed %d ciphertexts at level %d", len(refreshed), available)
        v = list(refreshed[:len(v)])
        upper = dict(zip(keys, refreshed[len(v):]))
        return v, upper

    def _matvec(self, upper: Upper, v: Sequence[EncryptedNumber]) -> List[EncryptedNumber]:
        d = len(v)
        rows = [[upper[(i, j) if i <= j else (j, i)] for j in range(d)] for i in range(d)]
        return self.arithmetic.map(lambda row: self.arithmetic.dot(row, v), rows)

    def _normalize(self, w: Sequence[EncryptedNumber], iterations: int) -> List[EncryptedNumber]:
        arith = self.arithmetic
        y = arith.approx_inverse_sqrt(arith.dot(w, w), iterations, self.inverse_sqrt_seed)
        return arith.map(lambda wi: arith.mul(wi, y), w)

    def _deflate(self, upper: Upper, u: Sequence[EncryptedNumber], lam: EncryptedNumber) -> Upper:
        arith = self.arithmetic
        keys = list(upper.keys())
        corrections = arith.map(lambda key: arith.mul(arith.mul(u[key[0]], u[key[1]]), lam), keys)
        return {key: arith.sub(upper[key], c) for key, c in zip(keys, corrections)}

    def solve(
        self,
        covariance: EncryptedCovarianceMatrix,
        n_components: int = 1,
        n_iterations: Optional[int] = None,
    ) -> EncryptedPCAResult:
        """Extract the top ``n_components`` eigenpairs.

        Args:
            covariance: Encrypted matrix from the aggregator.
            n_components: Number of components k (1 <= k <= feature_count).
            n_iterations: Power iterations per component (defaults to the
                solver's ``n_iterations``).

        Returns:
            EncryptedPCAResult with computed=True.
        """
        d = covariance.feature_count
        if not 1 <= n_components <= d:
            raise ValueError(f"n_components must be in [1, {d}], got {n_components}")
        T = n_iterations or self.n_iterations
        arith = self.arithmetic
        c = float(covariance.spectral_bound)
        upper: Upper = dict(covariance.upper)

        total_variance = arith.scalar_mul(arith.tree_sum(covariance.diagonal()), c)

        components = []
        variances = []
        for j in range(n_components):
            v = arith.encrypt_vector(self.seed(d, j))
            for t in range(T):
                required = (T - t) * self.iteration_depth + self.finalize_depth
                v, upper = self._ensure(v, upper, self.iteration_depth, required)
                v = self._normalize(self._matvec(upper, v), self.newton_iterations)

            v, upper = self._ensure(v, upper, self.finalize_depth, self.finalize_depth)
            u = self._normalize(v, self.final_newton_iterations)
            lam = arith.dot(u, self._matvec(upper, u))

            components.append(tuple(u))
            variances.append(arith.scalar_mul(lam, c))
            if j < n_components - 1:
                upper = self._deflate(upper, u, lam)
            logger.debug("Extracted component %d of %d", j + 1, n_components)

        return EncryptedPCAResult(
            principal_components=tuple(components),
            explained_variance=tuple(variances),
            total_variance=total_variance,
            mean=covariance.mean,
            computed=True,
        )

    def plan(self, feature_count: int, n_components: int, input_level: int, centered: bool = False) -> Dict[str, int]:
        """Dry-run ``solve`` on level-only ciphertexts.

        Raises DepthBudgetExceeded exactly when the real run would.

        Returns:
            Dictionary with the number of refreshes the run will need and
            the level left on the published values.
        """
        scheme = DepthProbeScheme.mirroring(self.arithmetic.scheme)
        probe = FixedPointArithmetic(scheme)
        refresher = ProbeRefresher(scheme) if self.refresher is not None else None
        dry = EncryptedPowerIteration(
            probe,
            n_iterations=self.n_iterations,
            newton_iterations=self.newton_iterations,
            final_newton_iterations=self.final_newton_iterations,
            inverse_sqrt_seed=self.inverse_sqrt_seed,
            seed_vector=self.seed_vector,
            random_state=self.random_state,
            refresher=refresher,
        )
        entry = probe.wrap(scheme.at_level(input_level))
        upper = {(i, j): entry for i in range(feature_count) for j in range(i, feature_count)}
        mean = tuple(entry for _ in range(feature_count)) if centered else None
        covariance = EncryptedCovarianceMatrix(feature_count, upper, 2, 1.0, centered, mean)
        result = dry.solve(covariance, n_components)
        return {
            'refreshes': dry.n_refreshes,
            'output_level': probe.level(result.ciphertexts()),
        }
