"""Engine configuration."""

import math
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np

from .crypto.fixed_point import FixedPointArithmetic
from .errors import InsufficientPrecision


SEED_VECTORS = ('balanced', 'random')

# Public Newton seeds tried when sizing a schedule; seed**2 must stay below 3
SEED_GRID = (1.0, 1.1, 1.2, 1.3, 1.4, 1.5, 1.6, 1.7)


@dataclass
class EngineConfig:
    """Tunables for one encrypted PCA run.

    Accuracy/cost trade-offs:
        n_iterations: Power iterations per component (fixed, never data-dependent).
        newton_iterations: Newton steps of the per-iteration renormalization.
            Each step costs two levels; with few steps the iterate shrinks when
            the dominant eigenvalue is small relative to ``norm_bound**2``.
        final_newton_iterations: Newton steps of the final normalization that
            produces the published unit component.
        norm_bound: Public bound on the L2 norm of every contribution. The
            second-moment matrix is divided by ``norm_bound**2`` so that its
            spectrum lies in [0, 1], the domain of the public Newton seed.
        eigenvalue_bound: Tighter public bound on the largest eigenvalue, used
            instead of ``norm_bound**2`` when given. Centered runs usually
            need it: their eigenvalues are far below the squared norm bound.
        min_eigenvalue_ratio: Public lower bound on the eigenvalue of every
            extracted component divided by the spectral bound. The Newton
            schedule must renormalize correctly for every ratio in
            [min_eigenvalue_ratio, 1].
        precision_tolerance: Largest accepted deviation of a published
            component norm from 1, both for the schedule check and for the
            decrypted result.
    """
    n_components: Optional[int] = None
    n_iterations: int = 10
    newton_iterations: int = 3
    final_newton_iterations: int = 6
    inverse_sqrt_seed: float = 1.0
    norm_bound: float = 1.0
    eigenvalue_bound: Optional[float] = None
    min_eigenvalue_ratio: float = 0.5
    precision_tolerance: float = 0.01
    centered: bool = False
    seed_vector: str = 'balanced'
    random_state: int = 0

    min_contributions: int = 2
    max_workers: int = 1

    decryption_threshold: Optional[int] = None
    decryption_timeout: float = 300.0

    def validate(self, feature_count: int) -> None:
        if self.n_components is not None and not 1 <= self.n_components <= feature_count:
            raise ValueError(f"n_components must be in [1, {feature_count}], got {self.n_components}")
        if self.n_iterations < 1:
            raise ValueError("n_iterations must be >= 1")
        if self.newton_iterations < 1 or self.final_newton_iterations < 1:
            raise ValueError("Newton iteration counts must be >= 1")
        if not 0 < self.inverse_sqrt_seed ** 2 < 3:
            raise ValueError("inverse_sqrt_seed must satisfy 0 < seed**2 < 3")
        if self.norm_bound <= 0:
            raise ValueError("norm_bound must be positive")
        if self.eigenvalue_bound is not None and self.eigenvalue_bound <= 0:
            raise ValueError("eigenvalue_bound must be positive")
        if not 0 < self.min_eigenvalue_ratio <= 1:
            raise ValueError("min_eigenvalue_ratio must be in (0, 1]")
        if not 0 < self.precision_tolerance < 1:
            raise ValueError("precision_tolerance must be in (0, 1)")
        if self.seed_vector not in SEED_VECTORS:
            raise ValueError(f"Unknown seed_vector: {self.seed_vector}. Use one of {SEED_VECTORS}")
        if self.min_contributions < 2:
            raise ValueError("min_contributions must be >= 2")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.decryption_timeout <= 0:
            raise ValueError("decryption_timeout must be positive")
        self.check_precision()

    @property
    def spectral_bound(self) -> float:
        """Public upper bound on the largest eigenvalue of the decomposed matrix."""
        if self.eigenvalue_bound is not None:
            return self.eigenvalue_bound
        return self.norm_bound ** 2

    def _norm_error(self, ratio: float) -> float:
        inv = FixedPointArithmetic.inverse_sqrt_reference
        seed = self.inverse_sqrt_seed
        norm = 1.0
        for _ in range(self.n_iterations):
            s = ratio * norm
            norm = s * inv(s * s, self.newton_iterations, seed)
        norm = norm * inv(norm * norm, self.final_newton_iterations, seed)
        if not math.isfinite(norm):
            return math.inf
        return abs(1.0 - norm)

    def renormalization_error(self, samples: int = 17) -> float:
        """Worst deviation from 1 of a published component norm.

        Follows the norm of the iterate through the whole schedule in exact
        arithmetic, for eigenvalue ratios spread over
        [min_eigenvalue_ratio, 1].
        """
        ratios = np.linspace(self.min_eigenvalue_ratio, 1.0, samples)
        return max(self._norm_error(float(r)) for r in ratios)

    def check_precision(self) -> None:
        """Reject a Newton schedule that cannot cover ``min_eigenvalue_ratio``.

        Raises:
            InsufficientPrecision: The worst-case published norm is more than
                ``precision_tolerance`` away from 1.
        """
        error = self.renormalization_error()
        if error > self.precision_tolerance:
            raise InsufficientPrecision(
                f"{self.newton_iterations} Newton steps from seed {self.inverse_sqrt_seed} leave a "
                f"norm error of {error:.3g} at eigenvalue ratio {self.min_eigenvalue_ratio}; "
                f"tolerance is {self.precision_tolerance}"
            )

    @classmethod
    def for_eigenvalue_ratio(
        cls,
        min_eigenvalue_ratio: float,
        max_newton_iterations: int = 12,
        **kwargs,
    ) -> 'EngineConfig':
        """Cheapest Newton schedule that covers ``min_eigenvalue_ratio``.

        Tries 1, 2, ... Newton steps per renormalization and, for each count,
        every seed of ``SEED_GRID``; returns the first precise configuration.

        Raises:
            InsufficientPrecision: No schedule of up to
                ``max_newton_iterations`` steps is precise enough.
        """
        base = cls(min_eigenvalue_ratio=min_eigenvalue_ratio, **kwargs)
        for steps in range(1, max_newton_iterations + 1):
            candidates = [replace(base, newton_iterations=steps, inverse_sqrt_seed=s) for s in SEED_GRID]
            best = min(candidates, key=lambda c: c.renormalization_error())
            if best.renormalization_error() <= base.precision_tolerance:
                return best
        raise InsufficientPrecision(
            f"No schedule of up to {max_newton_iterations} Newton steps covers "
            f"eigenvalue ratio {min_eigenvalue_ratio}"
        )
