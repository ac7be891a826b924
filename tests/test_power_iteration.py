"""Unit tests for the encrypted power iteration solver."""

import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from fedpca.algorithms import EncryptedPowerIteration, HomomorphicCovarianceAggregator, ReferencePCA
from fedpca.crypto import DepthProbeScheme, FixedPointArithmetic, ProbeRefresher
from fedpca.errors import DepthBudgetExceeded, Unauthorized
from fedpca.metrics import sign_aligned_error

OPERATOR = 'operator'


def aggregate(arithmetic, data, spectral_bound=1.0):
    vectors = [arithmetic.encrypt_vector(row) for row in data]
    return HomomorphicCovarianceAggregator(arithmetic, spectral_bound=spectral_bound).aggregate(vectors)


def decrypt_result(committee, result):
    components = np.array([committee.decrypt_values(row) for row in result.principal_components])
    variances = committee.decrypt_values(result.explained_variance)
    total = committee.decrypt_values([result.total_variance])[0]
    return components, variances, total


class TestEncryptedPowerIteration:
    """Tests for encrypted eigen-extraction."""

    def test_two_point_scenario(self, arithmetic, committee):
        covariance = aggregate(arithmetic, [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        result = EncryptedPowerIteration(arithmetic, n_iterations=10).solve(covariance, n_components=1)
        assert result.computed

        components, variances, total = decrypt_result(committee, result)
        expected = np.array([[1.0, 1.0, 0.0]]) / np.sqrt(2)
        assert sign_aligned_error(expected, components)[0] < 1e-4
        assert variances[0] == pytest.approx(0.5, abs=1e-4)
        assert total == pytest.approx(1.0, abs=1e-6)

    def test_matches_reference_pca(self, arithmetic, committee):
        rng = np.random.RandomState(3)
        data = np.clip(np.array([0.6, 0.3, 0.5]) + 0.1 * rng.randn(6, 3), 0, 1)
        norm_bound = np.max(np.linalg.norm(data, axis=1))
        covariance = aggregate(arithmetic, data, spectral_bound=norm_bound ** 2)
        result = EncryptedPowerIteration(arithmetic, n_iterations=10).solve(covariance, n_components=1)

        components, variances, total = decrypt_result(committee, result)
        reference = ReferencePCA(1).fit([data])
        assert sign_aligned_error(reference.components_, components)[0] < 1e-3
        assert variances[0] == pytest.approx(reference.explained_variance_[0], rel=1e-3)
        assert total == pytest.approx(reference.total_variance_, rel=1e-6)

    def test_depth_accounting(self, arithmetic):
        solver = EncryptedPowerIteration(arithmetic, n_iterations=10, newton_iterations=3, final_newton_iterations=6)
        assert solver.iteration_depth == 8
        assert solver.finalize_depth == 16
        assert solver.component_depth() == 96

    def test_plan_matches_real_levels(self, arithmetic):
        covariance = aggregate(arithmetic, [[1.0, 0.0], [0.0, 1.0]])
        solver = EncryptedPowerIteration(arithmetic, n_iterations=2)
        planned = solver.plan(2, 1, covariance.level)
        result = solver.solve(covariance, n_components=1)
        assert planned['refreshes'] == 0
        assert planned['output_level'] == arithmetic.level(result.ciphertexts())

    def test_second_component_exceeds_depth_without_refresh(self, arithmetic):
        solver = EncryptedPowerIteration(arithmetic, n_iterations=10)
        with pytest.raises(DepthBudgetExceeded) as exc_info:
            solver.plan(3, 2, arithmetic.max_level - 2)
        assert exc_info.value.required == solver.component_depth()
        assert exc_info.value.available < exc_info.value.required

    def test_schedule_deeper_than_scheme_fails_even_with_refresh(self, arithmetic, committee):
        solver = EncryptedPowerIteration(
            arithmetic,
            newton_iterations=50,
            refresher=committee.refresher(OPERATOR),
        )
        with pytest.raises(DepthBudgetExceeded):
            solver.plan(3, 1, arithmetic.max_level - 2)

    def test_refresh_extracts_second_component(self, arithmetic, committee):
        covariance = aggregate(arithmetic, [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        solver = EncryptedPowerIteration(arithmetic, n_iterations=10, refresher=committee.refresher(OPERATOR))
        assert solver.plan(3, 2, covariance.level)['refreshes'] == 1

        result = solver.solve(covariance, n_components=2)
        assert solver.n_refreshes == 1

        components, variances, _ = decrypt_result(committee, result)
        expected = np.array([[1.0, 1.0, 0.0], [1.0, -1.0, 0.0]]) / np.sqrt(2)
        assert np.all(sign_aligned_error(expected, components) < 1e-3)
        assert np.allclose(variances, [0.5, 0.5], atol=1e-3)

    def test_refresh_only_needs_the_next_step(self):
        scheme = DepthProbeScheme(8)
        shallow = FixedPointArithmetic(scheme)
        kwargs = {'n_iterations': 3, 'newton_iterations': 1, 'final_newton_iterations': 1}
        solver = EncryptedPowerIteration(shallow, refresher=ProbeRefresher(scheme), **kwargs)
        assert solver.iteration_depth == 4
        assert solver.finalize_depth == 6
        assert solver.iteration_depth + solver.finalize_depth > scheme.max_level
        assert solver.plan(3, 1, 6) == {'refreshes': 2, 'output_level': 2}

        with pytest.raises(DepthBudgetExceeded) as exc_info:
            EncryptedPowerIteration(shallow, **kwargs).plan(3, 1, 6)
        assert exc_info.value.required == 3 * 4 + 6
        assert exc_info.value.available == 6

    def test_refresh_requires_operator(self, arithmetic, committee):
        with pytest.raises(Unauthorized):
            committee.refresh([arithmetic.encrypt(1.0)], 'mallory')

    def test_seed_vectors(self, arithmetic):
        solver = EncryptedPowerIteration(arithmetic, random_state=7)
        assert np.allclose(solver.seed(4, 0), np.full(4, 0.5))
        first = solver.seed(4, 1)
        assert np.linalg.norm(first) == pytest.approx(1.0)
        assert np.allclose(first, solver.seed(4, 1))
        random_start = EncryptedPowerIteration(arithmetic, seed_vector='random', random_state=7)
        assert not np.allclose(random_start.seed(4, 0), np.full(4, 0.5))

    def test_invalid_arguments(self, arithmetic):
        with pytest.raises(ValueError):
            EncryptedPowerIteration(arithmetic, seed_vector='zeros')
        covariance = aggregate(arithmetic, [[1.0, 0.0], [0.0, 1.0]])
        with pytest.raises(ValueError):
            EncryptedPowerIteration(arithmetic).solve(covariance, n_components=3)
