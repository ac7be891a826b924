"""Accuracy experiment for encrypted federated PCA.

Runs the full encrypted pipeline (submission, aggregation, encrypted power
iteration, threshold decryption) on synthetic contributions and compares the
decrypted result with plaintext PCA on the pooled data, across power
iteration and Newton step settings.
"""

import sys
import time
import argparse
import logging
import numpy as np
from pathlib import Path
from typing import Dict, List, Optional

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fedpca.algorithms import ReferencePCA, clip_data
from fedpca.config import EngineConfig
from fedpca.crypto import DecryptionCommittee, LeveledLWEScheme, LWEParams
from fedpca.engine import EncryptedPCAPipeline
from fedpca.errors import DepthBudgetExceeded, InsufficientPrecision
from fedpca.metrics import angle_to_degrees, compare_explained_variance, principal_angles, sign_aligned_error

OPERATOR = 'operator'


def generate_contributions(
    n_contributors: int,
    n_features: int,
    noise: float = 0.15,
    seed: int = 42,
) -> np.ndarray:
    """Synthetic bounded feature vectors, one row per contributor.

    Rows are a shared profile in [0.2, 0.8] plus Gaussian noise, clipped to
    [0, 1] like normalized sensor or survey features.
    """
    rng = np.random.RandomState(seed)
    profile = rng.uniform(0.2, 0.8, n_features)
    data = profile + noise * rng.randn(n_contributors, n_features)
    return np.clip(data, 0.0, 1.0)


def run_encrypted_pca(
    data: np.ndarray,
    config: EngineConfig,
    params: LWEParams,
    n_members: int = 3,
    refresh: bool = False,
    seed: Optional[int] = None,
) -> Dict:
    """Run one encrypted PCA end to end and decrypt the result."""
    n_contributors, n_features = data.shape
    scheme, shares = LeveledLWEScheme.keygen(params, n_shares=n_members, seed=seed)
    committee = DecryptionCommittee.from_shares(scheme, shares, operator=OPERATOR)
    owners = [f"contributor-{i}" for i in range(n_contributors)]

    pipeline = EncryptedPCAPipeline(
        n_features, scheme, OPERATOR, committee.verification_keys(), contributors=owners, config=config
    )
    if refresh:
        pipeline.enable_refresh(OPERATOR, committee.refresher(OPERATOR))
    pipeline.open_submissions(OPERATOR)
    for owner, row in zip(owners, clip_data(data, config.norm_bound)):
        pipeline.submit(owner, pipeline.encrypt_vector(row))

    start_time = time.time()
    pipeline.start_computation(OPERATOR)
    compute_time = time.time() - start_time

    request_id = pipeline.request_decryption(OPERATOR)
    plaintext, proof = committee.decrypt_request(pipeline.get_request(request_id))
    result = pipeline.handle_decrypted_result(request_id, plaintext, proof)

    return {
        'result': result,
        'compute_time': compute_time,
        'cost': pipeline.get_computation_cost(),
    }


def evaluate(result, reference: ReferencePCA) -> Dict:
    angles = angle_to_degrees(principal_angles(result.components_, reference.components_))
    variance = compare_explained_variance(result, reference)
    return {
        'max_angle': float(np.max(angles)),
        'max_component_error': float(np.max(sign_aligned_error(reference.components_, result.components_))),
        'max_variance_error': variance['max_variance_error'],
        'total_variance_error': variance['total_variance_error'],
    }


def run_experiment(
    n_contributors: int = 20,
    n_features: int = 4,
    n_components: int = 1,
    iterations: Optional[List[int]] = None,
    newton: Optional[List[int]] = None,
    centered: bool = False,
    eigenvalue_bound: Optional[float] = None,
    min_eigenvalue_ratio: float = 0.5,
    refresh: bool = False,
    seed: int = 42,
    verbose: bool = True,
) -> Dict:
    """Sweep power iteration and Newton settings.

    Args:
        n_contributors: Number of contributors (one vector each).
        n_features: Feature count.
        n_components: Components to extract.
        iterations: Power iteration counts to try.
        newton: Newton step counts per renormalization to try.
        centered: Decompose the covariance instead of the second moment.
        eigenvalue_bound: Public bound on the largest eigenvalue. Centered
            runs default to the pooled covariance trace.
        min_eigenvalue_ratio: Public lower bound on the top eigenvalue over
            the spectral bound; settings whose Newton steps cannot cover it
            are reported as errors.
        refresh: Allow committee refresh when a schedule runs out of depth.
        seed: Random seed.
        verbose: Print progress.

    Returns:
        Dictionary with one entry per setting.
    """
    iterations = iterations or [4, 6, 10]
    newton = newton or [3]
    data = generate_contributions(n_contributors, n_features, seed=seed)
    norm_bound = float(np.max(np.linalg.norm(data, axis=1)))
    if centered and eigenvalue_bound is None:
        eigenvalue_bound = float(np.trace(np.cov(data.T, bias=True)))

    reference = ReferencePCA(n_components, centered=centered).fit([data])
    params = LWEParams()

    results = {
        'config': {
            'n_contributors': n_contributors,
            'n_features': n_features,
            'n_components': n_components,
            'norm_bound': norm_bound,
            'centered': centered,
            'seed': seed,
        },
        'runs': {},
    }

    for T in iterations:
        for K in newton:
            if verbose:
                print(f"Running T={T}, newton={K}...")
            config = EngineConfig(
                n_components=n_components,
                n_iterations=T,
                newton_iterations=K,
                norm_bound=norm_bound,
                eigenvalue_bound=eigenvalue_bound,
                min_eigenvalue_ratio=min_eigenvalue_ratio,
                centered=centered,
            )
            try:
                run = run_encrypted_pca(data, config, params, refresh=refresh, seed=seed)
            except (DepthBudgetExceeded, InsufficientPrecision) as e:
                results['runs'][(T, K)] = {'error': str(e)}
                continue
            metrics = evaluate(run['result'], reference)
            metrics['compute_time'] = run['compute_time']
            metrics['refreshes'] = run['cost']['refreshes']
            metrics['multiplications'] = run['cost']['mul']
            results['runs'][(T, K)] = metrics

    return results


def print_results_summary(results: Dict):
    """Print a formatted summary of experiment results."""
    config = results['config']
    print("\n" + "=" * 72)
    print("ENCRYPTED PCA ACCURACY")
    print("=" * 72)
    print(f"Contributors: {config['n_contributors']}  Features: {config['n_features']}  "
          f"Components: {config['n_components']}  Centered: {config['centered']}")
    print(f"Norm bound: {config['norm_bound']:.4f}")
    print("-" * 72)
    print(f"{'T':<4} {'Newton':<7} {'Max angle':<11} {'Comp err':<11} {'Var err':<11} {'Refresh':<8} {'Time (s)':<8}")
    print("-" * 72)

    for (T, K), run in results['runs'].items():
        if 'error' in run:
            print(f"{T:<4} {K:<7} {run['error']}")
            continue
        print(f"{T:<4} {K:<7} "
              f"{run['max_angle']:<11.2e} "
              f"{run['max_component_error']:<11.2e} "
              f"{run['max_variance_error']:<11.2e} "
              f"{run['refreshes']:<8} "
              f"{run['compute_time']:<8.2f}")

    print("=" * 72)


def main():
    parser = argparse.ArgumentParser(description='Measure encrypted PCA accuracy against plaintext PCA')
    parser.add_argument('--contributors', type=int, default=20,
                       help='Number of contributors')
    parser.add_argument('--features', type=int, default=4,
                       help='Feature count')
    parser.add_argument('--n-components', type=int, default=1,
                       help='Number of components')
    parser.add_argument('--iterations', type=int, nargs='+', default=[4, 6, 10],
                       help='Power iteration counts to try')
    parser.add_argument('--newton', type=int, nargs='+', default=[3],
                       help='Newton steps per renormalization to try')
    parser.add_argument('--centered', action='store_true',
                       help='Use the covariance instead of the second moment')
    parser.add_argument('--eigenvalue-bound', type=float, default=None,
                       help='Public bound on the largest eigenvalue')
    parser.add_argument('--min-eigenvalue-ratio', type=float, default=0.5,
                       help='Lower bound on the top eigenvalue over the spectral bound')
    parser.add_argument('--refresh', action='store_true',
                       help='Allow committee refresh when depth runs out')
    parser.add_argument('--seed', type=int, default=42,
                       help='Random seed')
    parser.add_argument('--verbose-log', action='store_true',
                       help='Log engine events')

    args = parser.parse_args()
    if args.verbose_log:
        logging.basicConfig(level=logging.INFO)

    results = run_experiment(
        n_contributors=args.contributors,
        n_features=args.features,
        n_components=args.n_components,
        iterations=args.iterations,
        newton=args.newton,
        centered=args.centered,
        eigenvalue_bound=args.eigenvalue_bound,
        min_eigenvalue_ratio=args.min_eigenvalue_ratio,
        refresh=args.refresh,
        seed=args.seed,
        verbose=True,
    )

    print_results_summary(results)


if __name__ == '__main__':
    main()
