"""One encrypted PCA run, from contributor registration to decrypted result."""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from ..algorithms.covariance_aggregator import HomomorphicCovarianceAggregator
from ..algorithms.power_iteration import EncryptedPowerIteration
from ..algorithms.results import EncryptedPCAResult, PCAResult
from ..config import EngineConfig
from ..crypto.fixed_point import EncryptedNumber, FixedPointArithmetic
from ..crypto.threshold import DecryptionProof
from ..errors import (
    ComputationAlreadyStarted,
    DecryptionTimeout,
    InsufficientContributions,
    InsufficientPrecision,
    MalformedPlaintext,
    NotComputed,
    ProofVerificationFailed,
    Unauthorized,
)
from .decryption import DecryptionRequest, ThresholdDecryptionCoordinator
from .events import AuditTrail
from .registry import ContributionRegistry, ContributorRegistry
from .state_machine import ComputationState, ComputationStateMachine

logger = logging.getLogger(__name__)

State = ComputationState


class EncryptedPCAPipeline:
    """Facade over registry, aggregator, solver, coordinator and lifecycle.

    All mutations are serialized by one re-entrant lock; separate pipelines
    share nothing.

    Args:
        feature_count: Fixed length of every contribution.
        scheme: Encryption scheme with public material only.
        operator: Identity allowed to open submissions, start the computation,
            enable refresh and request decryption.
        verification_keys: Committee member id -> Ed25519 public key.
        contributors: Authorized contributor identities.
        config: Engine tunables.
        events: Audit trail (a fresh one by default).
        clock: Wall-clock source for timestamps.
        monotonic: Clock for decryption deadlines.
    """

    def __init__(
        self,
        feature_count: int,
        scheme,
        operator: str,
        verification_keys: Dict[str, bytes],
        contributors: Union[ContributorRegistry, Iterable[str]] = (),
        config: Optional[EngineConfig] = None,
        events: Optional[AuditTrail] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self.config.validate(feature_count)
        self.feature_count = feature_count
        self.operator = operator
        self.arithmetic = FixedPointArithmetic(scheme, max_workers=self.config.max_workers)
        self.events = events or AuditTrail(clock)
        if not isinstance(contributors, ContributorRegistry):
            contributors = ContributorRegistry(contributors)
        self.contributors = contributors
        self.lifecycle = ComputationStateMachine(clock)
        self.registry = ContributionRegistry(
            feature_count,
            contributors,
            self.lifecycle,
            accepts=self.arithmetic.accepts,
            events=self.events,
            clock=clock,
        )
        self.coordinator = ThresholdDecryptionCoordinator(
            verification_keys,
            threshold=self.config.decryption_threshold,
            timeout=self.config.decryption_timeout,
            clock=monotonic,
        )
        self._lock = threading.RLock()
        self._refresher = None
        self._result: Optional[EncryptedPCAResult] = None
        self._decrypted: Optional[PCAResult] = None
        self._n_refreshes = 0
        self._schedule: Dict[str, int] = {}

    @property
    def state(self) -> ComputationState:
        return self.lifecycle.state

    def _require_operator(self, caller: str, action: str) -> None:
        if caller != self.operator:
            raise Unauthorized(caller, action)

    def encrypt_vector(self, values: Sequence[float]) -> List[EncryptedNumber]:
        """Encrypt a plaintext vector under the public key (contributor side)."""
        return self.arithmetic.encrypt_vector(values)

    def open_submissions(self, caller: str) -> None:
        with self._lock:
            self._require_operator(caller, 'open submissions')
            self.lifecycle.advance(State.SUBMITTING, 'open submissions')

    def submit(self, owner: str, vector: Sequence[EncryptedNumber], description: Optional[str] = None) -> int:
        with self._lock:
            return self.registry.submit(owner, vector, description)

    def count(self) -> int:
        return self.registry.count()

    def enable_refresh(self, caller: str, refresher: Callable) -> None:
        """Opt in to ciphertext refresh by the committee when depth runs out."""
        with self._lock:
            self._require_operator(caller, 'enable refresh')
            self.lifecycle.require('enable refresh', State.REGISTERING, State.SUBMITTING)
            self._refresher = refresher
            logger.warning("Ciphertext refresh enabled by %s; the committee will see refreshed values", caller)

    def _aggregator(self) -> HomomorphicCovarianceAggregator:
        return HomomorphicCovarianceAggregator(
            self.arithmetic,
            spectral_bound=self.config.spectral_bound,
            centered=self.config.centered,
            min_contributions=self.config.min_contributions,
            events=self.events,
        )

    def start_computation(self, caller: str, n_components: Optional[int] = None, n_iterations: Optional[int] = None) -> None:
        """Aggregate every contribution and extract the encrypted components.

        The schedule is dry-run first and the lifecycle only moves once both
        aggregation and extraction succeeded, so any rejected or failed call
        leaves the state at SUBMITTING and can be retried.
        """
        with self._lock:
            self._require_operator(caller, 'start the computation')
            if self.lifecycle.is_past(State.SUBMITTING):
                raise ComputationAlreadyStarted('start the computation', self.state)
            self.lifecycle.require('start the computation', State.SUBMITTING)

            count = self.registry.count()
            if count < self.config.min_contributions:
                raise InsufficientContributions(count, self.config.min_contributions)

            k = n_components or self.config.n_components or 1
            T = n_iterations or self.config.n_iterations
            if not 1 <= k <= self.feature_count:
                raise ValueError(f"n_components must be in [1, {self.feature_count}], got {k}")
            if T < 1:
                raise ValueError("n_iterations must be >= 1")

            config = replace(self.config, n_iterations=T)
            config.check_precision()
            aggregator = self._aggregator()
            solver = EncryptedPowerIteration.from_config(
                self.arithmetic, config, refresher=self._refresher, events=self.events
            )
            schedule = solver.plan(self.feature_count, k, aggregator.plan(self.feature_count), self.config.centered)

            try:
                covariance = aggregator.aggregate(self.registry.vectors())
                result = solver.solve(covariance, n_components=k)
            except Exception as e:
                self.events.emit('computation_failed', reason=type(e).__name__)
                logger.error("Computation failed before producing a result: %s", e)
                raise

            self.lifecycle.advance(State.AGGREGATING)
            self.lifecycle.advance(State.EXTRACTING)
            self._schedule = schedule
            self._result = result
            self._n_refreshes = solver.n_refreshes
            self.lifecycle.advance(State.COMPUTED)
            self.events.emit('computed', components=k, iterations=T, refreshes=solver.n_refreshes)

    def _computed_result(self) -> EncryptedPCAResult:
        if self._result is None:
            raise NotComputed('read the result', self.state)
        return self._result

    def get_principal_components(self):
        return self._computed_result().principal_components

    def get_explained_variance(self):
        return self._computed_result().explained_variance

    def get_result(self) -> EncryptedPCAResult:
        return self._computed_result()

    def request_decryption(self, caller: str) -> str:
        """Bundle every result ciphertext into one decryption request.

        Calling again while a request is outstanding supersedes it.
        """
        with self._lock:
            self._require_operator(caller, 'request decryption')
            self.lifecycle.require('request decryption', State.COMPUTED, State.DECRYPTION_REQUESTED)
            result = self._computed_result()
            request = self.coordinator.issue(result.ciphertexts())
            self.lifecycle.advance(State.DECRYPTION_REQUESTED, 'request decryption')
            self.events.emit(
                'decryption_requested',
                request_id=request.request_id,
                values=len(request.handles),
                bundle_digest=request.bundle_digest,
            )
            return request.request_id

    def get_request(self, request_id: str) -> DecryptionRequest:
        return self.coordinator.get(request_id)

    def handle_decrypted_result(self, request_id: str, plaintext: bytes, proof: DecryptionProof) -> PCAResult:
        """Verify the committee's answer and publish the plaintext result once.

        The proof is checked before the bytes are interpreted. A verified
        answer that does not decode, or whose components are not unit vectors
        or whose variances fall outside [0, total], is never published.

        Raises:
            ProofVerificationFailed: Bad or insufficient signatures.
            DecryptionTimeout: The request deadline passed.
            MalformedPlaintext: Verified bytes do not match the result layout.
            InsufficientPrecision: The decrypted values fail the precision check.
        """
        with self._lock:
            self.lifecycle.require('accept a decryption', State.DECRYPTION_REQUESTED)
            result = self._computed_result()
            try:
                self.coordinator.complete(request_id, plaintext, proof)
            except ProofVerificationFailed:
                self.events.emit('decryption_failed', request_id=request_id, reason='proof')
                raise
            except DecryptionTimeout:
                self.events.emit('decryption_failed', request_id=request_id, reason='timeout')
                raise

            try:
                decoded = result.decode(plaintext)
            except ValueError as e:
                self.events.emit('decryption_failed', request_id=request_id, reason='malformed')
                raise MalformedPlaintext(f"Decryption of request {request_id} does not match the result layout: {e}") from e
            try:
                decoded.check_precision(self.config.precision_tolerance)
            except InsufficientPrecision:
                self.events.emit('decryption_failed', request_id=request_id, reason='precision')
                logger.error("Decrypted result of request %s failed the precision check", request_id)
                raise

            self.lifecycle.advance(State.DECRYPTED, 'accept a decryption')
            self._decrypted = decoded
            self.events.emit('decrypted', request_id=request_id)
            return decoded

    on_decrypted = handle_decrypted_result

    def cancel_request(self, caller: str, request_id: str) -> None:
        with self._lock:
            self._require_operator(caller, 'cancel a decryption request')
            self.coordinator.cancel(request_id)

    def check_timeouts(self) -> List[str]:
        with self._lock:
            expired = self.coordinator.check_timeouts()
            for request_id in expired:
                self.events.emit('decryption_failed', request_id=request_id, reason='timeout')
            return expired

    @property
    def decrypted_result(self) -> Optional[PCAResult]:
        return self._decrypted

    def is_available(self) -> bool:
        """True while the run can still make progress."""
        return self.state is not State.DECRYPTED

    def snapshot(self) -> Dict:
        """Everything a storage backend needs to persist, without payloads."""
        with self._lock:
            active = self.coordinator.active
            return {
                'state': self.state.value,
                'feature_count': self.feature_count,
                'operator': self.operator,
                'authorized': list(self.contributors.identities()),
                'contributions': [c.to_dict() for c in self.registry.contributions()],
                'result_handles': self._result.handles() if self._result is not None else [],
                'pending_request': active.to_dict() if active is not None else None,
                'history': self.lifecycle.history(),
            }

    def get_computation_cost(self) -> Dict[str, int]:
        """Homomorphic operation counts and schedule of this run."""
        cost = dict(self.arithmetic.stats)
        cost.update({
            'contributions': self.registry.count(),
            'refreshes': self._n_refreshes,
            'result_ciphertexts': len(self._result.ciphertexts()) if self._result is not None else 0,
        })
        cost.update({f'planned_{k}': v for k, v in self._schedule.items()})
        return cost
