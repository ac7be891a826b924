"""End-to-end tests for the encrypted PCA pipeline."""

import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from fedpca import EncryptedPCAPipeline, EngineConfig
from fedpca.algorithms import ReferencePCA
from fedpca.crypto import DecryptionProof, transcript
from fedpca.engine import ComputationState, RequestStatus
from fedpca.errors import (
    ComputationAlreadyStarted,
    DecryptionTimeout,
    DepthBudgetExceeded,
    InsufficientContributions,
    InsufficientPrecision,
    InvalidState,
    MalformedPlaintext,
    NotComputed,
    ProofVerificationFailed,
    Unauthorized,
    UnknownRequest,
)
from fedpca.metrics import sign_aligned_error

OPERATOR = 'operator'
TWO_POINTS = {'alice': [1.0, 0.0, 0.0], 'bob': [0.0, 1.0, 0.0]}
SMALL_POINTS = {'alice': [0.3, 0.0, 0.0], 'bob': [0.0, 0.1, 0.0], 'carol': [0.2, 0.05, 0.0]}


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_pipeline(scheme, committee, config=None, monotonic=None, contributors=('alice', 'bob', 'carol')):
    kwargs = {'monotonic': monotonic} if monotonic is not None else {}
    return EncryptedPCAPipeline(
        feature_count=3,
        scheme=scheme,
        operator=OPERATOR,
        verification_keys=committee.verification_keys(),
        contributors=contributors,
        config=config,
        **kwargs,
    )


def submit_all(pipeline, data=TWO_POINTS):
    pipeline.open_submissions(OPERATOR)
    for owner, values in data.items():
        pipeline.submit(owner, pipeline.encrypt_vector(values))


def computed_pipeline(scheme, committee, n_iterations=3, **kwargs):
    pipeline = make_pipeline(scheme, committee, **kwargs)
    submit_all(pipeline)
    pipeline.start_computation(OPERATOR, n_components=1, n_iterations=n_iterations)
    return pipeline


def answer(pipeline, committee, request_id):
    return committee.decrypt_request(pipeline.get_request(request_id))


class TestEndToEnd:
    """Full run from registration to decrypted result."""

    def test_two_point_scenario(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        assert pipeline.state is ComputationState.REGISTERING
        submit_all(pipeline)
        assert pipeline.count() == 2

        pipeline.start_computation(OPERATOR, n_components=1)
        assert pipeline.state is ComputationState.COMPUTED

        request_id = pipeline.request_decryption(OPERATOR)
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED
        plaintext, proof = answer(pipeline, committee, request_id)
        result = pipeline.handle_decrypted_result(request_id, plaintext, proof)

        assert pipeline.state is ComputationState.DECRYPTED
        assert not pipeline.is_available()
        expected = np.array([[1.0, 1.0, 0.0]]) / np.sqrt(2)
        assert sign_aligned_error(expected, result.components_)[0] < 1e-4
        assert result.explained_variance_[0] == pytest.approx(0.5, abs=1e-4)
        assert result.total_variance_ == pytest.approx(1.0, abs=1e-6)
        assert pipeline.decrypted_result is result

        with pytest.raises(InvalidState):
            pipeline.handle_decrypted_result(request_id, plaintext, proof)

    def test_matches_plaintext_projection(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee, n_iterations=10)
        request_id = pipeline.request_decryption(OPERATOR)
        result = pipeline.on_decrypted(request_id, *answer(pipeline, committee, request_id))
        projected = result.transform(np.array([[1.0, 0.0, 0.0]]))
        assert abs(projected[0, 0]) == pytest.approx(1 / np.sqrt(2), abs=1e-4)
        assert result.to_dict()['centered'] is False

    def test_centered_run_publishes_mean(self, scheme, committee):
        config = EngineConfig(centered=True, eigenvalue_bound=0.5)
        pipeline = make_pipeline(scheme, committee, config=config)
        submit_all(pipeline, {'alice': [1.0, 0.0, 0.0], 'bob': [0.0, 0.5, 0.0]})
        pipeline.start_computation(OPERATOR, n_components=1, n_iterations=10)
        assert pipeline.get_result().centered

        request_id = pipeline.request_decryption(OPERATOR)
        result = pipeline.handle_decrypted_result(request_id, *answer(pipeline, committee, request_id))
        assert np.allclose(result.mean_, [0.5, 0.25, 0.0], atol=1e-6)
        expected = np.array([[2.0, -1.0, 0.0]]) / np.sqrt(5)
        assert sign_aligned_error(expected, result.components_)[0] < 1e-3
        assert result.explained_variance_[0] == pytest.approx(0.3125, abs=1e-3)

    def test_small_eigenvalue_is_not_published(self, scheme, committee):
        # Top eigenvalue 0.044 against norm_bound**2 = 1: the iterate vanishes
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline, SMALL_POINTS)
        pipeline.start_computation(OPERATOR, n_components=1)
        request_id = pipeline.request_decryption(OPERATOR)

        with pytest.raises(InsufficientPrecision):
            pipeline.handle_decrypted_result(request_id, *answer(pipeline, committee, request_id))
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED
        assert pipeline.decrypted_result is None
        assert pipeline.events.of_kind('decryption_failed')[-1].fields['reason'] == 'precision'
        assert pipeline.events.of_kind('decrypted') == []

    def test_small_eigenvalue_with_tight_bound(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee, config=EngineConfig(eigenvalue_bound=0.05))
        submit_all(pipeline, SMALL_POINTS)
        pipeline.start_computation(OPERATOR, n_components=1)
        request_id = pipeline.request_decryption(OPERATOR)
        result = pipeline.handle_decrypted_result(request_id, *answer(pipeline, committee, request_id))

        reference = ReferencePCA(1).fit([np.array(list(SMALL_POINTS.values()))])
        assert sign_aligned_error(reference.components_, result.components_)[0] < 1e-4
        assert np.allclose(np.abs(result.components_[0]), [0.9964, 0.0843, 0.0], atol=1e-3)
        assert result.explained_variance_[0] == pytest.approx(reference.explained_variance_[0], rel=1e-4)
        assert result.explained_variance_[0] == pytest.approx(0.0436, abs=1e-4)


class TestComputationGate:
    """Tests for starting the computation."""

    def test_results_not_available_before_compute(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline)
        with pytest.raises(NotComputed):
            pipeline.get_principal_components()
        with pytest.raises(NotComputed):
            pipeline.get_explained_variance()

    def test_result_getters_are_idempotent(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        assert pipeline.get_principal_components() is pipeline.get_principal_components()
        assert pipeline.get_result() is pipeline.get_result()
        assert len(pipeline.get_explained_variance()) == 1

    @pytest.mark.parametrize('n', [0, 1])
    def test_insufficient_contributions(self, scheme, committee, n):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline, dict(list(TWO_POINTS.items())[:n]))
        with pytest.raises(InsufficientContributions):
            pipeline.start_computation(OPERATOR)
        assert pipeline.state is ComputationState.SUBMITTING

    def test_only_operator_controls_the_run(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        with pytest.raises(Unauthorized):
            pipeline.open_submissions('alice')
        submit_all(pipeline)
        with pytest.raises(Unauthorized):
            pipeline.start_computation('alice')
        with pytest.raises(Unauthorized):
            pipeline.enable_refresh('alice', committee.refresher(OPERATOR))
        assert pipeline.state is ComputationState.SUBMITTING

    def test_gate_closes_after_start(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        with pytest.raises(ComputationAlreadyStarted):
            pipeline.submit('carol', pipeline.encrypt_vector([0.0, 0.0, 1.0]))
        with pytest.raises(ComputationAlreadyStarted):
            pipeline.start_computation(OPERATOR)
        assert pipeline.count() == 2

    def test_depth_rejection_leaves_state_unchanged(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline)
        with pytest.raises(DepthBudgetExceeded):
            pipeline.start_computation(OPERATOR, n_components=2)
        assert pipeline.state is ComputationState.SUBMITTING
        assert pipeline.events.of_kind('aggregation_started') == []

        pipeline.start_computation(OPERATOR, n_components=1, n_iterations=3)
        assert pipeline.state is ComputationState.COMPUTED

    def test_failed_computation_can_be_retried(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        # Bound to a non-operator identity: the dry run passes, the real refresh is refused
        pipeline.enable_refresh(OPERATOR, committee.refresher('alice'))
        submit_all(pipeline)
        with pytest.raises(Unauthorized):
            pipeline.start_computation(OPERATOR, n_components=2)
        assert pipeline.state is ComputationState.SUBMITTING
        assert [state for state, _ in pipeline.lifecycle.history()] == ['registering', 'submitting']
        assert pipeline.events.of_kind('computation_failed')[0].fields == {'reason': 'Unauthorized'}
        assert pipeline.events.of_kind('computed') == []
        with pytest.raises(NotComputed):
            pipeline.get_result()

        pipeline.start_computation(OPERATOR, n_components=1, n_iterations=3)
        assert pipeline.state is ComputationState.COMPUTED
        assert pipeline.get_computation_cost()['refreshes'] == 0

    def test_precision_rejection_at_construction(self, scheme, committee):
        with pytest.raises(InsufficientPrecision):
            make_pipeline(scheme, committee, config=EngineConfig(min_eigenvalue_ratio=0.05))

    def test_invalid_component_count(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline)
        with pytest.raises(ValueError):
            pipeline.start_computation(OPERATOR, n_components=4)
        assert pipeline.state is ComputationState.SUBMITTING

    def test_refresh_extends_the_schedule(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        pipeline.enable_refresh(OPERATOR, committee.refresher(OPERATOR))
        submit_all(pipeline)
        pipeline.start_computation(OPERATOR, n_components=2)

        assert len(pipeline.get_principal_components()) == 2
        assert len(pipeline.events.of_kind('refreshed')) == 1
        cost = pipeline.get_computation_cost()
        assert cost['refreshes'] == cost['planned_refreshes'] == 1
        with pytest.raises(InvalidState):
            pipeline.enable_refresh(OPERATOR, committee.refresher(OPERATOR))


class TestDecryption:
    """Tests for the decryption request protocol."""

    def test_request_requires_operator_and_result(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline)
        with pytest.raises(InvalidState):
            pipeline.request_decryption(OPERATOR)
        pipeline.start_computation(OPERATOR, n_components=1, n_iterations=3)
        with pytest.raises(Unauthorized):
            pipeline.request_decryption('alice')

    def test_tampered_proof_then_valid_retry(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        request_id = pipeline.request_decryption(OPERATOR)
        plaintext, proof = answer(pipeline, committee, request_id)

        forged = np.frombuffer(plaintext, dtype='<f8').copy()
        forged[0] += 0.25
        with pytest.raises(ProofVerificationFailed):
            pipeline.handle_decrypted_result(request_id, forged.astype('<f8').tobytes(), proof)
        with pytest.raises(ProofVerificationFailed):
            pipeline.handle_decrypted_result(request_id, plaintext, DecryptionProof(proof.signatures[1:]))
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED
        assert pipeline.get_request(request_id).failed_attempts == 2
        assert [e.fields['reason'] for e in pipeline.events.of_kind('decryption_failed')] == ['proof', 'proof']

        pipeline.handle_decrypted_result(request_id, plaintext, proof)
        assert pipeline.state is ComputationState.DECRYPTED

    def test_wrong_length_plaintext_is_rejected(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        request_id = pipeline.request_decryption(OPERATOR)
        plaintext, proof = answer(pipeline, committee, request_id)
        with pytest.raises(ProofVerificationFailed):
            pipeline.handle_decrypted_result(request_id, plaintext[:-3], proof)
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED
        assert pipeline.get_request(request_id).failed_attempts == 1
        assert [e.fields['reason'] for e in pipeline.events.of_kind('decryption_failed')] == ['proof']

        pipeline.handle_decrypted_result(request_id, plaintext, proof)
        assert pipeline.state is ComputationState.DECRYPTED

    def test_signed_plaintext_with_wrong_layout(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        request_id = pipeline.request_decryption(OPERATOR)
        request = pipeline.get_request(request_id)
        truncated, _ = answer(pipeline, committee, request_id)
        truncated = truncated[:-8]
        message = transcript(request_id, request.bundle_digest, truncated)
        proof = DecryptionProof(tuple((m.member_id, m.sign(message)) for m in committee.members))

        with pytest.raises(MalformedPlaintext):
            pipeline.handle_decrypted_result(request_id, truncated, proof)
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED
        assert pipeline.events.of_kind('decryption_failed')[-1].fields['reason'] == 'malformed'

        retry_id = pipeline.request_decryption(OPERATOR)
        pipeline.handle_decrypted_result(retry_id, *answer(pipeline, committee, retry_id))
        assert pipeline.state is ComputationState.DECRYPTED

    def test_timeout_then_new_request(self, scheme, committee):
        clock = FakeClock()
        pipeline = computed_pipeline(scheme, committee, monotonic=clock)
        request_id = pipeline.request_decryption(OPERATOR)
        plaintext, proof = answer(pipeline, committee, request_id)

        clock.now += pipeline.config.decryption_timeout + 1
        with pytest.raises(DecryptionTimeout):
            pipeline.handle_decrypted_result(request_id, plaintext, proof)
        assert pipeline.get_request(request_id).status is RequestStatus.TIMED_OUT
        assert pipeline.state is ComputationState.DECRYPTION_REQUESTED

        retry_id = pipeline.request_decryption(OPERATOR)
        assert retry_id != request_id
        pipeline.handle_decrypted_result(retry_id, *answer(pipeline, committee, retry_id))
        assert pipeline.state is ComputationState.DECRYPTED

    def test_check_timeouts_emits_failure(self, scheme, committee):
        clock = FakeClock()
        pipeline = computed_pipeline(scheme, committee, monotonic=clock)
        request_id = pipeline.request_decryption(OPERATOR)
        assert pipeline.check_timeouts() == []
        clock.now += pipeline.config.decryption_timeout + 1
        assert pipeline.check_timeouts() == [request_id]
        assert pipeline.events.of_kind('decryption_failed')[-1].fields == {'request_id': request_id, 'reason': 'timeout'}

    def test_superseded_request_is_unknown(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        first = pipeline.request_decryption(OPERATOR)
        stale_answer = answer(pipeline, committee, first)
        second = pipeline.request_decryption(OPERATOR)
        assert pipeline.get_request(first).status is RequestStatus.CANCELLED

        with pytest.raises(UnknownRequest):
            pipeline.handle_decrypted_result(first, *stale_answer)
        pipeline.handle_decrypted_result(second, *answer(pipeline, committee, second))
        assert pipeline.state is ComputationState.DECRYPTED

    def test_cancel_request(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        request_id = pipeline.request_decryption(OPERATOR)
        with pytest.raises(Unauthorized):
            pipeline.cancel_request('alice', request_id)
        pipeline.cancel_request(OPERATOR, request_id)
        with pytest.raises(UnknownRequest):
            pipeline.handle_decrypted_result(request_id, *answer(pipeline, committee, request_id))


class TestReporting:
    """Tests for events, snapshots and cost reporting."""

    def test_event_sequence_has_no_payloads(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        request_id = pipeline.request_decryption(OPERATOR)
        pipeline.handle_decrypted_result(request_id, *answer(pipeline, committee, request_id))

        kinds = [e.kind for e in pipeline.events.events()]
        assert kinds == [
            'submitted', 'submitted',
            'aggregation_started', 'aggregation_complete',
            'computed', 'decryption_requested', 'decrypted',
        ]
        for event in pipeline.events.events():
            for value in event.fields.values():
                assert isinstance(value, (str, int, float, bool, type(None)))
        requested = pipeline.events.of_kind('decryption_requested')[0].fields
        assert requested['values'] == len(pipeline.get_result().ciphertexts())

    def test_snapshot(self, scheme, committee):
        pipeline = make_pipeline(scheme, committee)
        submit_all(pipeline)
        snapshot = pipeline.snapshot()
        assert snapshot['state'] == 'submitting'
        assert snapshot['authorized'] == ['alice', 'bob', 'carol']
        assert [c['owner'] for c in snapshot['contributions']] == ['alice', 'bob']
        assert all('vector' not in c for c in snapshot['contributions'])
        assert snapshot['pending_request'] is None
        assert snapshot['result_handles'] == []

        pipeline.start_computation(OPERATOR, n_components=1, n_iterations=3)
        request_id = pipeline.request_decryption(OPERATOR)
        snapshot = pipeline.snapshot()
        assert snapshot['pending_request']['request_id'] == request_id
        assert snapshot['result_handles'] == pipeline.get_result().handles()
        assert [state for state, _ in snapshot['history']] == [
            'registering', 'submitting', 'aggregating', 'extracting', 'computed', 'decryption_requested',
        ]

    def test_computation_cost(self, scheme, committee):
        pipeline = computed_pipeline(scheme, committee)
        cost = pipeline.get_computation_cost()
        assert cost['contributions'] == 2
        assert cost['mul'] > 0
        assert cost['refreshes'] == 0
        assert cost['planned_refreshes'] == 0
        assert cost['result_ciphertexts'] == 3 + 1 + 1
        assert cost['planned_output_level'] == pipeline.arithmetic.level(pipeline.get_result().ciphertexts())
