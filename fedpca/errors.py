"""Error taxonomy for the encrypted PCA engine.

Three families, matching how callers recover:

- Validation errors: bad input or wrong lifecycle state. Rejected with no
  state change; retry after fixing the input.
- Resource errors: not enough contributions, or a schedule that does not fit
  the scheme's multiplicative depth or precision. Retry with more data or
  another schedule, or enable the refresh valve.
- Decryption protocol errors: the committee's answer was not accepted.
  The computed result stays recoverable through a new request.
"""


class FedPCAError(Exception):
    """Base class for all engine errors."""


class ValidationError(FedPCAError, ValueError):
    """Input or lifecycle validation failed."""


class FeatureCountMismatch(ValidationError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"Expected a vector of {expected} ciphertexts, got {got}")
        self.expected = expected
        self.got = got


class InvalidCiphertext(ValidationError):
    """A submitted element is not a ciphertext of this engine's scheme."""


class NotRegistered(ValidationError):
    def __init__(self, identity: str):
        super().__init__(f"Contributor {identity!r} is not authorized")
        self.identity = identity


class Unauthorized(ValidationError):
    def __init__(self, identity: str, action: str):
        super().__init__(f"{identity!r} is not allowed to {action}")
        self.identity = identity
        self.action = action


class InvalidState(ValidationError):
    def __init__(self, operation: str, state):
        super().__init__(f"Cannot {operation} in state {getattr(state, 'value', state)}")
        self.operation = operation
        self.state = state


class ComputationAlreadyStarted(InvalidState):
    """The one-time computation gate has already been passed."""


AlreadyStarted = ComputationAlreadyStarted


class NotComputed(InvalidState):
    """The encrypted result does not exist yet."""


class ResourceError(FedPCAError, RuntimeError):
    """The request cannot be served with the available resources."""


class InsufficientContributions(ResourceError):
    def __init__(self, count: int, minimum: int):
        super().__init__(f"Need at least {minimum} contributions, have {count}")
        self.count = count
        self.minimum = minimum


class DepthBudgetExceeded(ResourceError):
    def __init__(self, required: int, available: int):
        super().__init__(
            f"Schedule needs {required} multiplicative levels but only {available} remain; "
            f"reduce components/iterations or enable refresh"
        )
        self.required = required
        self.available = available


class DecryptionProtocolError(FedPCAError):
    """Threshold decryption did not complete; the request can be retried."""


class UnknownRequest(DecryptionProtocolError):
    def __init__(self, request_id: str):
        super().__init__(f"Unknown or inactive decryption request {request_id!r}")
        self.request_id = request_id


class ProofVerificationFailed(DecryptionProtocolError):
    pass


class DecryptionTimeout(DecryptionProtocolError):
    def __init__(self, request_id: str):
        super().__init__(f"Decryption request {request_id!r} timed out")
        self.request_id = request_id


class InsufficientPrecision(ResourceError):
    """The fixed-point schedule cannot deliver a usable result.

    Raised up front when the Newton renormalization cannot cover the declared
    eigenvalue range, and after decryption when the published components are
    not unit vectors or the variances fall outside [0, total].
    """


class MalformedPlaintext(DecryptionProtocolError):
    """Verified plaintext bytes do not match the result layout."""


class DecryptionOutOfRange(DecryptionProtocolError):
    """Combined partial decryptions do not decode to an in-range value.

    Happens when a share is missing or wrong: the decoded message is then a
    uniformly random residue instead of a small fixed-point value.
    """
