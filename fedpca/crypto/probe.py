"""Level-only stand-in scheme for dry-running encrypted schedules.

The aggregator and the eigen-solver run unchanged on top of this scheme.
Ciphertexts carry nothing but their level, so a full dry run costs almost
nothing and reports the exact point where a schedule would run out of
multiplicative depth, before any real ciphertext is touched.
"""

from dataclasses import dataclass

from ..errors import DepthBudgetExceeded


@dataclass(frozen=True)
class ProbeCiphertext:
    level: int


class DepthProbeScheme:
    name = 'probe'

    def __init__(self, max_level: int):
        self._max_level = max_level

    @classmethod
    def mirroring(cls, scheme) -> 'DepthProbeScheme':
        return cls(scheme.max_level)

    @property
    def max_level(self) -> int:
        return self._max_level

    @property
    def scale(self) -> float:
        return 1.0

    def level(self, ct: ProbeCiphertext) -> int:
        return ct.level

    def at_level(self, level: int) -> ProbeCiphertext:
        return ProbeCiphertext(level)

    def is_ciphertext(self, ct) -> bool:
        return isinstance(ct, ProbeCiphertext)

    def encrypt(self, value: float) -> ProbeCiphertext:
        return ProbeCiphertext(self._max_level)

    def add(self, x: ProbeCiphertext, y: ProbeCiphertext) -> ProbeCiphertext:
        return ProbeCiphertext(min(x.level, y.level))

    subtract = add

    def negate(self, x: ProbeCiphertext) -> ProbeCiphertext:
        return x

    def multiply_int(self, x: ProbeCiphertext, k: int) -> ProbeCiphertext:
        return x

    def add_plain(self, x: ProbeCiphertext, value: float) -> ProbeCiphertext:
        return x

    def multiply(self, x: ProbeCiphertext, y: ProbeCiphertext) -> ProbeCiphertext:
        level = min(x.level, y.level)
        if level < 1:
            raise DepthBudgetExceeded(required=1, available=level)
        return ProbeCiphertext(level - 1)

    def multiply_plain(self, x: ProbeCiphertext, value: float) -> ProbeCiphertext:
        if x.level < 1:
            raise DepthBudgetExceeded(required=1, available=x.level)
        return ProbeCiphertext(x.level - 1)

    def serialize(self, ct: ProbeCiphertext) -> bytes:
        return ct.level.to_bytes(2, 'big')


class ProbeRefresher:
    """Refresher counterpart for dry runs: returns top-level probes."""

    def __init__(self, scheme: DepthProbeScheme):
        self.scheme = scheme
        self.calls = 0

    def __call__(self, values):
        self.calls += 1
        return [value.arithmetic.wrap(self.scheme.encrypt(0.0)) for value in values]
