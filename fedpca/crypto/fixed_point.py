"""Fixed-point arithmetic over an encryption scheme.

``FixedPointArithmetic`` is the only surface the aggregator and the solver
see. It wraps a scheme (leveled LWE, TenSEAL CKKS or the depth probe) and
exposes scalar and vector operations on ``EncryptedNumber`` values, plus
the public-polynomial inverse square root used for renormalization.

Every operation is a pure function of its inputs: no operation ever
decrypts, and the public constants passed to it are the only other input.
"""

import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class EncryptedNumber:
    """An encrypted real value bound to the arithmetic that produced it."""

    __slots__ = ('arithmetic', 'ciphertext')

    def __init__(self, arithmetic: 'FixedPointArithmetic', ciphertext):
        self.arithmetic = arithmetic
        self.ciphertext = ciphertext

    @property
    def level(self) -> int:
        return self.arithmetic.scheme.level(self.ciphertext)

    def serialize(self) -> bytes:
        return self.arithmetic.scheme.serialize(self.ciphertext)

    @property
    def handle(self) -> str:
        """Stable public reference to this exact ciphertext."""
        return hashlib.sha256(self.serialize()).hexdigest()[:16]

    def __add__(self, other):
        if isinstance(other, EncryptedNumber):
            return self.arithmetic.add(self, other)
        return self.arithmetic.add_scalar(self, other)

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, EncryptedNumber):
            return self.arithmetic.sub(self, other)
        return self.arithmetic.add_scalar(self, -other)

    def __mul__(self, other):
        if isinstance(other, EncryptedNumber):
            return self.arithmetic.mul(self, other)
        return self.arithmetic.scalar_mul(self, other)

    __rmul__ = __mul__

    def __neg__(self):
        return self.arithmetic.neg(self)

    def __repr__(self):
        return f"EncryptedNumber(scheme={self.arithmetic.scheme.name!r}, level={self.level})"


class FixedPointArithmetic:
    """Scalar/vector operations on encrypted fixed-point numbers.

    Args:
        scheme: Encryption scheme holding only public material.
        max_workers: Thread pool size for ``map``. 1 runs everything inline.
    """

    def __init__(self, scheme, max_workers: int = 1):
        self.scheme = scheme
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self._counts = {'add': 0, 'mul': 0, 'scalar_mul': 0, 'rescale': 0}

    def _count(self, op: str) -> None:
        with self._lock:
            self._counts[op] += 1

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    @property
    def max_level(self) -> int:
        return self.scheme.max_level

    def wrap(self, ciphertext) -> EncryptedNumber:
        return EncryptedNumber(self, ciphertext)

    def accepts(self, value) -> bool:
        """True for fresh ciphertexts of this arithmetic's scheme."""
        return (
            isinstance(value, EncryptedNumber)
            and value.arithmetic.scheme is self.scheme
            and self.scheme.is_ciphertext(value.ciphertext)
            and value.level == self.max_level
        )

    def encrypt(self, value: float) -> EncryptedNumber:
        return EncryptedNumber(self, self.scheme.encrypt(float(value)))

    def encrypt_vector(self, values: Iterable[float]) -> List[EncryptedNumber]:
        return [self.encrypt(v) for v in values]

    def level(self, values: Iterable[EncryptedNumber]) -> int:
        """Lowest level among ``values``."""
        return min(v.level for v in values)

    def add(self, x: EncryptedNumber, y: EncryptedNumber) -> EncryptedNumber:
        self._count('add')
        return EncryptedNumber(self, self.scheme.add(x.ciphertext, y.ciphertext))

    def sub(self, x: EncryptedNumber, y: EncryptedNumber) -> EncryptedNumber:
        self._count('add')
        return EncryptedNumber(self, self.scheme.subtract(x.ciphertext, y.ciphertext))

    def mul(self, x: EncryptedNumber, y: EncryptedNumber) -> EncryptedNumber:
        self._count('mul')
        self._count('rescale')
        return EncryptedNumber(self, self.scheme.multiply(x.ciphertext, y.ciphertext))

    def scalar_mul(self, x: EncryptedNumber, k: float) -> EncryptedNumber:
        """Multiply by a public constant. Integers keep the level, reals use one."""
        self._count('scalar_mul')
        if isinstance(k, (int, np.integer)) and not isinstance(k, bool):
            return EncryptedNumber(self, self.scheme.multiply_int(x.ciphertext, int(k)))
        self._count('rescale')
        return EncryptedNumber(self, self.scheme.multiply_plain(x.ciphertext, float(k)))

    def neg(self, x: EncryptedNumber) -> EncryptedNumber:
        return EncryptedNumber(self, self.scheme.negate(x.ciphertext))

    def add_scalar(self, x: EncryptedNumber, k: float) -> EncryptedNumber:
        return EncryptedNumber(self, self.scheme.add_plain(x.ciphertext, float(k)))

    def tree_sum(self, values: Sequence[EncryptedNumber]) -> EncryptedNumber:
        """Pairwise sum; the reduction shape depends only on ``len(values)``."""
        if not values:
            raise ValueError("tree_sum of an empty sequence")
        layer = list(values)
        while len(layer) > 1:
            paired = [self.add(layer[i], layer[i + 1]) for i in range(0, len(layer) - 1, 2)]
            if len(layer) % 2:
                paired.append(layer[-1])
            layer = paired
        return layer[0]

    def dot(self, x: Sequence[EncryptedNumber], y: Sequence[EncryptedNumber]) -> EncryptedNumber:
        if len(x) != len(y):
            raise ValueError(f"Length mismatch: {len(x)} vs {len(y)}")
        return self.tree_sum(self.map(lambda pair: self.mul(*pair), list(zip(x, y))))

    def matvec(self, rows: Sequence[Sequence[EncryptedNumber]], v: Sequence[EncryptedNumber]) -> List[EncryptedNumber]:
        return [self.dot(row, v) for row in rows]

    def map(self, fn: Callable, items: Sequence) -> List:
        """Apply ``fn`` to every item, in order, optionally on a thread pool."""
        items = list(items)
        if self.max_workers <= 1 or len(items) < 2:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(fn, items))

    def approx_inverse_sqrt(self, x: EncryptedNumber, iterations: int, seed: float = 1.0) -> EncryptedNumber:
        """Approximate 1/sqrt(x) with a fixed number of Newton steps.

        Newton's update y <- y * (3 - x*y^2) / 2 converges to 1/sqrt(x) from any
        public seed with 0 < x*seed^2 < 3. The first step is folded into a
        single plaintext multiply because the seed is public.

        Args:
            x: Encrypted positive value.
            iterations: Number of Newton steps (>= 1).
            seed: Public starting guess.

        Returns:
            Encrypted approximation, ``2 * iterations - 1`` levels below ``x``.
        """
        if iterations < 1:
            raise ValueError("iterations must be >= 1")
        y = self.add_scalar(self.scalar_mul(x, -0.5 * seed ** 3), 1.5 * seed)
        if iterations == 1:
            return y
        half_x = self.scalar_mul(x, 0.5)
        for _ in range(iterations - 1):
            y = self.sub(self.scalar_mul(y, 1.5), self.mul(self.mul(y, y), self.mul(half_x, y)))
        return y

    @staticmethod
    def inverse_sqrt_depth(iterations: int) -> int:
        return 2 * iterations - 1

    @staticmethod
    def inverse_sqrt_reference(x: float, iterations: int, seed: float = 1.0) -> float:
        """Exact-arithmetic value of ``approx_inverse_sqrt`` for the same schedule."""
        y = seed
        for _ in range(iterations):
            y = y * (1.5 - 0.5 * x * y * y)
        return y
