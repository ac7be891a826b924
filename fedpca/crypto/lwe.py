"""Leveled LWE encryption for approximate fixed-point arithmetic.

A ciphertext of a real value x at level l is a pair (b, a) with

    b - <a, s> = Δ·x + e   (mod Q_l)

where s is a small secret vector, e a small error, Δ = 2**scale_bits the
fixed-point scale and Q_l = 2**(base_bits + l * scale_bits). Because every
modulus is a power of two and Q_{l-1} = Q_l / Δ, the product of two
ciphertexts (scale Δ²) is brought back to scale Δ by a rounded division of
(b, a) by Δ, without the secret key. Each such rescale consumes one level;
level 0 ciphertexts can still be added and decrypted but not multiplied.

Multiplication tensors the two ciphertexts and relinearizes the quadratic
part with keys encrypting P·s_j·s_k under the extended modulus P·Q_L.

Parameters here are sized for correctness demos and tests. The LWE dimension
defaults to 8, far below what any security level requires.
"""

import random
import secrets
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..errors import DecryptionOutOfRange, DepthBudgetExceeded


@dataclass(frozen=True)
class LWEParams:
    """Public parameters of the leveled scheme."""
    dimension: int = 8
    scale_bits: int = 40
    base_bits: int = 60
    levels: int = 100
    special_bits: Optional[int] = None
    error_std: float = 3.2
    public_key_size: int = 32
    smudging_bits: int = 12
    plaintext_bits: int = 32

    def __post_init__(self):
        if self.dimension < 1:
            raise ValueError("dimension must be >= 1")
        if self.base_bits <= self.scale_bits:
            raise ValueError("base_bits must exceed scale_bits so level-0 values fit")
        if self.levels < 1:
            raise ValueError("levels must be >= 1")

    @property
    def scale(self) -> int:
        return 1 << self.scale_bits

    @property
    def plaintext_bound(self) -> int:
        """Largest encoded magnitude a correct decryption can produce."""
        return 1 << (self.plaintext_bits + self.scale_bits)

    def modulus_bits(self, level: int) -> int:
        return self.base_bits + level * self.scale_bits

    def modulus(self, level: int) -> int:
        return 1 << self.modulus_bits(level)

    @property
    def special_modulus_bits(self) -> int:
        if self.special_bits is not None:
            return self.special_bits
        return self.modulus_bits(self.levels) + 32


@dataclass(frozen=True)
class LWECiphertext:
    b: int
    a: Tuple[int, ...]
    level: int


@dataclass(frozen=True)
class LWEPublicKey:
    """Encryption samples plus relinearization keys."""
    samples: Tuple[Tuple[int, Tuple[int, ...]], ...]
    relin_keys: Tuple[Tuple[Tuple[int, int], Tuple[int, Tuple[int, ...]]], ...]


@dataclass(frozen=True)
class LWEKeyShare:
    """One additive share of the secret vector, modulo Q_L."""
    index: int
    coefficients: Tuple[int, ...] = field(repr=False)


def _dot(a: Sequence[int], s: Sequence[int]) -> int:
    return sum(x * y for x, y in zip(a, s))


def _gaussian(rng: random.Random, std: float) -> int:
    return int(round(rng.gauss(0.0, std)))


class LeveledLWEScheme:
    """Public side of the scheme: everything an evaluator may hold.

    Instances carry only the public key. Secret shares live with the
    decryption committee (see ``fedpca.crypto.threshold``).
    """

    name = 'lwe'

    def __init__(self, params: LWEParams, public_key: LWEPublicKey, rng: Optional[random.Random] = None):
        self.params = params
        self.public_key = public_key
        self._rng = rng if rng is not None else secrets.SystemRandom()

    @classmethod
    def keygen(
        cls,
        params: Optional[LWEParams] = None,
        n_shares: int = 1,
        seed: Optional[int] = None,
    ) -> Tuple['LeveledLWEScheme', List[LWEKeyShare]]:
        """Trusted-dealer key generation.

        Real deployments run a distributed key-generation ceremony; this
        dealer exists so tests and experiments can stand up a committee.

        Args:
            params: Scheme parameters.
            n_shares: Number of additive secret shares (committee size).
            seed: Seed for a deterministic (insecure) RNG; None uses the OS RNG.

        Returns:
            (public scheme, secret key shares)
        """
        params = params or LWEParams()
        if n_shares < 1:
            raise ValueError("n_shares must be >= 1")
        rng = random.Random(seed) if seed is not None else secrets.SystemRandom()
        n = params.dimension
        q_top = params.modulus(params.levels)

        secret = [rng.choice((-1, 0, 1)) for _ in range(n)]

        samples = []
        for _ in range(params.public_key_size):
            a = tuple(rng.randrange(q_top) for _ in range(n))
            b = (_dot(a, secret) + _gaussian(rng, params.error_std)) % q_top
            samples.append((b, a))

        special = 1 << params.special_modulus_bits
        extended = special * q_top
        relin_keys = []
        for j in range(n):
            for k in range(j, n):
                a = tuple(rng.randrange(extended) for _ in range(n))
                b = (_dot(a, secret) + special * secret[j] * secret[k]
                     + _gaussian(rng, params.error_std)) % extended
                relin_keys.append(((j, k), (b, a)))

        shares = [[rng.randrange(q_top) for _ in range(n)] for _ in range(n_shares - 1)]
        last = [(secret[i] - sum(share[i] for share in shares)) % q_top for i in range(n)]
        shares.append(last)

        public_key = LWEPublicKey(tuple(samples), tuple(relin_keys))
        scheme_rng = random.Random(rng.getrandbits(64)) if seed is not None else None
        key_shares = [LWEKeyShare(index=i, coefficients=tuple(c)) for i, c in enumerate(shares)]
        return cls(params, public_key, scheme_rng), key_shares

    @property
    def max_level(self) -> int:
        return self.params.levels

    @property
    def scale(self) -> float:
        return float(self.params.scale)

    def level(self, ct: LWECiphertext) -> int:
        return ct.level

    def is_ciphertext(self, ct) -> bool:
        return (
            isinstance(ct, LWECiphertext)
            and 0 <= ct.level <= self.params.levels
            and len(ct.a) == self.params.dimension
        )

    def encode(self, value: float) -> int:
        return int(round(float(value) * self.params.scale))

    def encrypt(self, value: float) -> LWECiphertext:
        """Public-key encryption at the top level."""
        level = self.params.levels
        q = self.params.modulus(level)
        b = self.encode(value) + _gaussian(self._rng, self.params.error_std)
        a = [0] * self.params.dimension
        for sample_b, sample_a in self.public_key.samples:
            r = self._rng.choice((-1, 0, 1))
            if r:
                b += r * sample_b
                a = [x + r * y for x, y in zip(a, sample_a)]
        return LWECiphertext(b % q, tuple(x % q for x in a), level)

    def mod_drop(self, ct: LWECiphertext, level: int) -> LWECiphertext:
        if level == ct.level:
            return ct
        if level > ct.level:
            raise ValueError(f"Cannot raise a ciphertext from level {ct.level} to {level}")
        q = self.params.modulus(level)
        return LWECiphertext(ct.b % q, tuple(x % q for x in ct.a), level)

    def _aligned(self, x: LWECiphertext, y: LWECiphertext) -> Tuple[LWECiphertext, LWECiphertext, int]:
        level = min(x.level, y.level)
        return self.mod_drop(x, level), self.mod_drop(y, level), level

    def add(self, x: LWECiphertext, y: LWECiphertext) -> LWECiphertext:
        x, y, level = self._aligned(x, y)
        q = self.params.modulus(level)
        return LWECiphertext((x.b + y.b) % q, tuple((u + v) % q for u, v in zip(x.a, y.a)), level)

    def subtract(self, x: LWECiphertext, y: LWECiphertext) -> LWECiphertext:
        x, y, level = self._aligned(x, y)
        q = self.params.modulus(level)
        return LWECiphertext((x.b - y.b) % q, tuple((u - v) % q for u, v in zip(x.a, y.a)), level)

    def negate(self, x: LWECiphertext) -> LWECiphertext:
        q = self.params.modulus(x.level)
        return LWECiphertext(-x.b % q, tuple(-v % q for v in x.a), x.level)

    def multiply_int(self, x: LWECiphertext, k: int) -> LWECiphertext:
        """Multiply by a public integer; the scale is unchanged so no level is used."""
        q = self.params.modulus(x.level)
        return LWECiphertext((x.b * k) % q, tuple((v * k) % q for v in x.a), x.level)

    def add_plain(self, x: LWECiphertext, value: float) -> LWECiphertext:
        q = self.params.modulus(x.level)
        return LWECiphertext((x.b + self.encode(value)) % q, x.a, x.level)

    def _rescale(self, b: int, a: Sequence[int], level: int) -> LWECiphertext:
        shift = self.params.scale_bits
        half = 1 << (shift - 1)
        q = self.params.modulus(level - 1)
        return LWECiphertext(
            ((b + half) >> shift) % q,
            tuple(((x + half) >> shift) % q for x in a),
            level - 1,
        )

    def multiply_plain(self, x: LWECiphertext, value: float) -> LWECiphertext:
        if x.level < 1:
            raise DepthBudgetExceeded(required=1, available=x.level)
        factor = self.encode(value)
        q = self.params.modulus(x.level)
        return self._rescale((x.b * factor) % q, [(v * factor) % q for v in x.a], x.level)

    def multiply(self, x: LWECiphertext, y: LWECiphertext) -> LWECiphertext:
        x, y, level = self._aligned(x, y)
        if level < 1:
            raise DepthBudgetExceeded(required=1, available=level)
        q = self.params.modulus(level)
        special_bits = self.params.special_modulus_bits
        extended = q << special_bits

        # (b1 - <a1,s>)(b2 - <a2,s>): the linear terms stay as they are, the
        # quadratic term <a1,s><a2,s> is switched back to a linear ciphertext.
        b = x.b * y.b
        a = [x.b * v + y.b * u for u, v in zip(x.a, y.a)]

        key_b = 0
        key_a = [0] * len(a)
        for (j, k), (rb, ra) in self.public_key.relin_keys:
            coeff = x.a[j] * y.a[k]
            if j != k:
                coeff += x.a[k] * y.a[j]
            coeff %= q
            if not coeff:
                continue
            key_b += coeff * rb
            for i, r in enumerate(ra):
                key_a[i] += coeff * r

        half = 1 << (special_bits - 1)
        b += ((key_b % extended) + half) >> special_bits
        a = [u + (((v % extended) + half) >> special_bits) for u, v in zip(a, key_a)]
        return self._rescale(b % q, [u % q for u in a], level)

    def serialize(self, ct: LWECiphertext) -> bytes:
        width = (self.params.modulus_bits(ct.level) + 7) // 8
        parts = [ct.level.to_bytes(2, 'big'), ct.b.to_bytes(width, 'big')]
        parts.extend(x.to_bytes(width, 'big') for x in ct.a)
        return b''.join(parts)

    # Committee-side operations. They require a secret share and are never
    # called by the engine itself.

    def partial_decrypt(self, ct: LWECiphertext, share: LWEKeyShare) -> int:
        q = self.params.modulus(ct.level)
        bound = 1 << self.params.smudging_bits
        smudge = secrets.randbelow(2 * bound + 1) - bound
        return (_dot(ct.a, share.coefficients) + smudge) % q

    def combine(self, ct: LWECiphertext, partials: Sequence[int]) -> float:
        q = self.params.modulus(ct.level)
        message = (ct.b - sum(partials)) % q
        if message >= q // 2:
            message -= q
        # A missing or wrong share leaves a uniform residue modulo Q_l
        if abs(message) >= min(q // 2, self.params.plaintext_bound):
            raise DecryptionOutOfRange(
                f"Combined decryption at level {ct.level} is outside the plaintext range"
            )
        return message / self.params.scale
