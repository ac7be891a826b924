"""CKKS backend built on TenSEAL.

Optional: install with ``pip install fedpca-fhe[tenseal]``. Each encrypted
number is a one-slot CKKS vector. TenSEAL has no threshold decryption, so
the key is held by a single committee member (one share).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..errors import DepthBudgetExceeded


@dataclass(frozen=True)
class TenSEALParams:
    """CKKS context parameters.

    The default context has 7 levels, enough for the pipeline only when
    refresh is enabled and the Newton schedules are short. ``deep()`` uses
    the largest modulus SEAL accepts (880 of 881 bits at degree 32768).
    """
    poly_modulus_degree: int = 16384
    coeff_mod_bit_sizes: Tuple[int, ...] = (60, 40, 40, 40, 40, 40, 40, 40, 60)
    scale_bits: int = 40

    @classmethod
    def deep(cls) -> 'TenSEALParams':
        """19 levels at degree 32768."""
        return cls(poly_modulus_degree=32768, coeff_mod_bit_sizes=(60,) + (40,) * 19 + (60,))

    @property
    def max_level(self) -> int:
        # First prime holds the result, last one is the key-switching prime
        return len(self.coeff_mod_bit_sizes) - 2


@dataclass(frozen=True)
class TenSEALCiphertext:
    vector: object = field(repr=False)
    level: int


@dataclass(frozen=True)
class TenSEALKeyShare:
    index: int
    secret_key: object = field(repr=False)


class TenSEALScheme:
    name = 'ckks'

    def __init__(self, params: TenSEALParams, context):
        self.params = params
        self.context = context

    @classmethod
    def keygen(cls, params: Optional[TenSEALParams] = None, n_shares: int = 1, seed: Optional[int] = None):
        """Create a public context and the single secret key share.

        ``seed`` is accepted for signature parity with the LWE dealer and is
        ignored; SEAL draws its own randomness.
        """
        import tenseal as ts

        if n_shares != 1:
            raise ValueError("TenSEAL backend supports exactly one key share")
        params = params or TenSEALParams()
        context = ts.context(
            ts.SCHEME_TYPE.CKKS,
            poly_modulus_degree=params.poly_modulus_degree,
            coeff_mod_bit_sizes=list(params.coeff_mod_bit_sizes),
        )
        context.global_scale = 2 ** params.scale_bits
        context.auto_relin = True
        context.auto_rescale = True
        context.auto_mod_switch = True
        secret_key = context.secret_key()
        public = ts.context_from(context.serialize(save_secret_key=False))
        return cls(params, public), [TenSEALKeyShare(index=0, secret_key=secret_key)]

    @property
    def max_level(self) -> int:
        return self.params.max_level

    @property
    def scale(self) -> float:
        return float(2 ** self.params.scale_bits)

    def level(self, ct: TenSEALCiphertext) -> int:
        return ct.level

    def is_ciphertext(self, ct) -> bool:
        return isinstance(ct, TenSEALCiphertext) and 0 <= ct.level <= self.max_level

    def encrypt(self, value: float) -> TenSEALCiphertext:
        import tenseal as ts

        return TenSEALCiphertext(ts.ckks_vector(self.context, [float(value)]), self.max_level)

    def add(self, x: TenSEALCiphertext, y: TenSEALCiphertext) -> TenSEALCiphertext:
        return TenSEALCiphertext(x.vector + y.vector, min(x.level, y.level))

    def subtract(self, x: TenSEALCiphertext, y: TenSEALCiphertext) -> TenSEALCiphertext:
        return TenSEALCiphertext(x.vector - y.vector, min(x.level, y.level))

    def negate(self, x: TenSEALCiphertext) -> TenSEALCiphertext:
        return TenSEALCiphertext(x.vector.neg(), x.level)

    def multiply_int(self, x: TenSEALCiphertext, k: int) -> TenSEALCiphertext:
        # Double-and-add so the product stays at the input level
        if k == 0:
            return TenSEALCiphertext(x.vector - x.vector, x.level)
        acc = None
        base = x.vector
        n = abs(k)
        while n:
            if n & 1:
                acc = base if acc is None else acc + base
            n >>= 1
            if n:
                base = base + base
        return TenSEALCiphertext(acc.neg() if k < 0 else acc, x.level)

    def add_plain(self, x: TenSEALCiphertext, value: float) -> TenSEALCiphertext:
        return TenSEALCiphertext(x.vector + [float(value)], x.level)

    def multiply(self, x: TenSEALCiphertext, y: TenSEALCiphertext) -> TenSEALCiphertext:
        level = min(x.level, y.level)
        if level < 1:
            raise DepthBudgetExceeded(required=1, available=level)
        return TenSEALCiphertext(x.vector * y.vector, level - 1)

    def multiply_plain(self, x: TenSEALCiphertext, value: float) -> TenSEALCiphertext:
        if x.level < 1:
            raise DepthBudgetExceeded(required=1, available=x.level)
        return TenSEALCiphertext(x.vector * [float(value)], x.level - 1)

    def serialize(self, ct: TenSEALCiphertext) -> bytes:
        return ct.level.to_bytes(2, 'big') + ct.vector.serialize()

    def partial_decrypt(self, ct: TenSEALCiphertext, share: TenSEALKeyShare) -> float:
        return ct.vector.decrypt(share.secret_key)[0]

    def combine(self, ct: TenSEALCiphertext, partials: Sequence[float]) -> float:
        if len(partials) != 1:
            raise ValueError("TenSEAL backend expects exactly one partial decryption")
        return float(partials[0])


def available_backends() -> List[str]:
    try:
        import tenseal  # noqa: F401
    except ImportError:
        return ['lwe']
    return ['lwe', 'ckks']
