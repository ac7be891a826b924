"""Shared keys for the test suite.

Key generation is deterministic (seeded dealer) and small (LWE dimension 4)
so the whole suite shares one key set.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from fedpca.crypto import DecryptionCommittee, FixedPointArithmetic, LeveledLWEScheme, LWEParams

OPERATOR = 'operator'

TEST_PARAMS = LWEParams(dimension=4, public_key_size=16)
SHALLOW_PARAMS = LWEParams(dimension=4, public_key_size=16, levels=3)


@pytest.fixture(scope='session')
def keys():
    return LeveledLWEScheme.keygen(TEST_PARAMS, n_shares=3, seed=1234)


@pytest.fixture(scope='session')
def scheme(keys):
    return keys[0]


@pytest.fixture(scope='session')
def shares(keys):
    return keys[1]


@pytest.fixture(scope='session')
def committee(keys):
    scheme, shares = keys
    return DecryptionCommittee.from_shares(scheme, shares, operator=OPERATOR)


@pytest.fixture(scope='session')
def shallow_keys():
    return LeveledLWEScheme.keygen(SHALLOW_PARAMS, n_shares=2, seed=99)


@pytest.fixture
def arithmetic(scheme):
    return FixedPointArithmetic(scheme)
