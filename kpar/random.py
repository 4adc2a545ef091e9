# Seeded pseudo random number generators.
#
# Every generator used while training is built here from a signed 64-bit
# seed, so the same seed always produces the same draws regardless of
# which thread or chunk asks for it.

import os

import numpy as np

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
UINT64_MASK = 2**64 - 1


# Draw a fresh signed 64-bit seed from the operating system.
def os_seed():
    return int.from_bytes(os.urandom(8), "little", signed=True)


# Return a generator for the signed 64-bit "seed". Seeds outside the
# 64-bit range wrap around (two's complement), like integer overflow
# when adding a chunk offset to a seed near the limit.
def make_rng(seed):
    return Generator(seed)


# Thin wrapper over a PCG64 numpy generator that exposes the draws the
# training passes need.
class Generator:
    __slots__ = ("seed", "_rng")

    def __init__(self, seed):
        self.seed = int(seed)
        self._rng = np.random.Generator(np.random.PCG64(self.seed & UINT64_MASK))

    def __repr__(self): return f"Generator(seed={self.seed})"

    # Uniform double in [0, 1).
    def next_double(self):
        return float(self._rng.random())

    # Uniform doubles in [0, 1), one per requested element.
    def next_doubles(self, count):
        return self._rng.random(count)

    # Uniform signed 64-bit integer.
    def next_long(self):
        return int(self._rng.integers(INT64_MIN, INT64_MAX, endpoint=True, dtype=np.int64))
