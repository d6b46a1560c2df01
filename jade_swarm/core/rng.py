"""
core/rng.py

Random draw service used by every stochastic operator.

Notation follows Zhang & Sanderson, "Adaptive Differential Evolution":
- rand(a, b): uniform value from [a, b)
- randn(mu, sigma): normal value with mean mu and deviation sigma
- randc(mu, delta): Cauchy value with location mu and scale delta
- randint(a, b): integer from [a, b)

The engine only talks to the RandomDraws interface, so generators can be
swapped (or replaced by scripted draws in tests) without touching operators.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Union
import numpy as np


class RandomDraws(ABC):
    """
    Abstract source of the four draw kinds used by JADE.
    """

    @abstractmethod
    def uniform(
        self,
        low: float = 0.0,
        high: float = 1.0,
        size: Optional[Union[int, Sequence[int]]] = None,
    ) -> Union[float, np.ndarray]:
        """Uniform value(s) from [low, high)."""
        pass

    @abstractmethod
    def normal(self, loc: float, scale: float) -> float:
        """Normal value with mean loc and standard deviation scale."""
        pass

    @abstractmethod
    def cauchy(self, loc: float, scale: float) -> float:
        """Cauchy value with location loc and scale scale."""
        pass

    @abstractmethod
    def integer(self, low: int, high: int) -> int:
        """Integer from [low, high)."""
        pass


class NumpyDraws(RandomDraws):
    """
    RandomDraws backed by a numpy Generator.

    Each shard gets an independent stream: the seed and the shard rank are
    combined, so rank 0 with seed 42 is reproducible and rank 1 differs.
    """

    def __init__(self, seed: Optional[int] = None, rank: int = 0, bit_generator: str = "PCG64"):
        self.seed = seed
        self.rank = rank
        self.bit_generator = bit_generator
        if seed is None:
            sequence = np.random.SeedSequence()
        else:
            sequence = np.random.SeedSequence(seed, spawn_key=(rank,))
        self.rng = np.random.Generator(_make_bit_generator(bit_generator, sequence))

    def uniform(self, low=0.0, high=1.0, size=None):
        if size is None:
            return float(self.rng.uniform(low, high))
        return self.rng.uniform(low, high, size=size)

    def normal(self, loc: float, scale: float) -> float:
        return float(self.rng.normal(loc, scale))

    def cauchy(self, loc: float, scale: float) -> float:
        return float(loc + scale * self.rng.standard_cauchy())

    def integer(self, low: int, high: int) -> int:
        return int(self.rng.integers(low, high))


_BIT_GENERATORS = {
    "PCG64": np.random.PCG64,
    "PCG64DXSM": np.random.PCG64DXSM,
    "MT19937": np.random.MT19937,
    "Philox": np.random.Philox,
    "SFC64": np.random.SFC64,
}


def _make_bit_generator(name: str, sequence: np.random.SeedSequence) -> np.random.BitGenerator:
    try:
        return _BIT_GENERATORS[name](sequence)
    except KeyError:
        raise ValueError(
            f"Unknown bit generator: {name} (expected one of {sorted(_BIT_GENERATORS)})"
        )


def draw_excluding(draws: RandomDraws, n: int, excluded: Sequence[int]) -> int:
    """
    Uniform index from range(n) skipping the excluded indices.

    Excluded indices outside range(n) and duplicates are ignored.
    """
    skip = sorted({e for e in excluded if 0 <= e < n})
    available = n - len(skip)
    if available <= 0:
        raise ValueError(f"No index left in range({n}) after excluding {skip}")

    k = draws.integer(0, available)
    for e in skip:
        if k >= e:
            k += 1
    return k
