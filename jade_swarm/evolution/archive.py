"""
jade_swarm/evolution/archive.py

External archive of inferior solutions.

Parents that lose to their trial vector are not thrown away: they go to the
archive and later serve as the second difference partner (xr2) in mutation.
This keeps exploration pressure up after the live population has converged.

The archive is bounded by the sub-population size. How excess entries are
removed is a strategy; the default removes uniformly at random.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import List, Optional
import logging
import numpy as np

from jade_swarm.core.rng import RandomDraws
from .population import Individual

logger = logging.getLogger(__name__)


class TrimStrategy(ABC):
    """Chooses which archive entries to drop when over capacity."""

    @abstractmethod
    def select_removals(self, size: int, excess: int, draws: RandomDraws) -> List[int]:
        """Return `excess` distinct indices in range(size) to remove."""
        pass


class UniformTrim(TrimStrategy):
    """Remove entries uniformly at random."""

    def select_removals(self, size: int, excess: int, draws: RandomDraws) -> List[int]:
        # Partial Fisher-Yates over the index list
        indices = list(range(size))
        for k in range(excess):
            j = draws.integer(k, size)
            indices[k], indices[j] = indices[j], indices[k]
        return indices[:excess]


class OldestFirstTrim(TrimStrategy):
    """Remove the entries that have been in the archive longest."""

    def select_removals(self, size: int, excess: int, draws: RandomDraws) -> List[int]:
        return list(range(excess))


TRIM_STRATEGIES = {
    "uniform": UniformTrim,
    "oldest": OldestFirstTrim,
}


def create_trim_strategy(name: str = "uniform") -> TrimStrategy:
    """
    Factory for archive trimming strategies.

    Args:
        name: "uniform" or "oldest"
    """
    try:
        return TRIM_STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown archive trim strategy: {name}")


class Archive:
    """
    Bounded reservoir of displaced parents.

    Entries displaced during a generation are queued and only join the
    archive at commit(), so mutation within a generation always sees the
    archive as it was at the start of that generation.
    """

    def __init__(self, capacity: int, strategy: Optional[TrimStrategy] = None):
        self.capacity = capacity
        self.strategy = strategy or UniformTrim()
        self.entries: List[Individual] = []
        self.pending: List[Individual] = []

    def __len__(self) -> int:
        return len(self.entries)

    def queue(self, individual: Individual) -> None:
        self.pending.append(individual.copy())

    def commit(self) -> int:
        """Move queued parents into the archive. Returns how many were added."""
        added = len(self.pending)
        self.entries.extend(self.pending)
        self.pending = []
        return added

    def clean_up(self, draws: RandomDraws) -> int:
        """Trim down to capacity. Returns the number of removed entries."""
        excess = len(self.entries) - self.capacity
        if excess <= 0:
            return 0

        removals = set(self.strategy.select_removals(len(self.entries), excess, draws))
        self.entries = [e for k, e in enumerate(self.entries) if k not in removals]
        logger.debug(f"Archive trimmed by {excess} to {len(self.entries)}")
        return excess

    def vectors(self, dimension: int) -> np.ndarray:
        """Archive vectors as an array of shape (len, dimension)."""
        if not self.entries:
            return np.empty((0, dimension))
        return np.array([e.vector for e in self.entries])

    def clear(self) -> None:
        self.entries = []
        self.pending = []
