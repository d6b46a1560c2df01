"""
jade_swarm/services/sync.py

Distributed synchronization of shard state.

Distribution levels:
- 0: no collectives; every shard is an independent island
- 1: shards gather each other's current populations, so mutation samples
     x_pbest, x_r1 and x_r2 from one logical population
- 2: level 1, plus gathered archives and pooled success sets, so every shard
     applies the same muF/muCR update

The number and order of collectives issued per generation depend only on the
level, never on local data. That is what keeps shards from deadlocking.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging

import numpy as np

from jade_swarm.exceptions import ConfigurationError, DistributedError

from .communicator import Communicator, LocalCommunicator

logger = logging.getLogger(__name__)

DISTRIBUTION_LEVELS = (0, 1, 2)


@dataclass
class GatheredPopulation:
    """Union of all shards' current populations, in rank order."""
    vectors: np.ndarray
    fitness: np.ndarray
    sizes: np.ndarray
    offset: int


class PopulationSynchronizer:
    """
    Builds the cross-shard views the engine samples from.
    """

    def __init__(self, communicator: Communicator | None, dimension: int, level: int = 0):
        if level not in DISTRIBUTION_LEVELS:
            raise ConfigurationError(
                f"Distribution level must be one of {DISTRIBUTION_LEVELS}, got {level}"
            )
        self.communicator = communicator or LocalCommunicator()
        self.dimension = dimension
        self.level = level

    @property
    def shares_population(self) -> bool:
        return self.level >= 1

    @property
    def shares_adaptation(self) -> bool:
        return self.level >= 2

    def _gather_rows(self, rows: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Gather a (k, dimension) block from every shard: sizes, then values."""
        sizes = self.communicator.all_gather_longs([len(rows)])
        flat = self.communicator.all_gather_doubles(np.ravel(rows))
        expected = int(sizes.sum()) * self.dimension
        if flat.size != expected:
            raise DistributedError(
                f"Gathered {flat.size} values, expected {expected} "
                f"({int(sizes.sum())} rows of dimension {self.dimension})"
            )
        return sizes, flat.reshape(int(sizes.sum()), self.dimension)

    def gather_population(self, vectors: np.ndarray, fitness: np.ndarray) -> GatheredPopulation:
        """
        Collect every shard's current vectors and fitness values.

        Issues three collectives: sizes, vectors, fitness.
        """
        sizes, all_vectors = self._gather_rows(vectors)
        all_fitness = self.communicator.all_gather_doubles(fitness)
        if all_fitness.size != len(all_vectors):
            raise DistributedError(
                f"Gathered {all_fitness.size} fitness values for {len(all_vectors)} vectors"
            )
        offset = int(sizes[:self.communicator.rank].sum())
        return GatheredPopulation(
            vectors=all_vectors,
            fitness=all_fitness,
            sizes=sizes,
            offset=offset,
        )

    def gather_archive(self, archive_vectors: np.ndarray) -> np.ndarray:
        """Collect every shard's archive. Issues two collectives."""
        _, rows = self._gather_rows(archive_vectors.reshape(-1, self.dimension))
        return rows

    def gather_successes(self, success_f: list[float], success_cr: list[float]) -> tuple[np.ndarray, np.ndarray]:
        """Pool every shard's success sets. Issues two collectives."""
        if len(success_f) != len(success_cr):
            raise ValueError("Success sets must have equal length")
        pooled_f = self.communicator.all_gather_doubles(success_f)
        pooled_cr = self.communicator.all_gather_doubles(success_cr)
        return pooled_f, pooled_cr

