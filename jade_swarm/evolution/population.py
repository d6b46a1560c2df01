"""
jade_swarm/evolution/population.py

Population and bounds storage for one shard.

An individual is a point in the search box plus its (possibly not yet
computed) fitness. The store keeps the current generation and a buffer for
the next one; every write goes through the bounds so no stored vector ever
leaves the box.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging
import math
import numpy as np

from jade_swarm.core.rng import RandomDraws
from jade_swarm.exceptions import ConfigurationError, EvaluationError

logger = logging.getLogger(__name__)

MIN_POPULATION = 4


@dataclass
class Individual:
    """
    One candidate solution.

    fitness is None until the vector has been evaluated.
    """

    vector: np.ndarray
    fitness: Optional[float] = None

    @property
    def evaluated(self) -> bool:
        return self.fitness is not None

    def copy(self) -> "Individual":
        return Individual(vector=self.vector.copy(), fitness=self.fitness)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vector": self.vector.tolist(),
            "fitness": self.fitness,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Individual":
        return cls(
            vector=np.array(data["vector"], dtype=float),
            fitness=data.get("fitness"),
        )


def partition_population(total_population: int, shards: int) -> List[int]:
    """
    Split the total population over shards.

    Even split; the remainder goes one-per-shard to the lowest ranks.
    """
    if shards < 1:
        raise ConfigurationError(f"Number of shards must be positive, got {shards}")
    base, remainder = divmod(total_population, shards)
    return [base + (1 if rank < remainder else 0) for rank in range(shards)]


def shard_slice(total_population: int, rank: int, shards: int) -> Tuple[int, int]:
    """Return (offset, size) of a shard's individuals in the global ordering."""
    sizes = partition_population(total_population, shards)
    return sum(sizes[:rank]), sizes[rank]


class Bounds:
    """
    Per-dimension search box.

    Enforcement is by clipping, never by rejection.
    """

    def __init__(self, lower: Sequence[float], upper: Sequence[float]):
        self.lower = np.array(lower, dtype=float)
        self.upper = np.array(upper, dtype=float)

        if self.lower.ndim != 1 or self.lower.shape != self.upper.shape:
            raise ConfigurationError(
                f"Bound vectors must be 1-D with equal length, got "
                f"{self.lower.shape} and {self.upper.shape}"
            )
        if not (np.all(np.isfinite(self.lower)) and np.all(np.isfinite(self.upper))):
            raise ConfigurationError("Bounds must be finite")
        if np.any(self.lower > self.upper):
            bad = np.flatnonzero(self.lower > self.upper).tolist()
            raise ConfigurationError(f"Lower bound exceeds upper bound in dimensions {bad}")

    @classmethod
    def uniform(cls, lower: float, upper: float, dimension: int) -> "Bounds":
        """Same bound pair for every dimension."""
        return cls(np.full(dimension, float(lower)), np.full(dimension, float(upper)))

    @property
    def dimension(self) -> int:
        return len(self.lower)

    @property
    def width(self) -> np.ndarray:
        return self.upper - self.lower

    def clip(self, x: np.ndarray) -> np.ndarray:
        return np.clip(x, self.lower, self.upper)

    def contains(self, x: np.ndarray) -> bool:
        return bool(np.all(x >= self.lower) and np.all(x <= self.upper))

    def sample(self, draws: RandomDraws, count: int) -> np.ndarray:
        """Uniform points inside the box, shape (count, dimension)."""
        u = draws.uniform(0.0, 1.0, size=(count, self.dimension))
        return self.clip(self.lower + u * self.width)


class PopulationStore:
    """
    Current and next-generation vectors of one shard.

    Fitness arrays use NaN for "not evaluated".
    """

    def __init__(
        self,
        total_population: int,
        dimension: int,
        rank: int = 0,
        shards: int = 1,
    ):
        if total_population < MIN_POPULATION:
            raise ConfigurationError(
                f"Population size must be at least {MIN_POPULATION}, got {total_population}"
            )
        if dimension < 1:
            raise ConfigurationError(f"Dimension must be at least 1, got {dimension}")
        if not 0 <= rank < shards:
            raise ConfigurationError(f"Rank {rank} outside process group of size {shards}")

        self.total_population = total_population
        self.dimension = dimension
        self.rank = rank
        self.shards = shards
        self.offset, self.size = shard_slice(total_population, rank, shards)
        if self.size < 1:
            raise ConfigurationError(
                f"Population {total_population} too small for {shards} shards: "
                f"rank {rank} would own no individuals"
            )

        self.current = np.zeros((self.size, dimension))
        self.current_fitness = np.full(self.size, np.nan)
        self.next = np.zeros((self.size, dimension))
        self.next_fitness = np.full(self.size, np.nan)

        self.bounds: Optional[Bounds] = None
        self.feed_vectors: List[np.ndarray] = []

    def set_all_bounds(self, lower: float, upper: float) -> None:
        self.bounds = Bounds.uniform(lower, upper, self.dimension)

    def set_all_bounds_vectors(self, lower: Sequence[float], upper: Sequence[float]) -> None:
        if len(lower) != self.dimension or len(upper) != self.dimension:
            raise ConfigurationError(
                f"Bound vectors must have length {self.dimension}, "
                f"got {len(lower)} and {len(upper)}"
            )
        self.bounds = Bounds(lower, upper)

    def set_feed(self, vectors: Sequence[Sequence[float]]) -> None:
        """Known starting points that replace the first random individuals."""
        feed = []
        for vector in vectors:
            x = np.array(vector, dtype=float)
            if x.shape != (self.dimension,):
                raise ConfigurationError(
                    f"Feed vector must have length {self.dimension}, got shape {x.shape}"
                )
            feed.append(x)
        if len(feed) > self.size:
            logger.warning(
                f"{len(feed)} feed vectors for {self.size} local individuals; "
                f"ignoring the last {len(feed) - self.size}"
            )
            feed = feed[:self.size]
        self.feed_vectors = feed

    def create_initial_population(self, draws: RandomDraws) -> None:
        if self.bounds is None:
            raise ConfigurationError("Bounds must be set before creating the population")

        self.current = self.bounds.sample(draws, self.size)
        for i, x in enumerate(self.feed_vectors):
            self.current[i] = self.bounds.clip(x)
        self.current_fitness = np.full(self.size, np.nan)
        self.next = self.current.copy()
        self.next_fitness = np.full(self.size, np.nan)

    def evaluate_current_vectors(self, fitness_function: Optional[Callable[[np.ndarray], float]]) -> int:
        """
        Evaluate every unevaluated current vector.

        Returns the number of evaluations performed.
        """
        if fitness_function is None:
            raise EvaluationError("No fitness function registered")

        evaluated = 0
        for i in np.flatnonzero(np.isnan(self.current_fitness)):
            self.current_fitness[i] = checked_fitness(fitness_function, self.current[i])
            evaluated += 1
        return evaluated

    def ranked_indices(self, minimize: bool = True) -> np.ndarray:
        return rank_indices(self.current_fitness, minimize)

    def write_next(self, i: int, x: np.ndarray, fitness: float) -> None:
        self.next[i] = self.bounds.clip(x)
        self.next_fitness[i] = fitness

    def carry_over(self, i: int) -> None:
        self.next[i] = self.current[i]
        self.next_fitness[i] = self.current_fitness[i]

    def advance(self) -> None:
        """Next generation becomes current."""
        self.current, self.next = self.next, self.current
        self.current_fitness, self.next_fitness = self.next_fitness, self.current_fitness

    def individual(self, i: int) -> Individual:
        fitness = self.current_fitness[i]
        return Individual(
            vector=self.current[i].copy(),
            fitness=None if np.isnan(fitness) else float(fitness),
        )


def rank_indices(fitness: np.ndarray, minimize: bool = True) -> np.ndarray:
    """Indices ordered best first; stable so ties keep population order."""
    keys = fitness if minimize else -fitness
    return np.argsort(keys, kind="stable")


def checked_fitness(fitness_function: Callable[[np.ndarray], float], x: np.ndarray) -> float:
    """Evaluate x; failures and non-finite results become EvaluationError."""
    try:
        value = float(fitness_function(x.copy()))
    except Exception as e:
        raise EvaluationError(f"Fitness function failed: {e}") from e
    if not math.isfinite(value):
        raise EvaluationError(f"Fitness function returned non-finite value {value}")
    return value
