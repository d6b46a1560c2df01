"""
jade_swarm/evolution/operators.py

The per-individual operator pipeline of JADE:

1. Draw control parameters F_i ~ randc(muF, 0.1), CR_i ~ randn(muCR, 0.1)
2. Mutation "current-to-pbest/1" with archive:
       v = x_i + F_i (x_pbest - x_i) + F_i (x_r1 - x_r2)
3. Binomial crossover with one dimension forced from the mutant
4. Elitist selection (ties accepted)

Mutation samples from a SamplingPool: the local sub-population for an
independent shard, or the union of all shards' populations when shards are
synchronized. The target x_i is identified by its position in the pool.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np

from jade_swarm.core.rng import RandomDraws, draw_excluding
from .adaptation import power_mean
from .population import Bounds, rank_indices

# Scale parameters of the F and CR distributions
MUTATION_SCALE = 0.1
CROSSOVER_SCALE = 0.1

# Resampling limit for F_i <= 0 before giving up on the Cauchy draw
MAX_RESAMPLES = 1000


def draw_mutation_factor(draws: RandomDraws, mu_f: float, scale: float = MUTATION_SCALE) -> float:
    """Cauchy draw, resampled while <= 0, truncated to 1."""
    for _ in range(MAX_RESAMPLES):
        f = draws.cauchy(mu_f, scale)
        if f > 0.0:
            return min(f, 1.0)
    # Only reachable with a degenerate generator
    return min(max(mu_f, np.finfo(float).eps), 1.0)


def draw_crossover_rate(
    draws: RandomDraws,
    mu_cr: float,
    scale: float = CROSSOVER_SCALE,
    pmcrade: bool = False,
    exponent: float = 1.5,
) -> float:
    """Normal draw clipped to [0, 1]; power mean of two draws for PMCRADE."""
    cr = float(np.clip(draws.normal(mu_cr, scale), 0.0, 1.0))
    if not pmcrade:
        return cr
    cr2 = float(np.clip(draws.normal(mu_cr, scale), 0.0, 1.0))
    return power_mean([cr, cr2], exponent)


def draw_control_parameters(
    draws: RandomDraws,
    mu_f: float,
    mu_cr: float,
    pmcrade: bool = False,
    exponent: float = 1.5,
) -> Tuple[float, float]:
    f = draw_mutation_factor(draws, mu_f)
    cr = draw_crossover_rate(draws, mu_cr, pmcrade=pmcrade, exponent=exponent)
    return f, cr


def pbest_count(pool_size: int, best_share_p: float) -> int:
    """Number of top individuals eligible as x_pbest (at least one)."""
    return int(min(pool_size, max(1, round(best_share_p * pool_size))))


@dataclass
class SamplingPool:
    """
    Vectors that mutation may draw partners from.

    vectors/fitness: the (possibly multi-shard) current generation
    archive: archived vectors usable as x_r2 only
    offset: pool position of local individual 0
    ranked: pool indices ordered best first
    """

    vectors: np.ndarray
    fitness: np.ndarray
    archive: np.ndarray
    offset: int
    ranked: np.ndarray
    top: int

    @classmethod
    def build(
        cls,
        vectors: np.ndarray,
        fitness: np.ndarray,
        archive: Optional[np.ndarray] = None,
        offset: int = 0,
        minimize: bool = True,
        best_share_p: float = 0.05,
    ) -> "SamplingPool":
        if archive is None:
            archive = np.empty((0, vectors.shape[1]))
        return cls(
            vectors=vectors,
            fitness=fitness,
            archive=archive,
            offset=offset,
            ranked=rank_indices(fitness, minimize),
            top=pbest_count(len(vectors), best_share_p),
        )

    @property
    def size(self) -> int:
        return len(self.vectors)

    def member(self, k: int) -> np.ndarray:
        """Vector k of the population-then-archive union."""
        if k < self.size:
            return self.vectors[k]
        return self.archive[k - self.size]


def mutate(
    x_i: np.ndarray,
    target: int,
    f: float,
    pool: SamplingPool,
    bounds: Bounds,
    draws: RandomDraws,
) -> np.ndarray:
    """
    current-to-pbest/1 mutation.

    target is the pool index of x_i, excluded from both difference partners.
    """
    best = int(pool.ranked[draws.integer(0, pool.top)])
    r1 = draw_excluding(draws, pool.size, (target,))
    r2 = draw_excluding(draws, pool.size + len(pool.archive), (target, r1))

    x_best = pool.vectors[best]
    x_r1 = pool.vectors[r1]
    x_r2 = pool.member(r2)

    v = x_i + f * (x_best - x_i) + f * (x_r1 - x_r2)
    return bounds.clip(v)


def crossover(parent: np.ndarray, mutant: np.ndarray, cr: float, draws: RandomDraws) -> np.ndarray:
    """
    Binomial crossover.

    Each dimension comes from the mutant with probability cr. One dimension
    (j_rand) always comes from the mutant; it is picked among the dimensions
    where mutant and parent differ, so the trial differs from the parent
    whenever the mutant does.
    """
    dimension = parent.shape[0]
    mask = draws.uniform(0.0, 1.0, size=dimension) < cr

    differing = np.flatnonzero(mutant != parent)
    if differing.size:
        j_rand = int(differing[draws.integer(0, differing.size)])
    else:
        j_rand = draws.integer(0, dimension)
    mask[j_rand] = True

    return np.where(mask, mutant, parent)


def is_at_least_as_good(candidate: float, incumbent: float, minimize: bool = True) -> bool:
    """Selection test; equal fitness counts as success in both directions."""
    if minimize:
        return candidate <= incumbent
    return candidate >= incumbent
