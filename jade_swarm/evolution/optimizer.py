"""
jade_swarm/evolution/optimizer.py

The shard-local JADE engine.

One SubPopulation object owns everything a shard needs: population and
bounds, archive, adaptation state, random draws and its link to the other
shards. A run walks a small state machine:

    UNINITIALIZED -> INITIALIZED -> EVALUATED
        -> { SORTING -> GENERATING -> ADAPTING -> ARCHIVING -> SYNCHRONIZING }*
        -> DONE

ERROR is reachable from every phase. DONE is only entered at the top of the
generation loop, never half way through a generation.

Reference: J. Zhang, A. C. Sanderson, "JADE: Adaptive Differential Evolution
with Optional External Archive", IEEE TEVC 13(5), 2009. Crossover rate
adaptation optionally follows PMCRADE (Li et al., AICI 2011).
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
import logging
import os
import time

import numpy as np

from jade_swarm.core.rng import NumpyDraws, RandomDraws
from jade_swarm.exceptions import (
    ConfigurationError,
    DistributedError,
    EvaluationError,
    OptimizationError,
)
from jade_swarm.services.communicator import Communicator, LocalCommunicator
from jade_swarm.services.sync import DISTRIBUTION_LEVELS, PopulationSynchronizer

from .adaptation import AdaptationState
from .archive import Archive, create_trim_strategy
from .fitness import FitnessFunction
from .operators import (
    SamplingPool,
    crossover,
    draw_control_parameters,
    is_at_least_as_good,
    mutate,
)
from .population import MIN_POPULATION, Individual, PopulationStore

logger = logging.getLogger(__name__)

BoundSpec = Union[float, Sequence[float]]


class RunPhase(Enum):
    """Phase of the run state machine."""
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    EVALUATED = "evaluated"
    SORTING = "sorting"
    GENERATING = "generating"
    ADAPTING = "adapting"
    ARCHIVING = "archiving"
    SYNCHRONIZING = "synchronizing"
    DONE = "done"
    ERROR = "error"


class ErrorStatus(IntEnum):
    """Status codes returned by SubPopulation.run()."""
    DONE = 0
    ERROR = 1


@dataclass
class OptimizerConfig:
    """Configuration for a JADE run."""
    total_population: int = 40
    dimension: int = 5
    lower: BoundSpec = -5.0
    upper: BoundSpec = 5.0
    generations: int = 200
    minimize: bool = True

    # Adaptation parameters
    best_share_p: float = 0.05          # recommended 0.05-0.2
    adaptation_frequency_c: float = 0.1  # recommended 1/20-1/5
    pmcrade: bool = True
    power_mean_exponent: float = 1.5

    # Distribution
    distribution_level: int = 0

    archive_trim: str = "uniform"
    feed: List[List[float]] = field(default_factory=list)
    seed: Optional[int] = None

    @classmethod
    def from_env(cls, prefix: str = "JADE_") -> "OptimizerConfig":
        """Create config from environment variables (JADE_POPULATION, ...)."""
        env = os.environ
        defaults = cls()

        def get(name: str, cast: Callable[[str], Any], default: Any) -> Any:
            value = env.get(f"{prefix}{name}")
            return default if value is None or value == "" else cast(value)

        def flag(value: str) -> bool:
            return value.lower() in ("1", "true", "yes", "on")

        seed = env.get(f"{prefix}SEED")
        return cls(
            total_population=get("POPULATION", int, defaults.total_population),
            dimension=get("DIMENSION", int, defaults.dimension),
            lower=get("LOWER", _parse_bound, defaults.lower),
            upper=get("UPPER", _parse_bound, defaults.upper),
            generations=get("GENERATIONS", int, defaults.generations),
            minimize=get("MINIMIZE", flag, defaults.minimize),
            best_share_p=get("BEST_SHARE_P", float, defaults.best_share_p),
            adaptation_frequency_c=get("ADAPTATION_C", float, defaults.adaptation_frequency_c),
            pmcrade=get("PMCRADE", flag, defaults.pmcrade),
            power_mean_exponent=get("POWER_MEAN_EXPONENT", float, defaults.power_mean_exponent),
            distribution_level=get("DISTRIBUTION_LEVEL", int, defaults.distribution_level),
            archive_trim=get("ARCHIVE_TRIM", str, defaults.archive_trim),
            seed=int(seed) if seed else None,
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "OptimizerConfig":
        """Load config from a YAML mapping; unknown keys are rejected."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: expected a mapping, got {type(data).__name__}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizerConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_bound(value: str) -> BoundSpec:
    """'-5' -> -5.0, '-5,-1,0' -> [-5.0, -1.0, 0.0]"""
    parts = [p for p in value.split(",") if p.strip()]
    if len(parts) == 1:
        return float(parts[0])
    return [float(p) for p in parts]


class SubPopulation:
    """
    Population controlled by a single shard.

    Typical use:

        engine = SubPopulation(seed=42)
        engine.set_fitness_function(sphere)
        engine.init(40, 5)
        engine.set_all_bounds(-5.0, 5.0)
        engine.set_total_generations_max(200)
        if engine.run() == ErrorStatus.DONE:
            x, fx = engine.get_best()
    """

    def __init__(
        self,
        communicator: Optional[Communicator] = None,
        draws: Optional[RandomDraws] = None,
        seed: Optional[int] = None,
        archive_trim: str = "uniform",
    ):
        self.communicator = communicator or LocalCommunicator()
        self.rank = self.communicator.rank
        self.draws = draws or NumpyDraws(seed=seed, rank=self.rank)
        self.archive_trim = archive_trim

        self.fitness_function: Optional[FitnessFunction] = None
        self.store: Optional[PopulationStore] = None
        self.archive: Optional[Archive] = None
        self.adaptation = AdaptationState()
        self.synchronizer: Optional[PopulationSynchronizer] = None

        self.minimize = True
        self.total_generations_max = 0
        self.best_share_p = 0.05
        self.distribution_level = 0

        self.generation = 0
        self.phase = RunPhase.UNINITIALIZED
        self.error_status = ErrorStatus.DONE
        self.last_error: Optional[Exception] = None
        self.history: List[Dict[str, Any]] = []
        self.evaluations = 0

        self._pool: Optional[SamplingPool] = None
        self._shared_archive: Optional[np.ndarray] = None
        self._has_results = False

    @classmethod
    def from_config(
        cls,
        config: OptimizerConfig,
        fitness_function: Callable[[np.ndarray], float],
        communicator: Optional[Communicator] = None,
        draws: Optional[RandomDraws] = None,
    ) -> "SubPopulation":
        """Build a fully configured engine; raises ConfigurationError on bad input."""
        engine = cls(
            communicator=communicator,
            draws=draws,
            seed=config.seed,
            archive_trim=config.archive_trim,
        )
        engine.set_fitness_function(fitness_function)
        engine.init(config.total_population, config.dimension)
        if np.ndim(config.lower) == 0 and np.ndim(config.upper) == 0:
            engine.set_all_bounds(config.lower, config.upper)
        else:
            engine.set_all_bounds_vectors(
                np.broadcast_to(config.lower, (config.dimension,)),
                np.broadcast_to(config.upper, (config.dimension,)),
            )
        engine.set_total_generations_max(config.generations)
        if config.minimize:
            engine.set_target_to_minimum()
        else:
            engine.set_target_to_maximum()
        engine.set_best_share_p(config.best_share_p)
        engine.set_adaptation_frequency_c(config.adaptation_frequency_c)
        engine.set_power_mean_exponent(config.power_mean_exponent)
        engine.set_distribution_level(config.distribution_level)
        if not config.pmcrade:
            engine.switch_off_pmcrade()
        if config.feed:
            engine.set_feed(config.feed)
        return engine

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    def _reject(self, message: str) -> None:
        self.error_status = ErrorStatus.ERROR
        raise ConfigurationError(message)

    def set_fitness_function(self, function: Callable[[np.ndarray], float]) -> None:
        if isinstance(function, FitnessFunction):
            self.fitness_function = function
        else:
            self.fitness_function = FitnessFunction(function)

    def init(self, total_population: int, dimension: int) -> None:
        """Allocate this shard's part of a population of total_population."""
        try:
            self.store = PopulationStore(
                total_population,
                dimension,
                rank=self.communicator.rank,
                shards=self.communicator.size,
            )
            self.archive = Archive(self.store.size, create_trim_strategy(self.archive_trim))
        except (ConfigurationError, ValueError) as e:
            self._reject(str(e))

        self.generation = 0
        self.history = []
        self._has_results = False
        self.error_status = ErrorStatus.DONE
        self.last_error = None
        self.phase = RunPhase.INITIALIZED
        logger.debug(
            f"Rank {self.rank}: {self.store.size} of {total_population} individuals, "
            f"dimension {dimension}"
        )

    def _require_store(self) -> PopulationStore:
        if self.store is None:
            self._reject("init() must be called before setting bounds or feed vectors")
        return self.store

    def set_all_bounds(self, lower: float, upper: float) -> None:
        store = self._require_store()
        try:
            store.set_all_bounds(lower, upper)
        except ConfigurationError as e:
            self._reject(str(e))

    def set_all_bounds_vectors(self, lower: Sequence[float], upper: Sequence[float]) -> None:
        store = self._require_store()
        try:
            store.set_all_bounds_vectors(lower, upper)
        except ConfigurationError as e:
            self._reject(str(e))

    def set_feed(self, vectors: Sequence[Sequence[float]]) -> None:
        store = self._require_store()
        try:
            store.set_feed(vectors)
        except ConfigurationError as e:
            self._reject(str(e))

    def set_total_generations_max(self, generations: int) -> None:
        if generations < 0:
            self._reject(f"Generation budget must be non-negative, got {generations}")
        self.total_generations_max = int(generations)

    def set_target_to_minimum(self) -> None:
        self.minimize = True

    def set_target_to_maximum(self) -> None:
        self.minimize = False

    def set_best_share_p(self, p: float) -> None:
        if not 0.0 < p <= 1.0:
            self._reject(f"Best share p must be in (0, 1], got {p}")
        self.best_share_p = float(p)

    def set_adaptation_frequency_c(self, c: float) -> None:
        if not 0.0 < c <= 1.0:
            self._reject(f"Adaptation frequency c must be in (0, 1], got {c}")
        self.adaptation.adaptation_frequency_c = float(c)

    def set_power_mean_exponent(self, exponent: float) -> None:
        if exponent <= 0.0:
            self._reject(f"Power mean exponent must be positive, got {exponent}")
        self.adaptation.power_mean_exponent = float(exponent)

    def set_distribution_level(self, level: int) -> None:
        if level not in DISTRIBUTION_LEVELS:
            self._reject(f"Distribution level must be one of {DISTRIBUTION_LEVELS}, got {level}")
        self.distribution_level = int(level)

    def switch_off_pmcrade(self) -> None:
        self.adaptation.pmcrade = False

    def switch_on_pmcrade(self) -> None:
        self.adaptation.pmcrade = True

    @property
    def pmcrade(self) -> bool:
        return self.adaptation.pmcrade

    # ------------------------------------------------------------------ #
    # Run loop
    # ------------------------------------------------------------------ #

    def run(self, callback: Optional[Callable[["SubPopulation"], None]] = None) -> int:
        """
        Run the optimization for the configured number of generations.

        callback(engine) is called after every completed generation.
        Returns the error status (0 on success). Configuration and evaluation
        errors are logged and turn into a nonzero status; distributed errors
        are re-raised after setting the status.
        """
        start = time.time()
        try:
            self._check_ready()
            self._start()
            while True:
                if self.generation >= self.total_generations_max:
                    self.phase = RunPhase.DONE
                    break
                self._evolve_generation()
                self.generation += 1
                if callback is not None:
                    callback(self)
        except (ConfigurationError, EvaluationError) as e:
            self._fail(e)
        except DistributedError as e:
            self._fail(e)
            raise

        if self.error_status == ErrorStatus.DONE:
            self._has_results = True
            best_fitness = self.history[-1]["best_fitness"] if self.history else float(
                self._local_extreme(best=True)[1]
            )
            logger.info(
                f"Rank {self.rank}: {self.generation} generations, "
                f"{self.evaluations} evaluations in {time.time() - start:.2f}s, "
                f"best fitness: {best_fitness:.6g}"
            )
        return int(self.error_status)

    def _fail(self, error: Exception) -> None:
        self.error_status = ErrorStatus.ERROR
        self.last_error = error
        self.phase = RunPhase.ERROR
        self._has_results = False
        logger.error(f"Rank {self.rank}: run aborted in generation {self.generation}: {error}")

    def _check_ready(self) -> None:
        if self.error_status != ErrorStatus.DONE:
            raise ConfigurationError("Engine is in error state; fix configuration and call init() again")
        if self.store is None:
            raise ConfigurationError("init() must be called before run()")
        if self.store.bounds is None:
            raise ConfigurationError("Bounds must be set before run()")
        if self.fitness_function is None:
            raise EvaluationError("No fitness function registered")
        if self.distribution_level == 0 and self.store.size < MIN_POPULATION:
            raise ConfigurationError(
                f"Independent shard needs at least {MIN_POPULATION} individuals, "
                f"rank {self.rank} owns {self.store.size}"
            )

    def _start(self) -> None:
        store = self.store
        self.synchronizer = PopulationSynchronizer(
            self.communicator,
            store.dimension,
            level=self.distribution_level,
        )
        self.archive.clear()
        self.adaptation.mu_f = 0.5
        self.adaptation.mu_cr = 0.5
        self.adaptation.success_f = []
        self.adaptation.success_cr = []
        self.generation = 0
        self.history = []
        self.evaluations = 0
        self._shared_archive = None

        store.create_initial_population(self.draws)
        self.phase = RunPhase.INITIALIZED

        self.evaluations += store.evaluate_current_vectors(self.fitness_function)
        self.phase = RunPhase.EVALUATED

        self._synchronize()

    def _evolve_generation(self) -> None:
        store = self.store
        adaptation = self.adaptation

        self.phase = RunPhase.SORTING
        order = store.ranked_indices(self.minimize)
        pool = self._pool

        self.phase = RunPhase.GENERATING
        for i in order:
            i = int(i)
            x_i = store.current[i]
            f, cr = draw_control_parameters(
                self.draws,
                adaptation.mu_f,
                adaptation.mu_cr,
                pmcrade=adaptation.pmcrade,
                exponent=adaptation.power_mean_exponent,
            )
            mutant = mutate(x_i, pool.offset + i, f, pool, store.bounds, self.draws)
            trial = crossover(x_i, mutant, cr, self.draws)
            trial_fitness = self.fitness_function(trial)
            self.evaluations += 1

            if is_at_least_as_good(trial_fitness, store.current_fitness[i], self.minimize):
                store.write_next(i, trial, trial_fitness)
                adaptation.record_success(f, cr)
                self.archive.queue(store.individual(i))
            else:
                store.carry_over(i)

        self.phase = RunPhase.ADAPTING
        successes = adaptation.successes
        if self.synchronizer.shares_adaptation:
            pooled_f, pooled_cr = self.synchronizer.gather_successes(
                adaptation.success_f, adaptation.success_cr
            )
            adaptation.update(pooled_f.tolist(), pooled_cr.tolist())
        else:
            adaptation.update()

        self.phase = RunPhase.ARCHIVING
        self.archive.commit()
        self.archive.clean_up(self.draws)
        store.advance()

        self._synchronize()
        self._record(successes)

    def _synchronize(self) -> None:
        """Refresh the sampling pool; issues collectives when shards are linked."""
        store = self.store
        sync = self.synchronizer
        local_archive = self.archive.vectors(store.dimension)

        if not sync.shares_population:
            self._pool = SamplingPool.build(
                store.current,
                store.current_fitness,
                archive=local_archive,
                offset=0,
                minimize=self.minimize,
                best_share_p=self.best_share_p,
            )
            return

        self.phase = RunPhase.SYNCHRONIZING
        gathered = sync.gather_population(store.current, store.current_fitness)
        if sync.shares_adaptation:
            self._shared_archive = sync.gather_archive(local_archive)
            archive = self._shared_archive
        else:
            archive = local_archive
        self._pool = SamplingPool.build(
            gathered.vectors,
            gathered.fitness,
            archive=archive,
            offset=gathered.offset,
            minimize=self.minimize,
            best_share_p=self.best_share_p,
        )

    def _record(self, successes: int) -> None:
        fitness = self.store.current_fitness
        best = float(np.min(fitness) if self.minimize else np.max(fitness))
        worst = float(np.max(fitness) if self.minimize else np.min(fitness))
        self.history.append({
            'generation': self.generation,
            'best_fitness': best,
            'mean_fitness': float(np.mean(fitness)),
            'worst_fitness': worst,
            'mu_f': self.adaptation.mu_f,
            'mu_cr': self.adaptation.mu_cr,
            'archive_size': len(self.archive),
            'successes': successes,
            'evaluations': self.evaluations,
        })
        logger.debug(
            f"Rank {self.rank} generation {self.generation}: best {best:.6g}, "
            f"muF={self.adaptation.mu_f:.3f}, muCR={self.adaptation.mu_cr:.3f}, "
            f"{successes} successes"
        )

    # ------------------------------------------------------------------ #
    # Results
    # ------------------------------------------------------------------ #

    def _require_results(self) -> None:
        if self.error_status != ErrorStatus.DONE:
            raise OptimizationError(
                f"Run failed with status {int(self.error_status)}: {self.last_error}"
            )
        if not self._has_results:
            raise OptimizationError("No results: run() has not completed")

    def _local_extreme(self, best: bool) -> Tuple[np.ndarray, float]:
        fitness = self.store.current_fitness
        want_min = self.minimize if best else not self.minimize
        i = int(np.argmin(fitness) if want_min else np.argmax(fitness))
        return self.store.current[i].copy(), float(fitness[i])

    def get_best(self) -> Tuple[np.ndarray, float]:
        """Best local individual and its fitness."""
        self._require_results()
        return self._local_extreme(best=True)

    def get_worst(self) -> Tuple[np.ndarray, float]:
        """Worst local individual and its fitness."""
        self._require_results()
        return self._local_extreme(best=False)

    def get_final_fitness(self) -> np.ndarray:
        """Fitness of every local individual after the run."""
        self._require_results()
        return self.store.current_fitness.copy()

    def get_global_best(self) -> Tuple[np.ndarray, float]:
        """
        Best individual over all shards.

        Only linked shards (distribution level > 0) know each other's
        populations; an independent shard reports its local best.
        """
        self._require_results()
        if not self.synchronizer.shares_population:
            return self._local_extreme(best=True)
        k = int(self._pool.ranked[0])
        return self._pool.vectors[k].copy(), float(self._pool.fitness[k])

    def get_population(self) -> List[Individual]:
        self._require_results()
        return [self.store.individual(i) for i in range(self.store.size)]

    def get_statistics(self) -> Dict[str, Any]:
        """Get current engine statistics."""
        stats = {
            'rank': self.rank,
            'shards': self.communicator.size,
            'phase': self.phase.value,
            'generation': self.generation,
            'total_generations_max': self.total_generations_max,
            'evaluations': self.evaluations,
            'error_status': int(self.error_status),
            'minimize': self.minimize,
            'best_share_p': self.best_share_p,
            'distribution_level': self.distribution_level,
            'archive_trim': self.archive_trim,
            **self.adaptation.to_dict(),
        }
        if self.store is not None:
            stats.update({
                'total_population': self.store.total_population,
                'subpopulation': self.store.size,
                'dimension': self.store.dimension,
                'archive_size': len(self.archive),
            })
        return stats
