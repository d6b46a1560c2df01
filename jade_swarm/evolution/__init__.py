"""
jade_swarm/evolution/

Adaptive differential evolution (JADE) for one shard.

Per generation, for every individual in rank order:
- Draw control parameters (F from a Cauchy, CR from a normal distribution)
- Mutate (current-to-pbest/1 with archive), cross over, evaluate, select
Then adapt muF/muCR from the successful parameters and trim the archive.

Modules:
- population: Individuals, bounds, current/next-generation buffers
- archive: Reservoir of displaced parents
- operators: Parameter draws, mutation, crossover, selection
- adaptation: muF/muCR controller (JADE and PMCRADE means)
- optimizer: The SubPopulation engine and its configuration
"""

from .adaptation import AdaptationState, lehmer_mean, power_mean
from .archive import Archive, OldestFirstTrim, UniformTrim, create_trim_strategy
from .fitness import FitnessFunction, get_benchmark, rastrigin, rosenbrock, shifted_sphere, sphere
from .optimizer import ErrorStatus, OptimizerConfig, RunPhase, SubPopulation
from .population import Bounds, Individual, PopulationStore, partition_population

__all__ = [
    "AdaptationState",
    "lehmer_mean",
    "power_mean",
    "Archive",
    "OldestFirstTrim",
    "UniformTrim",
    "create_trim_strategy",
    "FitnessFunction",
    "get_benchmark",
    "rastrigin",
    "rosenbrock",
    "shifted_sphere",
    "sphere",
    "ErrorStatus",
    "OptimizerConfig",
    "RunPhase",
    "SubPopulation",
    "Bounds",
    "Individual",
    "PopulationStore",
    "partition_population",
]
