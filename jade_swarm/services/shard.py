"""
jade_swarm/services/shard.py

Shard runner service.

A shard is one engine plus its communicator. This module:
1. Builds an engine from an OptimizerConfig
2. Runs it to the generation budget
3. Reports the outcome as a ShardResult

Shards can run as threads of one process (in-memory channels, mostly for
tests and single-machine use) or as separate processes linked by Redis, one
`jade-swarm --backend redis --run-id NAME --rank R --size S` invocation per
shard.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from jade_swarm.evolution.fitness import BENCHMARKS, benchmark_minimizes, get_benchmark
from jade_swarm.evolution.optimizer import ErrorStatus, OptimizerConfig, SubPopulation
from jade_swarm.exceptions import ConfigurationError, DistributedError
from jade_swarm.observations.report import (
    OUTPUT_RANK,
    format_parameters,
    format_result,
    save_history_plot,
)

from .communicator import Communicator, InMemoryCommunicator, create_communicator

logger = logging.getLogger(__name__)


@dataclass
class ShardResult:
    """Outcome of one shard's run."""
    rank: int
    status: int
    best_vector: list[float] | None = None
    best_fitness: float | None = None
    generations: int = 0
    evaluations: int = 0
    history: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == ErrorStatus.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "status": self.status,
            "best_vector": self.best_vector,
            "best_fitness": self.best_fitness,
            "generations": self.generations,
            "evaluations": self.evaluations,
            "error": self.error,
        }


def run_shard(
    config: OptimizerConfig,
    fitness_function: Callable[[np.ndarray], float],
    communicator: Communicator | None = None,
    callback: Callable[[SubPopulation], None] | None = None,
) -> ShardResult:
    """
    Configure and run one shard.

    Configuration and evaluation problems come back as a failed ShardResult.
    DistributedError propagates: a broken collective is not recoverable.
    """
    rank = communicator.rank if communicator is not None else 0
    try:
        engine = SubPopulation.from_config(config, fitness_function, communicator=communicator)
    except ConfigurationError as e:
        logger.error(f"Rank {rank}: invalid configuration: {e}")
        return ShardResult(rank=rank, status=int(ErrorStatus.ERROR), error=str(e))

    if rank == OUTPUT_RANK:
        logger.info(format_parameters(engine, comment="Starting JADE"))

    status = engine.run(callback=callback)
    if status != ErrorStatus.DONE:
        return ShardResult(
            rank=rank,
            status=status,
            generations=engine.generation,
            evaluations=engine.evaluations,
            history=engine.history,
            error=str(engine.last_error),
        )

    best_x, best_f = engine.get_global_best()
    if rank == OUTPUT_RANK:
        logger.info(format_result(engine, comment=f"Rank {rank} result"))
    return ShardResult(
        rank=rank,
        status=status,
        best_vector=best_x.tolist(),
        best_fitness=best_f,
        generations=engine.generation,
        evaluations=engine.evaluations,
        history=engine.history,
    )


def run_local_shards(
    config: OptimizerConfig,
    fitness_function: Callable[[np.ndarray], float],
    shards: int = 2,
    timeout: float | None = 60.0,
) -> list[ShardResult]:
    """
    Run `shards` engines as threads linked by in-memory channels.

    timeout bounds each collective wait; a shard that stalls makes the
    others fail with DistributedError instead of hanging forever.
    """
    # Each shard wraps the raw callable so evaluation counters stay per shard
    function = getattr(fitness_function, "function", fitness_function)
    communicators = InMemoryCommunicator.create_group(shards, timeout=timeout)
    results: list[ShardResult | None] = [None] * shards

    def worker(communicator: InMemoryCommunicator) -> None:
        try:
            results[communicator.rank] = run_shard(config, function, communicator)
        except Exception as e:
            logger.error(f"Rank {communicator.rank}: shard failed: {e}")
            results[communicator.rank] = ShardResult(
                rank=communicator.rank,
                status=int(ErrorStatus.ERROR),
                error=f"{type(e).__name__}: {e}",
            )

    threads = [
        threading.Thread(target=worker, args=(c,), name=f"jade-shard-{c.rank}", daemon=True)
        for c in communicators
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    missing = [rank for rank, r in enumerate(results) if r is None]
    if missing:
        raise DistributedError(f"Shards {missing} did not report a result")
    return results


def best_result(results: list[ShardResult], minimize: bool = True) -> ShardResult | None:
    """Best successful shard result, or None if every shard failed."""
    ok = [r for r in results if r.ok]
    if not ok:
        return None
    if minimize:
        return min(ok, key=lambda r: r.best_fitness)
    return max(ok, key=lambda r: r.best_fitness)


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="Sharded JADE optimizer")
    parser.add_argument("--config", default=None, help="YAML file with OptimizerConfig fields")
    parser.add_argument("--benchmark", default="sphere", choices=sorted(BENCHMARKS))
    parser.add_argument("--population", type=int, default=None)
    parser.add_argument("--dimension", type=int, default=None)
    parser.add_argument("--lower", type=float, default=None)
    parser.add_argument("--upper", type=float, default=None)
    parser.add_argument("--generations", type=int, default=None)
    direction = parser.add_mutually_exclusive_group()
    direction.add_argument("--minimize", dest="minimize", action="store_true", default=None)
    direction.add_argument("--maximize", dest="minimize", action="store_false")
    parser.add_argument("--best-share-p", type=float, default=None)
    parser.add_argument("--adaptation-c", type=float, default=None)
    parser.add_argument("--distribution-level", type=int, default=None, choices=[0, 1, 2])
    parser.add_argument("--no-pmcrade", action="store_true")
    parser.add_argument("--archive-trim", default=None, choices=["uniform", "oldest"])
    parser.add_argument("--seed", type=int, default=None)

    # Shards
    parser.add_argument("--backend", default="memory", choices=["memory", "redis"])
    parser.add_argument("--shards", type=int, default=1, help="Thread shards (memory backend)")
    parser.add_argument("--rank", type=int, default=0, help="This shard (redis backend)")
    parser.add_argument("--size", type=int, default=1, help="Number of shards (redis backend)")
    parser.add_argument("--redis-url", default="redis://localhost:6379")
    parser.add_argument(
        "--run-id", default=None,
        help="Name shared by every shard of one launch (required for redis backend)",
    )
    parser.add_argument("--timeout", type=float, default=300.0)

    parser.add_argument("--plot", default=None, help="Save a convergence plot to this path")
    parser.add_argument("--log-level", default="INFO")
    return parser


def config_from_args(args) -> OptimizerConfig:
    """YAML file (or JADE_* environment) first, command-line flags on top."""
    config = OptimizerConfig.from_yaml(args.config) if args.config else OptimizerConfig.from_env()

    overrides = {
        "total_population": args.population,
        "dimension": args.dimension,
        "lower": args.lower,
        "upper": args.upper,
        "generations": args.generations,
        "minimize": args.minimize,
        "best_share_p": args.best_share_p,
        "adaptation_frequency_c": args.adaptation_c,
        "distribution_level": args.distribution_level,
        "archive_trim": args.archive_trim,
        "seed": args.seed,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    if args.minimize is None and not args.config:
        config.minimize = benchmark_minimizes(args.benchmark)
    if args.no_pmcrade:
        config.pmcrade = False
    return config


def main(argv: list[str] | None = None) -> int:
    """
    Command-line entry point.

    Returns the process exit status (0 when every shard succeeded).
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return int(ErrorStatus.ERROR)
    fitness = get_benchmark(args.benchmark)

    if args.backend == "redis" and not args.run_id:
        logger.error("--run-id is required with the redis backend")
        return int(ErrorStatus.ERROR)

    if args.backend == "memory":
        results = run_local_shards(config, fitness, shards=args.shards, timeout=args.timeout)
    else:
        communicator = create_communicator(
            backend="redis",
            rank=args.rank,
            size=args.size,
            redis_url=args.redis_url,
            run_id=args.run_id,
            timeout=args.timeout,
        )
        try:
            results = [run_shard(config, fitness, communicator)]
        except DistributedError as e:
            logger.error(f"Rank {args.rank}: distributed failure: {e}")
            return int(ErrorStatus.ERROR)
        finally:
            communicator.close()

    best = best_result(results, minimize=config.minimize)
    if best is None:
        for r in results:
            logger.error(f"Rank {r.rank} failed: {r.error}")
        return int(ErrorStatus.ERROR)

    print(f"best fitness: {best.best_fitness:.10g}")
    print(f"best vector:  {best.best_vector}")
    if args.plot:
        save_history_plot(best.history, args.plot)
        logger.info(f"Convergence plot saved to {args.plot}")

    return 0 if all(r.ok for r in results) else int(ErrorStatus.ERROR)


if __name__ == "__main__":
    raise SystemExit(main())
