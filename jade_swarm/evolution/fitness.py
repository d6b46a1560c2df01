"""
jade_swarm/evolution/fitness.py

Fitness functions.

The engine accepts any callable mapping a 1-D numpy vector to a real number.
FitnessFunction wraps such a callable with an evaluation counter and the
finiteness check; the benchmark functions below are standard test problems
used by the command-line runner and the test suite.
"""

from __future__ import annotations
from typing import Callable, Dict, Optional
import numpy as np

from jade_swarm.exceptions import ConfigurationError
from .population import checked_fitness


class FitnessFunction:
    """
    Counted, validated wrapper around a user fitness callable.

    The callable must be deterministic: the engine assumes repeated
    evaluation of the same vector gives the same value.
    """

    def __init__(self, function: Callable[[np.ndarray], float], name: Optional[str] = None):
        if not callable(function):
            raise ConfigurationError(f"Fitness function must be callable, got {type(function).__name__}")
        self.function = function
        self.name = name or getattr(function, "__name__", type(function).__name__)
        self.evaluations = 0

    def __call__(self, x: np.ndarray) -> float:
        return self.evaluate(x)

    def evaluate(self, x: np.ndarray) -> float:
        value = checked_fitness(self.function, x)
        self.evaluations += 1
        return value

    def __repr__(self) -> str:
        return f"FitnessFunction({self.name}, evaluations={self.evaluations})"


def sphere(x: np.ndarray) -> float:
    """sum(x^2); minimum 0 at the origin."""
    return float(np.sum(x * x))


def shifted_sphere(x: np.ndarray, shift: float = 3.0) -> float:
    """Negated sphere centred at `shift`; maximum 0 at (shift, ..., shift)."""
    d = x - shift
    return float(-np.sum(d * d))


def rastrigin(x: np.ndarray) -> float:
    """Highly multimodal; minimum 0 at the origin."""
    return float(10.0 * len(x) + np.sum(x * x - 10.0 * np.cos(2.0 * np.pi * x)))


def rosenbrock(x: np.ndarray) -> float:
    """Curved valley; minimum 0 at (1, ..., 1)."""
    return float(np.sum(100.0 * (x[1:] - x[:-1] ** 2) ** 2 + (1.0 - x[:-1]) ** 2))


# name -> (function, minimize)
BENCHMARKS: Dict[str, tuple] = {
    "sphere": (sphere, True),
    "shifted_sphere": (shifted_sphere, False),
    "rastrigin": (rastrigin, True),
    "rosenbrock": (rosenbrock, True),
}


def get_benchmark(name: str) -> FitnessFunction:
    """Look up a benchmark by name, wrapped as a FitnessFunction."""
    try:
        function, _ = BENCHMARKS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown benchmark: {name} (expected one of {sorted(BENCHMARKS)})"
        )
    return FitnessFunction(function, name=name)


def benchmark_minimizes(name: str) -> bool:
    """Natural optimization direction of a benchmark."""
    return BENCHMARKS[name][1]
