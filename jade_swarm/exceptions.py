"""
jade_swarm/exceptions.py

Exception hierarchy shared by the engine, the synchronization layer and the
shard runner.
"""


class JadeError(Exception):
    """Base for all jade_swarm exceptions."""

    pass


class ConfigurationError(JadeError):
    """Invalid population size, dimension, bounds shape or control parameter."""

    pass


class EvaluationError(JadeError):
    """Fitness function missing or returned a non-finite value."""

    pass


class DistributedError(JadeError):
    """Collective call mismatch or stall across shards."""

    pass


class OptimizationError(JadeError):
    """Results requested from a run that failed or never ran."""

    pass
