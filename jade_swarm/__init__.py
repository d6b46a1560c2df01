"""
JADE-Swarm: Adaptive Differential Evolution across Cooperating Shards

An implementation of the JADE adaptive differential evolution algorithm
(with the optional PMCRADE power-mean crossover-rate patch) in which each
participating process owns a sub-population and, optionally, samples from
the union of every shard's population through collective exchanges.
"""

__version__ = "0.1.0"
