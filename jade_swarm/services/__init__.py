"""
jade_swarm/services/

Distributed services for sharded differential evolution.

Architecture:
- Communicator: Collective gathers between shards over message channels
- Synchronizer: Cross-shard population, archive and success-set exchange
- Shard runner (jade_swarm.services.shard): Launches one engine per shard

Every shard runs the same loop on its own sub-population. When shards are
linked, they exchange state once per generation through synchronous
collectives, so together they behave like one larger population.
"""

from .communicator import (
    Communicator,
    GatherMessage,
    InMemoryCommunicator,
    LocalCommunicator,
    RedisCommunicator,
    create_communicator,
)
from .sync import DISTRIBUTION_LEVELS, GatheredPopulation, PopulationSynchronizer

__all__ = [
    "Communicator",
    "GatherMessage",
    "InMemoryCommunicator",
    "LocalCommunicator",
    "RedisCommunicator",
    "create_communicator",
    "DISTRIBUTION_LEVELS",
    "GatheredPopulation",
    "PopulationSynchronizer",
]
