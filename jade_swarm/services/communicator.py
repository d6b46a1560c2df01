"""
jade_swarm/services/communicator.py

Collective message passing between shards.

A communicator connects one shard (rank) to its process group and offers two
collectives:
- all_gather_doubles: every shard contributes a float payload
- all_gather_longs: every shard contributes an integer payload

Each returns the concatenation of every shard's payload in rank order.
Payload lengths may differ between shards. A call returns only once every
shard has issued the matching call, so every shard must issue the same
sequence of collectives.

Backends:
- LocalCommunicator: a group of one
- InMemoryCommunicator: shards as threads in one process, queue channels
- RedisCommunicator: shards as separate processes, Redis list channels
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence
import json
import logging
import queue
import threading
import time

import numpy as np

from jade_swarm.exceptions import DistributedError

logger = logging.getLogger(__name__)

DOUBLE = "double"
LONG = "long"

_DTYPES = {
    DOUBLE: np.float64,
    LONG: np.int64,
}


@dataclass
class GatherMessage:
    """
    One shard's contribution to one collective call.

    sequence numbers calls per communicator, so a message can be matched to
    the collective it belongs to even if it arrives early.
    """
    sequence: int
    kind: str
    source: int
    data: np.ndarray
    sent_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return json.dumps({
            "sequence": self.sequence,
            "kind": self.kind,
            "source": self.source,
            "data": self.data.tolist(),
            "sent_at": self.sent_at,
        })

    @classmethod
    def from_json(cls, data: str) -> "GatherMessage":
        """Deserialize message from JSON."""
        d = json.loads(data)
        kind = d["kind"]
        return cls(
            sequence=d["sequence"],
            kind=kind,
            source=d["source"],
            data=np.array(d["data"], dtype=_DTYPES[kind]),
            sent_at=d.get("sent_at", time.time()),
        )


class Communicator(ABC):
    """
    Abstract base for the collective boundary between shards.
    """

    def __init__(self, rank: int = 0, size: int = 1):
        if size < 1 or not 0 <= rank < size:
            raise DistributedError(f"Invalid rank {rank} for group of size {size}")
        self.rank = rank
        self.size = size
        self.calls = 0

    def all_gather_doubles(self, payload: Sequence[float]) -> np.ndarray:
        """Concatenate every shard's float payload in rank order."""
        return self._all_gather(DOUBLE, payload)

    def all_gather_longs(self, payload: Sequence[int]) -> np.ndarray:
        """Concatenate every shard's integer payload in rank order."""
        return self._all_gather(LONG, payload)

    def _all_gather(self, kind: str, payload: Sequence[Any]) -> np.ndarray:
        data = np.ravel(np.array(payload, dtype=_DTYPES[kind]))
        sequence = self.calls
        self.calls += 1
        parts = self._exchange(GatherMessage(sequence, kind, self.rank, data))
        return np.concatenate([parts[r] for r in range(self.size)]).astype(_DTYPES[kind])

    @abstractmethod
    def _exchange(self, message: GatherMessage) -> dict[int, np.ndarray]:
        """Send own message to every peer and return {rank: data} for all ranks."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


class LocalCommunicator(Communicator):
    """Group of one shard; collectives return the own payload."""

    def __init__(self):
        super().__init__(rank=0, size=1)

    def _exchange(self, message: GatherMessage) -> dict[int, np.ndarray]:
        return {0: message.data.copy()}


class InMemoryChannels:
    """One inbox per rank, shared by a group of InMemoryCommunicators."""

    def __init__(self, size: int):
        self.size = size
        self.inboxes: list[queue.Queue] = [queue.Queue() for _ in range(size)]


class InMemoryCommunicator(Communicator):
    """
    Communicator for shards running as threads of one process.

    Thread-safe: each rank only reads its own inbox. Messages that belong to
    a later collective are buffered until that collective is issued.
    """

    def __init__(self, channels: InMemoryChannels, rank: int, timeout: float | None = None):
        super().__init__(rank=rank, size=channels.size)
        self.channels = channels
        self.timeout = timeout
        self._early: dict[tuple[int, int], GatherMessage] = {}
        self._lock = threading.Lock()

    @classmethod
    def create_group(cls, size: int, timeout: float | None = None) -> list["InMemoryCommunicator"]:
        """Create connected communicators for ranks 0..size-1."""
        channels = InMemoryChannels(size)
        return [cls(channels, rank, timeout=timeout) for rank in range(size)]

    def _exchange(self, message: GatherMessage) -> dict[int, np.ndarray]:
        for destination in range(self.size):
            if destination != self.rank:
                self.channels.inboxes[destination].put(message)

        parts = {self.rank: message.data.copy()}
        with self._lock:
            for source in range(self.size):
                early = self._early.pop((message.sequence, source), None)
                if early is not None:
                    parts[source] = self._check(early, message).data

            inbox = self.channels.inboxes[self.rank]
            while len(parts) < self.size:
                try:
                    received = inbox.get(timeout=self.timeout)
                except queue.Empty:
                    missing = sorted(set(range(self.size)) - set(parts))
                    raise DistributedError(
                        f"Rank {self.rank} timed out in collective #{message.sequence} "
                        f"waiting for ranks {missing}"
                    )
                if received.sequence == message.sequence:
                    parts[received.source] = self._check(received, message).data
                elif received.sequence > message.sequence:
                    self._early[(received.sequence, received.source)] = received
                else:
                    raise DistributedError(
                        f"Rank {self.rank} received stale collective #{received.sequence} "
                        f"from rank {received.source} during #{message.sequence}"
                    )
        return parts

    def _check(self, received: GatherMessage, own: GatherMessage) -> GatherMessage:
        if received.kind != own.kind:
            raise DistributedError(
                f"Collective #{own.sequence} mismatch: rank {self.rank} gathers "
                f"{own.kind}, rank {received.source} sent {received.kind}"
            )
        return received


class RedisCommunicator(Communicator):
    """
    Communicator for shards running as separate processes.

    Every message travels on its own Redis list keyed by
    (run, sequence, source, destination); receivers block on BLPOP.
    Keys expire so an aborted run does not leave data behind.
    """

    def __init__(
        self,
        rank: int,
        size: int,
        redis_url: str = "redis://localhost:6379",
        run_id: str = "default",
        key_prefix: str = "jade_swarm",
        timeout: float = 300.0,
        key_ttl: int = 3600,
    ):
        super().__init__(rank=rank, size=size)
        self.redis_url = redis_url
        self.run_id = run_id
        self.key_prefix = key_prefix
        self.timeout = timeout
        self.key_ttl = key_ttl
        self._redis = None

    def _get_redis(self):
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                import redis
                self._redis = redis.from_url(self.redis_url)
                self._redis.ping()  # Test connection
                logger.info(f"Rank {self.rank} connected to Redis at {self.redis_url}")
            except ImportError:
                raise ImportError(
                    "redis package required for RedisCommunicator. "
                    "Install with: pip install redis"
                )
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise DistributedError(f"Cannot reach Redis at {self.redis_url}: {e}") from e
        return self._redis

    def channel_key(self, sequence: int, source: int, destination: int) -> str:
        return f"{self.key_prefix}:{self.run_id}:{sequence}:{source}:{destination}"

    def _exchange(self, message: GatherMessage) -> dict[int, np.ndarray]:
        r = self._get_redis()
        parts = {self.rank: message.data.copy()}
        try:
            encoded = message.to_json()
            for destination in range(self.size):
                if destination == self.rank:
                    continue
                key = self.channel_key(message.sequence, self.rank, destination)
                r.rpush(key, encoded)
                r.expire(key, self.key_ttl)

            for source in range(self.size):
                if source == self.rank:
                    continue
                key = self.channel_key(message.sequence, source, self.rank)
                result = r.blpop(key, timeout=self.timeout)
                if result is None:
                    raise DistributedError(
                        f"Rank {self.rank} timed out in collective #{message.sequence} "
                        f"waiting for rank {source}"
                    )
                _, data = result
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                received = GatherMessage.from_json(data)
                if received.kind != message.kind:
                    raise DistributedError(
                        f"Collective #{message.sequence} mismatch: rank {self.rank} gathers "
                        f"{message.kind}, rank {source} sent {received.kind}"
                    )
                parts[source] = received.data
        except DistributedError:
            raise
        except Exception as e:
            logger.error(f"Collective #{message.sequence} failed on rank {self.rank}: {e}")
            raise DistributedError(f"Redis collective failed: {e}") from e
        return parts

    def inbox_pattern(self) -> str:
        """Match every channel of this run addressed to this rank."""
        return f"{self.key_prefix}:{self.run_id}:*:*:{self.rank}"

    def close(self) -> None:
        """Drop unread messages addressed to this rank, then disconnect."""
        if self._redis is not None:
            try:
                stale = list(self._redis.scan_iter(match=self.inbox_pattern()))
                if stale:
                    self._redis.delete(*stale)
                    logger.debug(f"Rank {self.rank} removed {len(stale)} unread channels")
            except Exception as e:
                logger.warning(f"Failed to remove channels of run {self.run_id}: {e}")
            try:
                self._redis.close()
            except Exception as e:
                logger.warning(f"Failed to close Redis connection: {e}")
            self._redis = None


def create_communicator(
    backend: str = "local",
    rank: int = 0,
    size: int = 1,
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> Communicator:
    """
    Factory function to create a communicator for one shard.

    Args:
        backend: "local" or "redis" (in-memory groups come from
            InMemoryCommunicator.create_group, since all ranks share channels)
        rank: Rank of this shard
        size: Number of shards in the group
        redis_url: Redis connection URL (for redis backend)
        **kwargs: Additional backend-specific options

    Returns:
        Communicator instance
    """
    if backend == "local":
        if size != 1:
            raise ValueError(f"Local backend supports a single shard, got size {size}")
        return LocalCommunicator()
    elif backend == "redis":
        return RedisCommunicator(rank=rank, size=size, redis_url=redis_url, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
