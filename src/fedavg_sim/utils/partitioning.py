"""
Dataset partitioning strategies for federated learning.

This module implements the strategy pattern for dataset partitioning,
supporting the two data distributions of the FedAvg experiments:
- IID: a seeded permutation cut into K near-equal contiguous groups
- Shards (non-IID): label-sorted shards dealt out to clients

It also hosts client sampling and the seed derivation used to make every
random draw depend only on (experiment seed, round, client).
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Union
import logging

import numpy as np
from torch.utils.data import Dataset, Subset

from ..core.exceptions import PartitioningError
from ..core.types import ClientPartition, clients_per_round

logger = logging.getLogger(__name__)


def derive_seed(*components: int) -> int:
    """
    Derive a 32-bit seed from integer components.

    ``derive_seed(seed, round)`` seeds client sampling for a round and
    ``derive_seed(seed, round, client_id)`` seeds one client's local shuffling,
    so results do not depend on the order in which clients are executed.
    """
    return int(np.random.SeedSequence([int(c) for c in components]).generate_state(1)[0])


def iid_split(n_items: int, num_clients: int, seed: Optional[int] = None) -> List[ClientPartition]:
    """
    Randomly partition ``n_items`` indices among ``num_clients`` clients.

    Args:
        n_items: Total number of items
        num_clients: Number of clients (K)
        seed: Random seed

    Returns:
        K arrays of 0-based indices whose sizes differ by at most one

    Raises:
        PartitioningError: If there are fewer items than clients
    """
    if num_clients < 1:
        raise PartitioningError("Partitioner: num_clients must be >= 1",
                                "iid", num_clients, n_items)
    if n_items < num_clients:
        raise PartitioningError(
            f"Partitioner: dataset size ({n_items}) < num_clients ({num_clients})",
            "iid", num_clients, n_items
        )

    rng = np.random.default_rng(seed)
    indices = rng.permutation(n_items)
    return [np.asarray(part, dtype=np.int64) for part in np.array_split(indices, num_clients)]


def shard_split(labels: Union[Sequence[int], np.ndarray], num_clients: int,
                shards_per_client: int = 2, seed: Optional[int] = None) -> List[ClientPartition]:
    """
    Label-skewed split: sort by label, cut into shards, deal shards to clients.

    The sorted index sequence is cut into ``num_clients * shards_per_client``
    contiguous shards of ``n // num_shards`` items; the last shard absorbs the
    remainder. Shards are permuted with ``seed`` and handed out
    ``shards_per_client`` at a time in client order.

    Args:
        labels: Label of every dataset item
        num_clients: Number of clients (K)
        shards_per_client: Shards assigned to each client
        seed: Random seed

    Returns:
        K arrays of 0-based indices

    Raises:
        PartitioningError: If there are fewer items than shards
    """
    labels = np.asarray(labels)
    n_items = labels.shape[0]
    if num_clients < 1 or shards_per_client < 1:
        raise PartitioningError("Partitioner: num_clients and shards_per_client must be >= 1",
                                "shards", num_clients, n_items)

    num_shards = num_clients * shards_per_client
    if n_items < num_shards:
        raise PartitioningError(
            f"Partitioner: {n_items} items cannot fill {num_shards} shards",
            "shards", num_clients, n_items
        )

    sorted_indices = np.argsort(labels, kind="stable")
    shard_size = n_items // num_shards
    shards = [sorted_indices[i * shard_size:(i + 1) * shard_size] for i in range(num_shards - 1)]
    shards.append(sorted_indices[(num_shards - 1) * shard_size:])

    if n_items % num_shards:
        logger.debug(f"Last shard absorbs {n_items % num_shards} remainder items")

    rng = np.random.default_rng(seed)
    shard_order = rng.permutation(num_shards)

    partitions = []
    for client in range(num_clients):
        owned = shard_order[client * shards_per_client:(client + 1) * shards_per_client]
        partitions.append(np.concatenate([shards[s] for s in owned]).astype(np.int64))
    return partitions


def sample_clients(num_clients: int, client_fraction: float, seed: Optional[int] = None) -> List[int]:
    """
    Select ``max(1, floor(C * K))`` distinct client ids in ``[1, K]``.

    Args:
        num_clients: Total number of clients (K)
        client_fraction: Fraction of clients per round (C)
        seed: Random seed

    Returns:
        Sorted list of 1-based client ids

    Raises:
        PartitioningError: If ``client_fraction`` is outside ``(0, 1]``
    """
    if not 0.0 < client_fraction <= 1.0:
        raise PartitioningError(f"Partitioner: client fraction must be in (0, 1], got {client_fraction}",
                                "sampling", num_clients)
    return draw_clients(num_clients, clients_per_round(num_clients, client_fraction), seed)


def draw_clients(num_clients: int, count: int, seed: Optional[int] = None) -> List[int]:
    """Sorted sample of ``count`` distinct 1-based client ids without replacement."""
    if not 1 <= count <= num_clients:
        raise PartitioningError(f"Partitioner: cannot draw {count} of {num_clients} clients",
                                "sampling", num_clients)
    rng = np.random.default_rng(seed)
    chosen = rng.choice(np.arange(1, num_clients + 1), size=count, replace=False)
    return sorted(int(c) for c in chosen)


def extract_labels(dataset: Dataset) -> np.ndarray:
    """Extract labels from dataset, using ``targets``/``tensors`` when available."""
    if hasattr(dataset, "targets"):
        return np.asarray(dataset.targets)
    if hasattr(dataset, "tensors") and len(dataset.tensors) >= 2:
        return dataset.tensors[1].cpu().numpy()

    labels = []
    for i in range(len(dataset)):
        _, label = dataset[i]
        labels.append(label if isinstance(label, int) else label.item())
    return np.array(labels)


class PartitioningStrategy(ABC):
    """Abstract base class for dataset partitioning strategies."""

    name = "base"

    @abstractmethod
    def partition(self, dataset: Dataset, num_clients: int,
                  seed: Optional[int] = None, **kwargs) -> List[ClientPartition]:
        """
        Partition dataset indices among clients.

        Args:
            dataset: PyTorch dataset to partition
            num_clients: Number of clients
            seed: Random seed
            **kwargs: Strategy-specific parameters

        Returns:
            One index array per client
        """
        pass

    def validate_partition(self, partitions: List[ClientPartition], n_items: int,
                           min_samples_per_client: int = 0) -> None:
        """
        Check that partitions form a disjoint, complete cover of ``range(n_items)``.

        Raises:
            PartitioningError: If partition is invalid
        """
        if not partitions:
            raise PartitioningError("Partitioner: no partitions created", self.name, 0, n_items)

        for i, part in enumerate(partitions):
            if len(part) < min_samples_per_client:
                raise PartitioningError(
                    f"Partitioner: client {i + 1} has only {len(part)} samples, "
                    f"minimum required: {min_samples_per_client}",
                    self.name, len(partitions), n_items
                )

        combined = np.concatenate(partitions) if partitions else np.empty(0, dtype=np.int64)
        if combined.shape[0] != n_items or np.unique(combined).shape[0] != n_items:
            raise PartitioningError("Partitioner: partitions are not a disjoint, complete cover",
                                    self.name, len(partitions), n_items)
        if n_items and (combined.min() < 0 or combined.max() >= n_items):
            raise PartitioningError("Partitioner: index out of range",
                                    self.name, len(partitions), n_items)


class IIDPartitioner(PartitioningStrategy):
    """Independent and Identically Distributed (IID) partitioning strategy."""

    name = "iid"

    def partition(self, dataset: Dataset, num_clients: int,
                  seed: Optional[int] = None, **kwargs) -> List[ClientPartition]:
        n_items = len(dataset)
        logger.info(f"Creating IID partition for {num_clients} clients")
        partitions = iid_split(n_items, num_clients, seed)
        self.validate_partition(partitions, n_items, min_samples_per_client=1)
        return partitions


class ShardPartitioner(PartitioningStrategy):
    """Label-sorted shard partitioning (each client sees few labels)."""

    name = "noniid"

    def partition(self, dataset: Dataset, num_clients: int,
                  seed: Optional[int] = None, **kwargs) -> List[ClientPartition]:
        """
        Partition dataset into label-skewed shards.

        Args:
            dataset: Dataset to partition
            num_clients: Number of clients
            seed: Random seed
            shards_per_client: Shards per client (default: 2)

        Returns:
            One index array per client
        """
        shards_per_client = kwargs.get("shards_per_client", 2)
        logger.info(f"Creating shard partition for {num_clients} clients "
                    f"with {shards_per_client} shards per client")

        labels = extract_labels(dataset)
        partitions = shard_split(labels, num_clients, shards_per_client, seed)
        self.validate_partition(partitions, len(labels), min_samples_per_client=1)
        return partitions


class PartitionerRegistry:
    """Registry for dataset partitioning strategies."""

    _strategies = {
        "iid": IIDPartitioner,
        "noniid": ShardPartitioner,
    }

    @classmethod
    def get_partitioner(cls, strategy_name: str) -> PartitioningStrategy:
        """
        Get partitioner instance by name.

        Args:
            strategy_name: Name of partitioning strategy

        Returns:
            Partitioner instance

        Raises:
            PartitioningError: If strategy is not registered
        """
        key = strategy_name.lower()
        if key not in cls._strategies:
            available_strategies = list(cls._strategies.keys())
            raise PartitioningError(f"Partitioner: unknown strategy '{strategy_name}'. "
                                    f"Available strategies: {available_strategies}",
                                    strategy_name)

        return cls._strategies[key]()

    @classmethod
    def register_strategy(cls, name: str, strategy_class: type) -> None:
        """
        Register a new partitioning strategy.

        Args:
            name: Strategy name
            strategy_class: Strategy class
        """
        if not issubclass(strategy_class, PartitioningStrategy):
            raise PartitioningError("Partitioner: strategy class must inherit from PartitioningStrategy",
                                    name)

        cls._strategies[name.lower()] = strategy_class
        logger.info(f"Registered partitioning strategy: {name}")

    @classmethod
    def list_strategies(cls) -> List[str]:
        """List all available strategies."""
        return list(cls._strategies.keys())


def to_subsets(dataset: Dataset, partitions: List[ClientPartition]) -> List[Subset]:
    """Wrap index partitions as ``Subset`` views without copying data."""
    return [Subset(dataset, part.tolist()) for part in partitions]
