"""
Type definitions for the fedavg-sim federated averaging simulator.

This module defines custom types, enums and the small immutable records that
flow between the partitioner, client trainer, aggregator and orchestrator.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, NewType, Optional, Sequence, Tuple, Union

import numpy as np

from .exceptions import ConfigurationError

ClientID = NewType("ClientID", int)
"""1-based identifier of a simulated client."""

RoundNumber = NewType("RoundNumber", int)
"""Federated learning round number (1-based)."""

ParameterVector = np.ndarray
"""Flat float64 vector holding every trainable weight of the shared model."""

ClientPartition = np.ndarray
"""0-based dataset item indices owned by one client."""

Metrics = Dict[str, Union[float, int, str]]
"""Dictionary containing various metrics."""

AccuracyHistory = Sequence[Tuple[int, float]]
"""Ordered (round, accuracy) pairs."""

UNBOUNDED_LABEL = "Inf"
"""Serialized form of the unbounded (full-batch) batch size."""


class OrchestratorState(Enum):
    """States of the round orchestrator."""
    INITIALIZING = auto()
    RESUMING = auto()
    SELECTING_LR = auto()
    ROUND_ACTIVE = auto()
    EVALUATING = auto()
    LOGGING = auto()
    TERMINATED = auto()


class PartitionType(Enum):
    """Enumeration of data distribution strategies."""
    IID = "IID"
    NON_IID = "nonIID"

    @classmethod
    def parse(cls, value: Union[str, "PartitionType"]) -> "PartitionType":
        """Accept 'iid', 'IID', 'noniid', 'nonIID' or 'non_iid'."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "").replace("-", "")
        if normalized == "iid":
            return cls.IID
        if normalized == "noniid":
            return cls.NON_IID
        raise ConfigurationError(
            f"Configuration: unknown partition type '{value}' (expected 'iid' or 'noniid')",
            config_key="partition", expected="iid | noniid", actual_value=value
        )


@dataclass(frozen=True)
class BatchSize:
    """
    Local batch size, either bounded (``B = n``) or unbounded (full batch).

    The unbounded case replaces the infinite float used by FedSGD so that no
    arithmetic is ever performed on infinity.
    """
    size: Optional[int] = None

    def __post_init__(self):
        if self.size is not None and (isinstance(self.size, bool) or int(self.size) != self.size
                                      or self.size < 1):
            raise ConfigurationError(
                f"Configuration: batch size must be a positive integer or unbounded, got {self.size}",
                config_key="batch_size", expected=">= 1 or inf", actual_value=self.size
            )

    @classmethod
    def bounded(cls, size: int) -> "BatchSize":
        return cls(int(size))

    @classmethod
    def unbounded(cls) -> "BatchSize":
        return cls(None)

    @classmethod
    def parse(cls, value: Union[str, int, float, "BatchSize", None]) -> "BatchSize":
        """
        Parse a batch size from configuration or a log cell.

        Args:
            value: ``"inf"``/``"Inf"``/``None``/``math.inf`` for unbounded,
                otherwise a positive integer (or its string form)

        Returns:
            Parsed BatchSize
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.unbounded()
        if isinstance(value, str):
            text = value.strip()
            if text.lower() in ("inf", "infinity", "unbounded", "full"):
                return cls.unbounded()
            try:
                value = float(text)
            except ValueError:
                raise ConfigurationError(
                    f"Configuration: cannot parse batch size '{value}'",
                    config_key="batch_size", expected=">= 1 or inf", actual_value=value
                ) from None
        if isinstance(value, float):
            if math.isinf(value) and value > 0:
                return cls.unbounded()
            if not value.is_integer():
                raise ConfigurationError(
                    f"Configuration: batch size must be an integer, got {value}",
                    config_key="batch_size", expected=">= 1 or inf", actual_value=value
                )
            value = int(value)
        return cls.bounded(value)

    @property
    def is_unbounded(self) -> bool:
        return self.size is None

    def resolve(self, num_samples: int) -> int:
        """Effective loader batch size for a client holding ``num_samples`` items."""
        if self.is_unbounded:
            return max(1, num_samples)
        return self.size

    def __str__(self) -> str:
        return UNBOUNDED_LABEL if self.is_unbounded else str(self.size)


def communication_cost(local_epochs: int, batch_size: BatchSize) -> float:
    """Local work per round: ``6 * E / B``, or 1 for full-batch training."""
    if batch_size.is_unbounded:
        return 1.0
    return 6.0 * local_epochs / batch_size.size


def clients_per_round(num_clients: int, client_fraction: float) -> int:
    """``max(1, floor(C * K))``; the product is rounded first so 0.29 * 100 gives 29."""
    return max(1, math.floor(round(client_fraction * num_clients, 9)))


@dataclass(frozen=True)
class ExperimentConfig:
    """
    Immutable configuration of one federated experiment.

    All invariants are checked at construction time so that nothing trains
    with an invalid configuration.
    """
    num_clients: int = 100
    client_fraction: float = 0.1
    local_epochs: int = 5
    batch_size: BatchSize = field(default_factory=lambda: BatchSize.bounded(10))
    lr_grid: Tuple[float, ...] = (0.03, 0.05, 0.1)
    target: float = 0.97
    num_rounds: int = 3
    seed: int = 123
    partition: PartitionType = PartitionType.NON_IID
    shards_per_client: int = 2
    momentum: float = 0.0
    lr_selection_clients: int = 2
    dataset: str = "MNIST"
    model: str = "2NN"

    def __post_init__(self):
        object.__setattr__(self, "batch_size", BatchSize.parse(self.batch_size))
        object.__setattr__(self, "partition", PartitionType.parse(self.partition))
        object.__setattr__(self, "lr_grid", tuple(float(lr) for lr in self.lr_grid))
        self._validate()

    def _validate(self) -> None:
        if self.num_clients < 1:
            raise ConfigurationError("Configuration: num_clients (K) must be >= 1",
                                     "num_clients", ">= 1", self.num_clients)
        if not (0 < self.client_fraction <= 1):
            raise ConfigurationError("Configuration: client_fraction (C) must be in (0, 1]",
                                     "client_fraction", "(0, 1]", self.client_fraction)
        if self.local_epochs < 1:
            raise ConfigurationError("Configuration: local_epochs (E) must be >= 1",
                                     "local_epochs", ">= 1", self.local_epochs)
        if self.num_rounds < 1:
            raise ConfigurationError("Configuration: num_rounds must be >= 1",
                                     "num_rounds", ">= 1", self.num_rounds)
        if not self.lr_grid:
            raise ConfigurationError("Configuration: lr_grid must contain at least one learning rate",
                                     "lr_grid", "non-empty", list(self.lr_grid))
        if any(not math.isfinite(lr) or lr <= 0 for lr in self.lr_grid):
            raise ConfigurationError("Configuration: every learning rate must be finite and > 0",
                                     "lr_grid", "> 0", list(self.lr_grid))
        if not (0 <= self.target <= 1):
            raise ConfigurationError("Configuration: target accuracy must be in [0, 1]",
                                     "target", "[0, 1]", self.target)
        if self.shards_per_client < 1:
            raise ConfigurationError("Configuration: shards_per_client must be >= 1",
                                     "shards_per_client", ">= 1", self.shards_per_client)
        if self.momentum < 0:
            raise ConfigurationError("Configuration: momentum must be >= 0",
                                     "momentum", ">= 0", self.momentum)
        if self.lr_selection_clients < 1:
            raise ConfigurationError("Configuration: lr_selection_clients must be >= 1",
                                     "lr_selection_clients", ">= 1", self.lr_selection_clients)

    @property
    def method(self) -> str:
        """FedSGD is the full-batch, single-epoch special case of FedAvg."""
        if self.batch_size.is_unbounded and self.local_epochs == 1:
            return "FedSGD"
        return "FedAvg"

    @property
    def u(self) -> float:
        return communication_cost(self.local_epochs, self.batch_size)

    @property
    def clients_per_round(self) -> int:
        return clients_per_round(self.num_clients, self.client_fraction)

    def fingerprint(self) -> Dict[str, Any]:
        """Fields a checkpoint must match before it may be resumed into this run."""
        return {
            "dataset": self.dataset,
            "model": self.model,
            "partition": self.partition.value,
            "E": self.local_epochs,
            "B": str(self.batch_size),
        }


@dataclass
class ClientUpdate:
    """Result of one client's local training."""
    client_id: int
    parameters: ParameterVector
    num_samples: int
    metrics: Metrics = field(default_factory=dict)


@dataclass
class RoundState:
    """Orchestrator-owned state threaded from round to round."""
    last_round: int
    parameters: ParameterVector
    learning_rate: float


@dataclass(frozen=True)
class Checkpoint:
    """Durable snapshot taken after a completed round."""
    parameters: ParameterVector
    learning_rate: float
    last_round: int
    fingerprint: Dict[str, Any] = field(default_factory=dict)


LOG_FIELDS = [
    "timestamp", "dataset", "model", "partition", "method", "round",
    "test_accuracy", "chosen_learning_rate", "E", "B", "client_fraction",
    "clients_selected", "u", "target", "rounds_to_target",
]
"""Column order of the round-record log."""

NOT_REACHED_LABEL = "NA"
"""Serialized form of a target that has not been reached."""


@dataclass
class RoundRecord:
    """One row of the training history."""
    dataset: str
    model: str
    partition: str
    method: str
    round: int
    test_accuracy: float
    chosen_learning_rate: float
    E: int
    B: BatchSize
    client_fraction: float
    clients_selected: int
    u: float
    target: float
    rounds_to_target: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_row(self) -> Dict[str, Any]:
        """Render the record with the log's column names and sentinels."""
        return {
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f"),
            "dataset": self.dataset,
            "model": self.model,
            "partition": self.partition,
            "method": self.method,
            "round": self.round,
            "test_accuracy": self.test_accuracy,
            "chosen_learning_rate": self.chosen_learning_rate,
            "E": self.E,
            "B": str(self.B),
            "client_fraction": self.client_fraction,
            "clients_selected": self.clients_selected,
            "u": self.u,
            "target": self.target,
            "rounds_to_target": (NOT_REACHED_LABEL if self.rounds_to_target is None
                                 else self.rounds_to_target),
        }


@dataclass
class ChunkResult:
    """Outcome of running a contiguous range of rounds."""
    final_state: RoundState
    records: List[RoundRecord] = field(default_factory=list)
