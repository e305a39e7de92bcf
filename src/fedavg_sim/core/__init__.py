"""
Core module for the fedavg-sim federated averaging simulator.

This module contains the error taxonomy and the typed records shared by every
other component of the simulator.
"""

from .exceptions import (
    FedAvgSimError,
    ConfigurationError,
    PartitioningError,
    ShapeMismatchError,
    TrainingError,
    InvalidAggregationInputError,
    CheckpointError,
    UnsafeResumeError,
    ChunkExecutionError
)

from .types import (
    ClientID,
    RoundNumber,
    ParameterVector,
    Metrics,
    OrchestratorState,
    PartitionType,
    BatchSize,
    ExperimentConfig,
    ClientUpdate,
    RoundState,
    Checkpoint,
    RoundRecord,
    ChunkResult,
    LOG_FIELDS,
    communication_cost,
    clients_per_round
)

__all__ = [
    # Exceptions
    "FedAvgSimError",
    "ConfigurationError",
    "PartitioningError",
    "ShapeMismatchError",
    "TrainingError",
    "InvalidAggregationInputError",
    "CheckpointError",
    "UnsafeResumeError",
    "ChunkExecutionError",

    # Types
    "ClientID",
    "RoundNumber",
    "ParameterVector",
    "Metrics",
    "OrchestratorState",
    "PartitionType",
    "BatchSize",
    "ExperimentConfig",
    "ClientUpdate",
    "RoundState",
    "Checkpoint",
    "RoundRecord",
    "ChunkResult",
    "LOG_FIELDS",
    "communication_cost",
    "clients_per_round",
]
