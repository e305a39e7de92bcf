"""
fedavg-sim: a Federated Averaging (FedAvg) simulator.

Simulates McMahan et al. (2017): clients are sampled each round, train a copy
of the shared model with local SGD, and the server averages the results
weighted by local sample counts. Long experiments run as checkpointed chunks
that survive crashes.
"""

__version__ = "1.0.0"

from .core.exceptions import FedAvgSimError
from .core.types import BatchSize, ExperimentConfig, PartitionType, RoundRecord
from .server.orchestrator import RoundOrchestrator, fedavg_simulation, run_chunk
from .strategies.fedavg import aggregate

__all__ = [
    "FedAvgSimError",
    "BatchSize",
    "ExperimentConfig",
    "PartitionType",
    "RoundRecord",
    "RoundOrchestrator",
    "fedavg_simulation",
    "run_chunk",
    "aggregate",
]
