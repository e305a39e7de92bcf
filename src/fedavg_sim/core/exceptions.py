"""
Custom exceptions for the fedavg-sim federated averaging simulator.

This module defines custom exceptions that provide meaningful error messages
and enable proper error handling throughout the application. Every message
starts with the component that raised it so a failure in a long sweep can be
traced back to the violated invariant.
"""

from typing import Optional, Any, Dict


class FedAvgSimError(Exception):
    """Base exception for all fedavg-sim related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConfigurationError(FedAvgSimError):
    """Raised when an experiment configuration violates one of its invariants."""

    def __init__(self, message: str, config_key: Optional[str] = None,
                 expected: Optional[str] = None, actual_value: Optional[Any] = None):
        self.config_key = config_key
        self.expected = expected
        self.actual_value = actual_value

        context = {
            "config_key": config_key,
            "expected": expected,
            "actual_value": actual_value
        }

        super().__init__(message, "CONFIG_ERROR", context)


class PartitioningError(FedAvgSimError):
    """Raised when data partitioning fails."""

    def __init__(self, message: str, partitioning_strategy: Optional[str] = None,
                 num_clients: Optional[int] = None, dataset_size: Optional[int] = None):
        self.partitioning_strategy = partitioning_strategy
        self.num_clients = num_clients
        self.dataset_size = dataset_size

        context = {
            "partitioning_strategy": partitioning_strategy,
            "num_clients": num_clients,
            "dataset_size": dataset_size
        }

        super().__init__(message, "PARTITION_ERROR", context)


class ShapeMismatchError(FedAvgSimError):
    """Raised when a parameter vector does not fit the model it is written into."""

    def __init__(self, message: str, expected_length: Optional[int] = None,
                 actual_length: Optional[int] = None):
        self.expected_length = expected_length
        self.actual_length = actual_length

        context = {
            "expected_length": expected_length,
            "actual_length": actual_length
        }

        super().__init__(message, "SHAPE_ERROR", context)


class TrainingError(FedAvgSimError):
    """Raised when local client training cannot proceed."""

    def __init__(self, message: str, client_id: Optional[int] = None,
                 operation: Optional[str] = None):
        self.client_id = client_id
        self.operation = operation

        context = {
            "client_id": client_id,
            "operation": operation
        }

        super().__init__(message, "TRAINING_ERROR", context)


class InvalidAggregationInputError(FedAvgSimError):
    """Raised when the aggregator receives parameters or weights it must not average."""

    def __init__(self, message: str, reason: Optional[str] = None,
                 client_position: Optional[int] = None):
        self.reason = reason
        self.client_position = client_position

        context = {
            "reason": reason,
            "client_position": client_position
        }

        super().__init__(message, "AGGREGATION_ERROR", context)


class CheckpointError(FedAvgSimError):
    """Raised when a checkpoint cannot be read or belongs to another configuration."""

    def __init__(self, message: str, checkpoint_path: Optional[str] = None):
        self.checkpoint_path = checkpoint_path
        super().__init__(message, "CHECKPOINT_ERROR", {"checkpoint_path": checkpoint_path})


class UnsafeResumeError(FedAvgSimError):
    """Raised when the log shows progress but no checkpoint allows resuming it."""

    def __init__(self, message: str, start_round: Optional[int] = None,
                 checkpoint_path: Optional[str] = None):
        self.start_round = start_round
        self.checkpoint_path = checkpoint_path

        context = {
            "start_round": start_round,
            "checkpoint_path": checkpoint_path
        }

        super().__init__(message, "RESUME_ERROR", context)


class ChunkExecutionError(FedAvgSimError):
    """Raised when a chunk worker fails twice in a row."""

    def __init__(self, message: str, start_round: Optional[int] = None,
                 end_round: Optional[int] = None, exit_code: Optional[int] = None):
        self.start_round = start_round
        self.end_round = end_round
        self.exit_code = exit_code

        context = {
            "start_round": start_round,
            "end_round": end_round,
            "exit_code": exit_code
        }

        super().__init__(message, "CHUNK_ERROR", context)
