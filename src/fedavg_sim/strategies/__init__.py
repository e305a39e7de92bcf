"""Aggregation strategies."""

from .fedavg import FedAvgStrategy, aggregate

__all__ = ["FedAvgStrategy", "aggregate"]
