"""
Federated Averaging aggregation.

Implements the sample-weighted average of McMahan et al. (2017):
``w_{t+1} = sum_k (n_k / sum_j n_j) * w_k``. For up to
``FAST_PATH_MAX_CLIENTS`` clients the vectors are stacked as matrix columns
and multiplied by the normalized weights; larger rounds accumulate one client
at a time to avoid materializing the matrix. The two paths agree up to
floating-point rounding, not bit for bit, and permuting (params, weights)
pairs is likewise only invariant up to rounding.
"""

import logging
from typing import List, Sequence

import numpy as np

from ..core.exceptions import InvalidAggregationInputError
from ..core.types import ClientUpdate, ParameterVector

logger = logging.getLogger(__name__)

FAST_PATH_MAX_CLIENTS = 32


def _fail(reason: str, message: str, position: int = None) -> None:
    raise InvalidAggregationInputError(f"Aggregator: {message}", reason=reason,
                                       client_position=position)


def validate_inputs(params: Sequence[ParameterVector], weights: Sequence[float]) -> np.ndarray:
    """
    Check aggregation inputs and return the weights as a float64 array.

    Raises:
        InvalidAggregationInputError: Naming the violated condition
    """
    if len(params) == 0:
        _fail("empty", "params must not be empty")

    expected = np.asarray(params[0]).shape
    for i, vector in enumerate(params):
        vector = np.asarray(vector)
        if vector.ndim != 1:
            _fail("not_vector", f"client {i} parameters must be a 1-d vector", i)
        if vector.shape != expected:
            _fail("unequal_length",
                  f"all parameter vectors must have the same length "
                  f"(client {i} has {vector.shape[0]}, expected {expected[0]})", i)
        if not np.all(np.isfinite(vector)):
            _fail("non_finite", f"client {i} parameters contain NaN or Inf", i)

    weights = np.asarray(weights, dtype=np.float64)
    if weights.ndim != 1 or weights.shape[0] != len(params):
        _fail("weight_count", "weights must have the same length as params")
    if not np.all(np.isfinite(weights)):
        _fail("non_finite_weight", "weights must be finite")
    if np.any(weights < 0):
        _fail("negative_weight", "weights must be non-negative")
    if weights.sum() <= 0:
        _fail("zero_weight_sum", "the sum of weights must be greater than zero")
    return weights


def aggregate(params: Sequence[ParameterVector], weights: Sequence[float]) -> ParameterVector:
    """
    Weighted average of client parameter vectors.

    Args:
        params: Equal-length parameter vectors, one per client
        weights: Non-negative weights (usually client sample counts)

    Returns:
        Aggregated parameter vector

    Raises:
        InvalidAggregationInputError: If the inputs are invalid
    """
    weights = validate_inputs(params, weights)
    total = weights.sum()

    if len(params) <= FAST_PATH_MAX_CLIENTS:
        matrix = np.stack([np.asarray(p, dtype=np.float64) for p in params], axis=1)
        return matrix @ (weights / total)

    accum = np.asarray(params[0], dtype=np.float64) * weights[0]
    for vector, weight in zip(params[1:], weights[1:]):
        accum += np.asarray(vector, dtype=np.float64) * weight
    return accum / total


class FedAvgStrategy:
    """Aggregates the client updates of one round into a new global vector."""

    name = "fedavg"

    def aggregate_updates(self, updates: List[ClientUpdate]) -> ParameterVector:
        """
        Aggregate client updates weighted by their local sample counts.

        Args:
            updates: Updates returned by the round's clients

        Returns:
            New global parameter vector
        """
        params = [u.parameters for u in updates]
        weights = [u.num_samples for u in updates]
        logger.debug(f"Aggregating {len(updates)} client updates "
                     f"({int(sum(weights))} samples)")
        return aggregate(params, weights)
