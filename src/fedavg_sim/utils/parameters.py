"""
Parameter codec for moving model weights between PyTorch and flat vectors.

Aggregation, checkpointing and transport to workers all operate on a single
float64 numpy vector, so the model architecture never leaks past this module.
"""

import logging
from typing import List

import numpy as np
import torch
import torch.nn as nn

from ..core.exceptions import ShapeMismatchError
from ..core.types import ParameterVector

logger = logging.getLogger(__name__)


def trainable_parameters(model: nn.Module) -> List[nn.Parameter]:
    """Trainable parameters in definition order."""
    return [p for p in model.parameters() if p.requires_grad]


def parameter_count(model: nn.Module) -> int:
    """Total number of trainable weights of ``model``."""
    return sum(p.numel() for p in trainable_parameters(model))


def flatten(model: nn.Module) -> ParameterVector:
    """
    Concatenate every trainable weight of ``model`` into one vector.

    Args:
        model: PyTorch model

    Returns:
        Fresh float64 vector; mutating it never touches the model
    """
    params = trainable_parameters(model)
    if not params:
        return np.empty(0, dtype=np.float64)

    with torch.no_grad():
        flat = torch.cat([p.detach().reshape(-1).cpu() for p in params])
    return flat.to(torch.float64).numpy().copy()


def unflatten(model: nn.Module, vector: ParameterVector) -> nn.Module:
    """
    Write ``vector`` back into the parameters of ``model`` in place.

    Values are copied into the existing parameter tensors, so optimizers that
    hold references to those tensors keep working.

    Args:
        model: PyTorch model to update
        vector: Flat vector produced by :func:`flatten` for the same architecture

    Returns:
        The same model instance

    Raises:
        ShapeMismatchError: If the vector length differs from the parameter count
    """
    vector = np.asarray(vector)
    if vector.ndim != 1:
        raise ShapeMismatchError(
            f"Parameter codec: expected a 1-d vector, got shape {vector.shape}",
            actual_length=int(vector.size)
        )

    expected = parameter_count(model)
    if vector.shape[0] != expected:
        raise ShapeMismatchError(
            f"Parameter codec: vector has {vector.shape[0]} values, model needs {expected}",
            expected_length=expected, actual_length=int(vector.shape[0])
        )

    offset = 0
    with torch.no_grad():
        for param in trainable_parameters(model):
            n = param.numel()
            chunk = torch.from_numpy(np.ascontiguousarray(vector[offset:offset + n]))
            param.copy_(chunk.view_as(param).to(dtype=param.dtype, device=param.device))
            offset += n

    return model
