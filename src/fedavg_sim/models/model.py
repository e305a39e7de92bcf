"""
Model zoo for the FedAvg experiments.

Models:
- MNIST2NN: 784-200-200-10 multilayer perceptron ("2NN")
- MNISTCNN: two 5x5 convolutions, max-pooling, 512-unit dense layer
- MLP: generic perceptron for synthetic tabular data

Each model declares ``input_rank``, the rank of the batch tensor its forward
pass expects (``None`` accepts any rank). :func:`adapt_batch` inserts a
missing channel dimension and rejects every other mismatch.
"""

import logging
from typing import Dict, List, Optional, Type

import torch
import torch.nn as nn
import torch.nn.functional as F

from ..core.exceptions import ConfigurationError, TrainingError

logger = logging.getLogger(__name__)


class MNIST2NN(nn.Module):
    """Two hidden layers of 200 ReLU units; flattens whatever it receives."""

    input_rank = None

    def __init__(self, input_dim: int = 784, hidden_dim: int = 200, output_dim: int = 10):
        super(MNIST2NN, self).__init__()
        self.input_dim = input_dim
        self.fc1 = nn.Linear(input_dim, hidden_dim)
        self.fc2 = nn.Linear(hidden_dim, hidden_dim)
        self.fc3 = nn.Linear(hidden_dim, output_dim)

    def forward(self, x):
        x = x.reshape(-1, self.input_dim)
        x = F.relu(self.fc1(x))
        x = F.relu(self.fc2(x))
        return self.fc3(x)


class MNISTCNN(nn.Module):
    """CNN of McMahan et al. (2017) with padded convolutions and pooling."""

    input_rank = 4

    def __init__(self, in_channels: int = 1, output_dim: int = 10):
        super(MNISTCNN, self).__init__()
        self.conv1 = nn.Conv2d(in_channels, 32, kernel_size=5, padding=1)
        self.conv2 = nn.Conv2d(32, 64, kernel_size=5, padding=1)
        self.pool = nn.MaxPool2d(kernel_size=2, padding=1)
        # 28x28 -> 26 -> 14 -> 12 -> 7
        self.fc1 = nn.Linear(64 * 7 * 7, 512)
        self.fc2 = nn.Linear(512, output_dim)

    def forward(self, x):
        x = self.pool(F.relu(self.conv1(x)))
        x = self.pool(F.relu(self.conv2(x)))
        x = torch.flatten(x, start_dim=1)
        x = F.relu(self.fc1(x))
        return self.fc2(x)


class MLP(nn.Module):
    """Fully connected classifier for flat feature vectors."""

    input_rank = 2

    def __init__(self, input_dim: int, output_dim: int, hidden_dims: Optional[List[int]] = None):
        super(MLP, self).__init__()
        hidden_dims = list(hidden_dims) if hidden_dims is not None else [64]

        layers = []
        prev = input_dim
        for width in hidden_dims:
            layers.append(nn.Linear(prev, width))
            layers.append(nn.ReLU())
            prev = width
        layers.append(nn.Linear(prev, output_dim))
        self.net = nn.Sequential(*layers)

    def forward(self, x):
        return self.net(x)


MODEL_REGISTRY: Dict[str, Type[nn.Module]] = {
    "2nn": MNIST2NN,
    "cnn": MNISTCNN,
    "mlp": MLP,
}


def create_model(name: str, **kwargs) -> nn.Module:
    """
    Build a fresh model instance by registry name.

    Args:
        name: One of ``2NN``, ``CNN`` or ``MLP`` (case-insensitive)
        **kwargs: Constructor arguments

    Returns:
        Initialized PyTorch model

    Raises:
        ConfigurationError: If the name is unknown
    """
    key = name.lower()
    if key not in MODEL_REGISTRY:
        raise ConfigurationError(f"Configuration: unknown model '{name}'", "model.name",
                                 str(sorted(MODEL_REGISTRY)), name)
    model = MODEL_REGISTRY[key](**kwargs)
    logger.debug(f"Created {name} model with {sum(p.numel() for p in model.parameters())} parameters")
    return model


def adapt_batch(x: torch.Tensor, model: nn.Module, client_id: Optional[int] = None) -> torch.Tensor:
    """
    Match a feature batch to the rank ``model`` expects.

    A batch exactly one rank short of an image model's expectation gets a
    channel dimension at position 1 (``[B, 28, 28] -> [B, 1, 28, 28]``).

    Raises:
        TrainingError: For any other rank mismatch
    """
    expected = getattr(model, "input_rank", None)
    if expected is None or x.dim() == expected:
        return x
    if expected >= 4 and x.dim() == expected - 1:
        return x.unsqueeze(1)
    raise TrainingError(
        f"Client trainer: batch of rank {x.dim()} (shape {tuple(x.shape)}) is incompatible "
        f"with {type(model).__name__}, which expects rank {expected}",
        client_id=client_id, operation="forward"
    )
