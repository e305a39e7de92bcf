"""
Local client training for federated averaging.

A client receives the current global parameter vector, loads it into a fresh
model instance, runs E epochs of mini-batch (or full-batch) SGD over its own
partition and returns the flattened result together with its sample count.
Shuffling is driven by a per-(round, client) seed, so the outcome does not
depend on which process or in what order the client is trained.
"""

import logging
from typing import Callable, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader, Dataset, Subset

from ..core.exceptions import TrainingError
from ..core.types import BatchSize, ClientUpdate, ParameterVector
from ..models.model import adapt_batch
from ..utils.parameters import flatten, unflatten

logger = logging.getLogger(__name__)

ModelFactory = Callable[[], nn.Module]


def local_sgd(
    model: nn.Module,
    dataset: Dataset,
    epochs: int,
    batch_size: BatchSize,
    learning_rate: float,
    momentum: float = 0.0,
    seed: Optional[int] = None,
    device: str = "cpu",
    client_id: Optional[int] = None
) -> float:
    """
    Run ``epochs`` passes of SGD over ``dataset`` in place on ``model``.

    Returns:
        Mean cross-entropy loss of the last epoch
    """
    generator = torch.Generator()
    if seed is not None:
        generator.manual_seed(int(seed))

    loader = DataLoader(
        dataset,
        batch_size=batch_size.resolve(len(dataset)),
        shuffle=True,
        generator=generator
    )
    optimizer = optim.SGD(model.parameters(), lr=learning_rate, momentum=momentum)
    criterion = nn.CrossEntropyLoss()

    model.train()
    epoch_loss = 0.0
    for _ in range(epochs):
        total_loss = 0.0
        num_batches = 0
        for x, y in loader:
            x = adapt_batch(x.to(device), model, client_id)
            y = y.to(device).view(-1).long()

            optimizer.zero_grad()
            loss = criterion(model(x), y)
            if not torch.isfinite(loss):
                raise TrainingError(f"Client trainer: loss became {loss.item()}",
                                    client_id=client_id, operation="backward")
            loss.backward()
            optimizer.step()

            total_loss += loss.item()
            num_batches += 1
        epoch_loss = total_loss / max(num_batches, 1)

    return epoch_loss


def train_on_dataset(
    dataset: Dataset,
    model_fn: ModelFactory,
    init_params: ParameterVector,
    epochs: int,
    batch_size: BatchSize,
    learning_rate: float,
    momentum: float = 0.0,
    seed: Optional[int] = None,
    device: str = "cpu",
    client_id: int = 0
) -> ClientUpdate:
    """
    Train a fresh model on ``dataset`` starting from ``init_params``.

    Args:
        dataset: The client's local data
        model_fn: Builds a fresh model instance
        init_params: Global parameter vector (never modified)
        epochs: Local epochs (E)
        batch_size: Local batch size (B)
        learning_rate: SGD step size
        momentum: SGD momentum
        seed: Shuffling seed
        device: Torch device
        client_id: Identifier used in logs and errors

    Returns:
        ClientUpdate with the trained parameters and ``len(dataset)`` samples
    """
    num_samples = len(dataset)
    if num_samples == 0:
        logger.warning(f"Client {client_id} has no data; returning the global parameters unchanged")
        return ClientUpdate(client_id, np.array(init_params, dtype=np.float64, copy=True), 0,
                            {"loss": float("nan")})

    model = model_fn().to(device)
    unflatten(model, init_params)

    loss = local_sgd(model, dataset, epochs, batch_size, learning_rate, momentum,
                     seed, device, client_id)
    params = flatten(model)

    logger.debug(f"Client {client_id}: {num_samples} samples, final epoch loss {loss:.4f}")
    return ClientUpdate(client_id, params, num_samples, {"loss": loss})


class ClientTrainer:
    """Trains clients whose data are index subsets of one shared dataset."""

    def __init__(self, dataset: Dataset, model_fn: ModelFactory, device: str = "cpu"):
        self.dataset = dataset
        self.model_fn = model_fn
        self.device = device

    def train(
        self,
        client_indices: Sequence[int],
        init_params: ParameterVector,
        epochs: int,
        batch_size: BatchSize,
        learning_rate: float,
        momentum: float = 0.0,
        seed: Optional[int] = None,
        client_id: int = 0
    ) -> ClientUpdate:
        """Train on ``dataset[client_indices]``; see :func:`train_on_dataset`."""
        indices = [int(i) for i in client_indices]
        local = Subset(self.dataset, indices)
        return train_on_dataset(local, self.model_fn, init_params, epochs, batch_size,
                                learning_rate, momentum, seed, self.device, client_id)
