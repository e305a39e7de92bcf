"""
Data utilities for the fedavg-sim federated averaging simulator.

This module provides:
- Deterministic synthetic classification datasets for tests and smoke runs
- MNIST loading through torchvision
- Batched, no-grad test accuracy evaluation
"""

import logging
from typing import Optional, Tuple

import torch
import torch.nn as nn
from torch.utils.data import Dataset, DataLoader, TensorDataset
from torchvision import datasets, transforms

from ..core.exceptions import ConfigurationError
from ..models.model import adapt_batch

logger = logging.getLogger(__name__)

MNIST_MEAN = 0.1307
MNIST_STD = 0.3081


def make_synthetic_dataset(
    n_samples: int = 200,
    n_features: int = 20,
    n_classes: int = 10,
    seed: int = 0,
    noise: float = 1.0,
    centers: Optional[torch.Tensor] = None
) -> TensorDataset:
    """
    Gaussian blobs around one random center per class.

    Args:
        n_samples: Number of items
        n_features: Feature dimension
        n_classes: Number of labels
        seed: Random seed
        noise: Standard deviation around each center
        centers: Class centers to reuse (so a test split shares the train distribution)

    Returns:
        TensorDataset of float32 features and int64 labels
    """
    generator = torch.Generator().manual_seed(seed)
    if centers is None:
        centers = 3.0 * torch.randn(n_classes, n_features, generator=generator)
    labels = torch.arange(n_samples) % n_classes
    labels = labels[torch.randperm(n_samples, generator=generator)]
    features = centers[labels] + noise * torch.randn(n_samples, n_features, generator=generator)
    dataset = TensorDataset(features.float(), labels.long())
    dataset.centers = centers
    return dataset


def make_synthetic_splits(
    n_train: int = 200,
    n_test: int = 100,
    n_features: int = 20,
    n_classes: int = 10,
    seed: int = 0
) -> Tuple[TensorDataset, TensorDataset]:
    """Train and test splits drawn around the same class centers."""
    train = make_synthetic_dataset(n_train, n_features, n_classes, seed)
    test = make_synthetic_dataset(n_test, n_features, n_classes, seed + 1, centers=train.centers)
    return train, test


def load_mnist_dataset(data_path: str = "./data/MNIST", download: bool = True) -> Tuple[Dataset, Dataset]:
    """
    Load MNIST dataset.

    Args:
        data_path: Path to MNIST data directory
        download: Download the files when missing

    Returns:
        Tuple of (train_dataset, test_dataset)
    """
    transform = transforms.Compose([
        transforms.ToTensor(),
        transforms.Normalize((MNIST_MEAN,), (MNIST_STD,))
    ])

    train_dataset = datasets.MNIST(root=data_path, train=True, download=download, transform=transform)
    test_dataset = datasets.MNIST(root=data_path, train=False, download=download, transform=transform)

    logger.info(f"Loaded MNIST dataset: {len(train_dataset)} train, {len(test_dataset)} test samples")
    return train_dataset, test_dataset


def load_dataset(name: str, path: str = "./data", synthetic: Optional[dict] = None) -> Tuple[Dataset, Dataset]:
    """
    Load a (train, test) pair by name.

    Args:
        name: ``mnist`` or ``synthetic``
        path: Data root for downloaded datasets
        synthetic: Keyword arguments for :func:`make_synthetic_splits`

    Raises:
        ConfigurationError: If the dataset is unknown
    """
    key = name.lower()
    if key == "mnist":
        return load_mnist_dataset(data_path=path)
    if key == "synthetic":
        return make_synthetic_splits(**(synthetic or {}))
    raise ConfigurationError(f"Configuration: unknown dataset '{name}'", "dataset.name",
                             "mnist | synthetic", name)


def evaluate_accuracy(model: nn.Module, dataset: Dataset, batch_size: int = 1000,
                      device: str = "cpu") -> float:
    """
    Fraction of ``dataset`` items whose argmax logit equals the label.

    The model is put in eval mode for the pass and back into train mode
    afterwards. An empty dataset scores 0.0.
    """
    if len(dataset) == 0:
        return 0.0

    loader = DataLoader(dataset, batch_size=batch_size, shuffle=False)
    model.eval()
    correct = 0
    total = 0
    try:
        with torch.no_grad():
            for x, y in loader:
                x = adapt_batch(x.to(device), model)
                y = y.to(device).view(-1)
                predictions = model(x).argmax(dim=1)
                correct += (predictions == y).sum().item()
                total += y.numel()
    finally:
        model.train()

    return correct / total if total else 0.0
