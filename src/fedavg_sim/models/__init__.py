"""Model zoo."""

from .model import MLP, MNIST2NN, MNISTCNN, adapt_batch, create_model

__all__ = ["MLP", "MNIST2NN", "MNISTCNN", "adapt_batch", "create_model"]
