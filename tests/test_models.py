"""
Unit tests for the model zoo and batch adaptation.
"""

import unittest
import torch
import sys
from pathlib import Path

# Add the source tree to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from fedavg_sim.core.exceptions import ConfigurationError, TrainingError
from fedavg_sim.models.model import MLP, MNIST2NN, MNISTCNN, adapt_batch, create_model


class TestModels(unittest.TestCase):
    """Test model architectures."""

    def setUp(self):
        torch.manual_seed(42)

    def test_2nn_output_shape(self):
        model = MNIST2NN()
        x = torch.randn(8, 1, 28, 28)
        self.assertEqual(model(x).shape, (8, 10))
        # Already flat input works too
        self.assertEqual(model(torch.randn(8, 784)).shape, (8, 10))

    def test_cnn_output_shape(self):
        model = MNISTCNN()
        x = torch.randn(4, 1, 28, 28)
        self.assertEqual(model(x).shape, (4, 10))

    def test_mlp_default_hidden_layer(self):
        model = MLP(input_dim=20, output_dim=5)
        self.assertEqual(model(torch.randn(3, 20)).shape, (3, 5))
        self.assertEqual(len([m for m in model.net if isinstance(m, torch.nn.Linear)]), 2)

    def test_create_model(self):
        self.assertIsInstance(create_model("2NN"), MNIST2NN)
        self.assertIsInstance(create_model("cnn"), MNISTCNN)
        self.assertIsInstance(create_model("MLP", input_dim=4, output_dim=2), MLP)

        with self.assertRaises(ConfigurationError):
            create_model("resnet")


class TestAdaptBatch(unittest.TestCase):
    """Test input rank handling."""

    def test_channel_dimension_inserted_for_cnn(self):
        x = torch.randn(2, 28, 28)
        adapted = adapt_batch(x, MNISTCNN())
        self.assertEqual(adapted.shape, (2, 1, 28, 28))

    def test_matching_rank_untouched(self):
        x = torch.randn(2, 1, 28, 28)
        self.assertIs(adapt_batch(x, MNISTCNN()), x)

    def test_rank_free_model_untouched(self):
        x = torch.randn(2, 28, 28)
        self.assertIs(adapt_batch(x, MNIST2NN()), x)

    def test_incompatible_rank_raises(self):
        with self.assertRaises(TrainingError) as ctx:
            adapt_batch(torch.randn(2, 784), MNISTCNN(), client_id=3)
        self.assertEqual(ctx.exception.client_id, 3)

        with self.assertRaises(TrainingError):
            adapt_batch(torch.randn(2, 4, 5), MLP(input_dim=5, output_dim=2))


if __name__ == '__main__':
    unittest.main()
