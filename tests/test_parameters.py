"""
Unit tests for the model parameter codec.
"""

import unittest
import numpy as np
import torch
import torch.nn as nn
import sys
from pathlib import Path

# Add the source tree to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from fedavg_sim.core.exceptions import ShapeMismatchError
from fedavg_sim.models.model import MLP, MNIST2NN
from fedavg_sim.utils.parameters import flatten, parameter_count, unflatten


class TestParameterCodec(unittest.TestCase):

    def setUp(self):
        torch.manual_seed(42)
        self.model = MLP(input_dim=6, output_dim=3, hidden_dims=[4])

    def test_flatten_length_and_dtype(self):
        vector = flatten(self.model)
        # (6*4 + 4) + (4*3 + 3)
        self.assertEqual(vector.shape, (43,))
        self.assertEqual(vector.dtype, np.float64)
        self.assertEqual(parameter_count(self.model), 43)

    def test_flatten_is_a_copy(self):
        vector = flatten(self.model)
        vector[:] = 0.0
        self.assertFalse(np.allclose(flatten(self.model), 0.0))

    def test_unflatten_restores_parameters(self):
        original = flatten(self.model)
        other = MLP(input_dim=6, output_dim=3, hidden_dims=[4])
        self.assertFalse(np.allclose(flatten(other), original))

        unflatten(other, original)
        np.testing.assert_allclose(flatten(other), original, rtol=1e-6)

        x = torch.randn(5, 6)
        self.assertTrue(torch.allclose(self.model(x), other(x)))

    def test_unflatten_fills_in_definition_order(self):
        layer = nn.Linear(2, 1)
        unflatten(layer, np.array([1.0, 2.0, 3.0]))
        self.assertTrue(torch.equal(layer.weight.data, torch.tensor([[1.0, 2.0]])))
        self.assertTrue(torch.equal(layer.bias.data, torch.tensor([3.0])))

    def test_unflatten_wrong_length(self):
        with self.assertRaises(ShapeMismatchError) as ctx:
            unflatten(self.model, np.zeros(42))
        self.assertEqual(ctx.exception.expected_length, 43)
        self.assertEqual(ctx.exception.actual_length, 42)

    def test_unflatten_rejects_matrix(self):
        with self.assertRaises(ShapeMismatchError):
            unflatten(self.model, np.zeros((43, 1)))

    def test_2nn_parameter_count(self):
        # 784*200+200 + 200*200+200 + 200*10+10
        self.assertEqual(parameter_count(MNIST2NN()), 199210)


if __name__ == '__main__':
    unittest.main()
