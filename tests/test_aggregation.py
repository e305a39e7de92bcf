"""
Unit tests for Federated Averaging aggregation.
"""

import unittest
import numpy as np
import sys
from pathlib import Path

# Add the source tree to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from fedavg_sim.core.exceptions import InvalidAggregationInputError
from fedavg_sim.core.types import ClientUpdate
from fedavg_sim.strategies.fedavg import FAST_PATH_MAX_CLIENTS, FedAvgStrategy, aggregate


class TestAggregate(unittest.TestCase):
    """Test the weighted average and its input checks."""

    def setUp(self):
        self.rng = np.random.default_rng(42)

    def test_weighted_average(self):
        params = [np.array([1.0, 2.0]), np.array([3.0, 4.0]), np.array([5.0, 6.0])]
        result = aggregate(params, [3, 4, 5])
        # (3*1 + 4*3 + 5*5) / 12 and (3*2 + 4*4 + 5*6) / 12
        np.testing.assert_allclose(result, [40 / 12, 52 / 12])

    def test_two_client_example(self):
        result = aggregate([np.array([1.0, 2.0, 3.0]), np.array([4.0, 5.0, 6.0])], [100, 200])
        np.testing.assert_allclose(result, [3.0, 4.0, 5.0])

    def test_single_client_is_identity(self):
        vector = self.rng.normal(size=50)
        np.testing.assert_allclose(aggregate([vector], [17]), vector)

    def test_zero_weight_client_is_ignored(self):
        params = [np.array([1.0, 1.0]), np.array([100.0, -100.0])]
        np.testing.assert_allclose(aggregate(params, [5, 0]), [1.0, 1.0])

    def test_weights_are_scale_invariant(self):
        params = [self.rng.normal(size=20) for _ in range(4)]
        np.testing.assert_allclose(aggregate(params, [1, 2, 3, 4]),
                                   aggregate(params, [10, 20, 30, 40]))

    def test_permutation_invariance(self):
        params = [self.rng.normal(size=30) for _ in range(6)]
        weights = [5, 1, 8, 2, 9, 3]
        order = self.rng.permutation(6)
        np.testing.assert_allclose(
            aggregate(params, weights),
            aggregate([params[i] for i in order], [weights[i] for i in order]),
            rtol=1e-12, atol=1e-12
        )

    def test_fast_and_streaming_paths_agree(self):
        num_clients = FAST_PATH_MAX_CLIENTS + 8
        params = [self.rng.normal(size=100) for _ in range(num_clients)]
        weights = self.rng.integers(1, 600, size=num_clients)

        streamed = aggregate(params, weights)
        stacked = np.stack(params, axis=1) @ (weights / weights.sum())
        np.testing.assert_allclose(streamed, stacked, rtol=1e-10, atol=1e-12)

    def test_result_is_new_array(self):
        params = [np.zeros(3), np.ones(3)]
        result = aggregate(params, [1, 1])
        result[0] = 42.0
        np.testing.assert_array_equal(params[0], np.zeros(3))
        np.testing.assert_array_equal(params[1], np.ones(3))

    def test_invalid_inputs(self):
        cases = [
            ("empty", [], []),
            ("unequal_length", [np.zeros(2), np.zeros(3)], [1, 1]),
            ("not_vector", [np.zeros((2, 2))], [1]),
            ("non_finite", [np.array([1.0, np.nan])], [1]),
            ("non_finite", [np.array([np.inf, 1.0])], [1]),
            ("weight_count", [np.zeros(2), np.zeros(2)], [1]),
            ("negative_weight", [np.zeros(2), np.zeros(2)], [1, -1]),
            ("non_finite_weight", [np.zeros(2)], [np.nan]),
            ("zero_weight_sum", [np.zeros(2), np.zeros(2)], [0, 0]),
        ]
        for reason, params, weights in cases:
            with self.subTest(reason=reason):
                with self.assertRaises(InvalidAggregationInputError) as ctx:
                    aggregate(params, weights)
                self.assertEqual(ctx.exception.reason, reason)
                self.assertIn("Aggregator:", str(ctx.exception))

    def test_error_names_offending_client(self):
        with self.assertRaises(InvalidAggregationInputError) as ctx:
            aggregate([np.zeros(2), np.array([0.0, np.nan])], [1, 1])
        self.assertEqual(ctx.exception.client_position, 1)


class TestFedAvgStrategy(unittest.TestCase):
    """Test aggregation of client updates."""

    def test_weights_by_sample_count(self):
        updates = [
            ClientUpdate(client_id=1, parameters=np.array([0.0]), num_samples=1),
            ClientUpdate(client_id=2, parameters=np.array([4.0]), num_samples=3),
        ]
        result = FedAvgStrategy().aggregate_updates(updates)
        np.testing.assert_allclose(result, [3.0])

    def test_all_empty_clients_rejected(self):
        updates = [ClientUpdate(client_id=1, parameters=np.array([1.0]), num_samples=0)]
        with self.assertRaises(InvalidAggregationInputError):
            FedAvgStrategy().aggregate_updates(updates)


if __name__ == '__main__':
    unittest.main()
