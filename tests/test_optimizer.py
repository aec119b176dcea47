# File: tests/test_optimizer.py

"""
Tests for the GPHIK optimizer.
Covers batch training, label settings (binary, multi-class, one-class,
regression), incremental updates with warm starts, quantized classification
and the predictive variance approximations.
"""

import unittest
import numpy as np
import os
import sys

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gphik.core.config import OptimizerConfig
from gphik.core.exceptions import DimensionMismatchError, NotTrainedError
from gphik.core.optimizer import GPHIKOptimizer


def make_clusters(n_per_class, classes, d=4, seed=0):
    """Non-negative clusters, class i has most of its mass in dimension i % d"""

    rng = np.random.RandomState(seed)
    X, y = [], []
    for i, class_id in enumerate(classes):
        block = 0.1 * rng.rand(n_per_class, d)
        block[:, i % d] += 0.8
        X.append(block)
        y.append(np.full(n_per_class, class_id))
    return np.vstack(X), np.concatenate(y)


def fixed_config(**overrides):
    """Deterministic configuration: no search, parameter pinned to 1.0"""

    values = dict(optimization_method='none', parameter_lower_bound=1.0,
                  parameter_upper_bound=1.0, ils_min_delta=1e-12, ils_min_residual=1e-10)
    values.update(overrides)
    return OptimizerConfig(**values)


class TestBatchTraining(unittest.TestCase):
    """Test cases for batch training and classification."""

    def test_binary_negative_class_is_implicit(self):
        """A binary problem keeps one summary, the negative score mirrors the positive one."""
        X, y = make_clusters(8, [3, 7])
        optimizer = GPHIKOptimizer(OptimizerConfig(parameter_step_size=0.5), fmk=X)
        optimizer.optimize(y)

        self.assertEqual(len(optimizer.summaries), 1)
        self.assertEqual(list(optimizer.summaries), [7])
        self.assertEqual(optimizer.get_known_class_numbers(), {3, 7})

        for x, label in zip(X, y):
            predicted, scores = optimizer.classify(x)
            self.assertEqual(scores[3], -scores[7])
            self.assertEqual(predicted, 7 if scores[7] > 0 else 3)
            self.assertEqual(predicted, label)

    def test_multi_class(self):
        X, y = make_clusters(8, [0, 1, 2])
        optimizer = GPHIKOptimizer(OptimizerConfig(parameter_step_size=0.5), fmk=X)
        optimizer.optimize(y)

        self.assertEqual(len(optimizer.summaries), 3)
        self.assertEqual(len(optimizer.previous_alphas), 3)

        predictions = np.array([optimizer.classify(x)[0] for x in X])
        self.assertGreaterEqual(np.mean(predictions == y), 0.95)

        X_test, y_test = make_clusters(5, [0, 1, 2], seed=1)
        predictions = np.array([optimizer.classify(x)[0] for x in X_test])
        self.assertGreaterEqual(np.mean(predictions == y_test), 0.8)

    def test_selected_parameter_lies_on_grid(self):
        X, y = make_clusters(6, [0, 1, 2])
        optimizer = GPHIKOptimizer(OptimizerConfig(parameter_step_size=0.5), fmk=X)
        optimizer.optimize(y)

        parameter = optimizer.pf.get_parameters()[0]
        self.assertIn(round(parameter, 6), {1.0, 1.5, 2.0, 2.5})
        self.assertEqual(len(optimizer.last_search.visited), 4)
        self.assertFalse(optimizer.spectrum.is_stale(optimizer.kernel_sum))

    def test_one_class(self):
        """A one-class model always returns its single class id."""
        X, _ = make_clusters(10, [0])
        optimizer = GPHIKOptimizer(fixed_config(), fmk=X)
        optimizer.optimize(np.full(10, 4))

        self.assertEqual(len(optimizer.summaries), 1)
        for x in np.random.RandomState(3).rand(5, 4):
            predicted, scores = optimizer.classify(x)
            self.assertEqual(predicted, 4)
            self.assertIn(4, scores)

    def test_regression(self):
        X = np.random.RandomState(4).rand(20, 3)
        y = X.sum(axis=1)
        optimizer = GPHIKOptimizer(fixed_config(perform_regression=True), fmk=X)
        optimizer.optimize(y)

        self.assertEqual(optimizer.get_known_class_numbers(), {1})

        label, scores = optimizer.classify(X[0])
        self.assertEqual(label, 1)
        self.assertTrue(np.isfinite(scores[1]))

        low, high = np.argmin(y), np.argmax(y)
        self.assertGreater(optimizer.classify(X[high])[1][1], optimizer.classify(X[low])[1][1])

    def test_binary_labels_interface(self):
        X, y = make_clusters(6, [0, 1])
        optimizer = GPHIKOptimizer(fixed_config(), fmk=X)
        optimizer.optimize_with_binary_labels({1: np.where(y == 1, 1.0, -1.0)})

        self.assertEqual(len(optimizer.summaries), 1)
        self.assertIsNone(optimizer.labels)
        with self.assertRaises(NotTrainedError):
            optimizer.add_example(X[0], 1)

    def test_quantized_scores_match_exact_at_prototypes(self):
        X, y = make_clusters(6, [0, 1, 2])
        X = np.round(X, 2)
        optimizer = GPHIKOptimizer(fixed_config(use_quantization=True, num_bins=101), fmk=X)
        optimizer.optimize(y)

        for x in X[::3]:
            _, scores = optimizer.classify(x)
            for class_id, score in scores.items():
                pair = optimizer.summaries.pair(class_id)
                exact = optimizer.fmk.hik_kernel_sum(pair.A, pair.B, x)
                self.assertAlmostEqual(score, exact, places=8)

    def test_weighted_dimensions_with_simplex(self):
        """One weight per dimension is searched with downhill simplex."""
        X, y = make_clusters(6, [0, 1, 2])
        config = OptimizerConfig(transform='weightedDim', pf_dim=4,
                                 optimization_method='downhillsimplex',
                                 downhill_simplex_max_iterations=5)
        optimizer = GPHIKOptimizer(config, fmk=X)
        optimizer.optimize(y)

        weights = optimizer.pf.get_parameters()
        self.assertEqual(len(weights), 4)
        self.assertTrue(np.all(weights >= 1.0))
        self.assertTrue(np.all(weights <= 2.5))

        predictions = np.array([optimizer.classify(x)[0] for x in X])
        self.assertGreaterEqual(np.mean(predictions == y), 0.9)

    def test_weighted_dimensions_reject_grid_search(self):
        X, y = make_clusters(6, [0, 1, 2])
        optimizer = GPHIKOptimizer(OptimizerConfig(transform='weightedDim', pf_dim=4), fmk=X)

        with self.assertRaises(DimensionMismatchError):
            optimizer.optimize(y)

    def test_errors_before_training(self):
        optimizer = GPHIKOptimizer()

        with self.assertRaises(NotTrainedError):
            optimizer.optimize([0, 1])
        with self.assertRaises(NotTrainedError):
            optimizer.classify(np.ones(3))
        with self.assertRaises(NotTrainedError):
            optimizer.add_example(np.ones(3), 1)
        with self.assertRaises(NotTrainedError):
            optimizer.predictive_variance_fine(np.ones(3))

    def test_label_count_mismatch(self):
        X, _ = make_clusters(4, [0, 1])
        optimizer = GPHIKOptimizer(fixed_config(), fmk=X)
        with self.assertRaises(DimensionMismatchError):
            optimizer.optimize(np.zeros(3))


class TestIncrementalLearning(unittest.TestCase):
    """Test cases for adding examples after training."""

    def setUp(self):
        self.X, self.y = make_clusters(8, [0, 1])
        self.X_new, self.y_new = make_clusters(1, [0, 1], seed=5)
        self.probes = np.random.RandomState(6).rand(6, 4)

    def _scores(self, optimizer):
        return [optimizer.classify(x)[1] for x in self.probes]

    def test_warm_start_matches_batch(self):
        """Adding examples gives the same model as training on the union."""
        incremental = GPHIKOptimizer(fixed_config(), fmk=self.X)
        incremental.optimize(self.y)
        incremental.add_example(self.X_new[0], self.y_new[0])
        incremental.add_multiple_examples(self.X_new[1:], self.y_new[1:])

        batch = GPHIKOptimizer(fixed_config(), fmk=np.vstack([self.X, self.X_new]))
        batch.optimize(np.concatenate([self.y, self.y_new]))

        self.assertEqual(incremental.fmk.get_n(), batch.fmk.get_n())
        for incremental_scores, batch_scores in zip(self._scores(incremental), self._scores(batch)):
            for class_id in batch_scores:
                self.assertAlmostEqual(incremental_scores[class_id], batch_scores[class_id], delta=1e-4)

        np.testing.assert_allclose(incremental.spectrum.values, batch.spectrum.values, rtol=1e-8)

    def test_previous_alphas_grow(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)
        self.assertEqual(len(optimizer.previous_alphas[1]), 16)

        optimizer.add_multiple_examples(self.X_new, self.y_new)
        self.assertEqual(len(optimizer.previous_alphas[1]), 18)
        self.assertEqual(len(optimizer.labels), 18)
        self.assertEqual(optimizer.kernel_sum.rows(), 18)

    def test_without_reoptimization_parameters_are_kept(self):
        optimizer = GPHIKOptimizer(OptimizerConfig(parameter_step_size=0.5), fmk=self.X)
        optimizer.optimize(self.y)
        parameters = optimizer.pf.get_parameters()

        optimizer.add_example(self.X_new[0], self.y_new[0], reoptimize=False)

        np.testing.assert_array_equal(optimizer.pf.get_parameters(), parameters)
        self.assertEqual(optimizer.fmk.get_n(), 17)

    def test_one_class_to_binary(self):
        """The first example of a second class turns a one-class model into a binary one."""
        X, _ = make_clusters(6, [0])
        optimizer = GPHIKOptimizer(fixed_config(), fmk=X)
        optimizer.optimize(np.full(6, 2))

        x_new = make_clusters(1, [0, 1], seed=7)[0][1]
        optimizer.add_example(x_new, 5)

        self.assertEqual(optimizer.get_known_class_numbers(), {2, 5})
        self.assertEqual(optimizer.positive_label, 5)
        self.assertEqual(optimizer.negative_label, 2)
        self.assertEqual(list(optimizer.summaries), [5])

        self.assertEqual(optimizer.classify(X[0])[0], 2)
        self.assertEqual(optimizer.classify(x_new)[0], 5)

    def test_one_class_to_binary_with_smaller_label(self):
        X, _ = make_clusters(6, [0])
        optimizer = GPHIKOptimizer(fixed_config(), fmk=X)
        optimizer.optimize(np.full(6, 2))

        x_new = make_clusters(1, [0, 1], seed=7)[0][1]
        optimizer.add_example(x_new, 1)

        self.assertEqual(optimizer.positive_label, 2)
        self.assertEqual(list(optimizer.summaries), [2])
        self.assertEqual(optimizer.classify(X[0])[0], 2)
        self.assertEqual(optimizer.classify(x_new)[0], 1)

    def test_binary_to_multi_class(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)
        self.assertEqual(len(optimizer.summaries), 1)

        X_third, _ = make_clusters(3, [0, 1, 2], seed=8)
        X_third = X_third[-3:]
        optimizer.add_multiple_examples(X_third, [2, 2, 2])

        self.assertEqual(optimizer.get_known_class_numbers(), {0, 1, 2})
        self.assertEqual(list(optimizer.summaries), [0, 1, 2])
        self.assertEqual(set(optimizer.previous_alphas), {0, 1, 2})
        self.assertEqual(optimizer.classify(X_third[0])[0], 2)
        self.assertEqual(optimizer.classify(self.X[0])[0], 0)

    def test_rejected_example_keeps_trained_model(self):
        """An invalid example raises and leaves the trained model usable."""
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)
        before = self._scores(optimizer)

        with self.assertRaises(ValueError):
            optimizer.add_example(np.array([-1.0, 0.2, 0.3, 0.1]), 7)
        with self.assertRaises(ValueError):
            optimizer.add_example(self.X_new[0], 0.5)

        self.assertEqual(optimizer.get_known_class_numbers(), {0, 1})
        self.assertEqual(optimizer.kernel_sum.noise_term().rows(), 16)
        self.assertEqual(optimizer.fmk.get_n(), 16)
        self.assertEqual(len(optimizer.labels), 16)
        self.assertEqual(self._scores(optimizer), before)

        optimizer.add_example(self.X_new[0], self.y_new[0])
        self.assertEqual(optimizer.kernel_sum.noise_term().rows(), 17)
        self.assertEqual(optimizer.fmk.get_n(), 17)

    def test_regression_warm_start_uses_label_signs(self):
        X = np.random.RandomState(10).rand(12, 3)
        y = X.sum(axis=1) - 1.5
        optimizer = GPHIKOptimizer(fixed_config(perform_regression=True), fmk=X[:10])
        optimizer.optimize(y[:10])

        warm_start = optimizer._warm_start_alphas({1: y}, set())
        factor = 1.0 / optimizer.spectrum.max_eigenvalue()

        np.testing.assert_array_equal(warm_start[1][:10], optimizer.previous_alphas[1])
        np.testing.assert_allclose(warm_start[1][10:], np.sign(y[10:]) * factor)

        optimizer.add_multiple_examples(X[10:], y[10:])
        batch = GPHIKOptimizer(fixed_config(perform_regression=True), fmk=X)
        batch.optimize(y)
        for x in self.probes[:, :3]:
            self.assertAlmostEqual(optimizer.classify(x)[1][1], batch.classify(x)[1][1], delta=1e-4)

    def test_add_examples_dimension_mismatch(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)

        with self.assertRaises(DimensionMismatchError):
            optimizer.add_multiple_examples(np.ones((2, 3)), [0, 1])
        with self.assertRaises(DimensionMismatchError):
            optimizer.add_multiple_examples(np.ones((2, 4)), [0])

        self.assertEqual(optimizer.fmk.get_n(), 16)


class TestPredictiveVariance(unittest.TestCase):
    """Test cases for the rough, fine and exact variance estimates."""

    def setUp(self):
        self.X, self.y = make_clusters(5, [0, 1, 2])
        self.n = len(self.y)
        self.probes = np.random.RandomState(9).rand(4, 4)

    def _dense_variance(self, optimizer, x):
        K = optimizer.kernel_sum.dense_matrix()
        k_star = optimizer.fmk.hik_compute_kernel_vector(x)
        return optimizer.fmk.hik_self_kernel(x) - float(k_star @ np.linalg.solve(K, k_star))

    def test_exact_variance(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)

        for x in self.probes:
            self.assertAlmostEqual(optimizer.predictive_variance_exact(x),
                                   self._dense_variance(optimizer, x), delta=1e-5)

    def test_fine_with_all_eigenvalues_is_exact(self):
        config = fixed_config(nr_of_eigenvalues_to_consider_for_var_approx=self.n)
        optimizer = GPHIKOptimizer(config, fmk=self.X)
        optimizer.optimize(self.y)

        self.assertEqual(len(optimizer.spectrum), self.n)
        self.assertEqual(optimizer.variance_cache.mode, 'fine')

        for x in self.probes:
            fine = optimizer.predictive_variance_fine(x)
            exact = optimizer.predictive_variance_exact(x)
            self.assertTrue(np.isfinite(fine))
            self.assertAlmostEqual(fine, exact, delta=1e-5)

    def test_approximations_bound_the_exact_variance(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)

        with self.assertRaises(NotTrainedError):
            optimizer.predictive_variance_rough(self.probes[0])

        optimizer.prepare_variance_approximation_rough()
        self.assertEqual(optimizer.variance_cache.mode, 'rough')

        for x in self.probes:
            exact = self._dense_variance(optimizer, x)
            rough = optimizer.predictive_variance_rough(x)
            fine = optimizer.predictive_variance_fine(x)

            self.assertTrue(np.isfinite(rough))
            self.assertGreaterEqual(fine, exact - 1e-8)
            self.assertGreaterEqual(rough, fine - 1e-8)

    def test_negative_fine_residual_is_only_logged(self):
        config = fixed_config(nr_of_eigenvalues_to_consider_for_var_approx=2)
        optimizer = GPHIKOptimizer(config, fmk=self.X)
        optimizer.optimize(self.y)

        # inflated eigenvectors make the projections exceed the kernel vector norm
        optimizer.spectrum.vectors = optimizer.spectrum.vectors * 10.0

        with self.assertLogs('gphik.core.variance', level='WARNING') as logs:
            value = optimizer.predictive_variance_fine(self.probes[0])

        self.assertTrue(np.isfinite(value))
        self.assertTrue(any('negative' in message for message in logs.output))

    def test_rough_cache_follows_updates(self):
        optimizer = GPHIKOptimizer(fixed_config(), fmk=self.X)
        optimizer.optimize(self.y)
        optimizer.prepare_variance_approximation_rough()

        optimizer.add_example(self.probes[0], 1)

        self.assertEqual(optimizer.variance_cache.mode, 'rough')
        self.assertEqual(optimizer.variance_cache.AVar.shape, (4, self.n + 2))

    def test_rough_with_quantization(self):
        optimizer = GPHIKOptimizer(fixed_config(use_quantization=True, num_bins=51), fmk=self.X)
        optimizer.optimize(self.y)
        optimizer.prepare_variance_approximation_rough()

        self.assertEqual(optimizer.variance_cache.lut.shape, (4 * 51,))
        for x in self.probes:
            self.assertTrue(np.isfinite(optimizer.predictive_variance_rough(x)))


if __name__ == "__main__":
    test_loader = unittest.TestLoader()
    test_suite = unittest.TestSuite()

    test_classes = [
        TestBatchTraining,
        TestIncrementalLearning,
        TestPredictiveVariance,
    ]

    for test_class in test_classes:
        test_suite.addTests(test_loader.loadTestsFromTestCase(test_class))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(test_suite)

    print(f"\n{'='*50}")
    print("OPTIMIZER TEST SUMMARY")
    print(f"{'='*50}")
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")

    if result.failures:
        print(f"\nFailures:")
        for test, _ in result.failures:
            print(f"- {test}")

    sys.exit(0 if result.wasSuccessful() else 1)
