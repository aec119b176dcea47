# File: tests/test_integration.py

"""
Integration tests for the scikit-learn interface.
Trains, updates, queries and persists complete GPHIK classifiers.
"""

import unittest
import numpy as np
import tempfile
import os
import sys
from scipy import sparse
from sklearn.base import clone
from sklearn.exceptions import NotFittedError

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gphik import GPHIKClassifier, GPHIKOptimizer


def make_dataset(n_per_class, classes, d=5, seed=0):
    rng = np.random.RandomState(seed)
    X, y = [], []
    for i, class_id in enumerate(classes):
        block = 0.15 * rng.rand(n_per_class, d)
        block[:, i % d] += 0.7
        X.append(block)
        y.append(np.full(n_per_class, class_id))
    X = np.vstack(X)
    y = np.concatenate(y)
    order = rng.permutation(len(y))
    return X[order], y[order]


class TestGPHIKClassifier(unittest.TestCase):
    """End-to-end tests of the estimator."""

    def setUp(self):
        self.X_train, self.y_train = make_dataset(10, [0, 1, 2])
        self.X_test, self.y_test = make_dataset(5, [0, 1, 2], seed=1)
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_fit_predict(self):
        model = GPHIKClassifier(parameter_step_size=0.5)
        model.fit(self.X_train, self.y_train)

        np.testing.assert_array_equal(model.classes_, [0, 1, 2])
        self.assertEqual(model.n_features_in_, 5)

        predictions = model.predict(self.X_test)
        self.assertEqual(predictions.shape, (15,))
        self.assertGreaterEqual(np.mean(predictions == self.y_test), 0.8)
        self.assertGreaterEqual(model.score(self.X_train, self.y_train), 0.95)

    def test_decision_function_shapes(self):
        model = GPHIKClassifier(optimization_method='none')
        model.fit(self.X_train, self.y_train)
        decisions = model.decision_function(self.X_test)
        self.assertEqual(decisions.shape, (15, 3))
        np.testing.assert_array_equal(model.classes_[np.argmax(decisions, axis=1)],
                                      model.predict(self.X_test))

        binary = self.y_train < 2
        model.fit(self.X_train[binary], self.y_train[binary])
        decisions = model.decision_function(self.X_test)
        self.assertEqual(decisions.shape, (15,))
        np.testing.assert_array_equal(np.where(decisions > 0, 1, 0), model.predict(self.X_test))

    def test_sparse_input(self):
        model = GPHIKClassifier(optimization_method='none')
        model.fit(sparse.csr_matrix(self.X_train), self.y_train)

        dense_predictions = model.predict(self.X_test)
        sparse_predictions = model.predict(sparse.csr_matrix(self.X_test))
        np.testing.assert_array_equal(dense_predictions, sparse_predictions)

    def test_partial_fit(self):
        binary = self.y_train < 2
        model = GPHIKClassifier(optimization_method='none')
        model.partial_fit(self.X_train[binary], self.y_train[binary])
        np.testing.assert_array_equal(model.classes_, [0, 1])

        third = self.y_train == 2
        model.partial_fit(self.X_train[third], self.y_train[third])

        np.testing.assert_array_equal(model.classes_, [0, 1, 2])
        self.assertEqual(model.optimizer_.fmk.get_n(), 30)
        self.assertGreaterEqual(np.mean(model.predict(self.X_test) == self.y_test), 0.8)

    def test_predict_uncertainty(self):
        model = GPHIKClassifier(optimization_method='none')
        model.fit(self.X_train, self.y_train)

        exact = model.predict_uncertainty(self.X_test, method='exact')
        fine = model.predict_uncertainty(self.X_test, method='fine')
        rough = model.predict_uncertainty(self.X_test, method='rough')

        for values in (exact, fine, rough):
            self.assertEqual(values.shape, (15,))
            self.assertTrue(np.all(np.isfinite(values)))

        self.assertTrue(np.all(fine >= exact - 1e-6))
        self.assertTrue(np.all(rough >= fine - 1e-6))

        with self.assertRaises(ValueError):
            model.predict_uncertainty(self.X_test, method='sampling')

    def test_save_and_load(self):
        model = GPHIKClassifier(parameter_step_size=0.5, use_quantization=True, num_bins=50)
        model.fit(self.X_train, self.y_train)

        filepath = os.path.join(self.temp_dir, 'model.txt')
        model.save_model(filepath)
        self.assertTrue(os.path.exists(filepath))

        loaded = GPHIKClassifier.load_model(filepath)

        self.assertIsInstance(loaded.optimizer_, GPHIKOptimizer)
        np.testing.assert_array_equal(loaded.classes_, model.classes_)
        self.assertEqual(loaded.n_features_in_, 5)
        self.assertTrue(loaded.use_quantization)
        np.testing.assert_array_equal(loaded.predict(self.X_test), model.predict(self.X_test))
        np.testing.assert_allclose(loaded.decision_function(self.X_test),
                                   model.decision_function(self.X_test), rtol=1e-12, atol=1e-12)

    def test_not_fitted(self):
        model = GPHIKClassifier()
        with self.assertRaises(NotFittedError):
            model.predict(self.X_test)
        with self.assertRaises(NotFittedError):
            model.save_model(os.path.join(self.temp_dir, 'model.txt'))

    def test_sklearn_parameters(self):
        model = GPHIKClassifier(noise=0.1, transform='exp', config={'ils_method': 'MINRES'})
        params = model.get_params()
        self.assertEqual(params['noise'], 0.1)
        self.assertEqual(params['transform'], 'exp')

        cloned = clone(model)
        self.assertEqual(cloned.config, {'ils_method': 'MINRES'})

        cloned.set_params(optimization_method='none')
        cloned.fit(self.X_train, self.y_train)
        self.assertEqual(cloned.optimizer_.config.ils_method, 'MINRES')
        self.assertEqual(cloned.optimizer_.linear_solver.name, 'MINRES')
        self.assertIn('GPHIKClassifier', repr(cloned))


if __name__ == '__main__':
    unittest.main(verbosity=2)
