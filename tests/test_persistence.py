# File: tests/test_persistence.py

"""
Tests for storing and restoring GPHIK models in the tagged text format.
"""

import io
import unittest
import numpy as np
import os
import sys

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gphik.core.config import OptimizerConfig
from gphik.core.exceptions import CorruptStateError, NotTrainedError
from gphik.core.optimizer import GPHIKOptimizer
from gphik.core.parameterized_functions import ExpFunction, restore_parameterized_function
from gphik.core.quantization import Quantization
from gphik.utils.persistence import TagReader, TagWriter


def make_data(seed=0):
    rng = np.random.RandomState(seed)
    X = 0.1 * rng.rand(18, 4)
    y = np.repeat([0, 1, 2], 6)
    X[np.arange(18), y] += 0.8
    return X, y


def round_trip(optimizer):
    buffer = io.StringIO()
    optimizer.store(buffer)
    text = buffer.getvalue()

    restored = GPHIKOptimizer()
    restored.restore(io.StringIO(text))
    return restored, text


class TestTagFormat(unittest.TestCase):
    """Test cases for the tagged text framing."""

    def test_fields(self):
        buffer = io.StringIO()
        writer = TagWriter(buffer)
        writer.start('block')
        writer.write_int('count', 3)
        writer.write_float('value', 0.1)
        writer.write_bool('flag', True)
        writer.write_str('name', 'absexp')
        writer.write_vector('vector', np.array([1.5, -2.0, 1e-300]))
        writer.write_matrix('matrix', np.arange(6, dtype=float).reshape(2, 3))
        writer.end('block')

        reader = TagReader(io.StringIO(buffer.getvalue()))
        reader.expect_start('block')
        values = {}
        for name in reader.blocks('block'):
            if name == 'count':
                values[name] = reader.field_int(name)
            elif name == 'value':
                values[name] = reader.field_float(name)
            elif name == 'flag':
                values[name] = reader.field_bool(name)
            elif name == 'name':
                values[name] = reader.field_str(name)
            elif name == 'vector':
                values[name] = reader.field_vector(name)
            elif name == 'matrix':
                values[name] = reader.field_matrix(name)

        self.assertTrue(reader.exhausted)
        self.assertEqual(values['count'], 3)
        self.assertEqual(values['value'], 0.1)
        self.assertTrue(values['flag'])
        self.assertEqual(values['name'], 'absexp')
        np.testing.assert_array_equal(values['vector'], [1.5, -2.0, 1e-300])
        np.testing.assert_array_equal(values['matrix'], np.arange(6).reshape(2, 3))

    def test_strings_with_whitespace_are_rejected(self):
        writer = TagWriter(io.StringIO())
        with self.assertRaises(ValueError):
            writer.write_str('name', 'two words')

    def test_mismatched_end_tag(self):
        reader = TagReader(io.StringIO("<count>\n3\n</value>\n"))
        reader.expect_start('count')
        with self.assertRaises(CorruptStateError):
            reader.field_int('count')

    def test_field_order_is_free(self):
        text = ("<Quantization> <upperBound> 2.0 </upperBound> <numBins> 5 </numBins> "
                "<lowerBound> 0.5 </lowerBound> </Quantization>")
        q = Quantization.restore(TagReader(io.StringIO(text)))

        self.assertEqual(q.num_bins, 5)
        self.assertEqual(q.lower_bound, 0.5)
        self.assertEqual(q.upper_bound, 2.0)

    def test_parameterized_function(self):
        pf = ExpFunction(0.7, 0.1, 3.0)
        buffer = io.StringIO()
        pf.store(TagWriter(buffer))

        restored = restore_parameterized_function(TagReader(io.StringIO(buffer.getvalue())))
        self.assertIsInstance(restored, ExpFunction)
        np.testing.assert_array_equal(restored.get_parameters(), [0.7])
        np.testing.assert_array_equal(restored.lower_bounds, [0.1])
        np.testing.assert_array_equal(restored.upper_bounds, [3.0])

    def test_config(self):
        config = OptimizerConfig(optimization_method='downhillsimplex', noise=0.05,
                                 use_quantization=True, num_bins=17)
        buffer = io.StringIO()
        config.store(TagWriter(buffer))

        reader = TagReader(io.StringIO(buffer.getvalue()))
        reader.expect_start('config')
        self.assertEqual(OptimizerConfig.restore(reader), config)


class TestOptimizerPersistence(unittest.TestCase):
    """Test cases for the optimizer round trip."""

    def setUp(self):
        self.X, self.y = make_data()
        self.probes = np.random.RandomState(1).rand(5, 4)

    def _assert_same_predictions(self, first, second):
        for x in self.probes:
            first_label, first_scores = first.classify(x)
            second_label, second_scores = second.classify(x)
            self.assertEqual(first_label, second_label)
            self.assertEqual(set(first_scores), set(second_scores))
            for class_id in first_scores:
                self.assertAlmostEqual(first_scores[class_id], second_scores[class_id], places=12)

    def test_round_trip_reproduces_classification(self):
        optimizer = GPHIKOptimizer(OptimizerConfig(parameter_step_size=0.5), fmk=self.X)
        optimizer.optimize(self.y)

        restored, _ = round_trip(optimizer)

        self.assertEqual(restored.get_known_class_numbers(), {0, 1, 2})
        np.testing.assert_array_equal(restored.pf.get_parameters(), optimizer.pf.get_parameters())
        np.testing.assert_array_equal(restored.spectrum.values, optimizer.spectrum.values)
        self.assertFalse(restored.spectrum.is_stale(restored.kernel_sum))
        self._assert_same_predictions(optimizer, restored)

    def test_round_trip_binary_with_quantization(self):
        config = OptimizerConfig(parameter_step_size=0.5, use_quantization=True, num_bins=64)
        X, y = self.X[:12], self.y[:12]
        optimizer = GPHIKOptimizer(config, fmk=X)
        optimizer.optimize(y)

        restored, _ = round_trip(optimizer)

        self.assertEqual(restored.positive_label, 1)
        self.assertEqual(restored.negative_label, 0)
        self.assertIsNotNone(restored.quantization)
        self.assertEqual(restored.quantization.num_bins, 64)
        self._assert_same_predictions(optimizer, restored)

    def test_round_trip_keeps_variance_state(self):
        optimizer = GPHIKOptimizer(OptimizerConfig(optimization_method='none'), fmk=self.X)
        optimizer.optimize(self.y)
        optimizer.prepare_variance_approximation_rough()

        restored, _ = round_trip(optimizer)

        self.assertEqual(restored.variance_cache.mode, 'rough')
        for x in self.probes:
            self.assertAlmostEqual(restored.predictive_variance_rough(x),
                                   optimizer.predictive_variance_rough(x), places=12)
            self.assertAlmostEqual(restored.predictive_variance_fine(x),
                                   optimizer.predictive_variance_fine(x), places=10)

    def test_restored_model_accepts_new_examples(self):
        config = OptimizerConfig(optimization_method='none', ils_min_residual=1e-10)
        optimizer = GPHIKOptimizer(config, fmk=self.X)
        optimizer.optimize(self.y)
        restored, _ = round_trip(optimizer)

        self.assertEqual(set(restored.previous_alphas), {0, 1, 2})

        x_new = self.probes[0]
        optimizer.add_example(x_new, 2)
        restored.add_example(x_new, 2)

        self.assertEqual(restored.fmk.get_n(), 19)
        for x in self.probes:
            _, expected = optimizer.classify(x)
            _, scores = restored.classify(x)
            for class_id in expected:
                self.assertAlmostEqual(scores[class_id], expected[class_id], delta=1e-6)

    def test_untrained_round_trip(self):
        restored, _ = round_trip(GPHIKOptimizer())

        self.assertIsNone(restored.fmk)
        self.assertIsNone(restored.labels)
        with self.assertRaises(NotTrainedError):
            restored.classify(np.ones(4))

    def test_unknown_tag(self):
        optimizer = GPHIKOptimizer(OptimizerConfig(optimization_method='none'), fmk=self.X)
        optimizer.optimize(self.y)
        _, text = round_trip(optimizer)

        corrupted = text.replace('<labels>', '<bogus>', 1)
        with self.assertRaises(CorruptStateError):
            GPHIKOptimizer().restore(io.StringIO(corrupted))

    def test_truncated_stream(self):
        optimizer = GPHIKOptimizer(OptimizerConfig(optimization_method='none'), fmk=self.X)
        optimizer.optimize(self.y)
        _, text = round_trip(optimizer)

        truncated = '\n'.join(text.splitlines()[:-3])
        with self.assertRaises(CorruptStateError):
            GPHIKOptimizer().restore(io.StringIO(truncated))


if __name__ == '__main__':
    unittest.main(verbosity=2)
