# File: gphik/__init__.py

"""
GPHIK: Gaussian Process classification with Histogram Intersection Kernels
==========================================================================

Fast GP classification and regression for non-negative (histogram-like)
features. Kernel sums are evaluated through sorted feature dimensions, the
kernel-transform parameters are chosen by an approximate marginal
likelihood, and new examples can be added without a full retrain.

Main Components:
---------------
- GPHIKOptimizer: training, incremental updates, classification, variance
- GPHIKClassifier: scikit-learn estimator around the optimizer
- FastMinKernel: sorted-feature histogram intersection kernel
- OptimizerConfig: all tunable options

Usage Example:
--------------
>>> from gphik import GPHIKClassifier
>>> model = GPHIKClassifier(optimization_method='greedy', parameter_step_size=0.5)
>>> model.fit(X_train, y_train)
>>> predictions = model.predict(X_test)
>>> variances = model.predict_uncertainty(X_test, method='fine')
>>> model.partial_fit(X_new, y_new)

"""

__version__ = "1.0.0"
__license__ = "MIT"

from .core.config import OptimizationMethod, OptimizerConfig
from .core.exceptions import (
    ConfigurationError, CorruptStateError, DimensionMismatchError, GPHIKError,
    NotTrainedError, SolverFailure
)
from .core.fast_min_kernel import FastMinKernel
from .core.gphik_classifier import GPHIKClassifier
from .core.labels import prepare_binary_labels
from .core.optimizer import GPHIKOptimizer
from .core.parameterized_functions import AbsExpFunction, ExpFunction, WeightedDimFunction
from .core.quantization import Quantization
from .utils.logging_utils import setup_logger

__all__ = [
    # Core
    'GPHIKOptimizer',
    'GPHIKClassifier',
    'FastMinKernel',
    'OptimizerConfig',
    'OptimizationMethod',
    'Quantization',
    'prepare_binary_labels',

    # Transforms
    'AbsExpFunction',
    'ExpFunction',
    'WeightedDimFunction',

    # Errors
    'GPHIKError',
    'ConfigurationError',
    'NotTrainedError',
    'DimensionMismatchError',
    'SolverFailure',
    'CorruptStateError',

    # Utilities
    'setup_logger',

    # Version info
    '__version__',
]

# Configuration defaults
DEFAULT_CONFIG = {
    'GPHIKClassifier': OptimizerConfig().to_dict(),
}
