# File: gphik/core/gphik_classifier.py
"""
scikit-learn interface of the GPHIK optimizer

Wraps GPHIKOptimizer as a classifier with fit / predict / decision_function,
incremental updates through partial_fit and predictive uncertainties.
"""

import logging
import time
from typing import Dict, Optional

import numpy as np
from scipy import sparse
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.utils.validation import check_array, check_is_fitted, check_X_y

from .config import OptimizerConfig
from .optimizer import GPHIKOptimizer

logger = logging.getLogger(__name__)

UNCERTAINTY_METHODS = ('rough', 'fine', 'exact')


class GPHIKClassifier(ClassifierMixin, BaseEstimator):

    def __init__(self, optimization_method: str = 'greedy', parameter_lower_bound: float = 1.0,
                 parameter_upper_bound: float = 2.5, parameter_step_size: float = 0.1,
                 noise: float = 0.01, transform: str = 'absexp', use_quantization: bool = False,
                 num_bins: int = 100, nr_of_eigenvalues_to_consider_for_var_approx: int = 1,
                 config: Optional[Dict] = None):

        self.optimization_method = optimization_method
        self.parameter_lower_bound = parameter_lower_bound
        self.parameter_upper_bound = parameter_upper_bound
        self.parameter_step_size = parameter_step_size
        self.noise = noise
        self.transform = transform
        self.use_quantization = use_quantization
        self.num_bins = num_bins
        self.nr_of_eigenvalues_to_consider_for_var_approx = nr_of_eigenvalues_to_consider_for_var_approx
        self.config = config

    def _build_config(self) -> OptimizerConfig:
        values = {
            'optimization_method': self.optimization_method,
            'parameter_lower_bound': self.parameter_lower_bound,
            'parameter_upper_bound': self.parameter_upper_bound,
            'parameter_step_size': self.parameter_step_size,
            'noise': self.noise,
            'transform': self.transform,
            'use_quantization': self.use_quantization,
            'num_bins': self.num_bins,
            'nr_of_eigenvalues_to_consider_for_var_approx': self.nr_of_eigenvalues_to_consider_for_var_approx,
        }
        # explicit configuration entries take precedence
        values.update(self.config or {})
        return OptimizerConfig.from_dict(values)

    def fit(self, X, y) -> 'GPHIKClassifier':
        X, y = check_X_y(X, y, accept_sparse='csr', dtype=np.float64)

        logger.info(f"Training GPHIK classifier on {X.shape[0]} samples, {X.shape[1]} features")
        start_time = time.time()

        self.optimizer_ = GPHIKOptimizer(self._build_config(), fmk=X)
        self.optimizer_.optimize(y)
        self._update_fitted_attributes()
        self.n_features_in_ = X.shape[1]

        logger.info(f"Training completed in {time.time() - start_time:.2f}s")
        return self

    def partial_fit(self, X, y, reoptimize: bool = True) -> 'GPHIKClassifier':
        """Add examples to a fitted model, or fit if there is none yet"""

        if not hasattr(self, 'optimizer_'):
            return self.fit(X, y)

        X, y = check_X_y(X, y, accept_sparse='csr', dtype=np.float64)
        self.optimizer_.add_multiple_examples(X, y, reoptimize=reoptimize)
        self._update_fitted_attributes()
        return self

    def _update_fitted_attributes(self) -> None:
        self.classes_ = np.array(sorted(self.optimizer_.get_known_class_numbers()))

    def _rows(self, X):
        check_is_fitted(self, 'optimizer_')
        X = check_array(X, accept_sparse='csr', dtype=np.float64)
        if sparse.issparse(X):
            return X.shape[0], (X.getrow(i) for i in range(X.shape[0]))
        return X.shape[0], iter(X)

    def predict(self, X) -> np.ndarray:
        num_rows, rows = self._rows(X)
        predictions = np.empty(num_rows, dtype=np.int64)
        for i, x in enumerate(rows):
            predictions[i], _ = self.optimizer_.classify(x)
        return predictions

    def decision_function(self, X) -> np.ndarray:
        """
        Per-class scores.

        Binary problems return the score of the positive class, shape (n,),
        otherwise the scores follow the order of ``classes_``.
        """

        num_rows, rows = self._rows(X)
        binary = len(self.classes_) == 2

        if binary or len(self.classes_) == 1:
            key = self.optimizer_.positive_label if binary else self.classes_[0]
            decisions = np.empty(num_rows)
            for i, x in enumerate(rows):
                _, scores = self.optimizer_.classify(x)
                decisions[i] = scores[key]
            return decisions

        decisions = np.zeros((num_rows, len(self.classes_)))
        for i, x in enumerate(rows):
            _, scores = self.optimizer_.classify(x)
            decisions[i] = [scores.get(int(c), 0.0) for c in self.classes_]
        return decisions

    def predict_uncertainty(self, X, method: str = 'fine') -> np.ndarray:
        """Predictive variance of every row of ``X``"""

        if method not in UNCERTAINTY_METHODS:
            raise ValueError(f"Unknown uncertainty method {method}, use one of {UNCERTAINTY_METHODS}")

        num_rows, rows = self._rows(X)

        if method == 'rough' and self.optimizer_.variance_cache.mode != 'rough':
            self.optimizer_.prepare_variance_approximation_rough()

        estimate = {
            'rough': self.optimizer_.predictive_variance_rough,
            'fine': self.optimizer_.predictive_variance_fine,
            'exact': self.optimizer_.predictive_variance_exact,
        }[method]

        return np.array([estimate(x) for x in rows])

    def save_model(self, filepath: str) -> None:
        """Store the fitted model in the tagged text format"""

        check_is_fitted(self, 'optimizer_')
        with open(filepath, 'w') as f:
            self.optimizer_.store(f)

        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load_model(cls, filepath: str) -> 'GPHIKClassifier':
        optimizer = GPHIKOptimizer()
        with open(filepath, 'r') as f:
            optimizer.restore(f)

        config = optimizer.config
        model = cls(optimization_method=config.optimization_method,
                    parameter_lower_bound=config.parameter_lower_bound,
                    parameter_upper_bound=config.parameter_upper_bound,
                    parameter_step_size=config.parameter_step_size,
                    noise=config.noise,
                    transform=config.transform,
                    use_quantization=config.use_quantization,
                    num_bins=config.num_bins,
                    nr_of_eigenvalues_to_consider_for_var_approx=config.nr_of_eigenvalues_to_consider_for_var_approx,
                    config=config.to_dict())
        model.optimizer_ = optimizer
        model._update_fitted_attributes()
        if optimizer.fmk is not None:
            model.n_features_in_ = optimizer.fmk.get_d()

        logger.info(f"Model loaded from {filepath}")
        return model

    def __repr__(self) -> str:
        if hasattr(self, 'optimizer_'):
            return (f"GPHIKClassifier(optimization_method={self.optimization_method}, "
                    f"classes={self.classes_.tolist()}, parameters={self.optimizer_.pf.parameters.tolist()})")
        return f"GPHIKClassifier(optimization_method={self.optimization_method}, unfitted)"
