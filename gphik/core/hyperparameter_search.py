# File: gphik/core/hyperparameter_search.py
"""
Search over the kernel-transform parameters

Three strategies are supported:
- GRID: evaluates every value lower + i * step inside the bounds (one parameter only)
- SIMPLEX: Nelder-Mead started at the current parameters
- FIXED: no search, alphas are computed directly at a pinned value

All of them leave the result in the likelihood evaluator (best parameters
and best alphas).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from scipy.optimize import minimize

from .config import OptimizationMethod, OptimizerConfig
from .exceptions import ConfigurationError, DimensionMismatchError
from .kernel_models import KernelSum
from .likelihood import GPLikelihoodApprox

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """Outcome of a single search run"""
    method: OptimizationMethod
    best_parameters: np.ndarray
    best_value: float
    visited: List[np.ndarray] = field(default_factory=list)


class _TimeLimitReached(Exception):
    pass


def grid_values(lower: float, upper: float, step: float) -> np.ndarray:
    """lower, lower + step, ... up to and including upper"""

    if step <= 0:
        raise ConfigurationError("parameter_step_size must be positive", field='parameter_step_size')
    if upper < lower:
        return np.empty(0)

    count = int(np.floor((upper - lower) / step + 1e-9)) + 1
    return lower + step * np.arange(count)


class HyperparameterSearch:
    """
    Runs the configured search strategy against a likelihood evaluator.

    The evaluator keeps the best parameters and alphas; the returned
    SearchResult additionally lists every visited parameter vector.
    """

    def __init__(self, config: OptimizerConfig):
        self.config = config

    def run(self, evaluator: GPLikelihoodApprox, kernel_sum: KernelSum, eigen_max: np.ndarray,
            keep_current_parameters: bool = False,
            method: Optional[OptimizationMethod] = None) -> SearchResult:
        """
        Select the parameters of ``kernel_sum``.

        With ``keep_current_parameters`` no search is performed and the
        alphas are computed at the current parameters.
        """

        method = method or self.config.method

        if keep_current_parameters:
            logger.debug("Keeping current parameters, computing alphas directly")
            parameters = kernel_sum.get_parameters()
            evaluator.compute_alpha_direct(parameters, eigen_max)
            return SearchResult(method=OptimizationMethod.FIXED, best_parameters=parameters,
                                best_value=evaluator.best_value, visited=[parameters])

        if method == OptimizationMethod.GRID:
            return self._grid(evaluator, kernel_sum)
        if method == OptimizationMethod.SIMPLEX:
            return self._simplex(evaluator, kernel_sum)
        return self._fixed(evaluator, kernel_sum, eigen_max)

    def _grid(self, evaluator: GPLikelihoodApprox, kernel_sum: KernelSum) -> SearchResult:
        if kernel_sum.num_parameters() != 1:
            raise DimensionMismatchError(
                "Reduce size of the parameter vector or use downhill simplex "
                f"({kernel_sum.num_parameters()} parameters)", operation='grid_search')

        lower = float(kernel_sum.parameter_lower_bounds()[0])
        upper = float(kernel_sum.parameter_upper_bounds()[0])
        values = grid_values(lower, upper, self.config.parameter_step_size)

        logger.debug(f"Grid search over [{lower}, {upper}] with step {self.config.parameter_step_size}")

        visited = []
        for value in values:
            parameters = np.array([value])
            evaluator.evaluate(parameters)
            visited.append(parameters)

        if evaluator.best_parameters is None:
            raise ConfigurationError(f"Grid search over [{lower}, {upper}] evaluated no valid parameter",
                                     field='parameter_lower_bound')

        logger.info(f"Optimal hyperparameter was: {evaluator.best_parameters.tolist()}")
        return SearchResult(method=OptimizationMethod.GRID, best_parameters=evaluator.best_parameters,
                            best_value=evaluator.best_value, visited=visited)

    def _simplex(self, evaluator: GPLikelihoodApprox, kernel_sum: KernelSum) -> SearchResult:
        initial = kernel_sum.get_parameters()
        lower = kernel_sum.parameter_lower_bounds()
        upper = kernel_sum.parameter_upper_bounds()
        bounds = [(None if np.isinf(lo) else lo, None if np.isinf(hi) else hi)
                  for lo, hi in zip(lower, upper)]

        time_limit = self.config.downhill_simplex_time_limit
        start_time = time.time()
        visited = []

        def objective(parameters):
            # the initial simplex vertex is always evaluated
            if visited and time.time() - start_time > time_limit:
                raise _TimeLimitReached()
            visited.append(np.array(parameters, dtype=np.float64))
            return evaluator.evaluate(parameters)

        logger.debug(f"Downhill simplex from initial parameters {initial.tolist()}")

        try:
            result = minimize(objective, initial, method='Nelder-Mead', bounds=bounds,
                              options={'maxiter': self.config.downhill_simplex_max_iterations,
                                       'xatol': self.config.downhill_simplex_param_tol,
                                       'fatol': np.inf})
            logger.debug(f"Downhill simplex finished: {result.message}")
        except _TimeLimitReached:
            logger.warning(f"Downhill simplex stopped after the time limit of {time_limit}s")

        if evaluator.best_parameters is None:
            raise ConfigurationError("Downhill simplex evaluated no valid parameter",
                                     field='optimization_method')

        logger.info(f"Optimal hyperparameter was: {evaluator.best_parameters.tolist()}")
        return SearchResult(method=OptimizationMethod.SIMPLEX, best_parameters=evaluator.best_parameters,
                            best_value=evaluator.best_value, visited=visited)

    def _fixed(self, evaluator: GPLikelihoodApprox, kernel_sum: KernelSum,
               eigen_max: np.ndarray) -> SearchResult:
        if self.config.optimize_noise:
            raise ConfigurationError("Deactivate optimize_noise when optimization is disabled",
                                     field='optimize_noise')

        value = 1.0
        if self.config.parameter_lower_bound == self.config.parameter_upper_bound:
            value = self.config.parameter_lower_bound

        pf = kernel_sum.feature_term().pf
        pf.set_parameter_lower_bounds(value)
        pf.set_parameter_upper_bounds(value)

        parameters = np.full(kernel_sum.num_parameters(), value)
        logger.debug(f"Optimization is deactivated, using parameters {parameters.tolist()}")

        evaluator.compute_alpha_direct(parameters, eigen_max)
        return SearchResult(method=OptimizationMethod.FIXED, best_parameters=parameters,
                            best_value=evaluator.best_value, visited=[parameters])
