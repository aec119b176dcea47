# File: gphik/core/likelihood.py
"""
Approximate GP marginal likelihood

For a candidate parameter vector the evaluator solves one alpha vector per
binary sub-problem, (K + sigma^2 I) alpha_c = y_c, and scores the fit with
the negative log marginal likelihood

    0.5 * sum_c y_c^T alpha_c + 0.5 * C * log det(K + sigma^2 I) + const

where the log determinant is approximated from the top eigenvalues and the
trace of the kernel sum (the untracked part of the spectrum is assumed to
be flat). The evaluator remembers the best parameters and alphas it saw.
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .exceptions import DimensionMismatchError
from .kernel_models import KernelSum
from ..utils.math_utils import IterativeLinearSolver, LanczosEigenSolver

logger = logging.getLogger(__name__)


class GPLikelihoodApprox:

    def __init__(self, binary_labels: Dict[int, np.ndarray], kernel_sum: KernelSum,
                 linear_solver: IterativeLinearSolver, eigen_solver: LanczosEigenSolver,
                 verify_approximation: bool = False, nr_of_eigenvalues_to_consider: int = 1):
        self.binary_labels = binary_labels
        self.kernel_sum = kernel_sum
        self.linear_solver = linear_solver
        self.eigen_solver = eigen_solver
        self.verify_approximation = verify_approximation
        self.nr_of_eigenvalues_to_consider = nr_of_eigenvalues_to_consider

        self.initial_alpha_guess: Optional[Dict[int, np.ndarray]] = None
        self._last_alphas: Optional[Dict[int, np.ndarray]] = None

        self.best_parameters: Optional[np.ndarray] = None
        self.best_alphas: Dict[int, np.ndarray] = {}
        self.best_value = np.inf
        self.history: List[Tuple[np.ndarray, float]] = []

    def set_initial_alpha_guess(self, alphas: Optional[Dict[int, np.ndarray]]) -> None:
        self.initial_alpha_guess = alphas

    def _starting_point(self, class_id: int, y: np.ndarray, eigen_max: float) -> np.ndarray:
        if self._last_alphas is not None and class_id in self._last_alphas:
            return self._last_alphas[class_id]

        if self.initial_alpha_guess is not None and class_id in self.initial_alpha_guess:
            guess = self.initial_alpha_guess[class_id]
            if len(guess) == len(y):
                return guess
            logger.warning(f"Initial alpha guess of class {class_id} has {len(guess)} entries, "
                           f"expected {len(y)}; ignoring it")

        return y * (1.0 / eigen_max)

    def _solve_alphas(self, eigen_max: float) -> Dict[int, np.ndarray]:
        n = self.kernel_sum.rows()
        alphas = {}

        for class_id, y in self.binary_labels.items():
            if len(y) != n:
                raise DimensionMismatchError(
                    f"Label vector of class {class_id} has {len(y)} entries, expected {n}",
                    operation='solve')

            alpha_0 = self._starting_point(class_id, y, eigen_max)
            alphas[class_id] = self.linear_solver.solve(self.kernel_sum, y, initial_guess=alpha_0)

        return alphas

    def _log_det_approximation(self, eigenvalues: np.ndarray) -> float:
        n = self.kernel_sum.rows()
        k = len(eigenvalues)

        log_det = float(np.sum(np.log(eigenvalues)))
        if n > k:
            residual = self.kernel_sum.trace() - float(np.sum(eigenvalues))
            mean_residual = max(residual / (n - k), np.finfo(float).tiny)
            log_det += (n - k) * np.log(mean_residual)

        return log_det

    def evaluate(self, parameters: np.ndarray) -> float:
        """Negative log likelihood at ``parameters``; inf if they are out of bounds"""

        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        if self.kernel_sum.out_of_bounds(parameters):
            logger.debug(f"Parameters {parameters.tolist()} are out of bounds")
            return np.inf

        self.kernel_sum.set_parameters(parameters)

        eigenvalues, _ = self.eigen_solver.top_eigenpairs(self.kernel_sum,
                                                          self.nr_of_eigenvalues_to_consider)
        if eigenvalues[0] <= 0:
            logger.debug(f"Kernel matrix is not positive definite at {parameters.tolist()}")
            return np.inf

        alphas = self._solve_alphas(eigenvalues[0])
        self._last_alphas = alphas

        num_classes = len(self.binary_labels)
        n = self.kernel_sum.rows()

        data_term = sum(float(np.dot(self.binary_labels[c], alphas[c])) for c in alphas)
        log_det = self._log_det_approximation(eigenvalues[eigenvalues > 0])
        value = 0.5 * data_term + 0.5 * num_classes * log_det + 0.5 * num_classes * n * np.log(2 * np.pi)

        if self.verify_approximation:
            self._verify(value, num_classes)

        logger.debug(f"Parameters {parameters.tolist()}: negative log likelihood {value:.6f}")

        self.history.append((parameters.copy(), value))
        if value < self.best_value:
            self.best_value = value
            self.best_parameters = parameters.copy()
            self.best_alphas = {c: a.copy() for c, a in alphas.items()}

        return value

    def _verify(self, approximate_value: float, num_classes: int) -> None:
        """Compare against the exact likelihood from the dense kernel matrix"""

        K = self.kernel_sum.dense_matrix()
        sign, log_det = np.linalg.slogdet(K)
        if sign <= 0:
            logger.warning("Dense kernel matrix is not positive definite, can not verify")
            return

        data_term = sum(float(np.dot(y, np.linalg.solve(K, y))) for y in self.binary_labels.values())
        n = K.shape[0]
        exact_value = 0.5 * data_term + 0.5 * num_classes * log_det + 0.5 * num_classes * n * np.log(2 * np.pi)

        logger.info(f"Likelihood approximation {approximate_value:.6f}, exact {exact_value:.6f}, "
                    f"difference {approximate_value - exact_value:.6f}")

    def compute_alpha_direct(self, parameters: np.ndarray, eigen_max: np.ndarray) -> Dict[int, np.ndarray]:
        """Solve the alphas at ``parameters`` without evaluating the likelihood"""

        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        self.kernel_sum.set_parameters(parameters)

        alphas = self._solve_alphas(float(np.asarray(eigen_max).ravel()[0]))
        self._last_alphas = alphas

        self.best_parameters = parameters.copy()
        self.best_alphas = {c: a.copy() for c, a in alphas.items()}

        return self.best_alphas
