# File: gphik/core/variance.py
"""
Predictive variance approximations

All estimators compute k(x, x) - k*^T (K + sigma^2 I)^-1 k* with different
approximations of the second term:
- rough: ||k*||^2 / lambda_max from the kernel vector norm tables
- fine:  projections of k* onto the cached eigenvectors, the residual is
         scaled with the smallest retained eigenvalue
- exact: one iterative linear solve per query
"""

import logging
from typing import Optional

import numpy as np

from .eigenspectrum import EigenSpectrumCache
from .exceptions import NotTrainedError
from .fast_min_kernel import FastMinKernel
from .kernel_models import KernelSum
from .precomputation import ROUGH, VarianceCache
from .quantization import Quantization
from ..utils.math_utils import IterativeLinearSolver

logger = logging.getLogger(__name__)


class VarianceApproximator:
    """Rough, fine and exact predictive variance of a trained optimizer state"""

    def __init__(self, fmk: FastMinKernel, kernel_sum: KernelSum, spectrum: EigenSpectrumCache,
                 variance_cache: VarianceCache, linear_solver: IterativeLinearSolver,
                 quantization: Optional[Quantization] = None,
                 nr_of_eigenvalues_to_consider_for_var_approx: int = 1):
        self.fmk = fmk
        self.kernel_sum = kernel_sum
        self.spectrum = spectrum
        self.variance_cache = variance_cache
        self.linear_solver = linear_solver
        self.quantization = quantization
        self.num_eigenvalues = nr_of_eigenvalues_to_consider_for_var_approx

    def _require_spectrum(self, operation: str) -> None:
        if self.spectrum.is_empty:
            raise NotTrainedError("Eigenspectrum is empty, has this model been trained?",
                                  operation=operation)

    def rough(self, x) -> float:
        if self.variance_cache.mode != ROUGH or self.variance_cache.AVar is None:
            raise NotTrainedError("Rough variance approximation has not been prepared",
                                  operation='predictive_variance_rough')
        self._require_spectrum('predictive_variance_rough')

        k_self = self.fmk.hik_self_kernel(x)

        if self.variance_cache.lut is not None and self.quantization is not None:
            norm_k_star = self.fmk.hik_compute_kvn_approximation_fast(self.variance_cache.lut,
                                                                      self.quantization, x)
        else:
            norm_k_star = self.fmk.hik_compute_kvn_approximation(self.variance_cache.AVar, x)

        return k_self - norm_k_star / self.spectrum.max_eigenvalue()

    def fine(self, x) -> float:
        self._require_spectrum('predictive_variance_fine')

        k = min(max(1, self.num_eigenvalues), self.fmk.get_n())
        if len(self.spectrum) < k:
            raise NotTrainedError(f"Fine variance needs {k} eigenpairs, "
                                  f"only {len(self.spectrum)} are cached",
                                  operation='predictive_variance_fine')

        k_self = self.fmk.hik_self_kernel(x)
        k_star = self.fmk.hik_compute_kernel_vector(x)

        projections = self.spectrum.vectors[:, :k - 1].T @ k_star
        second_term = float(np.sum(projections ** 2 / self.spectrum.values[:k - 1]))
        sum_of_projection_lengths = float(np.sum(projections ** 2))

        residual = float(np.dot(k_star, k_star)) - sum_of_projection_lengths
        if residual < 0:
            logger.warning(f"Residual norm of the kernel vector is negative ({residual:.3e})")

        second_term += residual / self.spectrum.values[k - 1]
        return k_self - second_term

    def exact(self, x) -> float:
        self._require_spectrum('predictive_variance_exact')

        k_self = self.fmk.hik_self_kernel(x)
        k_star = self.fmk.hik_compute_kernel_vector(x)

        beta_0 = k_star * (1.0 / self.spectrum.max_eigenvalue())
        beta = self.linear_solver.solve(self.kernel_sum, k_star, initial_guess=beta_0,
                                        preconditioner_diagonal=self.kernel_sum.diagonal())

        return k_self - float(np.dot(beta, k_star))
