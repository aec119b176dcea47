# File: gphik/utils/math_utils.py

"""
Numerical collaborators for GPHIK

This module provides the matrix-free solvers the optimizer relies on:
- Iterative linear solvers (conjugate gradients, MINRES) with optional
  Jacobi preconditioning
- A top-k eigensolver (ARPACK Lanczos, dense fallback for small problems)

Both operate on any model exposing ``rows()``, ``multiply(v)`` and
``dense_matrix()``, i.e. the kernel sum model of the optimizer.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import linalg
from scipy.sparse.linalg import (ArpackError, ArpackNoConvergence, LinearOperator,
                                 cg, eigsh, minres)

from ..core.exceptions import SolverFailure

logger = logging.getLogger(__name__)

# below this size (or when nearly all eigenpairs are requested) the dense
# eigendecomposition is cheaper and more robust than ARPACK
DENSE_EIGEN_THRESHOLD = 128


@dataclass
class SolverResult:
    """Result container for a single linear solve."""
    x: np.ndarray
    converged: bool
    iterations: int


def as_linear_operator(model) -> LinearOperator:
    """Wrap a kernel model as a scipy LinearOperator."""

    n = model.rows()

    def matvec(v):
        return model.multiply(np.asarray(v, dtype=np.float64).ravel())

    return LinearOperator((n, n), matvec=matvec, rmatvec=matvec, dtype=np.float64)


def jacobi_preconditioner(diagonal: np.ndarray) -> LinearOperator:
    """Inverse-diagonal preconditioner."""

    diagonal = np.asarray(diagonal, dtype=np.float64)
    if np.any(diagonal <= 0):
        raise SolverFailure("Jacobi preconditioner requires a positive diagonal",
                            operation='precondition')
    inverse = 1.0 / diagonal
    n = len(diagonal)
    return LinearOperator((n, n), matvec=lambda v: inverse * np.asarray(v).ravel(),
                          dtype=np.float64)


class _SmallUpdate(Exception):
    """Raised from a solver callback once the iterates stop moving"""

    def __init__(self, x: np.ndarray):
        super().__init__()
        self.x = x


class IterativeLinearSolver(ABC):
    """
    Common interface of the iterative linear solvers.

    Iteration stops once the relative residual drops below ``min_residual``
    or the L2 norm of the change between consecutive iterates drops below
    ``min_delta`` (a non-positive ``min_delta`` disables the second test).
    """

    name = 'ILS'

    def __init__(self, max_iterations: int = 1000, min_delta: float = 1e-7,
                 min_residual: float = 1e-7):
        self.max_iterations = max_iterations
        self.min_delta = min_delta
        self.min_residual = min_residual
        self.last_result: Optional[SolverResult] = None

    def solve(self, model, rhs: np.ndarray, initial_guess: Optional[np.ndarray] = None,
              preconditioner_diagonal: Optional[np.ndarray] = None) -> np.ndarray:
        """Solve ``model * x = rhs``; returns x."""

        rhs = np.asarray(rhs, dtype=np.float64).ravel()
        if initial_guess is not None:
            initial_guess = np.asarray(initial_guess, dtype=np.float64).ravel()
            if initial_guess.shape != rhs.shape:
                raise SolverFailure(
                    f"Initial guess has {initial_guess.size} entries, expected {rhs.size}",
                    operation='solve')

        operator = as_linear_operator(model)
        preconditioner = None
        if preconditioner_diagonal is not None:
            preconditioner = jacobi_preconditioner(preconditioner_diagonal)

        start = initial_guess if initial_guess is not None else np.zeros_like(rhs)
        iterations = [0]
        previous = [start.copy()]

        def callback(xk):
            iterations[0] += 1
            xk = np.array(xk, dtype=np.float64)
            if self.min_delta > 0 and np.linalg.norm(xk - previous[0]) < self.min_delta:
                raise _SmallUpdate(xk)
            previous[0] = xk

        try:
            x, converged = self._run(operator, rhs, initial_guess, preconditioner, callback)
        except _SmallUpdate as stop:
            x, converged = stop.x, True
            logger.debug(f"{self.name} stopped after {iterations[0]} iterations, "
                         f"update norm below {self.min_delta}")

        if not np.all(np.isfinite(x)):
            raise SolverFailure(f"{self.name} produced non-finite values", operation='solve')

        self.last_result = SolverResult(x=x, converged=converged, iterations=iterations[0])
        if not converged:
            logger.warning(f"{self.name} did not converge within {self.max_iterations} iterations")

        return x

    @abstractmethod
    def _run(self, operator, rhs, initial_guess, preconditioner, callback) -> Tuple[np.ndarray, bool]:
        """Run the scipy solver; returns the solution and whether it converged"""
        pass


class ConjugateGradientSolver(IterativeLinearSolver):
    """Preconditioned conjugate gradients for the symmetric positive definite kernel system"""

    name = 'CG'

    def _run(self, operator, rhs, initial_guess, preconditioner, callback) -> Tuple[np.ndarray, bool]:
        try:
            x, info = cg(operator, rhs, x0=initial_guess, rtol=self.min_residual, atol=0.0,
                         maxiter=self.max_iterations, M=preconditioner, callback=callback)
        except (ValueError, ArithmeticError) as e:
            raise SolverFailure(f"Conjugate gradients failed: {e}", operation='solve') from e

        if info < 0:
            raise SolverFailure(f"Conjugate gradients broke down (info={info})", operation='solve')

        return x, info == 0


class MinResSolver(IterativeLinearSolver):
    """MINRES, usable when the kernel system is only symmetric"""

    name = 'MINRES'

    def _run(self, operator, rhs, initial_guess, preconditioner, callback) -> Tuple[np.ndarray, bool]:
        try:
            x, info = minres(operator, rhs, x0=initial_guess, rtol=self.min_residual,
                             maxiter=self.max_iterations, M=preconditioner, callback=callback)
        except (ValueError, ArithmeticError) as e:
            raise SolverFailure(f"MINRES failed: {e}", operation='solve') from e

        if info < 0:
            raise SolverFailure(f"MINRES broke down (info={info})", operation='solve')

        return x, info == 0


def create_linear_solver(method: str, max_iterations: int = 1000, min_delta: float = 1e-7,
                         min_residual: float = 1e-7) -> IterativeLinearSolver:
    """Build the iterative linear solver named by ``method`` ("CG" or "MINRES")."""

    solvers = {
        'CG': ConjugateGradientSolver,
        'MINRES': MinResSolver,
    }

    solver_class = solvers.get(method.upper())
    if solver_class is None:
        logger.warning(f"ils_method ({method}) does not match any type "
                       f"({','.join(solvers)}), using CG")
        solver_class = ConjugateGradientSolver

    return solver_class(max_iterations=max_iterations, min_delta=min_delta,
                        min_residual=min_residual)


class LanczosEigenSolver:
    """Largest eigenpairs of a symmetric kernel model, in decreasing order"""

    def __init__(self, max_iterations: Optional[int] = None, tolerance: float = 0.0,
                 dense_threshold: int = DENSE_EIGEN_THRESHOLD):
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.dense_threshold = dense_threshold

    def top_eigenpairs(self, model, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compute the ``k`` largest eigenpairs of ``model``.

        Returns
        -------
        eigenvalues : np.ndarray
            Shape (k,), sorted in decreasing order
        eigenvectors : np.ndarray
            Shape (n, k), column i belongs to eigenvalue i
        """

        n = model.rows()
        if n == 0:
            raise SolverFailure("Eigendecomposition of an empty kernel matrix",
                                operation='eigendecomposition')

        k = max(1, min(int(k), n))

        try:
            if n <= self.dense_threshold or k >= n - 1:
                eigenvalues, eigenvectors = linalg.eigh(model.dense_matrix(),
                                                        subset_by_index=[n - k, n - 1])
            else:
                eigenvalues, eigenvectors = eigsh(as_linear_operator(model), k=k, which='LA',
                                                  maxiter=self.max_iterations, tol=self.tolerance)
        except (ArpackNoConvergence, ArpackError, linalg.LinAlgError, ValueError) as e:
            logger.error(f"Problem in calculating eigendecomposition of kernel matrix: {e}")
            raise SolverFailure(f"Eigendecomposition failed: {e}",
                                operation='eigendecomposition') from e

        order = np.argsort(eigenvalues)[::-1]
        return eigenvalues[order], eigenvectors[:, order]
