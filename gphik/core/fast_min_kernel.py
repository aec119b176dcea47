# File: gphik/core/fast_min_kernel.py
"""
Sorted-feature histogram intersection kernel

Implements the fast evaluation scheme of the histogram intersection kernel
    K(x, x') = sum_d min(f(d, x_d), f(d, x'_d))
for non-negative features and a non-decreasing transform f with f(0) = 0.

Every feature dimension is kept sorted, which gives:
- matrix-free kernel multiplications K*v in O(n d) after an O(n d log n) sort
- kernel sums sum_i alpha_i K(x_i, x*) in O(d log n) from two precomputed
  tables A (prefix sums of alpha_i f(x_i)) and B (suffix sums of alpha_i)
- O(d) kernel sums from a quantized lookup table
"""

import logging
from typing import Optional, Tuple

import numpy as np
from numba import njit
from scipy import sparse

from .exceptions import CorruptStateError, DimensionMismatchError
from .parameterized_functions import ParameterizedFunction
from .quantization import Quantization

logger = logging.getLogger(__name__)


@njit
def _upper_bound_positions(sorted_values, query):
    """Per dimension, the number of training values <= query value"""
    num_dims, n = sorted_values.shape
    positions = np.empty(num_dims, dtype=np.int64)
    for dim in range(num_dims):
        value = query[dim]
        lo = 0
        hi = n
        while lo < hi:
            mid = (lo + hi) // 2
            if sorted_values[dim, mid] <= value:
                lo = mid + 1
            else:
                hi = mid
        positions[dim] = lo
    return positions


def validate_features(X) -> np.ndarray:
    """Dense float copy of ``X``; rejects non-2D, non-finite and negative input"""

    if sparse.issparse(X):
        X = X.toarray()
    X = np.asarray(X, dtype=np.float64)

    if X.ndim != 2:
        raise ValueError(f"Features must be a 2D array, got {X.ndim}D")
    if not np.all(np.isfinite(X)):
        raise ValueError("Features must be finite")
    if np.any(X < 0):
        raise ValueError("Histogram intersection kernel requires non-negative features")

    return X


class FastMinKernel:

    def __init__(self, X, pf: Optional[ParameterizedFunction] = None):
        self._X = validate_features(X)
        self.pf = None
        self._sort_features()

        if pf is not None:
            self.apply_transform(pf)

        logger.debug(f"FastMinKernel initialized: {self.get_n()} examples, {self.get_d()} dimensions")

    def get_n(self) -> int:
        return self._X.shape[0]

    def get_d(self) -> int:
        return self._X.shape[1]

    @property
    def features(self) -> np.ndarray:
        return self._X

    def _sort_features(self) -> None:
        """Sort every dimension by the raw feature values"""

        self._order = np.ascontiguousarray(np.argsort(self._X, axis=0, kind='stable').T)
        self._inverse = np.argsort(self._order, axis=1)
        self._sorted_values = np.ascontiguousarray(np.take_along_axis(self._X.T, self._order, axis=1))
        self._refresh_transformed()

    def _refresh_transformed(self) -> None:
        if self.pf is None:
            self._transformed = self._X.copy()
        else:
            self._transformed = self.pf.apply(self._X)
        self._sorted_transformed = np.ascontiguousarray(
            np.take_along_axis(self._transformed.T, self._order, axis=1))

    def apply_transform(self, pf: ParameterizedFunction) -> None:
        """(Re)transform the stored features with the current parameters of ``pf``"""

        self.pf = pf
        self._refresh_transformed()

    def _query(self, x) -> np.ndarray:
        if sparse.issparse(x):
            x = x.toarray()
        x = np.asarray(x, dtype=np.float64).ravel()

        if len(x) != self.get_d():
            raise DimensionMismatchError(f"Query has {len(x)} dimensions, expected {self.get_d()}",
                                         operation='query')
        if np.any(x < 0):
            raise ValueError("Histogram intersection kernel requires non-negative features")

        return x

    def _transform_query(self, x: np.ndarray) -> np.ndarray:
        if self.pf is None:
            return x
        return self.pf.apply_vector(x)

    def _transform_prototypes(self, prototypes: np.ndarray) -> np.ndarray:
        """Transformed prototypes, shape (bins, d)"""
        grid = np.repeat(prototypes[:, None], self.get_d(), axis=1)
        if self.pf is None:
            return grid
        return self.pf.apply(grid)

    # ==================== Kernel matrix operations ====================

    def hik_diagonal(self) -> np.ndarray:
        """K(x_i, x_i) = sum_d f(x_id)"""
        return self._transformed.sum(axis=1)

    def hik_multiply(self, v: np.ndarray) -> np.ndarray:
        """Matrix-free K * v"""

        v = np.asarray(v, dtype=np.float64).ravel()
        values = v[self._order]
        prefix = np.cumsum(values * self._sorted_transformed, axis=1)
        suffix = values.sum(axis=1, keepdims=True) - np.cumsum(values, axis=1)
        contributions = prefix + self._sorted_transformed * suffix

        return np.take_along_axis(contributions, self._inverse, axis=1).sum(axis=0)

    def hik_kernel_matrix(self) -> np.ndarray:
        """Dense n x n kernel matrix; only meant for small problems"""

        n = self.get_n()
        K = np.zeros((n, n))
        for column in self._transformed.T:
            K += np.minimum.outer(column, column)
        return K

    def hik_compute_kernel_vector(self, x) -> np.ndarray:
        """k_i = K(x_i, x*) for all training examples"""

        fx = self._transform_query(self._query(x))
        return np.minimum(self._transformed, fx[None, :]).sum(axis=1)

    def hik_self_kernel(self, x) -> float:
        """K(x*, x*) = sum_d f(x*_d)"""
        return float(self._transform_query(self._query(x)).sum())

    # ==================== Kernel sums with precomputed tables ====================

    def hik_prepare_alpha_multiplications(self, alpha: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Precompute A and B for the coefficients ``alpha``.

        With the training values of dimension d in sorted order,
            A[d, k] = sum_{j < k} alpha_j f(x_j)
            B[d, k] = sum_{j >= k} alpha_j
        both of shape (d, n + 1).
        """

        alpha = np.asarray(alpha, dtype=np.float64).ravel()
        if len(alpha) != self.get_n():
            raise DimensionMismatchError(f"alpha has {len(alpha)} entries, expected {self.get_n()}",
                                         operation='prepare_alpha_multiplications')

        values = alpha[self._order]
        num_dims = self.get_d()

        A = np.zeros((num_dims, self.get_n() + 1))
        A[:, 1:] = np.cumsum(values * self._sorted_transformed, axis=1)

        cumulative = np.zeros((num_dims, self.get_n() + 1))
        cumulative[:, 1:] = np.cumsum(values, axis=1)
        B = cumulative[:, -1:] - cumulative

        return A, B

    def hik_kernel_sum(self, A: np.ndarray, B: np.ndarray, x) -> float:
        """sum_i alpha_i K(x_i, x*) from the tables of hik_prepare_alpha_multiplications"""

        x = self._query(x)
        fx = self._transform_query(x)
        # sorted order is given by the raw values, the sums use transformed ones
        positions = _upper_bound_positions(self._sorted_values, x)
        dims = np.arange(self.get_d())

        return float(np.sum(A[dims, positions] + fx * B[dims, positions]))

    def hik_prepare_lookup_table(self, A: np.ndarray, B: np.ndarray, q: Quantization) -> np.ndarray:
        """Flat table T[d * bins + b] holding the kernel sum contribution of prototype b in dimension d"""

        prototypes = q.prototypes()
        transformed = self._transform_prototypes(prototypes)
        T = np.empty((self.get_d(), q.size()))

        for dim in range(self.get_d()):
            positions = np.searchsorted(self._sorted_values[dim], prototypes, side='right')
            T[dim] = A[dim, positions] + transformed[:, dim] * B[dim, positions]

        return T.ravel()

    def hik_kernel_sum_fast(self, T: np.ndarray, q: Quantization, x) -> float:
        """Kernel sum from a quantized lookup table"""

        bins = q.quantize(self._query(x))
        table = T.reshape(self.get_d(), q.size())
        return float(table[np.arange(self.get_d()), bins].sum())

    # ==================== Kernel vector norm approximation ====================

    def hik_prepare_kvn_approximation(self) -> np.ndarray:
        """AVar[d, k] = sum_{j < k} f(x_j)^2 in sorted order, shape (d, n + 1)"""

        AVar = np.zeros((self.get_d(), self.get_n() + 1))
        AVar[:, 1:] = np.cumsum(self._sorted_transformed ** 2, axis=1)
        return AVar

    def hik_compute_kvn_approximation(self, AVar: np.ndarray, x) -> float:
        """Approximation of ||k*||^2 as sum_d sum_i min(f(x_id), f(x*_d))^2"""

        x = self._query(x)
        fx = self._transform_query(x)
        positions = _upper_bound_positions(self._sorted_values, x)
        dims = np.arange(self.get_d())

        return float(np.sum(AVar[dims, positions] + (self.get_n() - positions) * fx ** 2))

    def hik_prepare_lookup_table_for_kvn_approximation(self, AVar: np.ndarray,
                                                        q: Quantization) -> np.ndarray:
        prototypes = q.prototypes()
        transformed = self._transform_prototypes(prototypes)
        T = np.empty((self.get_d(), q.size()))

        for dim in range(self.get_d()):
            positions = np.searchsorted(self._sorted_values[dim], prototypes, side='right')
            T[dim] = AVar[dim, positions] + (self.get_n() - positions) * transformed[:, dim] ** 2

        return T.ravel()

    def hik_compute_kvn_approximation_fast(self, T: np.ndarray, q: Quantization, x) -> float:
        return self.hik_kernel_sum_fast(T, q, x)

    # ==================== Incremental learning ====================

    def check_new_examples(self, X_new) -> np.ndarray:
        """Validated dense copy of examples that are about to be added"""

        X_new = validate_features(X_new)
        if X_new.shape[1] != self.get_d():
            raise DimensionMismatchError(
                f"New examples have {X_new.shape[1]} dimensions, expected {self.get_d()}",
                operation='add_examples')
        return X_new

    def add_multiple_examples(self, X_new) -> None:
        X_new = self.check_new_examples(X_new)

        self._X = np.vstack([self._X, X_new])
        self._sort_features()

        logger.debug(f"Added {len(X_new)} examples, now {self.get_n()} in total")

    # ==================== Persistence ====================

    def store(self, writer) -> None:
        writer.start('FastMinKernel')
        writer.write_matrix('features', self._X)
        writer.end('FastMinKernel')

    @classmethod
    def restore(cls, reader) -> 'FastMinKernel':
        reader.expect_start('FastMinKernel')
        X = None
        for name in reader.blocks('FastMinKernel'):
            if name == 'features':
                X = reader.field_matrix(name)
            else:
                raise CorruptStateError(f"Unexpected FastMinKernel field {name}",
                                        operation='restore', field=name)
        if X is None:
            raise CorruptStateError("FastMinKernel block without features",
                                    operation='restore', field='features')
        return cls(X)

    def get_memory_usage(self) -> float:
        """Memory of the sorted structures in MB"""
        arrays = (self._X, self._order, self._inverse, self._sorted_values,
                  self._transformed, self._sorted_transformed)
        return sum(a.nbytes for a in arrays) / (1024 * 1024)
