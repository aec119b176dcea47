# File: gphik/core/eigenspectrum.py
"""Cache of the dominant eigenpairs of the training kernel matrix"""

import logging
from typing import Optional

import numpy as np

from .exceptions import CorruptStateError, NotTrainedError, SolverFailure
from ..utils.math_utils import LanczosEigenSolver

logger = logging.getLogger(__name__)


class EigenSpectrumCache:
    """
    Top-k eigenvalues (descending) and eigenvectors of the kernel sum.

    The spectrum is always recomputed from scratch. ``parameters`` and
    ``size`` record the kernel state it belongs to, so callers can tell
    when it is stale.
    """

    def __init__(self, eigen_solver: Optional[LanczosEigenSolver] = None):
        self.eigen_solver = eigen_solver or LanczosEigenSolver()
        self.values: np.ndarray = np.empty(0)
        self.vectors: np.ndarray = np.empty((0, 0))
        self.parameters: Optional[np.ndarray] = None
        self.size = 0

    @property
    def is_empty(self) -> bool:
        return len(self.values) == 0

    def update(self, kernel_sum, k: int) -> None:
        """Recompute the top ``k`` eigenpairs of ``kernel_sum``"""

        try:
            values, vectors = self.eigen_solver.top_eigenpairs(kernel_sum, k)
        except SolverFailure:
            logger.error(f"Eigenspectrum update failed for {kernel_sum.rows()} examples")
            raise

        self.values = values
        self.vectors = vectors
        self.parameters = kernel_sum.get_parameters()
        self.size = kernel_sum.rows()

        logger.debug(f"Resulting eigenvalues: {self.values.tolist()}")

    def is_stale(self, kernel_sum) -> bool:
        if self.is_empty or self.parameters is None:
            return True
        return (self.size != kernel_sum.rows() or
                not np.array_equal(self.parameters, kernel_sum.get_parameters()))

    def max_eigenvalue(self) -> float:
        if self.is_empty:
            raise NotTrainedError("Eigenspectrum has not been computed", operation='eigen_max')
        return float(self.values[0])

    def __len__(self) -> int:
        return len(self.values)

    def store(self, writer) -> None:
        writer.start('EigenSpectrum')
        writer.write_vector('eigenMax', self.values)
        writer.write_matrix('eigenMaxVectors', self.vectors)
        writer.end('EigenSpectrum')

    def restore(self, reader) -> None:
        """Read the body of an ``<EigenSpectrum>`` block; the start tag is already consumed"""

        for name in reader.blocks('EigenSpectrum'):
            if name == 'eigenMax':
                self.values = reader.field_vector(name)
            elif name == 'eigenMaxVectors':
                self.vectors = reader.field_matrix(name)
            else:
                raise CorruptStateError(f"Unexpected EigenSpectrum field {name}",
                                        operation='restore', field=name)

        self.size = self.vectors.shape[0] if len(self.values) > 0 else 0
