# File: gphik/core/kernel_models.py
"""
Implicit kernel matrix models

The kernel matrix used for training is never materialized. It is the sum of
a diagonal noise term and the histogram intersection kernel term, each
exposing its parameters, diagonal and matrix-vector product. ``KernelSum``
composes them in a fixed order.
"""

import logging
from abc import ABC, abstractmethod
from typing import List

import numpy as np
from scipy.sparse.linalg import LinearOperator

from .exceptions import CorruptStateError, DimensionMismatchError
from .fast_min_kernel import FastMinKernel
from .parameterized_functions import ParameterizedFunction
from ..utils.math_utils import as_linear_operator

logger = logging.getLogger(__name__)


class KernelModel(ABC):
    """Capability interface shared by all kernel matrix terms"""

    @abstractmethod
    def rows(self) -> int:
        pass

    @abstractmethod
    def num_parameters(self) -> int:
        pass

    @abstractmethod
    def get_parameters(self) -> np.ndarray:
        pass

    @abstractmethod
    def set_parameters(self, parameters: np.ndarray) -> None:
        pass

    @abstractmethod
    def parameter_lower_bounds(self) -> np.ndarray:
        pass

    @abstractmethod
    def parameter_upper_bounds(self) -> np.ndarray:
        pass

    def out_of_bounds(self, parameters: np.ndarray) -> bool:
        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        return bool(np.any(parameters < self.parameter_lower_bounds()) or
                    np.any(parameters > self.parameter_upper_bounds()))

    @abstractmethod
    def multiply(self, v: np.ndarray) -> np.ndarray:
        pass

    @abstractmethod
    def diagonal(self) -> np.ndarray:
        pass

    @abstractmethod
    def dense_matrix(self) -> np.ndarray:
        pass

    @abstractmethod
    def add_examples(self, X_new: np.ndarray) -> None:
        pass

    def check_new_examples(self, X_new) -> np.ndarray:
        """Validate examples before any term grows"""
        return X_new

    def trace(self) -> float:
        return float(self.diagonal().sum())


class NoiseTerm(KernelModel):
    """sigma^2 * I, the noise weight is only a parameter if it is optimized"""

    def __init__(self, size: int, noise: float = 0.01, optimize_noise: bool = False):
        self.size = int(size)
        self.noise = float(noise)
        self.optimize_noise = optimize_noise

    def rows(self) -> int:
        return self.size

    def num_parameters(self) -> int:
        return 1 if self.optimize_noise else 0

    def get_parameters(self) -> np.ndarray:
        if self.optimize_noise:
            return np.array([self.noise])
        return np.empty(0)

    def set_parameters(self, parameters: np.ndarray) -> None:
        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        if len(parameters) != self.num_parameters():
            raise DimensionMismatchError(
                f"Noise term expects {self.num_parameters()} parameters, got {len(parameters)}",
                operation='set_parameters')
        if self.optimize_noise:
            self.noise = float(parameters[0])

    def parameter_lower_bounds(self) -> np.ndarray:
        return np.zeros(self.num_parameters())

    def parameter_upper_bounds(self) -> np.ndarray:
        return np.full(self.num_parameters(), np.inf)

    def multiply(self, v: np.ndarray) -> np.ndarray:
        return self.noise * np.asarray(v, dtype=np.float64)

    def diagonal(self) -> np.ndarray:
        return np.full(self.size, self.noise)

    def dense_matrix(self) -> np.ndarray:
        return self.noise * np.eye(self.size)

    def add_examples(self, X_new: np.ndarray) -> None:
        self.size += np.atleast_2d(X_new).shape[0]

    def store(self, writer) -> None:
        writer.start('NoiseTerm')
        writer.write_int('size', self.size)
        writer.write_float('noise', self.noise)
        writer.write_bool('optimizeNoise', self.optimize_noise)
        writer.end('NoiseTerm')

    @classmethod
    def restore(cls, reader) -> 'NoiseTerm':
        reader.expect_start('NoiseTerm')
        values = {}
        for name in reader.blocks('NoiseTerm'):
            if name == 'size':
                values['size'] = reader.field_int(name)
            elif name == 'noise':
                values['noise'] = reader.field_float(name)
            elif name == 'optimizeNoise':
                values['optimize_noise'] = reader.field_bool(name)
            else:
                raise CorruptStateError(f"Unexpected NoiseTerm field {name}",
                                        operation='restore', field=name)
        if 'size' not in values:
            raise CorruptStateError("NoiseTerm block without size", operation='restore', field='size')
        return cls(**values)


class FeatureKernelTerm(KernelModel):
    """Histogram intersection kernel on transformed features"""

    def __init__(self, fmk: FastMinKernel, pf: ParameterizedFunction):
        self.fmk = fmk
        self.pf = pf
        self.fmk.apply_transform(pf)

    def rows(self) -> int:
        return self.fmk.get_n()

    def num_parameters(self) -> int:
        return self.pf.num_parameters()

    def get_parameters(self) -> np.ndarray:
        return self.pf.get_parameters()

    def set_parameters(self, parameters: np.ndarray) -> None:
        self.pf.set_parameters(parameters)
        self.fmk.apply_transform(self.pf)

    def parameter_lower_bounds(self) -> np.ndarray:
        return self.pf.lower_bounds.copy()

    def parameter_upper_bounds(self) -> np.ndarray:
        return self.pf.upper_bounds.copy()

    def multiply(self, v: np.ndarray) -> np.ndarray:
        return self.fmk.hik_multiply(v)

    def diagonal(self) -> np.ndarray:
        return self.fmk.hik_diagonal()

    def dense_matrix(self) -> np.ndarray:
        return self.fmk.hik_kernel_matrix()

    def check_new_examples(self, X_new) -> np.ndarray:
        return self.fmk.check_new_examples(X_new)

    def add_examples(self, X_new: np.ndarray) -> None:
        self.fmk.add_multiple_examples(X_new)


class KernelSum(KernelModel):
    """
    Ordered sum of kernel terms.

    The parameter vector is the concatenation of the terms' parameters in
    model order; products and diagonals are summed.
    """

    def __init__(self, models: List[KernelModel] = None):
        self.models: List[KernelModel] = list(models) if models else []

    def add_model(self, model: KernelModel) -> None:
        if self.models and model.rows() != self.rows():
            raise DimensionMismatchError(
                f"Kernel term has {model.rows()} rows, expected {self.rows()}",
                operation='add_model')
        self.models.append(model)

    def rows(self) -> int:
        return self.models[0].rows() if self.models else 0

    def num_parameters(self) -> int:
        return sum(m.num_parameters() for m in self.models)

    def get_parameters(self) -> np.ndarray:
        if not self.models:
            return np.empty(0)
        return np.concatenate([m.get_parameters() for m in self.models])

    def set_parameters(self, parameters: np.ndarray) -> None:
        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        if len(parameters) != self.num_parameters():
            raise DimensionMismatchError(
                f"Kernel sum expects {self.num_parameters()} parameters, got {len(parameters)}",
                operation='set_parameters')

        offset = 0
        for model in self.models:
            count = model.num_parameters()
            model.set_parameters(parameters[offset:offset + count])
            offset += count

    def parameter_lower_bounds(self) -> np.ndarray:
        if not self.models:
            return np.empty(0)
        return np.concatenate([m.parameter_lower_bounds() for m in self.models])

    def parameter_upper_bounds(self) -> np.ndarray:
        if not self.models:
            return np.empty(0)
        return np.concatenate([m.parameter_upper_bounds() for m in self.models])

    def multiply(self, v: np.ndarray) -> np.ndarray:
        v = np.asarray(v, dtype=np.float64).ravel()
        result = np.zeros(self.rows())
        for model in self.models:
            result += model.multiply(v)
        return result

    def diagonal(self) -> np.ndarray:
        result = np.zeros(self.rows())
        for model in self.models:
            result += model.diagonal()
        return result

    def dense_matrix(self) -> np.ndarray:
        result = np.zeros((self.rows(), self.rows()))
        for model in self.models:
            result += model.dense_matrix()
        return result

    def check_new_examples(self, X_new) -> np.ndarray:
        for model in self.models:
            X_new = model.check_new_examples(X_new)
        return X_new

    def add_examples(self, X_new: np.ndarray) -> None:
        # a rejected batch leaves every term untouched
        X_new = self.check_new_examples(X_new)
        for model in self.models:
            model.add_examples(X_new)

    def as_linear_operator(self) -> LinearOperator:
        return as_linear_operator(self)

    def feature_term(self) -> FeatureKernelTerm:
        for model in self.models:
            if isinstance(model, FeatureKernelTerm):
                return model
        raise DimensionMismatchError("Kernel sum holds no feature kernel term",
                                     operation='feature_term')

    def noise_term(self) -> NoiseTerm:
        for model in self.models:
            if isinstance(model, NoiseTerm):
                return model
        raise DimensionMismatchError("Kernel sum holds no noise term", operation='noise_term')
