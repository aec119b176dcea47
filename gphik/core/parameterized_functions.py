# File: gphik/core/parameterized_functions.py
"""
Parameterized feature transforms

The histogram intersection kernel is evaluated on transformed features
``f(d, x)``. Every transform here is non-decreasing in ``x`` for admissible
parameters and maps zero to zero, so sorted feature orders and sparse
queries stay valid after the transform is applied.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Type

import numpy as np

from .exceptions import ConfigurationError, CorruptStateError, DimensionMismatchError

logger = logging.getLogger(__name__)


class ParameterizedFunction(ABC):
    """Transform f(index, value) with a bounded parameter vector"""

    name = 'ParameterizedFunction'

    def __init__(self, parameters: np.ndarray, lower_bound: float, upper_bound: float):
        self.parameters = np.asarray(parameters, dtype=np.float64).ravel().copy()
        self.lower_bounds = np.full(len(self.parameters), float(lower_bound))
        self.upper_bounds = np.full(len(self.parameters), float(upper_bound))

    def num_parameters(self) -> int:
        return len(self.parameters)

    def set_parameters(self, parameters: np.ndarray) -> None:
        parameters = np.asarray(parameters, dtype=np.float64).ravel()
        if len(parameters) != len(self.parameters):
            raise DimensionMismatchError(
                f"{self.name} expects {len(self.parameters)} parameters, got {len(parameters)}",
                operation='set_parameters')
        self.parameters = parameters.copy()

    def get_parameters(self) -> np.ndarray:
        return self.parameters.copy()

    def set_parameter_lower_bounds(self, bounds) -> None:
        self.lower_bounds = np.broadcast_to(np.asarray(bounds, dtype=np.float64),
                                            self.parameters.shape).copy()

    def set_parameter_upper_bounds(self, bounds) -> None:
        self.upper_bounds = np.broadcast_to(np.asarray(bounds, dtype=np.float64),
                                            self.parameters.shape).copy()

    def f(self, index: int, value: float) -> float:
        """Transformed value of a single feature entry"""
        return float(self.apply(np.array([[value]]), dimensions=np.array([index]))[0, 0])

    @abstractmethod
    def apply(self, X: np.ndarray, dimensions: np.ndarray = None) -> np.ndarray:
        """
        Transform a feature matrix elementwise.

        ``dimensions`` gives the feature index of each column (defaults to
        ``0..d-1``).
        """

    def apply_vector(self, x: np.ndarray) -> np.ndarray:
        return self.apply(np.asarray(x, dtype=np.float64)[None, :])[0]

    def store(self, writer) -> None:
        writer.start(self.name)
        writer.write_vector('parameters', self.parameters)
        writer.write_vector('lowerBounds', self.lower_bounds)
        writer.write_vector('upperBounds', self.upper_bounds)
        writer.end(self.name)

    def restore(self, reader) -> None:
        """Read the body of this transform's block; the start tag is already consumed"""
        for name in reader.blocks(self.name):
            if name == 'parameters':
                self.parameters = reader.field_vector(name)
            elif name == 'lowerBounds':
                self.lower_bounds = reader.field_vector(name)
            elif name == 'upperBounds':
                self.upper_bounds = reader.field_vector(name)
            else:
                raise CorruptStateError(f"Unexpected {self.name} field {name}",
                                        operation='restore', field=name)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parameters={self.parameters.tolist()})"


class AbsExpFunction(ParameterizedFunction):
    """f(x) = |x|^p"""

    name = 'PFAbsExp'

    def __init__(self, value: float = 1.0, lower_bound: float = -np.inf,
                 upper_bound: float = np.inf):
        super().__init__(np.array([value]), lower_bound, upper_bound)

    def apply(self, X: np.ndarray, dimensions: np.ndarray = None) -> np.ndarray:
        return np.power(np.abs(X), self.parameters[0])


class ExpFunction(ParameterizedFunction):
    """f(x) = exp(p |x|) - 1"""

    name = 'PFExp'

    def __init__(self, value: float = 1.0, lower_bound: float = -np.inf,
                 upper_bound: float = np.inf):
        super().__init__(np.array([value]), lower_bound, upper_bound)

    def apply(self, X: np.ndarray, dimensions: np.ndarray = None) -> np.ndarray:
        return np.expm1(self.parameters[0] * np.abs(X))


class WeightedDimFunction(ParameterizedFunction):
    """f(d, x) = w_d * x, one weight per feature dimension"""

    name = 'PFWeightedDim'

    def __init__(self, dimension: int = 1, lower_bound: float = -np.inf,
                 upper_bound: float = np.inf):
        super().__init__(np.ones(dimension), lower_bound, upper_bound)

    def apply(self, X: np.ndarray, dimensions: np.ndarray = None) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if dimensions is None:
            if X.shape[-1] != len(self.parameters):
                raise DimensionMismatchError(
                    f"{self.name} has {len(self.parameters)} weights for "
                    f"{X.shape[-1]} feature dimensions", operation='transform')
            return X * self.parameters
        return X * self.parameters[np.asarray(dimensions)]


_TRANSFORMS: Dict[str, Type[ParameterizedFunction]] = {
    AbsExpFunction.name: AbsExpFunction,
    ExpFunction.name: ExpFunction,
    WeightedDimFunction.name: WeightedDimFunction,
}


def create_parameterized_function(transform: str, lower_bound: float, upper_bound: float,
                                  pf_dim: int = 8) -> ParameterizedFunction:
    """Build the transform named in the configuration"""

    if transform == 'absexp':
        return AbsExpFunction(1.0, lower_bound, upper_bound)
    if transform == 'exp':
        return ExpFunction(1.0, lower_bound, upper_bound)
    if transform == 'weightedDim':
        return WeightedDimFunction(pf_dim, lower_bound, upper_bound)

    raise ConfigurationError(f"Transformation type is unknown {transform}", field='transform')


def restore_parameterized_function(reader) -> ParameterizedFunction:
    """Restore a transform from its ``<PF...>`` block"""

    token = reader.next_token()
    name = token[1:-1] if token.startswith('<') and token.endswith('>') else token
    pf_class = _TRANSFORMS.get(name)
    if pf_class is None:
        raise CorruptStateError(f"Transformation type is unknown {name}",
                                operation='restore', field='pf')

    pf = pf_class()
    pf.restore(reader)
    return pf
