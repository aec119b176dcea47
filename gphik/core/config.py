# File: gphik/core/config.py
"""
Configuration of the GPHIK hyperparameter optimizer

Option names follow the configuration sections of the classifier so that an
existing ``{'GPHIKClassifier': {...}}`` dictionary can be handed over as is.
"""

import logging
from dataclasses import dataclass, fields, asdict
from enum import Enum
from typing import Dict, Optional

from .exceptions import ConfigurationError, CorruptStateError

logger = logging.getLogger(__name__)

TRANSFORMS = ('absexp', 'exp', 'weightedDim')


class OptimizationMethod(Enum):
    """Search strategy over the kernel-transform parameters"""
    GRID = 'greedy'
    SIMPLEX = 'downhillsimplex'
    FIXED = 'none'

    @classmethod
    def from_string(cls, name: str) -> 'OptimizationMethod':
        aliases = {
            'greedy': cls.GRID,
            'grid': cls.GRID,
            'downhillsimplex': cls.SIMPLEX,
            'simplex': cls.SIMPLEX,
            'none': cls.FIXED,
            'fixed': cls.FIXED,
        }
        try:
            return aliases[name.lower()]
        except KeyError:
            raise ConfigurationError(f"Optimization method {name} is not known",
                                     field='optimization_method') from None


@dataclass
class OptimizerConfig:

    # classification
    perform_regression: bool = False
    use_quantization: bool = False
    num_bins: int = 100
    quantization_lower_bound: float = 0.0
    quantization_upper_bound: float = 1.0

    # feature transform
    transform: str = 'absexp'
    parameter_lower_bound: float = 1.0
    parameter_upper_bound: float = 2.5
    pf_dim: int = 8
    noise: float = 0.01

    # iterative linear solver
    ils_method: str = 'CG'
    ils_max_iterations: int = 1000
    ils_min_delta: float = 1e-7
    ils_min_residual: float = 1e-7

    # optimization
    optimization_method: str = 'greedy'
    parameter_step_size: float = 0.1
    optimize_noise: bool = False
    downhill_simplex_max_iterations: int = 20
    downhill_simplex_time_limit: float = 86400.0
    downhill_simplex_param_tol: float = 0.01

    # likelihood / eigenspectrum
    verify_approximation: bool = False
    nr_of_eigenvalues_to_consider: int = 1

    # variance prediction
    nr_of_eigenvalues_to_consider_for_var_approx: int = 1

    # incremental learning
    use_previous_alphas: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Check enumerations and value ranges"""

        if self.transform not in TRANSFORMS:
            raise ConfigurationError(f"Transformation type is unknown {self.transform}",
                                     field='transform')

        # raises for unknown names
        OptimizationMethod.from_string(self.optimization_method)

        if self.parameter_lower_bound > self.parameter_upper_bound:
            raise ConfigurationError("parameter_lower_bound exceeds parameter_upper_bound",
                                     field='parameter_lower_bound')

        if self.parameter_step_size <= 0:
            raise ConfigurationError("parameter_step_size must be positive",
                                     field='parameter_step_size')

        if self.use_quantization and self.num_bins < 2:
            raise ConfigurationError("Quantization needs at least two bins", field='num_bins')

        if self.nr_of_eigenvalues_to_consider < 1:
            raise ConfigurationError("At least one eigenvalue is required",
                                     field='nr_of_eigenvalues_to_consider')

        if self.nr_of_eigenvalues_to_consider_for_var_approx < 0:
            raise ConfigurationError("Number of eigenvalues for variance must not be negative",
                                     field='nr_of_eigenvalues_to_consider_for_var_approx')

        if self.noise < 0:
            raise ConfigurationError("Noise must not be negative", field='noise')

    @property
    def method(self) -> OptimizationMethod:
        return OptimizationMethod.from_string(self.optimization_method)

    @classmethod
    def from_dict(cls, config: Dict, section: Optional[str] = None) -> 'OptimizerConfig':
        """Build a config from a (possibly sectioned) dictionary"""

        if section is not None:
            config = config.get(section, {})

        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in config.items():
            if key in known:
                values[key] = value
            else:
                logger.debug(f"Ignoring unknown configuration option '{key}'")

        return cls(**values)

    def to_dict(self) -> Dict:
        return asdict(self)

    def store(self, writer) -> None:
        writer.start('config')
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool):
                writer.write_bool(f.name, value)
            elif isinstance(value, int):
                writer.write_int(f.name, value)
            elif isinstance(value, float):
                writer.write_float(f.name, value)
            else:
                writer.write_str(f.name, value)
        writer.end('config')

    @classmethod
    def restore(cls, reader) -> 'OptimizerConfig':
        """Read a ``<config>`` block; the start tag must already be consumed"""

        field_types = {f.name: f.type for f in fields(cls)}
        values = {}

        for name in reader.blocks('config'):
            field_type = field_types.get(name)
            if field_type is None:
                raise CorruptStateError(f"Unexpected config field {name}",
                                        operation='restore', field=name)
            if field_type is bool:
                values[name] = reader.field_bool(name)
            elif field_type is int:
                values[name] = reader.field_int(name)
            elif field_type is float:
                values[name] = reader.field_float(name)
            else:
                values[name] = reader.field_str(name)

        return cls(**values)
