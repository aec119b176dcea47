# File: gphik/core/quantization.py
"""Quantization of feature values into a fixed number of equally spaced bins"""

import numpy as np

from .exceptions import ConfigurationError, CorruptStateError


class Quantization:

    def __init__(self, num_bins: int = 100, lower_bound: float = 0.0, upper_bound: float = 1.0):
        if num_bins < 2:
            raise ConfigurationError("Quantization needs at least two bins", field='num_bins')
        if upper_bound <= lower_bound:
            raise ConfigurationError("Quantization range is empty",
                                     field='quantization_upper_bound')

        self.num_bins = int(num_bins)
        self.lower_bound = float(lower_bound)
        self.upper_bound = float(upper_bound)

    def size(self) -> int:
        return self.num_bins

    def prototypes(self) -> np.ndarray:
        """Representative value of every bin"""
        return np.linspace(self.lower_bound, self.upper_bound, self.num_bins)

    def quantize(self, values) -> np.ndarray:
        """Bin index of every value; values outside the range go to the border bins"""
        values = np.asarray(values, dtype=np.float64)
        relative = (values - self.lower_bound) / (self.upper_bound - self.lower_bound)
        bins = np.rint(relative * (self.num_bins - 1))
        return np.clip(bins, 0, self.num_bins - 1).astype(np.int64)

    def store(self, writer) -> None:
        writer.start('Quantization')
        writer.write_int('numBins', self.num_bins)
        writer.write_float('lowerBound', self.lower_bound)
        writer.write_float('upperBound', self.upper_bound)
        writer.end('Quantization')

    @classmethod
    def restore(cls, reader) -> 'Quantization':
        reader.expect_start('Quantization')
        values = {}
        for name in reader.blocks('Quantization'):
            if name == 'numBins':
                values['num_bins'] = reader.field_int(name)
            elif name == 'lowerBound':
                values['lower_bound'] = reader.field_float(name)
            elif name == 'upperBound':
                values['upper_bound'] = reader.field_float(name)
            else:
                raise CorruptStateError(f"Unexpected Quantization field {name}",
                                        operation='restore', field=name)
        return cls(**values)

    def __repr__(self) -> str:
        return f"Quantization(num_bins={self.num_bins}, range=[{self.lower_bound}, {self.upper_bound}])"
