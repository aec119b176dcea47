# File: gphik/core/precomputation.py
"""
Prediction-time summaries

After a solve every class alpha vector is condensed into the tables (A, B)
of the sorted-feature kernel, optionally followed by a quantized lookup
table. The same module holds the variance cache used by the rough and fine
variance approximations.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

from .exceptions import CorruptStateError
from .fast_min_kernel import FastMinKernel
from .quantization import Quantization
from ..utils.persistence import NOT_NULL_MARKER, NULL_MARKER, SIZE_MARKER

logger = logging.getLogger(__name__)

ROUGH = 'rough'
FINE = 'fine'


@dataclass
class PrecomputedPair:
    """Prefix sums A and suffix sums B of one alpha vector, shape (d, n + 1) each"""
    A: np.ndarray
    B: np.ndarray


class ClassSummaryStore:
    """Per class (A, B) pairs and optional lookup tables, keyed by class id"""

    def __init__(self):
        self.pairs: Dict[int, PrecomputedPair] = {}
        self.luts: Dict[int, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self.pairs)

    def __contains__(self, class_id: int) -> bool:
        return class_id in self.pairs

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self.pairs))

    def set(self, class_id: int, pair: PrecomputedPair, lut: Optional[np.ndarray] = None) -> None:
        # drop the previous tables of the class before the new ones are kept
        self.pairs.pop(class_id, None)
        self.luts.pop(class_id, None)

        self.pairs[class_id] = pair
        if lut is not None:
            self.luts[class_id] = lut

    def pair(self, class_id: int) -> PrecomputedPair:
        return self.pairs[class_id]

    def lut(self, class_id: int) -> Optional[np.ndarray]:
        return self.luts.get(class_id)

    def clear(self) -> None:
        self.pairs.clear()
        self.luts.clear()

    def store(self, writer) -> None:
        writer.start('ClassSummaries')
        writer.token(f"{SIZE_MARKER} {len(self.pairs)}")
        for class_id in self:
            pair = self.pairs[class_id]
            writer.start('summary')
            writer.write_int('classId', class_id)
            writer.write_matrix('A', pair.A)
            writer.write_matrix('B', pair.B)
            writer.start('lut')
            lut = self.luts.get(class_id)
            if lut is None:
                writer.token(NULL_MARKER)
            else:
                writer.token(NOT_NULL_MARKER)
                writer.vector(lut)
            writer.end('lut')
            writer.end('summary')
        writer.end('ClassSummaries')

    def restore(self, reader) -> None:
        """Read the body of a ``<ClassSummaries>`` block; the start tag is already consumed"""

        self.clear()
        size = reader.read_size()
        for _ in range(size):
            reader.expect_start('summary')
            class_id, A, B, lut = None, None, None, None
            for name in reader.blocks('summary'):
                if name == 'classId':
                    class_id = reader.field_int(name)
                elif name == 'A':
                    A = reader.field_matrix(name)
                elif name == 'B':
                    B = reader.field_matrix(name)
                elif name == 'lut':
                    lut = reader.vector() if reader.read_is_not_null() else None
                    reader.expect_end(name)
                else:
                    raise CorruptStateError(f"Unexpected summary field {name}",
                                            operation='restore', field=name)
            if class_id is None or A is None or B is None:
                raise CorruptStateError("Incomplete class summary", operation='restore',
                                        field='summary')
            self.set(class_id, PrecomputedPair(A, B), lut)
        reader.expect_end('ClassSummaries')


@dataclass
class VarianceCache:
    """State of the variance approximation: rough (AVar and optional LUT) or fine"""
    mode: Optional[str] = None
    AVar: Optional[np.ndarray] = None
    lut: Optional[np.ndarray] = None

    @property
    def is_prepared(self) -> bool:
        return self.mode is not None

    def clear(self) -> None:
        self.mode = None
        self.AVar = None
        self.lut = None

    def store(self, writer) -> None:
        writer.start('VarianceCache')
        writer.write_str('mode', self.mode or 'none')
        writer.start('AVar')
        if self.AVar is None:
            writer.token(NULL_MARKER)
        else:
            writer.token(NOT_NULL_MARKER)
            writer.matrix(self.AVar)
        writer.end('AVar')
        writer.start('lut')
        if self.lut is None:
            writer.token(NULL_MARKER)
        else:
            writer.token(NOT_NULL_MARKER)
            writer.vector(self.lut)
        writer.end('lut')
        writer.end('VarianceCache')

    def restore(self, reader) -> None:
        self.clear()
        for name in reader.blocks('VarianceCache'):
            if name == 'mode':
                mode = reader.field_str(name)
                self.mode = None if mode == 'none' else mode
            elif name == 'AVar':
                self.AVar = reader.matrix() if reader.read_is_not_null() else None
                reader.expect_end(name)
            elif name == 'lut':
                self.lut = reader.vector() if reader.read_is_not_null() else None
                reader.expect_end(name)
            else:
                raise CorruptStateError(f"Unexpected VarianceCache field {name}",
                                        operation='restore', field=name)
        if self.mode not in (None, ROUGH, FINE):
            raise CorruptStateError(f"Unknown variance mode {self.mode}", operation='restore',
                                    field='mode')


class PrecomputationEngine:
    """Builds class summaries and the variance cache from the best alphas"""

    def __init__(self, summaries: ClassSummaryStore, variance_cache: VarianceCache):
        self.summaries = summaries
        self.variance_cache = variance_cache
        self.previous_alphas: Dict[int, np.ndarray] = {}

    def prepare_class(self, fmk: FastMinKernel, class_id: int, alpha: np.ndarray,
                      quantization: Optional[Quantization]) -> None:
        A, B = fmk.hik_prepare_alpha_multiplications(alpha)
        lut = None
        if quantization is not None:
            lut = fmk.hik_prepare_lookup_table(A, B, quantization)
        self.summaries.set(class_id, PrecomputedPair(A, B), lut)

    def prepare_variance_rough(self, fmk: FastMinKernel, quantization: Optional[Quantization]) -> None:
        AVar = fmk.hik_prepare_kvn_approximation()
        lut = None
        if quantization is not None:
            lut = fmk.hik_prepare_lookup_table_for_kvn_approximation(AVar, quantization)

        self.variance_cache.mode = ROUGH
        self.variance_cache.AVar = AVar
        self.variance_cache.lut = lut

    def prepare_variance_fine(self) -> None:
        # the fine approximation reads the eigenspectrum directly
        self.variance_cache.mode = FINE
        self.variance_cache.AVar = None
        self.variance_cache.lut = None

    def compute(self, fmk: FastMinKernel, best_alphas: Dict[int, np.ndarray],
                quantization: Optional[Quantization], nr_of_eigenvalues_for_var: int,
                use_previous_alphas: bool = True, ensure_spectrum=None) -> Tuple[ClassSummaryStore, VarianceCache]:
        """
        Rebuild every class summary and refresh the variance cache.

        ``ensure_spectrum(k)`` is called before the fine variance mode is
        prepared, so enough eigenpairs are cached.
        """

        stale = set(self.summaries.pairs) - set(best_alphas)
        for class_id in stale:
            self.summaries.pairs.pop(class_id)
            self.summaries.luts.pop(class_id, None)

        for class_id, alpha in best_alphas.items():
            self.prepare_class(fmk, class_id, alpha, quantization)

        if self.variance_cache.mode == ROUGH:
            self.prepare_variance_rough(fmk, quantization)
        elif self.variance_cache.mode == FINE or nr_of_eigenvalues_for_var > 0:
            if ensure_spectrum is not None:
                ensure_spectrum(nr_of_eigenvalues_for_var)
            self.prepare_variance_fine()

        # warm start basis for the next incremental update
        if use_previous_alphas:
            self.previous_alphas = {c: a.copy() for c, a in best_alphas.items()}

        logger.debug(f"Prepared summaries for {len(self.summaries)} classes, "
                     f"variance mode {self.variance_cache.mode}")

        return self.summaries, self.variance_cache
