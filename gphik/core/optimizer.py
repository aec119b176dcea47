# File: gphik/core/optimizer.py
"""
GPHIK Hyperparameter Optimization and Incremental Learning

The optimizer owns the complete trained state of a GP classifier (or
regressor) with histogram intersection kernel:
1. Label decomposition into binary sub-problems
2. Kernel sum model (noise term + HIK term)
3. Eigenspectrum of the kernel matrix
4. Hyperparameter search driven by the approximate likelihood
5. Precomputed summaries for fast classification and variance queries

Examples can be added after training; previous alphas serve as warm start
for the next solve.
"""

import logging
import time
from typing import Dict, IO, Optional, Set, Tuple

import numpy as np
from scipy import sparse

from .config import OptimizerConfig
from .eigenspectrum import EigenSpectrumCache
from .exceptions import CorruptStateError, DimensionMismatchError, NotTrainedError
from .fast_min_kernel import FastMinKernel
from .hyperparameter_search import HyperparameterSearch, SearchResult
from .kernel_models import FeatureKernelTerm, KernelSum, NoiseTerm
from .labels import REGRESSION_LABEL, class_ids, prepare_binary_labels, prepare_regression_labels
from .likelihood import GPLikelihoodApprox
from .parameterized_functions import create_parameterized_function, restore_parameterized_function
from .precomputation import ClassSummaryStore, PrecomputationEngine, VarianceCache
from .quantization import Quantization
from .variance import VarianceApproximator
from ..utils.logging_utils import log_timing, memory_usage_mb
from ..utils.math_utils import LanczosEigenSolver, create_linear_solver
from ..utils.persistence import NOT_NULL_MARKER, NULL_MARKER, SIZE_MARKER, TagReader, TagWriter

logger = logging.getLogger(__name__)


class GPHIKOptimizer:
    """
    Trains GP models with histogram intersection kernel and keeps them up to date.

    Holds the training examples (as a FastMinKernel), the kernel sum model,
    its eigenspectrum and the per-class precomputed summaries.
    """

    def __init__(self, config: Optional[OptimizerConfig] = None, fmk=None):

        self.config = config or OptimizerConfig()
        self._initialize_components()

        self.pf = create_parameterized_function(self.config.transform,
                                                self.config.parameter_lower_bound,
                                                self.config.parameter_upper_bound,
                                                self.config.pf_dim)

        # Training state
        self.fmk: Optional[FastMinKernel] = None
        self.kernel_sum: Optional[KernelSum] = None
        self.labels: Optional[np.ndarray] = None
        self.known_classes: Set[int] = set()
        self.positive_label: Optional[int] = None
        self.negative_label: Optional[int] = None
        self.last_search: Optional[SearchResult] = None

        # Caches
        self.spectrum = EigenSpectrumCache(self.eigen_solver)
        self.summaries = ClassSummaryStore()
        self.variance_cache = VarianceCache()
        self.precomputation = PrecomputationEngine(self.summaries, self.variance_cache)

        if fmk is not None:
            self.set_fast_min_kernel(fmk)

    def _initialize_components(self):
        """Solvers and search strategy derived from the configuration"""

        self.quantization: Optional[Quantization] = None
        if self.config.use_quantization:
            self.quantization = Quantization(self.config.num_bins,
                                             self.config.quantization_lower_bound,
                                             self.config.quantization_upper_bound)

        self.linear_solver = create_linear_solver(self.config.ils_method,
                                                  max_iterations=self.config.ils_max_iterations,
                                                  min_delta=self.config.ils_min_delta,
                                                  min_residual=self.config.ils_min_residual)
        self.eigen_solver = LanczosEigenSolver()
        self.search = HyperparameterSearch(self.config)

    @property
    def previous_alphas(self) -> Dict[int, np.ndarray]:
        return self.precomputation.previous_alphas

    def set_fast_min_kernel(self, fmk) -> None:
        """Use ``fmk`` (a FastMinKernel or a feature matrix) as training data"""

        if not isinstance(fmk, FastMinKernel):
            fmk = FastMinKernel(fmk)
        self.fmk = fmk
        self.kernel_sum = None

    def get_known_class_numbers(self) -> Set[int]:
        return set(self.known_classes)

    # ==================== Batch training ====================

    def optimize(self, y) -> None:
        """Train on the labels ``y`` of the examples held by the kernel structure"""

        if self.fmk is None:
            raise NotTrainedError("FastMinKernel object was not initialized", operation='optimize')

        y = np.asarray(y, dtype=np.float64).ravel()
        if len(y) != self.fmk.get_n():
            raise DimensionMismatchError(f"Got {len(y)} labels for {self.fmk.get_n()} examples",
                                         operation='optimize')

        if self.config.perform_regression:
            decomposition = prepare_regression_labels(y)
        else:
            decomposition = prepare_binary_labels(y)

        self.labels = y.copy()
        self.known_classes = set(decomposition.known_classes)
        self.positive_label = decomposition.positive_label
        self.negative_label = decomposition.negative_label

        logger.info(f"Training on {len(y)} examples, {len(self.known_classes)} known classes, "
                    f"{decomposition.num_classes} effective classes")
        logger.debug(f"Examples per class: {decomposition.class_counts}")

        self._train(decomposition.binary_labels)

    def optimize_with_binary_labels(self, binary_labels: Dict[int, np.ndarray]) -> None:
        """
        Train directly on prepared binary label vectors.

        No label vector is kept, so incremental updates are not possible
        afterwards.
        """

        if self.fmk is None:
            raise NotTrainedError("FastMinKernel object was not initialized", operation='optimize')

        self.labels = None
        self.known_classes = set(binary_labels)
        self.positive_label = None
        self.negative_label = None

        self._train({c: np.asarray(y, dtype=np.float64) for c, y in binary_labels.items()})

    def _train(self, binary_labels: Dict[int, np.ndarray]) -> None:
        start_time = time.time()

        with log_timing(logger, "setting up the kernel models"):
            self.kernel_sum = KernelSum()
            self.kernel_sum.add_model(NoiseTerm(self.fmk.get_n(), self.config.noise,
                                                self.config.optimize_noise))
            self.kernel_sum.add_model(FeatureKernelTerm(self.fmk, self.pf))

        evaluator = self._create_evaluator(binary_labels)

        logger.debug(f"Parameter vector size: {self.kernel_sum.num_parameters()}")

        with log_timing(logger, "computing the eigenspectrum"):
            self._update_eigen_decomposition()

        self._optimize_and_precompute(evaluator, keep_current_parameters=False)

        logger.info(f"Time used for learning: {time.time() - start_time:.2f}s")
        logger.info(f"Memory used: {memory_usage_mb():.1f} MB")
        logger.debug(f"Memory of the sorted feature structures: {self.fmk.get_memory_usage():.2f} MB")

    def _create_evaluator(self, binary_labels: Dict[int, np.ndarray]) -> GPLikelihoodApprox:
        return GPLikelihoodApprox(binary_labels, self.kernel_sum, self.linear_solver, self.eigen_solver,
                                  verify_approximation=self.config.verify_approximation,
                                  nr_of_eigenvalues_to_consider=self.config.nr_of_eigenvalues_to_consider)

    def _num_eigenvalues(self) -> int:
        return max(self.config.nr_of_eigenvalues_to_consider,
                   self.config.nr_of_eigenvalues_to_consider_for_var_approx)

    def _update_eigen_decomposition(self, k: Optional[int] = None) -> None:
        self.spectrum.update(self.kernel_sum, k or self._num_eigenvalues())
        logger.debug(f"Resulting eigenvalue for first class: {self.spectrum.values[0]}")

    def _ensure_spectrum(self, k: int) -> None:
        """Recompute the spectrum if it is stale or holds fewer than ``k`` eigenpairs"""

        k = min(max(k, self._num_eigenvalues()), self.kernel_sum.rows())
        if len(self.spectrum) < k or self.spectrum.is_stale(self.kernel_sum):
            logger.debug(f"Recomputing eigenspectrum with {k} eigenpairs")
            self._update_eigen_decomposition(k)

    def _optimize_and_precompute(self, evaluator: GPLikelihoodApprox,
                                 keep_current_parameters: bool) -> None:

        with log_timing(logger, "performing the optimization"):
            self.last_search = self.search.run(evaluator, self.kernel_sum, self.spectrum.values,
                                               keep_current_parameters=keep_current_parameters)

        with log_timing(logger, "transforming features with optimal parameters"):
            self.kernel_sum.set_parameters(evaluator.best_parameters)
            if self.spectrum.is_stale(self.kernel_sum):
                self._update_eigen_decomposition()

        with log_timing(logger, "setting up the A and B objects"):
            self.precomputation.compute(self.fmk, evaluator.best_alphas, self.quantization,
                                        self.config.nr_of_eigenvalues_to_consider_for_var_approx,
                                        use_previous_alphas=self.config.use_previous_alphas,
                                        ensure_spectrum=self._ensure_spectrum)

    # ==================== Incremental learning ====================

    def add_example(self, x, label, reoptimize: bool = True) -> None:
        if sparse.issparse(x):
            X = x
        else:
            X = np.asarray(x, dtype=np.float64).reshape(1, -1)
        self.add_multiple_examples(X, [label], reoptimize=reoptimize)

    def add_multiple_examples(self, X, labels, reoptimize: bool = True) -> None:
        """Add labeled examples and update the model, re-running the search if ``reoptimize``"""

        if self.kernel_sum is None or self.labels is None or len(self.summaries) == 0:
            raise NotTrainedError("Incremental learning requires a model trained on labels",
                                  operation='add_examples')

        start_time = time.time()

        # nothing is modified until the new examples and labels are known to be valid
        X = self.kernel_sum.check_new_examples(X)
        new_labels = np.asarray(labels, dtype=np.float64).ravel()
        if X.shape[0] != len(new_labels):
            raise DimensionMismatchError(f"Got {len(new_labels)} labels for {X.shape[0]} examples",
                                         operation='add_examples')

        new_classes: Set[int] = set()
        known_classes = set(self.known_classes)
        if not self.config.perform_regression:
            for label in class_ids(new_labels):
                if int(label) not in known_classes:
                    known_classes.add(int(label))
                    new_classes.add(int(label))

            previously_known = len(self.known_classes)

            # one-class to binary: the alpha of the old class is reused for the positive class
            if len(new_classes) == 1 and previously_known == 1:
                new_classes.clear()

            # binary to multi-class: the implicit negative class needs its own alpha now
            if new_classes and previously_known == 2:
                new_classes.add(self.negative_label)

        with log_timing(logger, "adding the data to the kernel models"):
            self.kernel_sum.add_examples(X)

        self.known_classes = known_classes
        self.labels = np.concatenate([self.labels, new_labels])

        self._update_after_increment(new_classes, reoptimize)

        logger.info(f"Time used for re-learning: {time.time() - start_time:.2f}s")
        logger.info(f"Memory used: {memory_usage_mb():.1f} MB")

    def _update_after_increment(self, new_classes: Set[int], reoptimize: bool) -> None:

        if self.config.perform_regression:
            decomposition = prepare_regression_labels(self.labels)
        else:
            decomposition = prepare_binary_labels(self.labels)
            self.positive_label = decomposition.positive_label
            self.negative_label = decomposition.negative_label

        binary_labels = decomposition.binary_labels
        evaluator = self._create_evaluator(binary_labels)

        with log_timing(logger, "setting up the alpha objects"):
            if self.config.use_previous_alphas and self.previous_alphas:
                evaluator.set_initial_alpha_guess(self._warm_start_alphas(binary_labels, new_classes))

        with log_timing(logger, "computing the eigenspectrum"):
            self._update_eigen_decomposition()

        self._optimize_and_precompute(evaluator, keep_current_parameters=not reoptimize)

    def _warm_start_alphas(self, binary_labels: Dict[int, np.ndarray],
                           new_classes: Set[int]) -> Dict[int, np.ndarray]:
        """
        Extend the previous alphas to the grown training set.

        Every new entry is initialized with sign(label) * (1 / eigen_max),
        brand-new classes start from binary_labels * (1 / eigen_max).
        """

        factor = 1.0 / self.spectrum.max_eigenvalue()
        previous = dict(self.previous_alphas)

        # coming from a one-class setting the stored alpha belongs to the positive class
        if len(previous) == 1 and len(self.known_classes) == 2:
            (old_class, alpha), = previous.items()
            if old_class == self.negative_label:
                previous = {self.positive_label: -alpha}

        warm_start = {}
        for class_id, alpha in previous.items():
            if class_id not in binary_labels:
                continue
            y = binary_labels[class_id]
            warm_start[class_id] = np.concatenate([alpha, np.sign(y[len(alpha):]) * factor])

        for class_id in new_classes:
            if class_id in binary_labels:
                warm_start[class_id] = binary_labels[class_id] * factor

        return warm_start

    # ==================== Classification ====================

    def classify(self, x) -> Tuple[int, Dict[int, float]]:
        """Predicted class and the per-class scores of ``x``"""

        if len(self.summaries) == 0:
            raise NotTrainedError("The precomputation vector is empty, has this classifier been trained?",
                                  operation='classify')

        scores: Dict[int, float] = {}
        for class_id in self.summaries:
            lut = self.summaries.lut(class_id)
            if lut is not None and self.quantization is not None:
                scores[class_id] = self.fmk.hik_kernel_sum_fast(lut, self.quantization, x)
            else:
                pair = self.summaries.pair(class_id)
                scores[class_id] = self.fmk.hik_kernel_sum(pair.A, pair.B, x)

        if len(self.summaries) > 1:
            return max(scores, key=lambda c: scores[c]), scores

        if len(self.known_classes) == 2:
            scores[self.negative_label] = -scores[self.positive_label]
            if scores[self.positive_label] <= 0.0:
                return self.negative_label, scores
            return self.positive_label, scores

        if self.config.perform_regression:
            return REGRESSION_LABEL, scores

        # one-class setting
        return next(iter(self.known_classes or self.summaries)), scores

    # ==================== Predictive variance ====================

    def _variance_approximator(self) -> VarianceApproximator:
        if self.kernel_sum is None:
            raise NotTrainedError("Model has not been trained", operation='predictive_variance')

        return VarianceApproximator(self.fmk, self.kernel_sum, self.spectrum, self.variance_cache,
                                    self.linear_solver, self.quantization,
                                    self.config.nr_of_eigenvalues_to_consider_for_var_approx)

    def prepare_variance_approximation_rough(self) -> None:
        if self.fmk is None:
            raise NotTrainedError("FastMinKernel object was not initialized",
                                  operation='prepare_variance_rough')
        self.precomputation.prepare_variance_rough(self.fmk, self.quantization)

    def prepare_variance_approximation_fine(self) -> None:
        if self.kernel_sum is None:
            raise NotTrainedError("Model has not been trained", operation='prepare_variance_fine')
        self._ensure_spectrum(self.config.nr_of_eigenvalues_to_consider_for_var_approx)
        self.precomputation.prepare_variance_fine()

    def predictive_variance_rough(self, x) -> float:
        return self._variance_approximator().rough(x)

    def predictive_variance_fine(self, x) -> float:
        return self._variance_approximator().fine(x)

    def predictive_variance_exact(self, x) -> float:
        return self._variance_approximator().exact(x)

    # ==================== Persistence ====================

    def store(self, stream: IO[str]) -> None:
        writer = TagWriter(stream)
        writer.start('GPHIKOptimizer')

        self.config.store(writer)

        writer.start('pf')
        self.pf.store(writer)
        writer.end('pf')

        self._store_optional(writer, 'quantization', self.quantization)
        self._store_optional(writer, 'fmk', self.fmk)
        noise_term = self.kernel_sum.noise_term() if self.kernel_sum is not None else None
        self._store_optional(writer, 'noise', noise_term)

        writer.start('labels')
        if self.labels is None:
            writer.token(NULL_MARKER)
        else:
            writer.token(NOT_NULL_MARKER)
            writer.vector(self.labels)
        writer.end('labels')

        writer.write_vector('knownClasses', np.array(sorted(self.known_classes), dtype=np.float64))

        for name, label in (('binaryLabelPositive', self.positive_label),
                            ('binaryLabelNegative', self.negative_label)):
            writer.start(name)
            if label is None:
                writer.token(NULL_MARKER)
            else:
                writer.token(NOT_NULL_MARKER)
                writer.token(label)
            writer.end(name)

        self.spectrum.store(writer)
        self.summaries.store(writer)
        self.variance_cache.store(writer)

        writer.start('previousAlphas')
        writer.token(f"{SIZE_MARKER} {len(self.previous_alphas)}")
        for class_id in sorted(self.previous_alphas):
            writer.start('alpha')
            writer.write_int('classId', class_id)
            writer.write_vector('values', self.previous_alphas[class_id])
            writer.end('alpha')
        writer.end('previousAlphas')

        writer.end('GPHIKOptimizer')

    @staticmethod
    def _store_optional(writer: TagWriter, name: str, obj) -> None:
        writer.start(name)
        if obj is None:
            writer.token(NULL_MARKER)
        else:
            writer.token(NOT_NULL_MARKER)
            obj.store(writer)
        writer.end(name)

    def restore(self, stream: IO[str]) -> None:
        """Replace the state of this optimizer with the one stored in ``stream``"""

        reader = TagReader(stream)
        reader.expect_start('GPHIKOptimizer')

        pf = None
        noise_term = None
        quantization = None
        self.fmk = None
        self.kernel_sum = None
        self.labels = None
        self.known_classes = set()
        self.positive_label = None
        self.negative_label = None
        self.spectrum = EigenSpectrumCache(self.eigen_solver)
        self.summaries.clear()
        self.variance_cache.clear()
        self.precomputation.previous_alphas = {}

        for name in reader.blocks('GPHIKOptimizer'):
            if name == 'config':
                self.config = OptimizerConfig.restore(reader)
                self._initialize_components()
                self.spectrum.eigen_solver = self.eigen_solver
            elif name == 'pf':
                pf = restore_parameterized_function(reader)
                reader.expect_end(name)
            elif name == 'quantization':
                quantization = Quantization.restore(reader) if reader.read_is_not_null() else None
                reader.expect_end(name)
            elif name == 'fmk':
                self.fmk = FastMinKernel.restore(reader) if reader.read_is_not_null() else None
                reader.expect_end(name)
            elif name == 'noise':
                noise_term = NoiseTerm.restore(reader) if reader.read_is_not_null() else None
                reader.expect_end(name)
            elif name == 'labels':
                self.labels = reader.vector() if reader.read_is_not_null() else None
                reader.expect_end(name)
            elif name == 'knownClasses':
                self.known_classes = {int(c) for c in reader.field_vector(name)}
            elif name in ('binaryLabelPositive', 'binaryLabelNegative'):
                label = reader.read_int() if reader.read_is_not_null() else None
                reader.expect_end(name)
                if name == 'binaryLabelPositive':
                    self.positive_label = label
                else:
                    self.negative_label = label
            elif name == 'EigenSpectrum':
                self.spectrum.restore(reader)
            elif name == 'ClassSummaries':
                self.summaries.restore(reader)
            elif name == 'VarianceCache':
                self.variance_cache.restore(reader)
            elif name == 'previousAlphas':
                self.precomputation.previous_alphas = self._restore_alphas(reader)
            else:
                raise CorruptStateError(f"Unexpected tag {name}", operation='restore', field=name)

        # rebuild the kernel models once all blocks are known
        if pf is None:
            pf = create_parameterized_function(self.config.transform,
                                               self.config.parameter_lower_bound,
                                               self.config.parameter_upper_bound,
                                               self.config.pf_dim)
        self.pf = pf
        self.quantization = quantization

        if self.fmk is not None:
            self.fmk.apply_transform(self.pf)
            if noise_term is not None:
                self.kernel_sum = KernelSum([noise_term, FeatureKernelTerm(self.fmk, self.pf)])
                if not self.spectrum.is_empty:
                    self.spectrum.parameters = self.kernel_sum.get_parameters()
                    self.spectrum.size = self.kernel_sum.rows()

        logger.info(f"Restored optimizer with {len(self.summaries)} class summaries")

    @staticmethod
    def _restore_alphas(reader: TagReader) -> Dict[int, np.ndarray]:
        alphas = {}
        for _ in range(reader.read_size()):
            reader.expect_start('alpha')
            class_id, values = None, None
            for name in reader.blocks('alpha'):
                if name == 'classId':
                    class_id = reader.field_int(name)
                elif name == 'values':
                    values = reader.field_vector(name)
                else:
                    raise CorruptStateError(f"Unexpected alpha field {name}",
                                            operation='restore', field=name)
            if class_id is None or values is None:
                raise CorruptStateError("Incomplete alpha block", operation='restore',
                                        field='previousAlphas')
            alphas[class_id] = values
        reader.expect_end('previousAlphas')
        return alphas
