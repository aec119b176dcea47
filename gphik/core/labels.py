# File: gphik/core/labels.py
"""
Label decomposition

Turns a label vector into the binary (+1/-1) sub-problems solved by the
optimizer:
- more than two classes: one-vs-rest, one vector per class
- two classes: a single vector for the positive (larger) class, the negative
  class is implicit
- one class: a single all-ones vector for that class
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Set

import numpy as np

REGRESSION_LABEL = 1


@dataclass
class BinaryLabelDecomposition:
    """Binary sub-problems derived from a label vector"""
    binary_labels: Dict[int, np.ndarray]
    known_classes: Set[int]
    num_classes: int
    positive_label: Optional[int] = None
    negative_label: Optional[int] = None
    class_counts: Dict[int, int] = field(default_factory=dict)

    @property
    def is_one_class(self) -> bool:
        return len(self.known_classes) == 1


def class_ids(y) -> np.ndarray:
    """Integer class ids for a label vector"""

    y = np.asarray(y, dtype=np.float64).ravel()
    ids = y.astype(np.int64)
    if not np.array_equal(ids, y):
        raise ValueError("Class labels must be integral values")
    return ids


def prepare_binary_labels(y) -> BinaryLabelDecomposition:
    """
    Decompose ``y`` into binary label vectors.

    Returns a decomposition whose ``num_classes`` is the number of explicit
    sub-problems minus the implicit one: N for N > 2 classes, 1 for the
    binary case and 0 for the one-class case.
    """

    ids = class_ids(y)
    if len(ids) == 0:
        raise ValueError("Can not decompose an empty label vector")

    classes, counts = np.unique(ids, return_counts=True)
    known_classes = {int(c) for c in classes}
    class_counts = {int(c): int(n) for c, n in zip(classes, counts)}
    binary_labels: Dict[int, np.ndarray] = {}

    if len(classes) > 2:
        for c in classes:
            binary_labels[int(c)] = np.where(ids == c, 1.0, -1.0)
        return BinaryLabelDecomposition(binary_labels, known_classes, len(classes),
                                        class_counts=class_counts)

    if len(classes) == 2:
        negative, positive = int(classes[0]), int(classes[1])
        binary_labels[positive] = np.where(ids == negative, -1.0, 1.0)
        return BinaryLabelDecomposition(binary_labels, known_classes, 1,
                                        positive_label=positive, negative_label=negative,
                                        class_counts=class_counts)

    # one-class setting: labels are set to one, the class id is kept for classification
    binary_labels[int(classes[0])] = np.ones(len(ids))
    return BinaryLabelDecomposition(binary_labels, known_classes, 0, class_counts=class_counts)


def prepare_regression_labels(y) -> BinaryLabelDecomposition:
    """Regression targets are used directly under a single pseudo class"""

    y = np.asarray(y, dtype=np.float64).ravel()
    if len(y) == 0:
        raise ValueError("Can not use an empty target vector")

    return BinaryLabelDecomposition({REGRESSION_LABEL: y.copy()}, {REGRESSION_LABEL}, 0)
