from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from jax_easy_fit.core.domain.errors.training import ShapeError


@dataclass(frozen=True)
class EvaluateItem:
    """Expected vs. model-evaluated output vector for one example."""

    expected: np.ndarray
    evaluated: np.ndarray

    def __post_init__(self) -> None:
        expected = np.ravel(np.asarray(self.expected, dtype=np.float64))
        evaluated = np.ravel(np.asarray(self.evaluated, dtype=np.float64))
        if expected.shape[0] != evaluated.shape[0]:
            raise ShapeError(
                f"expected has {expected.shape[0]} values but evaluated has {evaluated.shape[0]}"
            )
        object.__setattr__(self, "expected", expected)
        object.__setattr__(self, "evaluated", evaluated)

    def __len__(self) -> int:
        return int(self.expected.shape[0])


@dataclass(frozen=True)
class RegressionMetrics:
    mae: float
    rmse: float
    determination: float


@dataclass(frozen=True)
class BinaryClassificationMetrics:
    accuracy: float
    precision: float
    recall: float
    f1_score: float
    true_positive: int
    true_negative: int
    false_positive: int
    false_negative: int
    # [[TP, FP], [FN, TN]] divided by the sample count
    confusion_matrix: np.ndarray


@dataclass(frozen=True)
class ClassItem:
    """Per-class precision/recall/F1 and the class's share of the data."""

    index: int
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    fraction: float = 0.0


@dataclass(frozen=True)
class OneLabelClassificationMetrics:
    accuracy: float
    # rows are expected classes, columns predicted classes, normalized by sample count
    confusion_matrix: np.ndarray
    classes: tuple[ClassItem, ...]


@dataclass(frozen=True)
class MultiLabelClassificationMetrics:
    accuracy: float
    classes: tuple[ClassItem, ...]


@dataclass(frozen=True)
class FeatureStatistic:
    name: str
    average: float
    median: float
    min: float
    max: float
    standard_deviation: float
    variance: float
    mean_absolute_deviation: float
    # representative value -> count, values closer than epsilon share a bucket
    unique_values: dict[float, int] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"Name: {self.name} Min: {self.min:.5f} Max: {self.max:.5f} "
            f"Average: {self.average:.5f} MAD: {self.mean_absolute_deviation:.5f} "
            f"Variance: {self.variance:.5f} StdDev: {self.standard_deviation:.5f}"
        )
