"""Streaming metric reducers over `EvaluateItem` sequences.

Every reducer raises `EmptyInputError` on an empty sequence and `ShapeError`
when an item's length differs from the first item's. Zero denominators in
precision/recall/F1 yield 0.0.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import numpy as np

from jax_easy_fit.core.domain.entities.evaluation import (
    BinaryClassificationMetrics,
    ClassItem,
    EvaluateItem,
    MultiLabelClassificationMetrics,
    OneLabelClassificationMetrics,
    RegressionMetrics,
)
from jax_easy_fit.core.domain.errors.training import ConfigurationError, EmptyInputError, ShapeError


def _ratio(num: float, den: float) -> float:
    return float(num) / float(den) if den else 0.0


def _f1(precision: float, recall: float) -> float:
    return _ratio(2.0 * precision * recall, precision + recall)


def _check_threshold(threshold: float) -> None:
    if not 0.0 < threshold < 1.0:
        raise ConfigurationError(f"threshold must be in (0, 1), got {threshold}")


def _checked(items: Iterable[EvaluateItem]) -> Iterator[EvaluateItem]:
    """Yield items, enforcing non-emptiness and a constant item length."""

    width: int | None = None
    for item in items:
        if width is None:
            width = len(item)
        elif len(item) != width:
            raise ShapeError(f"evaluate item has {len(item)} values, expected {width}")
        yield item
    if width is None:
        raise EmptyInputError("metric computation needs at least one evaluate item")


def regression_metrics(items: Iterable[EvaluateItem]) -> list[RegressionMetrics]:
    """MAE, RMSE and R² for every output dimension.

    Re-iterable inputs (lists, tuples) are read twice: once for the errors and
    the mean of the expected values, once for the total sum of squares. A
    one-shot iterator is consumed once, with Welford's update for the sum of
    squares.
    """

    if iter(items) is items:
        return _regression_single_pass(items)

    count = 0
    abs_err = sq_err = mean = None
    for item in _checked(items):
        diff = item.evaluated - item.expected
        if abs_err is None:
            abs_err = np.zeros_like(diff)
            sq_err = np.zeros_like(diff)
            mean = np.zeros_like(diff)
        abs_err += np.abs(diff)
        sq_err += diff * diff
        mean += item.expected
        count += 1
    mean /= count

    ss_tot = np.zeros_like(mean)
    for item in items:
        ss_tot += (item.expected - mean) ** 2
    return _regression_result(abs_err, sq_err, ss_tot, count)


def _regression_single_pass(items: Iterator[EvaluateItem]) -> list[RegressionMetrics]:
    count = 0
    abs_err = sq_err = mean = m2 = None
    for item in _checked(items):
        diff = item.evaluated - item.expected
        if abs_err is None:
            abs_err = np.zeros_like(diff)
            sq_err = np.zeros_like(diff)
            mean = np.zeros_like(diff)
            m2 = np.zeros_like(diff)
        abs_err += np.abs(diff)
        sq_err += diff * diff
        count += 1
        delta = item.expected - mean
        mean += delta / count
        m2 += delta * (item.expected - mean)
    return _regression_result(abs_err, sq_err, m2, count)


def _regression_result(abs_err, sq_err, ss_tot, count: int) -> list[RegressionMetrics]:
    out = []
    for mae_sum, sse, tot in zip(abs_err, sq_err, ss_tot):
        # constant targets leave R² undefined; report 0.0
        determination = 1.0 - float(sse) / float(tot) if tot > 0 else 0.0
        out.append(
            RegressionMetrics(
                mae=float(mae_sum) / count,
                rmse=float(np.sqrt(sse / count)),
                determination=determination,
            )
        )
    return out


def binary_classification_metrics(
    items: Iterable[EvaluateItem],
    *,
    threshold: float = 0.5,
) -> BinaryClassificationMetrics:
    """Confusion counts of a single-output classifier.

    Expected labels are 1 for positives, 0 for negatives. An evaluated value
    below `threshold` counts as a negative prediction.
    """

    _check_threshold(threshold)
    tp = tn = fp = fn = 0
    for item in _checked(items):
        positive = int(round(item.expected[0])) == 1
        predicted = item.evaluated[0] >= threshold
        if positive:
            if predicted:
                tp += 1
            else:
                fn += 1
        elif predicted:
            fp += 1
        else:
            tn += 1

    n = tp + tn + fp + fn
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    return BinaryClassificationMetrics(
        accuracy=_ratio(tp + tn, n),
        precision=precision,
        recall=recall,
        f1_score=_f1(precision, recall),
        true_positive=tp,
        true_negative=tn,
        false_positive=fp,
        false_negative=fn,
        confusion_matrix=np.array([[tp, fp], [fn, tn]], dtype=np.float64) / n,
    )


def _class_items(hits, predicted, expected, total: int) -> tuple[ClassItem, ...]:
    classes = []
    for index, (h, p, e) in enumerate(zip(hits, predicted, expected)):
        precision = _ratio(h, p)
        recall = _ratio(h, e)
        classes.append(
            ClassItem(
                index=index,
                precision=precision,
                recall=recall,
                f1_score=_f1(precision, recall),
                fraction=_ratio(e, total),
            )
        )
    return tuple(classes)


def one_label_classification_metrics(items: Iterable[EvaluateItem]) -> OneLabelClassificationMetrics:
    """Arg-max (one-hot) classification metrics."""

    matrix: np.ndarray | None = None
    for item in _checked(items):
        if matrix is None:
            n_classes = len(item)
            matrix = np.zeros((n_classes, n_classes), dtype=np.float64)
        matrix[int(np.argmax(item.expected)), int(np.argmax(item.evaluated))] += 1

    total = int(matrix.sum())
    hits = np.diag(matrix)
    classes = _class_items(hits, matrix.sum(axis=0), matrix.sum(axis=1), total)
    return OneLabelClassificationMetrics(
        accuracy=_ratio(hits.sum(), total),
        confusion_matrix=matrix / total,
        classes=classes,
    )


def multi_label_classification_metrics(
    items: Iterable[EvaluateItem],
    *,
    threshold: float = 0.5,
) -> MultiLabelClassificationMetrics:
    """Label-level classification metrics; a label is set when its value exceeds `threshold`."""

    _check_threshold(threshold)
    hits = predicted = expected = None
    for item in _checked(items):
        exp = item.expected > threshold
        got = item.evaluated > threshold
        if hits is None:
            hits = np.zeros(len(item), dtype=np.int64)
            predicted = np.zeros(len(item), dtype=np.int64)
            expected = np.zeros(len(item), dtype=np.int64)
        hits += exp & got
        predicted += got
        expected += exp

    total = int(expected.sum())
    return MultiLabelClassificationMetrics(
        accuracy=_ratio(hits.sum(), total),
        classes=_class_items(hits, predicted, expected, total),
    )
