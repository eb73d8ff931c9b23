from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Sequence
from typing import Any, TypeVar

import numpy as np

from jax_easy_fit.core.domain.entities.evaluation import FeatureStatistic
from jax_easy_fit.core.domain.errors.training import ConfigurationError, ShapeError

T = TypeVar("T")


def resolve_seed(seed: int | None) -> int:
    """Return `seed`, or a fresh one from OS entropy when it is 0/None."""

    if seed:
        return int(seed)
    return int(np.random.SeedSequence().entropy % (2**31 - 1)) + 1


def shuffled_indices(n: int, *, seed: int | None) -> np.ndarray:
    idx = np.arange(n)
    np.random.default_rng(resolve_seed(seed)).shuffle(idx)
    return idx


def shuffle(items: Sequence[T], *, seed: int | None = None) -> list[T]:
    """Shuffled copy of `items`; the input is left untouched."""

    return [items[i] for i in shuffled_indices(len(items), seed=seed)]


def _check_fraction(fraction: float) -> None:
    if not 0.0 <= fraction <= 1.0:
        raise ConfigurationError(f"fraction must be in [0, 1], got {fraction}")


def split(
    items: Sequence[T],
    fraction: float,
    *,
    randomize: bool = False,
    seed: int | None = None,
) -> tuple[list[T], list[T]]:
    """Split into (first `fraction` of items, remainder)."""

    _check_fraction(fraction)
    pool = shuffle(items, seed=seed) if randomize else list(items)
    cut = int(len(pool) * fraction)
    return pool[:cut], pool[cut:]


def split_balanced(
    items: Sequence[T],
    fraction: float,
    label_of: Callable[[T], Hashable],
    *,
    randomize: bool = False,
    seed: int | None = None,
) -> tuple[list[T], list[T]]:
    """Split so every label keeps roughly `fraction` of its items in the first part."""

    _check_fraction(fraction)
    if len(items) < 2:
        raise ConfigurationError(f"need at least 2 items to split, got {len(items)}")
    pool = shuffle(items, seed=seed) if randomize else list(items)

    groups: dict[Hashable, list[T]] = {}
    for item in pool:
        groups.setdefault(label_of(item), []).append(item)

    first: list[T] = []
    second: list[T] = []
    for group in groups.values():
        cut = int(len(group) * fraction)
        first.extend(group[:cut])
        second.extend(group[cut:])
    return first, second


def _bucket_unique_values(column: np.ndarray, epsilon: float) -> dict[float, int]:
    # values within epsilon of a bucket's first value share that bucket
    buckets: dict[float, int] = {}
    key: float | None = None
    for value in np.sort(column):
        value = float(value)
        if key is None or abs(value - key) >= epsilon:
            key = value
            buckets[key] = 0
        buckets[key] += 1
    return buckets


def compute_feature_statistics(
    rows: Iterable[Sequence[float]],
    *,
    epsilon: float = 0.5,
    names: Sequence[str] | None = None,
) -> list[FeatureStatistic]:
    """Per-column statistics of a dataset of equal-length numeric rows.

    An empty dataset yields an empty list.
    """

    data = [np.ravel(np.asarray(r, dtype=np.float64)) for r in rows]
    if not data:
        return []
    width = data[0].shape[0]
    for i, row in enumerate(data):
        if row.shape[0] != width:
            raise ShapeError(f"row {i} has {row.shape[0]} values, expected {width}")
    if names is not None and len(names) != width:
        raise ConfigurationError(f"expected {width} feature names, got {len(names)}")

    matrix = np.stack(data)
    stats = []
    for j in range(width):
        column = matrix[:, j]
        mean = float(column.mean())
        variance = float(np.mean((column - mean) ** 2))
        stats.append(
            FeatureStatistic(
                name=names[j] if names is not None else str(j + 1),
                average=mean,
                median=float(np.median(column)),
                min=float(column.min()),
                max=float(column.max()),
                standard_deviation=float(np.sqrt(variance)),
                variance=variance,
                mean_absolute_deviation=float(np.mean(np.abs(column - mean))),
                unique_values=_bucket_unique_values(column, epsilon),
            )
        )
    return stats


def smote_samples(
    rows: Sequence[Sequence[float]],
    count: int,
    *,
    neighbors: int = 5,
    seed: int | None = None,
) -> list[np.ndarray]:
    """Synthesize `count` new rows by interpolating towards L1-nearest neighbours (SMOTE)."""

    if len(rows) < 2:
        raise ConfigurationError(f"SMOTE needs at least 2 rows, got {len(rows)}")
    if count < 1:
        raise ConfigurationError(f"count must be > 0, got {count}")
    if neighbors < 1:
        raise ConfigurationError(f"neighbors must be > 0, got {neighbors}")

    try:
        data = np.asarray(rows, dtype=np.float64)
    except ValueError as exc:
        raise ShapeError(f"SMOTE rows must share one dimension: {exc}") from exc
    if data.ndim != 2:
        raise ShapeError(f"SMOTE rows must be flat vectors, got array of rank {data.ndim}")

    distances = np.abs(data[:, None, :] - data[None, :, :]).sum(axis=-1)
    np.fill_diagonal(distances, np.inf)
    k = min(neighbors, len(data) - 1)
    nearest = np.argsort(distances, axis=1)[:, :k]

    rng = np.random.default_rng(resolve_seed(seed))
    out: list[np.ndarray] = []
    for _ in range(count):
        base = int(rng.integers(len(data)))
        other = int(nearest[base, rng.integers(k)])
        gap = rng.random()
        out.append(data[other] + gap * (data[base] - data[other]))
    return out


def as_float_array(value: Any) -> np.ndarray:
    """`value` as float64 when it already is, float32 otherwise."""

    arr = np.asarray(value)
    return arr.astype(np.float64 if arr.dtype == np.float64 else np.float32, copy=False)
