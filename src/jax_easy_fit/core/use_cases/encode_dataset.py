from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, replace
from typing import Any

import numpy as np

from jax_easy_fit.core.domain.entities.base import Batch, ExampleShape, HeadArity
from jax_easy_fit.core.domain.errors.training import ConfigurationError, LengthMismatchError, ShapeError
from jax_easy_fit.core.domain.utils.batching import segment
from jax_easy_fit.core.domain.utils.dataset_tools import as_float_array, shuffled_indices
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort


@dataclass(frozen=True)
class EncodingPlan:
    """A validated dataset, ready to be cut into batches.

    `example_shape` is the per-example feature shape handed to the backend:
    (D,) for flat vectors and sequence steps, (rows, cols, 1) for matrices.
    `labels` is None for unlabeled (predict) data.
    """

    shape: ExampleShape
    arity: HeadArity
    example_shape: tuple[int, ...]
    label_dims: tuple[int, ...]
    features: tuple[np.ndarray, ...]
    labels: tuple[Any, ...] | None

    @property
    def count(self) -> int:
        return len(self.features)

    def shuffled(self, *, seed: int | None) -> "EncodingPlan":
        order = shuffled_indices(self.count, seed=seed)
        return replace(
            self,
            features=tuple(self.features[i] for i in order),
            labels=None if self.labels is None else tuple(self.labels[i] for i in order),
        )


def _as_vector(value: Any) -> np.ndarray:
    return np.ravel(as_float_array(value))


def _normalize_features(shape: ExampleShape, features: Sequence[Any]) -> tuple[tuple[int, ...], list[np.ndarray]]:
    out: list[np.ndarray] = []
    expected: tuple[int, ...] | None = None
    for i, example in enumerate(features):
        if shape is ExampleShape.FLAT:
            arr = _as_vector(example)
            dims = arr.shape
        elif shape is ExampleShape.MATRIX:
            arr = as_float_array(example)
            if arr.ndim != 2:
                raise ShapeError(f"example {i}: expected a 2-D matrix, got rank {arr.ndim}")
            dims = arr.shape
        else:
            try:
                arr = as_float_array(example)
            except ValueError as exc:
                raise ShapeError(f"example {i}: sequence steps must share one dimension ({exc})") from exc
            if arr.ndim == 1:
                arr = arr[:, None]
            if arr.ndim != 2 or arr.shape[0] == 0:
                raise ShapeError(f"example {i}: expected a non-empty list of vectors, got shape {arr.shape}")
            # sequence length may vary; only the step dimension is fixed
            dims = arr.shape[1:]
        if expected is None:
            expected = dims
        elif dims != expected:
            raise ShapeError(f"example {i} has shape {dims}, expected {expected}")
        out.append(arr)

    if expected is None:
        return (), out
    if shape is ExampleShape.MATRIX:
        return (*expected, 1), out
    return tuple(expected), out


def _normalize_labels(arity: HeadArity, labels: Sequence[Any]) -> tuple[tuple[int, ...], list[Any]]:
    out: list[Any] = []
    dims: tuple[int, ...] | None = None
    for i, label in enumerate(labels):
        if arity is HeadArity.SINGLE:
            heads = (_as_vector(label),)
        else:
            heads = tuple(_as_vector(h) for h in label)
        found = tuple(h.shape[0] for h in heads)
        if dims is None:
            dims = found
        elif found != dims:
            if len(found) != len(dims):
                raise ShapeError(f"label {i} has {len(found)} heads, expected {len(dims)}")
            raise ShapeError(f"label {i} has head dimensions {found}, expected {dims}")
        out.append(heads[0] if arity is HeadArity.SINGLE else heads)
    return dims or (), out


class DatasetEncoder:
    """Turns raw examples into a lazy stream of `Batch` objects.

    One generic path serves every combination of example shape (flat vector,
    sequence, matrix) and head arity (single, multi). Validation happens when
    the plan is built, so every error surfaces before the first batch.
    """

    def __init__(self, backend: ComputeBackendPort) -> None:
        self._backend = backend

    def plan(
        self,
        features: Sequence[Any],
        labels: Sequence[Any] | None,
        *,
        shape: ExampleShape | None = None,
        arity: HeadArity | None = None,
    ) -> EncodingPlan:
        if labels is not None and len(features) != len(labels):
            raise LengthMismatchError("labels for features", expected=len(features), actual=len(labels))

        if len(features) == 0:
            return EncodingPlan(
                shape=shape or ExampleShape.FLAT,
                arity=arity or HeadArity.SINGLE,
                example_shape=(),
                label_dims=(),
                features=(),
                labels=None if labels is None else (),
            )

        shape = shape or ExampleShape.infer(features[0])
        example_shape, encoded_features = _normalize_features(shape, features)

        label_dims: tuple[int, ...] = ()
        encoded_labels = None
        if labels is not None:
            arity = arity or HeadArity.infer(labels[0])
            label_dims, encoded_labels = _normalize_labels(arity, labels)

        return EncodingPlan(
            shape=shape,
            arity=arity or HeadArity.SINGLE,
            example_shape=example_shape,
            label_dims=label_dims,
            features=tuple(encoded_features),
            labels=None if encoded_labels is None else tuple(encoded_labels),
        )

    def encode_with_plan(self, plan: EncodingPlan, batch_size: int) -> Iterator[Batch]:
        if plan.labels is None:
            groups = segment(((f, None) for f in plan.features), batch_size)
        else:
            groups = segment(zip(plan.features, plan.labels), batch_size)
        return (self._encode_group(plan, group) for group in groups)

    def _encode_group(self, plan: EncodingPlan, group: list[tuple[np.ndarray, Any]]) -> Batch:
        feats = [f for f, _ in group]
        if plan.shape is ExampleShape.SEQUENCE:
            features = self._backend.create_batch_of_sequences(plan.example_shape[0], feats)
        else:
            features = self._backend.create_batch(plan.example_shape, np.concatenate([np.ravel(f) for f in feats]))

        labels = None
        if plan.labels is not None:
            if plan.arity is HeadArity.SINGLE:
                labels = self._backend.create_batch(plan.label_dims, np.concatenate([l for _, l in group]))
            else:
                labels = tuple(
                    self._backend.create_batch((dim,), np.concatenate([l[h] for _, l in group]))
                    for h, dim in enumerate(plan.label_dims)
                )
        return Batch(size=len(group), features=features, labels=labels)

    def encode(
        self,
        features: Sequence[Any],
        labels: Sequence[Any] | None,
        batch_size: int,
        *,
        shape: ExampleShape | None = None,
        arity: HeadArity | None = None,
    ) -> Iterator[Batch]:
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be > 0, got {batch_size}")
        return self.encode_with_plan(self.plan(features, labels, shape=shape, arity=arity), batch_size)

    def encode_flat(self, dataset: Sequence[Sequence[float]], input_dim: int, batch_size: int) -> Iterator[Batch]:
        """Encode rows laid out as `features(input_dim) ++ labels(output_dim)`."""

        rows = [_as_vector(row) for row in dataset]
        if rows:
            width = rows[0].shape[0]
            if not 1 <= input_dim < width:
                raise ConfigurationError(f"input_dim must be in [1, {width}), got {input_dim}")
            for i, row in enumerate(rows):
                if row.shape[0] != width:
                    raise ShapeError(f"row {i} has {row.shape[0]} values, expected {width}")
        return self.encode(
            [row[:input_dim] for row in rows],
            [row[input_dim:] for row in rows],
            batch_size,
            shape=ExampleShape.FLAT,
            arity=HeadArity.SINGLE,
        )

    def encode_sequence(self, features: Sequence[Any], labels: Sequence[Any], batch_size: int) -> Iterator[Batch]:
        return self.encode(features, labels, batch_size, shape=ExampleShape.SEQUENCE, arity=HeadArity.SINGLE)

    def encode_matrix(self, features: Sequence[Any], labels: Sequence[Any], batch_size: int) -> Iterator[Batch]:
        return self.encode(features, labels, batch_size, shape=ExampleShape.MATRIX, arity=HeadArity.SINGLE)

    def encode_multi_head(
        self,
        features: Sequence[Any],
        labels: Sequence[Any],
        batch_size: int,
        *,
        shape: ExampleShape | None = None,
    ) -> Iterator[Batch]:
        return self.encode(features, labels, batch_size, shape=shape, arity=HeadArity.MULTI)

    def encode_features(
        self,
        features: Sequence[Any],
        batch_size: int,
        *,
        shape: ExampleShape | None = None,
    ) -> Iterator[Batch]:
        """Encode unlabeled examples for prediction."""

        return self.encode(features, None, batch_size, shape=shape)
