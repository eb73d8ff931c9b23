from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import Any

import numpy as np

from jax_easy_fit.core.domain.entities.base import Batch, ExampleShape
from jax_easy_fit.core.domain.entities.evaluation import EvaluateItem
from jax_easy_fit.core.domain.entities.model import ModelState, resolve_input
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort
from jax_easy_fit.core.use_cases.encode_dataset import DatasetEncoder

DEFAULT_EVAL_BATCH_SIZE = 512


def _check_label_sets(batch: Batch, heads: int) -> None:
    if batch.head_count != heads:
        raise ConfigurationError(f"batch carries {batch.head_count} label set(s) but the model has {heads} output(s)")


class EvaluateModelUseCase:
    """Forward-only passes over batches.

    Results are yielded lazily, one entry per example in order: a single value
    for single-output models and a tuple (one entry per head) otherwise.
    Backend handles are held only while the returned generator runs.
    """

    def __init__(self, *, backend: ComputeBackendPort, encoder: DatasetEncoder | None = None) -> None:
        self._backend = backend
        self._encoder = encoder or DatasetEncoder(backend)

    def evaluate(
        self,
        state: ModelState,
        batches: Iterable[Batch],
        *,
        input_name: str = "input",
    ) -> Iterator[EvaluateItem | tuple[EvaluateItem, ...]]:
        resolve_input(state.model, input_name)
        if isinstance(batches, Sequence):
            for batch in batches:
                _check_label_sets(batch, state.head_count)
        return self._evaluate(state, batches)

    def _evaluate(self, state: ModelState, batches: Iterable[Batch]) -> Iterator[Any]:
        heads = state.head_count
        with self._backend.forward_scope(state) as forward:
            for batch in batches:
                _check_label_sets(batch, heads)
                outputs = forward(batch.features)
                expected = [np.asarray(batch.labels_for(h)).reshape(batch.size, -1) for h in range(heads)]
                for i in range(batch.size):
                    items = tuple(EvaluateItem(expected[h][i], outputs[h][i]) for h in range(heads))
                    yield items[0] if heads == 1 else items

    def predict(
        self,
        state: ModelState,
        data: Iterable[Any],
        *,
        input_name: str = "input",
    ) -> Iterator[np.ndarray | tuple[np.ndarray, ...]]:
        """Predictions for `Batch` objects or raw backend feature tensors."""

        resolve_input(state.model, input_name)
        return self._predict(state, data)

    def _predict(self, state: ModelState, data: Iterable[Any]) -> Iterator[Any]:
        heads = state.head_count
        with self._backend.forward_scope(state) as forward:
            for chunk in data:
                features = chunk.features if isinstance(chunk, Batch) else chunk
                outputs = [np.asarray(o) for o in forward(features)]
                for i in range(outputs[0].shape[0]):
                    row = tuple(o[i] for o in outputs)
                    yield row[0] if heads == 1 else row

    def evaluate_dataset(
        self,
        state: ModelState,
        features: Sequence[Any],
        labels: Sequence[Any],
        *,
        batch_size: int = DEFAULT_EVAL_BATCH_SIZE,
        shape: ExampleShape | None = None,
        input_name: str = "input",
    ) -> Iterator[EvaluateItem | tuple[EvaluateItem, ...]]:
        resolve_input(state.model, input_name)
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be > 0, got {batch_size}")
        plan = self._encoder.plan(features, labels, shape=shape)
        if plan.count and len(plan.label_dims) != state.head_count:
            raise ConfigurationError(
                f"labels carry {len(plan.label_dims)} head(s) but the model has {state.head_count} output(s)"
            )
        return self._evaluate(state, self._encoder.encode_with_plan(plan, batch_size))

    def predict_dataset(
        self,
        state: ModelState,
        features: Sequence[Any],
        *,
        batch_size: int = DEFAULT_EVAL_BATCH_SIZE,
        shape: ExampleShape | None = None,
        input_name: str = "input",
    ) -> Iterator[np.ndarray | tuple[np.ndarray, ...]]:
        resolve_input(state.model, input_name)
        batches = self._encoder.encode_features(features, batch_size, shape=shape)
        return self._predict(state, batches)
