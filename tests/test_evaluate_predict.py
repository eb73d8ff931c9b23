from __future__ import annotations

import os

# Ensure tests run on CPU-only machines even if JAX is installed with CUDA extras.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import numpy as np
import pytest

from jax_easy_fit.adapters.right.backends.jax_backend import JaxComputeBackend
from jax_easy_fit.core.domain.entities.base import Batch
from jax_easy_fit.core.domain.entities.evaluation import EvaluateItem
from jax_easy_fit.core.domain.entities.model import MlpModelFns
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.use_cases.evaluate_model import EvaluateModelUseCase


def _setup(output_dims=(1,)):
    backend = JaxComputeBackend()
    model = MlpModelFns(input_shape=(2,), output_dims=output_dims, hidden_sizes=(3,))
    return backend, backend.initialize(model, seed=9), EvaluateModelUseCase(backend=backend)


def test_evaluate_dataset_yields_one_item_per_example() -> None:
    _, state, use_case = _setup()
    x = np.random.default_rng(0).normal(size=(7, 2)).astype(np.float32)
    y = np.arange(7, dtype=np.float32).reshape(7, 1)

    items = list(use_case.evaluate_dataset(state, list(x), list(y), batch_size=3))

    assert len(items) == 7
    assert all(isinstance(item, EvaluateItem) for item in items)
    assert [float(item.expected[0]) for item in items] == list(range(7))

    predictions = list(use_case.predict_dataset(state, list(x), batch_size=3))
    np.testing.assert_allclose([p[0] for p in predictions], [item.evaluated[0] for item in items], rtol=1e-6)


def test_multi_head_items_are_tuples() -> None:
    _, state, use_case = _setup(output_dims=(1, 2))
    x = np.zeros((4, 2), dtype=np.float32)
    labels = [[np.array([1.0]), np.array([0.0, 1.0])] for _ in range(4)]

    items = list(use_case.evaluate_dataset(state, list(x), labels))

    assert len(items) == 4
    first, second = items[0]
    assert len(first) == 1
    assert len(second) == 2


def test_predict_accepts_raw_tensors_and_batches() -> None:
    backend, state, use_case = _setup()
    x = backend.create_batch((2,), np.ones((5, 2), dtype=np.float32))
    batch = Batch(features=x, size=5)

    from_tensor = list(use_case.predict(state, [x]))
    from_batch = list(use_case.predict(state, [batch]))

    assert len(from_tensor) == 5
    np.testing.assert_allclose(np.stack(from_tensor), np.stack(from_batch))


def test_unknown_input_name_fails_before_iteration() -> None:
    _, state, use_case = _setup()
    with pytest.raises(ConfigurationError, match="no input named"):
        use_case.predict(state, [], input_name="pixels")
    # case-insensitive
    assert list(use_case.predict(state, [], input_name="INPUT")) == []


def test_label_sets_must_match_model_outputs() -> None:
    backend, state, use_case = _setup(output_dims=(1, 1))
    x = backend.create_batch((2,), np.ones((2, 2), dtype=np.float32))
    batch = Batch(features=x, size=2, labels=(np.zeros((2, 1)),))

    # a list of batches is checked before the generator is returned
    with pytest.raises(ConfigurationError, match="1 label set"):
        use_case.evaluate(state, [batch])
    # a one-shot iterator is checked as it is consumed
    with pytest.raises(ConfigurationError):
        list(use_case.evaluate(state, iter([batch])))


def test_evaluate_dataset_checks_label_heads_eagerly() -> None:
    _, state, use_case = _setup(output_dims=(1, 1))
    x = np.zeros((3, 2), dtype=np.float32)

    with pytest.raises(ConfigurationError, match="1 head"):
        use_case.evaluate_dataset(state, list(x), [np.array([0.0])] * 3)
