from __future__ import annotations

import os

# Ensure tests run on CPU-only machines even if JAX is installed with CUDA extras.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import math

import numpy as np

from jax_easy_fit.adapters.right.backends.jax_backend import JaxComputeBackend
from jax_easy_fit.core.domain.commands.fit import FitCommand
from jax_easy_fit.core.domain.entities.base import ExampleShape
from jax_easy_fit.core.domain.entities.fit import FitState
from jax_easy_fit.core.domain.entities.model import MlpModelFns, RecurrentModelFns
from jax_easy_fit.core.domain.entities.optimizer import OptimizerSpec
from jax_easy_fit.core.domain.utils.metrics import regression_metrics
from jax_easy_fit.core.use_cases.evaluate_model import EvaluateModelUseCase
from jax_easy_fit.core.use_cases.fit_model import FitModelUseCase


def test_mlp_regression_loss_decreases() -> None:
    rng = np.random.default_rng(0)
    x = rng.uniform(-1, 1, size=(128, 3)).astype(np.float32)
    y = (x @ np.array([[1.5], [-2.0], [0.5]], dtype=np.float32)) + 0.25

    backend = JaxComputeBackend()
    state = backend.initialize(MlpModelFns(input_shape=(3,), output_dims=(1,), hidden_sizes=(16,)), seed=1)
    result = FitModelUseCase(backend=backend).fit_dataset(
        FitCommand(epochs=30, batch_size=16, shuffle=True, seed=3),
        state=state,
        features=list(x),
        labels=list(y),
        loss="squared_error",
        evaluation="absolute_error",
        optimizer=OptimizerSpec(kind="adam", learning_rate=1e-2),
    )

    assert result.state is FitState.COMPLETED
    assert result.epoch_count == 30
    assert result.loss_curve[-1] < result.loss_curve[0]

    items = list(EvaluateModelUseCase(backend=backend).evaluate_dataset(state, list(x), list(y)))
    assert len(items) == 128
    assert regression_metrics(items)[0].determination > 0.5


def test_multi_head_mlp_fits_both_heads() -> None:
    rng = np.random.default_rng(1)
    x = rng.normal(size=(64, 4)).astype(np.float32)
    cls = (x[:, 0] > 0).astype(np.float32)
    labels = [[np.array([x[i].sum()]), np.array([cls[i], 1.0 - cls[i]])] for i in range(64)]

    backend = JaxComputeBackend()
    model = MlpModelFns(
        input_shape=(4,),
        output_dims=(1, 2),
        hidden_sizes=(16,),
        head_activations=("identity", "softmax"),
    )
    state = backend.initialize(model, seed=2)
    results = FitModelUseCase(backend=backend).fit_dataset(
        FitCommand(epochs=25, batch_size=16),
        state=state,
        features=list(x),
        labels=labels,
        loss=["squared_error", "cross_entropy"],
        evaluation=["absolute_error", "classification_error"],
        optimizer=[OptimizerSpec(learning_rate=3e-2), OptimizerSpec(kind="sgd", learning_rate=0.1)],
    )

    assert [r.head for r in results] == [0, 1]
    assert all(r.epoch_count == 25 for r in results)
    assert all(r.loss_curve[-1] < r.loss_curve[0] for r in results)

    predictions = list(EvaluateModelUseCase(backend=backend).predict_dataset(state, list(x[:3])))
    assert len(predictions) == 3
    assert predictions[0][0].shape == (1,)
    np.testing.assert_allclose(predictions[0][1].sum(), 1.0, rtol=1e-5)


def test_recurrent_model_on_variable_length_sequences() -> None:
    rng = np.random.default_rng(4)
    sequences = [rng.uniform(0, 1, size=(int(rng.integers(2, 7)), 2)).astype(np.float32) for _ in range(48)]
    labels = [np.array([s[:, 0].mean()], dtype=np.float32) for s in sequences]

    backend = JaxComputeBackend()
    state = backend.initialize(RecurrentModelFns(input_dim=2, output_dims=(1,), hidden_size=8), seed=4)
    result = FitModelUseCase(backend=backend).fit_dataset(
        FitCommand(epochs=5, batch_size=8),
        state=state,
        features=sequences,
        labels=labels,
        shape=ExampleShape.SEQUENCE,
        loss="squared_error",
        evaluation="absolute_error",
        optimizer=OptimizerSpec(learning_rate=1e-2),
        stop_predicate=lambda epoch, loss, evaluation: epoch == 3,
    )

    assert result.epoch_count == 3
    assert result.stopped_early
    assert all(math.isfinite(v) for v in result.loss_curve)
