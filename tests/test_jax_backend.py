from __future__ import annotations

import os

# Ensure tests run on CPU-only machines even if JAX is installed with CUDA extras.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from jax_easy_fit.adapters.right.backends.jax_backend import JaxComputeBackend, build_optimizer
from jax_easy_fit.adapters.right.backends.jax_losses import resolve_loss
from jax_easy_fit.core.domain.entities.base import SequenceBatch
from jax_easy_fit.core.domain.entities.model import MlpModelFns, ModelState, RecurrentModelFns
from jax_easy_fit.core.domain.entities.optimizer import OPTIMIZER_KINDS, OptimizerSpec
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.use_cases.encode_dataset import DatasetEncoder


def _zero_linear_state(backend: JaxComputeBackend, heads: int = 1, hidden=()) -> ModelState:
    model = MlpModelFns(input_shape=(1,), output_dims=(1,) * heads, hidden_sizes=hidden)
    state = backend.initialize(model, seed=1)
    state.params = jax.tree_util.tree_map(jnp.zeros_like, state.params)
    return state


def test_step_rate_scales_with_batch_size() -> None:
    backend = JaxComputeBackend()
    x = jnp.zeros((2, 1))
    y = jnp.ones((2, 1))

    full = _zero_linear_state(backend)
    trainer = backend.bind_optimizer(
        full, head=0, loss="squared_error", evaluation="absolute_error",
        optimizer=OptimizerSpec(kind="sgd", learning_rate=0.1, batch_size=2),
    )
    trainer.train_on_batch(x, y, 2)

    short = _zero_linear_state(backend)
    trainer = backend.bind_optimizer(
        short, head=0, loss="squared_error", evaluation="absolute_error",
        optimizer=OptimizerSpec(kind="sgd", learning_rate=0.1, batch_size=4),
    )
    trainer.train_on_batch(x, y, 2)

    # d/db mean((b - 1)^2) = -2 at b = 0
    assert float(full.params["heads"][0]["b"][0]) == pytest.approx(0.2)
    assert float(short.params["heads"][0]["b"][0]) == pytest.approx(0.1)
    # averages are reported for the batch before the update
    assert trainer.last_loss_average() == pytest.approx(1.0)
    assert trainer.last_eval_average() == pytest.approx(1.0)


def test_set_learning_rate_changes_next_step() -> None:
    backend = JaxComputeBackend()
    state = _zero_linear_state(backend)
    trainer = backend.bind_optimizer(
        state, head=0, loss="squared_error", evaluation="absolute_error",
        optimizer=OptimizerSpec(kind="sgd", learning_rate=0.1, batch_size=1),
    )

    trainer.set_learning_rate(0.0)
    trainer.train_on_batch(jnp.zeros((1, 1)), jnp.ones((1, 1)), 1)

    assert trainer.learning_rate == 0.0
    assert float(state.params["heads"][0]["b"][0]) == 0.0


def test_head_sessions_share_trunk_but_not_heads() -> None:
    backend = JaxComputeBackend()
    model = MlpModelFns(input_shape=(3,), output_dims=(1, 2), hidden_sizes=(4,))
    state = backend.initialize(model, seed=3)
    trunk_before = np.asarray(state.params["trunk"][0]["w"])
    head1_before = np.asarray(state.params["heads"][1]["w"])

    trainer = backend.bind_optimizer(
        state, head=0, loss="squared_error", evaluation="absolute_error",
        optimizer=OptimizerSpec(kind="sgd", learning_rate=0.5, batch_size=4),
    )
    trainer.train_on_batch(jnp.ones((4, 3)), jnp.full((4, 1), 5.0), 4)

    assert not np.allclose(np.asarray(state.params["trunk"][0]["w"]), trunk_before)
    np.testing.assert_array_equal(np.asarray(state.params["heads"][1]["w"]), head1_before)


@pytest.mark.parametrize("kind", OPTIMIZER_KINDS)
def test_every_optimizer_kind_builds_with_injectable_rate(kind: str) -> None:
    tx = build_optimizer(OptimizerSpec(kind=kind, learning_rate=0.01, gradient_clip_norm=1.0, l2_regularization=1e-4))
    opt_state = tx.init({"w": jnp.zeros((2,))})

    assert float(opt_state.hyperparams["learning_rate"]) == pytest.approx(0.01)


def test_unknown_loss_is_a_configuration_error() -> None:
    backend = JaxComputeBackend()
    state = _zero_linear_state(backend)

    with pytest.raises(ConfigurationError, match="unknown loss"):
        backend.bind_optimizer(
            state, head=0, loss="hinge", evaluation="absolute_error", optimizer=OptimizerSpec(batch_size=1)
        )
    with pytest.raises(ConfigurationError):
        backend.bind_optimizer(
            state, head=2, loss="squared_error", evaluation="absolute_error", optimizer=OptimizerSpec(batch_size=1)
        )


def test_losses_are_per_example() -> None:
    pred = jnp.array([[0.9, 0.1], [0.2, 0.8]])
    target = jnp.array([[1.0, 0.0], [1.0, 0.0]])

    np.testing.assert_allclose(resolve_loss("classification_error")(pred, target), [0.0, 1.0])
    np.testing.assert_allclose(resolve_loss("squared_error")(pred, target), [0.02, 1.28], rtol=1e-5)
    assert resolve_loss("cross_entropy")(pred, target).shape == (2,)


def test_create_batch_of_sequences_pads_to_longest() -> None:
    backend = JaxComputeBackend()
    batch = backend.create_batch_of_sequences(2, [np.ones((3, 2)), np.full((1, 2), 2.0)])

    assert isinstance(batch, SequenceBatch)
    assert batch.shape == (2, 3, 2)
    np.testing.assert_array_equal(np.asarray(batch.lengths), [3, 1])
    np.testing.assert_allclose(np.asarray(batch.values[1]), [[2.0, 2.0], [0.0, 0.0], [0.0, 0.0]])


def test_recurrent_model_ignores_padding() -> None:
    backend = JaxComputeBackend()
    state = backend.initialize(RecurrentModelFns(input_dim=1, output_dims=(1,), hidden_size=4), seed=5)
    short = backend.create_batch_of_sequences(1, [np.array([[0.5], [0.25]])])
    padded = backend.create_batch_of_sequences(1, [np.array([[0.5], [0.25]]), np.ones((5, 1))])

    with backend.forward_scope(state) as forward:
        alone = forward(short)[0]
        together = forward(padded)[0]

    np.testing.assert_allclose(alone[0], together[0], rtol=1e-5)


def test_forward_scope_releases_on_exit_and_on_error() -> None:
    backend = JaxComputeBackend()
    state = backend.initialize(MlpModelFns(input_shape=(2,), output_dims=(3,), hidden_sizes=(4,)), seed=2)

    with backend.forward_scope(state) as forward:
        outputs = forward(jnp.ones((5, 2)))
    assert len(outputs) == 1 and outputs[0].shape == (5, 3)
    with pytest.raises(RuntimeError, match="released"):
        forward(jnp.ones((1, 2)))

    with pytest.raises(KeyError):
        with backend.forward_scope(state) as leaked:
            raise KeyError("boom")
    with pytest.raises(RuntimeError):
        leaked(jnp.ones((1, 2)))


def test_create_batch_reshapes_flat_values() -> None:
    tensor = JaxComputeBackend().create_batch((2, 3, 1), np.arange(12))

    assert tensor.shape == (2, 2, 3, 1)
    assert tensor.dtype == jnp.float32


@pytest.fixture
def x64():
    jax.config.update("jax_enable_x64", True)
    try:
        yield
    finally:
        jax.config.update("jax_enable_x64", False)


def test_float64_backend_keeps_full_precision(x64) -> None:
    backend = JaxComputeBackend(dtype=jnp.float64)
    encoder = DatasetEncoder(backend)

    (flat,) = encoder.encode_features([np.array([1.0 + 1e-12, 2.0])], batch_size=4)
    (seq,) = encoder.encode_sequence([[[1.0 + 1e-12], [2.0]], [[3.0]]], [[0.0], [1.0]], batch_size=4)

    assert flat.features.dtype == jnp.float64
    assert float(flat.features[0, 0]) - 1.0 == pytest.approx(1e-12, abs=1e-14)
    assert seq.features.values.dtype == jnp.float64
    assert float(seq.features.values[0, 0, 0]) - 1.0 == pytest.approx(1e-12, abs=1e-14)


def test_momentum_is_only_applied_by_momentum_sgd() -> None:
    params = {"w": jnp.zeros((3, 2))}

    plain = build_optimizer(OptimizerSpec(kind="sgd", momentum=0.9)).init(params)
    with_momentum = build_optimizer(OptimizerSpec(kind="momentum_sgd", momentum=0.9)).init(params)

    assert len(jax.tree_util.tree_leaves(with_momentum)) > len(jax.tree_util.tree_leaves(plain))
