from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import optax

from jax_easy_fit.adapters.right.backends.jax_losses import LossFn, resolve_loss
from jax_easy_fit.core.domain.entities.base import SequenceBatch
from jax_easy_fit.core.domain.entities.model import ModelFns, ModelState, Params
from jax_easy_fit.core.domain.entities.optimizer import OptimizerSpec
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.domain.utils.jax_rng import make_key
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort, ForwardFn, TrainerSessionPort

_OPTIMIZERS = {
    "sgd": lambda s, lr: optax.sgd(lr),
    "momentum_sgd": lambda s, lr: optax.sgd(lr, momentum=s.momentum, nesterov=s.nesterov),
    "adam": lambda s, lr: optax.adam(lr, b1=s.b1, b2=s.b2, eps=s.eps),
    "adamw": lambda s, lr: optax.adamw(
        lr, b1=s.b1, b2=s.b2, eps=s.eps, weight_decay=s.weight_decay, nesterov=s.nesterov
    ),
    "adamax": lambda s, lr: optax.adamax(lr, b1=s.b1, b2=s.b2, eps=s.eps),
    "adagrad": lambda s, lr: optax.adagrad(lr, eps=s.eps),
    "adadelta": lambda s, lr: optax.adadelta(lr, rho=s.rho, eps=s.eps),
    "rmsprop": lambda s, lr: optax.rmsprop(lr, decay=s.rho, eps=s.eps),
}


def build_optimizer(spec: OptimizerSpec) -> optax.GradientTransformation:
    """Optax transformation for `spec` with an injectable learning rate."""

    def factory(learning_rate):
        parts = []
        if spec.gradient_clip_norm is not None:
            parts.append(optax.clip_by_global_norm(spec.gradient_clip_norm))
        if spec.l2_regularization:
            parts.append(optax.add_decayed_weights(spec.l2_regularization))
        parts.append(_OPTIMIZERS[spec.kind](spec, learning_rate))
        return optax.chain(*parts)

    return optax.inject_hyperparams(factory)(learning_rate=spec.learning_rate)


def _trainable(params: Params, head: int) -> Params:
    return {"trunk": params["trunk"], "head": params["heads"][head]}


def _merge(params: Params, trainable: Params, head: int) -> Params:
    heads = list(params["heads"])
    heads[head] = trainable["head"]
    return {"trunk": trainable["trunk"], "heads": heads}


class JaxTrainerSession(TrainerSessionPort):
    """Optax optimizer over the shared trunk and one head of a ModelState.

    The step learning rate is the configured rate scaled by
    `batch.size / optimizer.batch_size`.
    """

    def __init__(
        self,
        state: ModelState,
        *,
        head: int,
        loss: LossFn,
        evaluation: LossFn,
        optimizer: OptimizerSpec,
    ) -> None:
        if optimizer.batch_size <= 0:
            raise ConfigurationError(f"optimizer batch_size must be set before binding, got {optimizer.batch_size}")
        self._state = state
        self._head = head
        self._batch_size = optimizer.batch_size
        self._rate = float(optimizer.learning_rate)
        self._tx = build_optimizer(optimizer)
        self._opt_state = self._tx.init(_trainable(state.params, head))
        self._loss_avg = float("nan")
        self._eval_avg = float("nan")

        model = state.model
        tx = self._tx

        def objective(trainable: Params, params: Params, x: Any, y: jax.Array):
            pred = model.apply(_merge(params, trainable, head), x)[head]
            return jnp.mean(loss(pred, y)), pred

        @jax.jit
        def train_step(trainable: Params, params: Params, opt_state: optax.OptState, x: Any, y: jax.Array):
            (loss_value, pred), grads = jax.value_and_grad(objective, has_aux=True)(trainable, params, x, y)
            eval_value = jnp.mean(evaluation(pred, y))
            updates, opt_state = tx.update(grads, opt_state, trainable)
            return optax.apply_updates(trainable, updates), opt_state, loss_value, eval_value

        self._train_step = train_step

    @property
    def learning_rate(self) -> float:
        return self._rate

    def set_learning_rate(self, rate: float) -> None:
        if rate < 0:
            raise ConfigurationError(f"learning rate must be >= 0, got {rate}")
        self._rate = float(rate)

    def train_on_batch(self, features: Any, labels: Any, size: int) -> None:
        hyper = self._opt_state.hyperparams
        current = jnp.asarray(hyper["learning_rate"])
        hyper["learning_rate"] = jnp.asarray(self._rate * size / self._batch_size, dtype=current.dtype)

        params = self._state.params
        y = jnp.reshape(jnp.asarray(labels), (size, -1))
        trainable, self._opt_state, loss_value, eval_value = self._train_step(
            _trainable(params, self._head), params, self._opt_state, features, y
        )
        self._state.params = _merge(params, trainable, self._head)
        # float() blocks until the step has finished on device
        self._loss_avg = float(loss_value)
        self._eval_avg = float(eval_value)

    def last_loss_average(self) -> float:
        return self._loss_avg

    def last_eval_average(self) -> float:
        return self._eval_avg


class JaxComputeBackend(ComputeBackendPort):
    """Compute backend on JAX arrays (CPU/GPU/TPU as configured by JAX)."""

    def __init__(self, *, dtype: Any = jnp.float32) -> None:
        self._dtype = dtype

    def create_batch(self, shape: Sequence[int], values: Any) -> jax.Array:
        return jnp.reshape(jnp.asarray(np.asarray(values), dtype=self._dtype), (-1, *shape))

    def create_batch_of_sequences(self, dim: int, sequences: Sequence[Any]) -> SequenceBatch:
        arrays = [np.reshape(np.asarray(s), (-1, dim)) for s in sequences]
        lengths = np.array([a.shape[0] for a in arrays], dtype=np.int32)
        padded = np.zeros((len(arrays), int(lengths.max(initial=0)), dim), dtype=np.dtype(self._dtype))
        for i, a in enumerate(arrays):
            padded[i, : a.shape[0]] = a
        return SequenceBatch(values=jnp.asarray(padded, dtype=self._dtype), lengths=jnp.asarray(lengths))

    def initialize(self, model: ModelFns, *, seed: int | None) -> ModelState:
        return ModelState(model=model, params=model.init(key=make_key(seed)))

    def bind_optimizer(
        self,
        state: ModelState,
        *,
        head: int,
        loss: Any,
        evaluation: Any,
        optimizer: OptimizerSpec,
    ) -> JaxTrainerSession:
        if not 0 <= head < state.head_count:
            raise ConfigurationError(f"head {head} out of range for a model with {state.head_count} output(s)")
        return JaxTrainerSession(
            state,
            head=head,
            loss=resolve_loss(loss),
            evaluation=resolve_loss(evaluation),
            optimizer=optimizer,
        )

    @contextmanager
    def forward_scope(self, state: ModelState) -> Iterator[ForwardFn]:
        handles: dict[str, Any] = {
            "params": jax.device_put(state.params),
            "apply": jax.jit(state.model.apply),
        }

        def forward(features: Any) -> list[np.ndarray]:
            if not handles:
                raise RuntimeError("forward scope has been released")
            outputs = handles["apply"](handles["params"], features)
            return [np.asarray(o) for o in outputs]

        try:
            yield forward
        finally:
            handles.clear()
