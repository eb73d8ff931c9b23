"""Loss and evaluation functions for the JAX backend.

Each function maps (predictions, targets), both (batch, dim), to one value
per example. The trainer averages them over the batch.
"""

from __future__ import annotations

from typing import Any, Callable

import jax
import jax.numpy as jnp
import optax

from jax_easy_fit.core.domain.errors.training import ConfigurationError

LossFn = Callable[[jax.Array, jax.Array], jax.Array]

_EPS = 1e-7


def squared_error(pred: jax.Array, target: jax.Array) -> jax.Array:
    return jnp.sum((pred - target) ** 2, axis=-1)


def absolute_error(pred: jax.Array, target: jax.Array) -> jax.Array:
    return jnp.sum(jnp.abs(pred - target), axis=-1)


def binary_cross_entropy(pred: jax.Array, target: jax.Array) -> jax.Array:
    p = jnp.clip(pred, _EPS, 1.0 - _EPS)
    return -jnp.sum(target * jnp.log(p) + (1.0 - target) * jnp.log(1.0 - p), axis=-1)


def cross_entropy(pred: jax.Array, target: jax.Array) -> jax.Array:
    """Cross entropy against probabilities (e.g. a softmax head)."""

    return -jnp.sum(target * jnp.log(jnp.clip(pred, _EPS, 1.0)), axis=-1)


def softmax_cross_entropy(pred: jax.Array, target: jax.Array) -> jax.Array:
    """Cross entropy against raw logits (identity head)."""

    return optax.softmax_cross_entropy(pred, target)


def classification_error(pred: jax.Array, target: jax.Array) -> jax.Array:
    return (jnp.argmax(pred, axis=-1) != jnp.argmax(target, axis=-1)).astype(pred.dtype)


def binary_classification_error(pred: jax.Array, target: jax.Array) -> jax.Array:
    return jnp.mean(((pred >= 0.5) != (target >= 0.5)).astype(pred.dtype), axis=-1)


LOSSES: dict[str, LossFn] = {
    "squared_error": squared_error,
    "absolute_error": absolute_error,
    "binary_cross_entropy": binary_cross_entropy,
    "cross_entropy": cross_entropy,
    "softmax_cross_entropy": softmax_cross_entropy,
    "classification_error": classification_error,
    "binary_classification_error": binary_classification_error,
}


def resolve_loss(spec: Any) -> LossFn:
    """Accept a registered name or any callable with the same signature."""

    if callable(spec):
        return spec
    try:
        return LOSSES[spec]
    except (KeyError, TypeError):
        raise ConfigurationError(f"unknown loss/evaluation {spec!r}; expected one of {sorted(LOSSES)}") from None
