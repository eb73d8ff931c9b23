from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import jax
import jax.numpy as jnp

from jax_easy_fit.core.domain.entities.base import SequenceBatch
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.domain.utils.jax_rng import fold_in_step

Params = Any  # JAX pytree: {"trunk": ..., "heads": [...]}

_ACTIVATIONS: dict[str, Callable[[jax.Array], jax.Array]] = {
    "identity": lambda x: x,
    "sigmoid": jax.nn.sigmoid,
    "softmax": lambda x: jax.nn.softmax(x, axis=-1),
    "tanh": jnp.tanh,
    "relu": jax.nn.relu,
    "swish": jax.nn.swish,
}


def activation_fn(name: str) -> Callable[[jax.Array], jax.Array]:
    try:
        return _ACTIVATIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown activation {name!r}; expected one of {sorted(_ACTIVATIONS)}"
        ) from None


@dataclass(frozen=True)
class LayerRecord:
    """One step of a model architecture: a layer kind and its parameters."""

    kind: str
    params: tuple[tuple[str, Any], ...] = ()

    def render(self) -> str:
        if not self.params:
            return self.kind
        args = ", ".join(str(v) for _, v in self.params)
        return f"{self.kind}({args})"


class ModelFns(Protocol):
    """Pure model functions exposed by the model-assembly layer.

    Outputs are always returned as a tuple, one array per head, so single and
    multi-head models share the same calling convention.
    """

    input_names: tuple[str, ...]
    output_names: tuple[str, ...]
    input_shape: tuple[int, ...]
    output_dims: tuple[int, ...]

    @property
    def layers(self) -> tuple[LayerRecord, ...]: ...

    def init(self, *, key: jax.Array) -> Params: ...

    def apply(self, params: Params, x: Any) -> tuple[jax.Array, ...]: ...


def describe_architecture(model: ModelFns) -> str:
    """Human-readable, read-only projection of `model.layers`."""

    shape = "x".join(str(d) for d in model.input_shape)
    body = "-".join(layer.render() for layer in model.layers)
    return f"[IN]{shape}-{body}[OUT]" if body else f"[IN]{shape}[OUT]"


def _dense_init(key: jax.Array, m: int, n: int, scale: float) -> dict[str, jax.Array]:
    w_key, b_key = jax.random.split(key)
    return {
        "w": scale * jax.random.normal(w_key, (m, n)),
        "b": scale * jax.random.normal(b_key, (n,)),
    }


def _head_names(count: int) -> tuple[str, ...]:
    return ("output",) if count == 1 else tuple(f"output_{i}" for i in range(count))


@dataclass(frozen=True)
class _HeadsMixin:
    def _check_heads(self) -> None:
        if not self.output_dims:
            raise ConfigurationError("a model needs at least one output head")
        if len(self.head_activations) not in (1, len(self.output_dims)):
            raise ConfigurationError(
                f"head_activations must have 1 or {len(self.output_dims)} entries, "
                f"got {len(self.head_activations)}"
            )
        for name in self.head_activations:
            activation_fn(name)

    def _head_activation(self, head: int) -> str:
        acts = self.head_activations
        return acts[0] if len(acts) == 1 else acts[head]

    def _init_heads(self, key: jax.Array, width: int) -> list[dict[str, jax.Array]]:
        return [
            _dense_init(fold_in_step(key, i), width, dim, self.param_scale)
            for i, dim in enumerate(self.output_dims)
        ]

    def _apply_heads(self, heads: list[dict[str, jax.Array]], h: jax.Array) -> tuple[jax.Array, ...]:
        return tuple(
            activation_fn(self._head_activation(i))(jnp.dot(h, head["w"]) + head["b"])
            for i, head in enumerate(heads)
        )

    def _head_records(self) -> tuple[LayerRecord, ...]:
        return tuple(
            LayerRecord(f"Head{i}", (("units", dim), ("activation", self._head_activation(i))))
            for i, dim in enumerate(self.output_dims)
        )


@dataclass(frozen=True)
class MlpModelFns(_HeadsMixin):
    """Dense trunk over flattened inputs with one dense layer per head.

    Works for flat vectors and for matrix examples of shape (rows, cols, 1).
    """

    input_shape: tuple[int, ...]
    output_dims: tuple[int, ...]
    hidden_sizes: tuple[int, ...] = (64,)
    activation: str = "swish"
    head_activations: tuple[str, ...] = ("identity",)
    param_scale: float = 1e-1
    input_names: tuple[str, ...] = ("input",)
    output_names: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        self._check_heads()
        activation_fn(self.activation)
        if not self.output_names:
            object.__setattr__(self, "output_names", _head_names(len(self.output_dims)))

    @property
    def input_dim(self) -> int:
        dim = 1
        for d in self.input_shape:
            dim *= d
        return dim

    @property
    def layers(self) -> tuple[LayerRecord, ...]:
        dense = tuple(
            LayerRecord("Dense", (("units", n), ("activation", self.activation)))
            for n in self.hidden_sizes
        )
        return dense + self._head_records()

    def init(self, *, key: jax.Array) -> Params:
        sizes = (self.input_dim, *self.hidden_sizes)
        trunk_key, heads_key = jax.random.split(key)
        keys = jax.random.split(trunk_key, max(1, len(sizes) - 1))
        trunk = [
            _dense_init(k, m, n, self.param_scale)
            for (m, n), k in zip(zip(sizes[:-1], sizes[1:]), keys)
        ]
        return {"trunk": trunk, "heads": self._init_heads(heads_key, sizes[-1])}

    def apply(self, params: Params, x: Any) -> tuple[jax.Array, ...]:
        if isinstance(x, SequenceBatch):
            raise ConfigurationError("MlpModelFns cannot consume sequence batches; use RecurrentModelFns")
        # Flatten any (B, ...) into (B, D)
        h = jnp.reshape(x, (x.shape[0], -1))
        act = activation_fn(self.activation)
        for layer in params["trunk"]:
            h = act(jnp.dot(h, layer["w"]) + layer["b"])
        return self._apply_heads(params["heads"], h)


@dataclass(frozen=True)
class RecurrentModelFns(_HeadsMixin):
    """Elman recurrent trunk over padded sequences; heads read the last valid state."""

    input_dim: int
    output_dims: tuple[int, ...]
    hidden_size: int = 16
    head_activations: tuple[str, ...] = ("identity",)
    param_scale: float = 1e-1
    input_names: tuple[str, ...] = ("input",)
    output_names: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        self._check_heads()
        if not self.output_names:
            object.__setattr__(self, "output_names", _head_names(len(self.output_dims)))

    @property
    def input_shape(self) -> tuple[int, ...]:
        return (self.input_dim,)

    @property
    def layers(self) -> tuple[LayerRecord, ...]:
        return (LayerRecord("Recurrent", (("units", self.hidden_size), ("activation", "tanh"))),) + self._head_records()

    def init(self, *, key: jax.Array) -> Params:
        x_key, h_key, heads_key = jax.random.split(key, 3)
        trunk = {
            "w_x": self.param_scale * jax.random.normal(x_key, (self.input_dim, self.hidden_size)),
            "w_h": self.param_scale * jax.random.normal(h_key, (self.hidden_size, self.hidden_size)),
            "b": jnp.zeros((self.hidden_size,)),
        }
        return {"trunk": trunk, "heads": self._init_heads(heads_key, self.hidden_size)}

    def apply(self, params: Params, x: Any) -> tuple[jax.Array, ...]:
        if not isinstance(x, SequenceBatch):
            raise ConfigurationError("RecurrentModelFns expects a SequenceBatch input")
        cell = params["trunk"]
        values = jnp.asarray(x.values)
        lengths = jnp.asarray(x.lengths)
        h0 = jnp.zeros((values.shape[0], self.hidden_size), dtype=values.dtype)
        steps = jnp.arange(values.shape[1])

        def step(h, inp):
            x_t, t = inp
            h_new = jnp.tanh(jnp.dot(x_t, cell["w_x"]) + jnp.dot(h, cell["w_h"]) + cell["b"])
            # padded steps keep the previous state
            return jnp.where((t < lengths)[:, None], h_new, h), None

        h, _ = jax.lax.scan(step, h0, (jnp.swapaxes(values, 0, 1), steps))
        return self._apply_heads(params["heads"], h)


@dataclass
class ModelState:
    """Model functions plus their current parameters.

    Trainer sessions for different heads share one ModelState, so updates to
    the shared trunk made by one head are seen by the next.
    """

    model: ModelFns
    params: Params

    @property
    def head_count(self) -> int:
        return len(self.model.output_names)


def resolve_input(model: ModelFns, name: str) -> str:
    """Case-insensitive lookup of a named model input."""

    matches = [n for n in model.input_names if n.lower() == name.lower()]
    if not matches:
        raise ConfigurationError(f"model has no input named {name!r}; inputs are {list(model.input_names)}")
    if len(matches) > 1:
        raise ConfigurationError(f"model has {len(matches)} inputs named {name!r}: {matches}")
    return matches[0]
