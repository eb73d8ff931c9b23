from __future__ import annotations

import jax

from jax_easy_fit.core.domain.utils.dataset_tools import resolve_seed


def make_key(seed: int | None) -> jax.Array:
    """PRNG key for `seed`; 0 or None draws a fresh seed."""

    return jax.random.PRNGKey(resolve_seed(seed))


def fold_in_step(key: jax.Array, step: int) -> jax.Array:
    """Derive a deterministic per-step key."""

    return jax.random.fold_in(key, step)
