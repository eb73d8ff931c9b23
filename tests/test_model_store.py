from __future__ import annotations

import os

# Ensure tests run on CPU-only machines even if JAX is installed with CUDA extras.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

import json
from pathlib import Path

import jax
import numpy as np
import pytest

from jax_easy_fit.adapters.right.backends.jax_backend import JaxComputeBackend
from jax_easy_fit.adapters.right.model_store_filesystem import FilesystemModelStore, description_path
from jax_easy_fit.core.domain.entities.model import MlpModelFns
from jax_easy_fit.core.domain.errors.training import ConfigurationError


def _model(hidden=(4,)) -> MlpModelFns:
    return MlpModelFns(input_shape=(3,), output_dims=(2,), hidden_sizes=hidden)


def test_save_then_load_restores_parameters(tmp_path: Path) -> None:
    backend = JaxComputeBackend()
    state = backend.initialize(_model(), seed=11)
    store = FilesystemModelStore()

    path = store.save(state, tmp_path / "out" / "model.safetensors")
    restored = store.load(_model(), path)

    for a, b in zip(jax.tree_util.tree_leaves(state.params), jax.tree_util.tree_leaves(restored.params)):
        np.testing.assert_allclose(np.asarray(a), np.asarray(b))

    x = backend.create_batch((3,), np.ones((2, 3), dtype=np.float32))
    with backend.forward_scope(state) as f1, backend.forward_scope(restored) as f2:
        np.testing.assert_allclose(f1(x)[0], f2(x)[0], rtol=1e-6)


def test_save_writes_meta_and_architecture_description(tmp_path: Path) -> None:
    state = JaxComputeBackend().initialize(_model(), seed=1)
    store = FilesystemModelStore()

    path = store.save(state, tmp_path / "model.safetensors")

    side_car = tmp_path / "ArchitectureDescription_model.safetensors.txt"
    assert description_path(path) == side_car
    text = side_car.read_text(encoding="utf-8")
    assert text.startswith("[IN]3-")
    assert text.endswith("[OUT]")
    assert "Dense(4, swish)" in text
    assert store.read_description(path) == text

    meta = json.loads((tmp_path / "model.json").read_text(encoding="utf-8"))
    assert meta["output_dims"] == [2]
    assert meta["architecture"] == text


def test_save_without_description(tmp_path: Path) -> None:
    state = JaxComputeBackend().initialize(_model(), seed=1)
    store = FilesystemModelStore()

    path = store.save(state, tmp_path / "model.safetensors", save_description=False)

    assert path.exists()
    assert store.read_description(path) is None


def test_load_rejects_a_different_architecture(tmp_path: Path) -> None:
    state = JaxComputeBackend().initialize(_model(hidden=(4,)), seed=1)
    store = FilesystemModelStore()
    path = store.save(state, tmp_path / "model.safetensors")

    with pytest.raises(ConfigurationError):
        store.load(_model(hidden=(5,)), path)
    with pytest.raises(ConfigurationError):
        store.load(_model(hidden=(4, 4)), path)
