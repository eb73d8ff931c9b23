from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jax
import numpy as np
from safetensors.numpy import load_file, save_file

from jax_easy_fit.core.domain.entities.model import ModelFns, ModelState, describe_architecture
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.ports.model_store import ModelStorePort

DESCRIPTION_PREFIX = "ArchitectureDescription"


def _flatten(params: Any) -> dict[str, np.ndarray]:
    leaves, _ = jax.tree_util.tree_flatten_with_path(params)
    return {jax.tree_util.keystr(path): np.asarray(leaf) for path, leaf in leaves}


def description_path(path: str | Path) -> Path:
    p = Path(path)
    return p.parent / f"{DESCRIPTION_PREFIX}_{p.name}.txt"


class FilesystemModelStore(ModelStorePort):
    """Saves parameters as safetensors next to a JSON meta file.

    Every nested leaf of the params pytree is stored under its tree path
    (e.g. "['trunk'][0]['w']"). Loading fills the pytree of a freshly
    initialized model with the same functions, so the model must match the
    one that was saved.
    """

    def save(self, state: ModelState, path: str | Path, *, save_description: bool = True) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        save_file(_flatten(state.params), str(p))

        meta = {
            "architecture": describe_architecture(state.model),
            "input_names": list(state.model.input_names),
            "output_names": list(state.model.output_names),
            "input_shape": list(state.model.input_shape),
            "output_dims": list(state.model.output_dims),
        }
        with p.with_suffix(".json").open("w", encoding="utf-8") as f:
            json.dump(meta, f)

        if save_description:
            description_path(p).write_text(describe_architecture(state.model), encoding="utf-8")
        return p

    def load(self, model: ModelFns, path: str | Path) -> ModelState:
        stored = load_file(str(path))
        template = model.init(key=jax.random.PRNGKey(0))
        leaves, treedef = jax.tree_util.tree_flatten_with_path(template)

        values = []
        for key_path, leaf in leaves:
            key = jax.tree_util.keystr(key_path)
            if key not in stored:
                raise ConfigurationError(f"{path}: missing parameter {key}; the model does not match the saved one")
            if stored[key].shape != np.shape(leaf):
                raise ConfigurationError(
                    f"{path}: parameter {key} has shape {stored[key].shape}, model expects {np.shape(leaf)}"
                )
            values.append(jax.numpy.asarray(stored[key]))
        if len(stored) != len(leaves):
            raise ConfigurationError(f"{path}: holds {len(stored)} parameters, model expects {len(leaves)}")
        return ModelState(model=model, params=jax.tree_util.tree_unflatten(treedef, values))

    def read_description(self, path: str | Path) -> str | None:
        p = description_path(path)
        return p.read_text(encoding="utf-8") if p.exists() else None
