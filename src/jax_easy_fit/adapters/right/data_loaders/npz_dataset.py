from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import numpy as np

from jax_easy_fit.core.domain.entities.base import ExampleShape
from jax_easy_fit.core.domain.entities.dataset import DatasetInfo
from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.domain.utils.dataset_tools import as_float_array
from jax_easy_fit.core.ports.dataset_provider import DatasetProviderPort, DatasetSplit


def _labels_2d(y: np.ndarray) -> np.ndarray:
    y = as_float_array(y)
    return y.reshape(len(y), -1)


class NpzDatasetProvider(DatasetProviderPort):
    """Loads raw examples from a .npz file.

    Expected keys:
      - x_train, y_train         (single head)
      - x_train, y_train_0..k    (one label array per head)
      - x_test / y_test*         (or x_valid / y_valid*)

    Ragged sequence datasets are stored as object arrays of (steps, dim)
    arrays, which is why the file is opened with `allow_pickle`.
    """

    def __init__(self, *, path: str | Path) -> None:
        with np.load(path, allow_pickle=True) as data:
            arrays = {k: data[k] for k in data.files}

        test_split = "valid" if "x_valid" in arrays else "test"
        self._splits: dict[str, tuple[np.ndarray, list[np.ndarray]]] = {}
        for split, key in (("train", "train"), ("test", test_split)):
            if f"x_{key}" not in arrays:
                continue
            self._splits[split] = (arrays[f"x_{key}"], self._label_arrays(arrays, key))

        if "train" not in self._splits:
            raise ConfigurationError(f"{path}: missing 'x_train' array")

        x_train, y_train = self._splits["train"]
        test = self._splits.get("test")
        self._info = DatasetInfo(
            example_shape=self._example_shape(x_train),
            input_shape=self._input_shape(x_train),
            output_dims=tuple(y.shape[1] for y in y_train),
            train_size=len(x_train),
            test_size=len(test[0]) if test else None,
        )

    @staticmethod
    def _label_arrays(arrays: dict[str, np.ndarray], key: str) -> list[np.ndarray]:
        if f"y_{key}" in arrays:
            return [_labels_2d(arrays[f"y_{key}"])]
        pattern = re.compile(rf"^y_{key}_(\d+)$")
        heads = sorted((int(m.group(1)), name) for name in arrays if (m := pattern.match(name)))
        if not heads:
            raise ConfigurationError(f"no labels found for split {key!r}: expected 'y_{key}' or 'y_{key}_0'")
        return [_labels_2d(arrays[name]) for _, name in heads]

    @staticmethod
    def _example_shape(x: np.ndarray) -> ExampleShape:
        if x.dtype == object:
            return ExampleShape.SEQUENCE
        if x.ndim == 2:
            return ExampleShape.FLAT
        if x.ndim == 3:
            return ExampleShape.MATRIX
        raise ConfigurationError(f"x arrays must be rank 2 or 3 (or ragged object arrays), got shape {x.shape}")

    @staticmethod
    def _input_shape(x: np.ndarray) -> tuple[int, ...]:
        if x.dtype == object:
            first = np.asarray(x[0])
            return (first.shape[-1] if first.ndim == 2 else 1,)
        if x.ndim == 3:
            return (*x.shape[1:], 1)
        return tuple(x.shape[1:])

    @property
    def info(self) -> DatasetInfo:
        return self._info

    def load(self, split: DatasetSplit) -> tuple[list[Any], list[Any]]:
        if split not in self._splits:
            raise ConfigurationError(f"split {split!r} is not available; have {sorted(self._splits)}")
        x, ys = self._splits[split]
        features = [as_float_array(example) for example in x]
        if len(ys) == 1:
            return features, list(ys[0])
        return features, [[y[i] for y in ys] for i in range(len(x))]
