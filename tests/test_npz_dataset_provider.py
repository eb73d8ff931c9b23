from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from jax_easy_fit.adapters.right.data_loaders import NpzDatasetProvider
from jax_easy_fit.core.domain.entities.base import ExampleShape
from jax_easy_fit.core.domain.errors.training import ConfigurationError


def test_flat_single_head_with_test_split(tmp_path: Path) -> None:
    p = tmp_path / "flat.npz"
    np.savez(
        p,
        x_train=np.zeros((6, 3)),
        y_train=np.arange(6),
        x_test=np.ones((2, 3)),
        y_test=np.arange(2),
    )

    provider = NpzDatasetProvider(path=p)

    assert provider.info.example_shape is ExampleShape.FLAT
    assert provider.info.input_shape == (3,)
    assert provider.info.output_dims == (1,)
    assert (provider.info.train_size, provider.info.test_size) == (6, 2)

    features, labels = provider.load("train")
    assert len(features) == 6
    assert features[0].dtype == np.float64
    assert labels[0].dtype == np.float32
    assert labels[5].tolist() == [5.0]
    assert len(provider.load("test")[0]) == 2


def test_multi_head_labels_are_grouped_per_example(tmp_path: Path) -> None:
    p = tmp_path / "heads.npz"
    np.savez(
        p,
        x_train=np.zeros((4, 2)),
        y_train_1=np.eye(4)[:, :2],
        y_train_0=np.arange(4),
    )

    provider = NpzDatasetProvider(path=p)

    assert provider.info.output_dims == (1, 2)
    assert provider.info.test_size is None
    _, labels = provider.load("train")
    assert len(labels) == 4
    first_head, second_head = labels[1]
    assert first_head.tolist() == [1.0]
    assert second_head.tolist() == [0.0, 1.0]
    with pytest.raises(ConfigurationError):
        provider.load("test")


def test_matrix_and_valid_split(tmp_path: Path) -> None:
    p = tmp_path / "matrix.npz"
    np.savez(
        p,
        x_train=np.zeros((3, 4, 5)),
        y_train=np.zeros((3, 2)),
        x_valid=np.zeros((1, 4, 5)),
        y_valid=np.zeros((1, 2)),
    )

    info = NpzDatasetProvider(path=p).info

    assert info.example_shape is ExampleShape.MATRIX
    assert info.input_shape == (4, 5, 1)
    assert info.test_size == 1


def test_ragged_sequences(tmp_path: Path) -> None:
    seqs = np.empty(3, dtype=object)
    for i, steps in enumerate((2, 5, 3)):
        seqs[i] = np.ones((steps, 2), dtype=np.float32)
    p = tmp_path / "seq.npz"
    np.savez(p, x_train=seqs, y_train=np.zeros((3, 1)))

    provider = NpzDatasetProvider(path=p)

    assert provider.info.example_shape is ExampleShape.SEQUENCE
    assert provider.info.input_shape == (2,)
    features, _ = provider.load("train")
    assert [f.shape for f in features] == [(2, 2), (5, 2), (3, 2)]


def test_missing_arrays_are_configuration_errors(tmp_path: Path) -> None:
    no_x = tmp_path / "no_x.npz"
    np.savez(no_x, y_train=np.zeros(2))
    with pytest.raises(ConfigurationError):
        NpzDatasetProvider(path=no_x)

    no_y = tmp_path / "no_y.npz"
    np.savez(no_y, x_train=np.zeros((2, 2)))
    with pytest.raises(ConfigurationError):
        NpzDatasetProvider(path=no_y)
