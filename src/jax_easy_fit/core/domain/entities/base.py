from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

import numpy as np

from jax_easy_fit.core.domain.errors.training import ShapeError


class ExampleShape(str, Enum):
    """Closed set of raw example layouts the encoder understands."""

    FLAT = "flat"
    SEQUENCE = "sequence"
    MATRIX = "matrix"

    @classmethod
    def infer(cls, example: Any) -> "ExampleShape":
        # ndarray rank decides; plain lists of vectors are sequences
        if isinstance(example, np.ndarray):
            if example.ndim == 1:
                return cls.FLAT
            if example.ndim == 2:
                return cls.MATRIX
            raise ShapeError(f"examples must be rank 1 or 2, got rank {example.ndim}")
        if isinstance(example, (list, tuple)) and example and np.ndim(example[0]) >= 1:
            return cls.SEQUENCE
        return cls.FLAT


class HeadArity(str, Enum):
    SINGLE = "single"
    MULTI = "multi"

    @classmethod
    def infer(cls, label: Any) -> "HeadArity":
        if isinstance(label, np.ndarray):
            return cls.MULTI if label.ndim == 2 else cls.SINGLE
        if isinstance(label, (list, tuple)) and label and np.ndim(label[0]) >= 1:
            return cls.MULTI
        return cls.SINGLE


class SequenceBatch(NamedTuple):
    """Padded batch of variable-length sequences.

    `values` has shape (batch, max_steps, dim); `lengths` holds the number of
    valid steps of every sequence. Being a NamedTuple it is a JAX pytree.
    """

    values: Any
    lengths: Any

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.values.shape)


def _leading_dim(tensor: Any) -> int | None:
    shape = getattr(tensor, "shape", None)
    if shape is None or len(shape) == 0:
        return None
    return int(shape[0])


@dataclass(frozen=True)
class Batch:
    """A fixed group of encoded examples ready for the backend.

    `labels` is one tensor for single-head models and a tuple of tensors
    (one per head) for multi-head models.
    """

    size: int
    features: Any
    labels: Any = None

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ShapeError(f"batch size must be positive, got {self.size}")
        tensors = [("features", self.features)]
        if isinstance(self.labels, tuple):
            tensors += [(f"labels[{i}]", t) for i, t in enumerate(self.labels)]
        elif self.labels is not None:
            tensors.append(("labels", self.labels))
        for name, tensor in tensors:
            lead = _leading_dim(tensor)
            if lead is not None and lead != self.size:
                raise ShapeError(f"{name} holds {lead} examples but batch size is {self.size}")

    @property
    def is_multi_head(self) -> bool:
        return isinstance(self.labels, tuple)

    @property
    def head_count(self) -> int:
        if self.labels is None:
            return 0
        return len(self.labels) if self.is_multi_head else 1

    def labels_for(self, head: int) -> Any:
        if self.is_multi_head:
            return self.labels[head]
        if head != 0:
            raise IndexError(f"single-head batch has no labels for head {head}")
        return self.labels
