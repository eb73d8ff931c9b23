from __future__ import annotations

from dataclasses import dataclass

from jax_easy_fit.core.domain.entities.base import ExampleShape


@dataclass(frozen=True)
class DatasetInfo:
    """Shape metadata needed to build a model for a dataset."""

    example_shape: ExampleShape
    input_shape: tuple[int, ...]
    output_dims: tuple[int, ...]
    train_size: int | None = None
    test_size: int | None = None

    @property
    def head_count(self) -> int:
        return len(self.output_dims)
