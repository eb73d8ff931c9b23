from __future__ import annotations

from typing import Any, Literal, Protocol

from jax_easy_fit.core.domain.entities.dataset import DatasetInfo

DatasetSplit = Literal["train", "test"]


class DatasetProviderPort(Protocol):
    """Port for providing raw (features, labels) examples to the core.

    Labels are one vector per example, or a list of vectors (one per head).
    """

    @property
    def info(self) -> DatasetInfo: ...

    def load(self, split: DatasetSplit) -> tuple[list[Any], list[Any]]: ...
