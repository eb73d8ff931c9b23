from __future__ import annotations

from pathlib import Path
from typing import Protocol

from jax_easy_fit.core.domain.entities.model import ModelFns, ModelState


class ModelStorePort(Protocol):
    """Port for saving/loading trained parameters.

    Keep I/O out of core; adapters implement this (filesystem, S3, etc.).
    """

    def save(self, state: ModelState, path: str | Path, *, save_description: bool = True) -> Path: ...

    def load(self, model: ModelFns, path: str | Path) -> ModelState: ...
