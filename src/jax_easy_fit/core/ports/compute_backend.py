from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from typing import Any, Protocol

from jax_easy_fit.core.domain.entities.model import ModelFns, ModelState
from jax_easy_fit.core.domain.entities.optimizer import OptimizerSpec

# features -> one numpy array (batch, output_dim) per head
ForwardFn = Callable[[Any], list[Any]]


class TrainerSessionPort(Protocol):
    """One backend optimizer bound to one model output."""

    @property
    def learning_rate(self) -> float: ...

    def train_on_batch(self, features: Any, labels: Any, size: int) -> None: ...

    def last_loss_average(self) -> float: ...

    def last_eval_average(self) -> float: ...

    def set_learning_rate(self, rate: float) -> None: ...


class ComputeBackendPort(Protocol):
    """Port for the tensor engine: encoding, training steps and forward passes.

    Keep device placement and autodiff out of core; adapters implement this.
    """

    def create_batch(self, shape: Sequence[int], values: Any) -> Any:
        """Tensor of shape (-1, *shape) from flat row-major values."""

    def create_batch_of_sequences(self, dim: int, sequences: Sequence[Any]) -> Any:
        """Backend-native batch of variable-length sequences of `dim`-vectors."""

    def initialize(self, model: ModelFns, *, seed: int | None) -> ModelState: ...

    def bind_optimizer(
        self,
        state: ModelState,
        *,
        head: int,
        loss: Any,
        evaluation: Any,
        optimizer: OptimizerSpec,
    ) -> TrainerSessionPort: ...

    def forward_scope(self, state: ModelState) -> AbstractContextManager[ForwardFn]:
        """Borrow a forward function over `state` for the duration of a with-block."""
