from __future__ import annotations

from dataclasses import replace
from typing import Any

from jax_easy_fit.core.domain.entities.base import Batch
from jax_easy_fit.core.domain.entities.model import ModelState
from jax_easy_fit.core.domain.entities.optimizer import OptimizerSpec
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort, TrainerSessionPort


class TrainingSession:
    """One (loss, evaluation, optimizer) triple bound to one model output.

    The backend trainer is bound on the first batch. An optimizer without a
    batch size takes the size of that first batch, once.
    """

    def __init__(
        self,
        backend: ComputeBackendPort,
        state: ModelState,
        *,
        head: int,
        loss: Any,
        evaluation: Any,
        optimizer: OptimizerSpec,
    ) -> None:
        self._backend = backend
        self._state = state
        self.head = head
        self._loss = loss
        self._evaluation = evaluation
        self._optimizer = optimizer
        self._trainer: TrainerSessionPort | None = None
        self.steps = 0

    @property
    def optimizer(self) -> OptimizerSpec:
        return self._optimizer

    @property
    def is_bound(self) -> bool:
        return self._trainer is not None

    def _bind(self, first_batch_size: int) -> TrainerSessionPort:
        if self._optimizer.batch_size == 0:
            self._optimizer = replace(self._optimizer, batch_size=first_batch_size)
        self._trainer = self._backend.bind_optimizer(
            self._state,
            head=self.head,
            loss=self._loss,
            evaluation=self._evaluation,
            optimizer=self._optimizer,
        )
        return self._trainer

    def train_on_batch(self, batch: Batch) -> None:
        trainer = self._trainer or self._bind(batch.size)
        trainer.train_on_batch(batch.features, batch.labels_for(self.head), batch.size)
        self.steps += 1

    def last_loss_average(self) -> float:
        return self._trainer.last_loss_average() if self._trainer else float("nan")

    def last_eval_average(self) -> float:
        return self._trainer.last_eval_average() if self._trainer else float("nan")

    @property
    def learning_rate(self) -> float:
        if self._trainer is not None:
            return self._trainer.learning_rate
        return self._optimizer.learning_rate

    def set_learning_rate(self, rate: float) -> None:
        if self._trainer is not None:
            self._trainer.set_learning_rate(rate)
        else:
            self._optimizer = replace(self._optimizer, learning_rate=rate)

    def close(self) -> None:
        self._trainer = None
