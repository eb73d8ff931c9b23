from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from jax_easy_fit.core.domain.commands.fit import FitCommand
from jax_easy_fit.core.domain.entities.base import Batch, ExampleShape
from jax_easy_fit.core.domain.entities.fit import FitResult, FitState
from jax_easy_fit.core.domain.entities.model import ModelState, resolve_input
from jax_easy_fit.core.domain.entities.optimizer import OptimizerSpec
from jax_easy_fit.core.domain.errors.training import (
    ConfigurationError,
    LengthMismatchError,
    ShapeError,
    TransientTrainingFailure,
)
from jax_easy_fit.core.domain.utils.dataset_tools import resolve_seed
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort
from jax_easy_fit.core.ports.metrics_sink import MetricsSinkPort
from jax_easy_fit.core.use_cases.encode_dataset import DatasetEncoder
from jax_easy_fit.core.use_cases.training_session import TrainingSession

log = logging.getLogger(__name__)

BatchSupplier = Callable[[int], Iterable[Batch]]
# (epoch, rate) -> new rate; floats for one head, tuples for several
LearningRateRule = Callable[[int, Any], Any]
# (epoch, loss, evaluation) -> stop?; floats for one head, tuples for several
StopPredicate = Callable[[int, Any, Any], bool]


def _per_head(what: str, value: Any, heads: int) -> list[Any]:
    if isinstance(value, (list, tuple)):
        if len(value) != heads:
            raise LengthMismatchError(f"{what} for model outputs", expected=heads, actual=len(value))
        return list(value)
    if heads != 1:
        raise ConfigurationError(f"{what}: model has {heads} outputs, pass one entry per output")
    return [value]


def _as_supplier(batches: BatchSupplier | Iterable[Batch]) -> BatchSupplier:
    if callable(batches):
        return batches

    cache: list[Batch] | None = None

    def supplier(epoch: int) -> list[Batch]:
        nonlocal cache
        if cache is None:
            cache = list(batches)
        return cache

    return supplier


def _pack(values: list[float]) -> float | tuple[float, ...]:
    return values[0] if len(values) == 1 else tuple(values)


class FitModelUseCase:
    """Epoch loop over one training session per model output.

    Sessions advance in lock-step: every batch is trained on by each head in
    head order before the next batch is read.
    """

    def __init__(
        self,
        *,
        backend: ComputeBackendPort,
        metrics_sink: MetricsSinkPort | None = None,
        encoder: DatasetEncoder | None = None,
    ) -> None:
        self._backend = backend
        self._metrics = metrics_sink
        self._encoder = encoder or DatasetEncoder(backend)
        self.state = FitState.NOT_STARTED
        self._global_step = 0

    def _log(self, metrics: dict[str, Any]) -> None:
        if self._metrics:
            self._metrics.log(step=self._global_step, metrics=metrics)

    def run(
        self,
        command: FitCommand,
        *,
        state: ModelState,
        batches: BatchSupplier | Iterable[Batch],
        loss: Any,
        evaluation: Any,
        optimizer: OptimizerSpec | Sequence[OptimizerSpec],
        learning_rate_rule: LearningRateRule | None = None,
        stop_predicate: StopPredicate | None = None,
    ) -> FitResult | list[FitResult]:
        heads = state.head_count
        losses = _per_head("loss functions", loss, heads)
        evaluations = _per_head("evaluation functions", evaluation, heads)
        optimizers = _per_head("optimizers", optimizer, heads)
        if command.epochs < 1:
            raise ConfigurationError(f"epochs must be >= 1, got {command.epochs}")
        if command.max_epoch_retries < 0:
            raise ConfigurationError(f"max_epoch_retries must be >= 0, got {command.max_epoch_retries}")
        if command.on_retries_exhausted not in ("raise", "continue"):
            raise ConfigurationError(
                f"on_retries_exhausted must be 'raise' or 'continue', got {command.on_retries_exhausted!r}"
            )
        resolve_input(state.model, command.input_name)

        supplier = _as_supplier(batches)
        sessions = [
            TrainingSession(
                self._backend,
                state,
                head=i,
                loss=losses[i],
                evaluation=evaluations[i],
                optimizer=optimizers[i],
            )
            for i in range(heads)
        ]
        loss_curves: list[list[float]] = [[] for _ in sessions]
        eval_curves: list[list[float]] = [[] for _ in sessions]
        rate_curves: list[list[float]] = [[] for _ in sessions]
        failed_epochs: list[int] = []
        epoch_count = 0
        final_state = FitState.COMPLETED

        self.state = FitState.RUNNING
        self._global_step = 0
        start = time.perf_counter()
        self._log({"event": "fit_start", "epochs": command.epochs, "heads": heads})

        try:
            for epoch in range(1, command.epochs + 1):
                epoch_batches = list(supplier(epoch))
                for i, batch in enumerate(epoch_batches):
                    if batch.head_count != heads:
                        raise ConfigurationError(
                            f"epoch {epoch}, batch {i}: carries {batch.head_count} label set(s) "
                            f"but the model has {heads} output(s)"
                        )

                rates = [s.learning_rate for s in sessions]
                if not self._run_epoch(command, epoch, sessions, epoch_batches):
                    failed_epochs.append(epoch)
                if not epoch_batches:
                    log.warning("epoch %d produced no batches; recording the last reported values", epoch)

                epoch_losses = [s.last_loss_average() for s in sessions]
                epoch_evals = [s.last_eval_average() for s in sessions]
                for i in range(heads):
                    loss_curves[i].append(epoch_losses[i])
                    eval_curves[i].append(epoch_evals[i])
                    rate_curves[i].append(rates[i])
                epoch_count = epoch
                self._log(self._epoch_summary(epoch, epoch_losses, epoch_evals, rates))

                if stop_predicate and stop_predicate(epoch, _pack(epoch_losses), _pack(epoch_evals)):
                    final_state = FitState.STOPPED_EARLY
                    self._log({"event": "early_stop", "epoch": epoch})
                    break

                if learning_rate_rule:
                    current_rates = [s.learning_rate for s in sessions]
                    proposed_rates = learning_rate_rule(epoch, _pack(current_rates))
                    if heads == 1:
                        proposed_rates = (proposed_rates,)
                    elif len(proposed_rates) != heads:
                        raise LengthMismatchError(
                            "learning rates returned by the rule", expected=heads, actual=len(proposed_rates)
                        )
                    for session, current, proposed in zip(sessions, current_rates, proposed_rates):
                        proposed = float(proposed)
                        if proposed != current:
                            session.set_learning_rate(proposed)
                            self._log(
                                {
                                    "event": "learning_rate_update",
                                    "epoch": epoch,
                                    "head": session.head,
                                    "from": current,
                                    "to": proposed,
                                }
                            )
        except Exception:
            self.state = FitState.FAILED
            raise
        finally:
            for session in sessions:
                session.close()

        duration = time.perf_counter() - start
        self.state = final_state
        results = [
            FitResult(
                loss_error=loss_curves[i][-1],
                evaluation_error=eval_curves[i][-1],
                duration=duration,
                epoch_count=epoch_count,
                loss_curve=tuple(loss_curves[i]),
                evaluation_curve=tuple(eval_curves[i]),
                learning_rate_curve=tuple(rate_curves[i]),
                failed_epochs=tuple(failed_epochs),
                state=final_state,
                head=i,
            )
            for i in range(heads)
        ]
        self._log(
            {
                "event": "fit_end",
                "state": final_state.value,
                "epochs": epoch_count,
                "duration_s": round(duration, 3),
                "failed_epochs": list(failed_epochs),
            }
        )
        return results[0] if heads == 1 else results

    def _run_epoch(
        self,
        command: FitCommand,
        epoch: int,
        sessions: list[TrainingSession],
        batches: list[Batch],
    ) -> bool:
        """Train every session over `batches`, replaying the epoch on backend failures.

        Returns False when the retries ran out under the "continue" policy.
        """

        attempt = 0
        while True:
            attempt += 1
            steps_before = self._global_step
            try:
                for batch in batches:
                    for session in sessions:
                        session.train_on_batch(batch)
                    self._global_step += 1
                return True
            except (ConfigurationError, ShapeError):
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._global_step = steps_before
                if attempt > command.max_epoch_retries:
                    if command.on_retries_exhausted == "raise":
                        raise TransientTrainingFailure(epoch=epoch, attempts=attempt, message=str(exc)) from exc
                    log.warning(
                        "epoch %d still failing after %d attempt(s), keeping last reported values: %s",
                        epoch,
                        attempt,
                        exc,
                    )
                    self._log(
                        {"event": "epoch_retries_exhausted", "epoch": epoch, "attempts": attempt, "error": str(exc)}
                    )
                    return False
                log.warning("epoch %d failed on attempt %d, replaying: %s", epoch, attempt, exc)
                self._log({"event": "epoch_retry", "epoch": epoch, "attempt": attempt, "error": str(exc)})

    def _epoch_summary(
        self,
        epoch: int,
        losses: list[float],
        evals: list[float],
        rates: list[float],
    ) -> dict[str, Any]:
        summary: dict[str, Any] = {"epoch": epoch, "global_step": self._global_step}
        if len(losses) == 1:
            summary.update({"train/loss": losses[0], "train/eval": evals[0], "train/lr": rates[0]})
            return summary
        for i, (l, e, r) in enumerate(zip(losses, evals, rates)):
            summary.update({f"head{i}/loss": l, f"head{i}/eval": e, f"head{i}/lr": r})
        return summary

    def fit_dataset(
        self,
        command: FitCommand,
        *,
        state: ModelState,
        features: Sequence[Any],
        labels: Sequence[Any],
        loss: Any,
        evaluation: Any,
        optimizer: OptimizerSpec | Sequence[OptimizerSpec],
        shape: ExampleShape | None = None,
        learning_rate_rule: LearningRateRule | None = None,
        stop_predicate: StopPredicate | None = None,
    ) -> FitResult | list[FitResult]:
        """Fit on raw examples.

        Without shuffling the batches are encoded once and reused every epoch.
        With shuffling every epoch is re-encoded from a permutation seeded by
        `resolve_seed(command.seed) + epoch`.
        """

        if command.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be > 0, got {command.batch_size}")
        plan = self._encoder.plan(features, labels, shape=shape)

        batches: BatchSupplier | Iterable[Batch]
        if command.shuffle:
            base_seed = resolve_seed(command.seed)

            def batches(epoch: int) -> Iterable[Batch]:
                return self._encoder.encode_with_plan(plan.shuffled(seed=base_seed + epoch), command.batch_size)

        else:
            batches = self._encoder.encode_with_plan(plan, command.batch_size)

        return self.run(
            command,
            state=state,
            batches=batches,
            loss=loss,
            evaluation=evaluation,
            optimizer=optimizer,
            learning_rate_rule=learning_rate_rule,
            stop_predicate=stop_predicate,
        )
