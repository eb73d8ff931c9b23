from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FitState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED_EARLY = "stopped_early"
    FAILED = "failed"


@dataclass(frozen=True)
class FitResult:
    """Outcome of one Fit call for one training session (one head).

    `loss_error`/`evaluation_error` are the final epoch averages. The curves
    hold one entry per completed epoch, so their length equals `epoch_count`
    even when training stopped early.
    """

    loss_error: float
    evaluation_error: float
    duration: float  # seconds
    epoch_count: int
    loss_curve: tuple[float, ...]
    evaluation_curve: tuple[float, ...]
    learning_rate_curve: tuple[float, ...] = ()
    failed_epochs: tuple[int, ...] = ()
    state: FitState = FitState.COMPLETED
    head: int = 0

    @property
    def stopped_early(self) -> bool:
        return self.state is FitState.STOPPED_EARLY

    @property
    def is_advisory(self) -> bool:
        """True when some epoch was recorded after exhausting its retries."""

        return bool(self.failed_epochs)

    def summary(self) -> dict[str, float | int | str]:
        return {
            "head": self.head,
            "state": self.state.value,
            "epochs": self.epoch_count,
            "loss": self.loss_error,
            "eval": self.evaluation_error,
            "duration_s": round(self.duration, 3),
        }
