from __future__ import annotations

from typing import Any, Protocol


class MetricsSinkPort(Protocol):
    """Port for logging metrics (stdout, JSONL, etc.).

    Epoch summaries and fit events (`fit_start`, `epoch_retry`, `early_stop`,
    `learning_rate_update`, `fit_end`) all arrive here, events tagged with an
    "event" key.
    """

    def log(self, *, step: int, metrics: dict[str, Any]) -> None:
        ...
