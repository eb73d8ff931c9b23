from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

RetryExhaustedPolicy = Literal["raise", "continue"]


@dataclass(frozen=True)
class FitCommand:
    """Intent to fit a model for a number of epochs."""

    epochs: int = 10
    batch_size: int = 32

    # Shuffling (dataset-level fit only). seed 0 draws a fresh seed.
    shuffle: bool = False
    seed: int = 0

    # Model input the features are fed to (case-insensitive).
    input_name: str = "input"

    # Transient backend failures: each epoch is replayed from its first batch
    # up to `max_epoch_retries` times. After that, "raise" aborts the fit and
    # "continue" records the last reported values and marks the epoch failed.
    max_epoch_retries: int = 3
    on_retries_exhausted: RetryExhaustedPolicy = "raise"
