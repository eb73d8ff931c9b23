from __future__ import annotations


class TrainingError(Exception):
    """Base class for every error raised by the orchestration core."""


class ConfigurationError(TrainingError, ValueError):
    """Structural mismatch detected before any batch is processed."""


class LengthMismatchError(ConfigurationError):
    def __init__(self, what: str, *, expected: int, actual: int) -> None:
        super().__init__(f"{what}: expected {expected} items, got {actual}")
        self.expected = expected
        self.actual = actual


class ShapeError(TrainingError, ValueError):
    """A dataset row or evaluation item whose dimensions disagree."""


class EmptyInputError(TrainingError, ValueError):
    """A metric reducer was given an empty sequence."""


class TransientTrainingFailure(TrainingError):
    """An epoch kept failing inside the backend after every retry."""

    def __init__(self, *, epoch: int, attempts: int, message: str) -> None:
        super().__init__(f"epoch {epoch} failed after {attempts} attempt(s): {message}")
        self.epoch = epoch
        self.attempts = attempts
