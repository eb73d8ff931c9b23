from __future__ import annotations

from dataclasses import dataclass

from jax_easy_fit.core.domain.errors.training import ConfigurationError

OPTIMIZER_KINDS = (
    "sgd",
    "momentum_sgd",
    "adam",
    "adamw",
    "adamax",
    "adagrad",
    "adadelta",
    "rmsprop",
)


@dataclass(frozen=True)
class OptimizerSpec:
    """Backend-neutral optimizer descriptor.

    `batch_size == 0` means "unset": the training session fills it in from the
    first batch it sees. The learning rate is expressed per `batch_size`
    examples.
    """

    kind: str = "adam"
    learning_rate: float = 1e-3
    batch_size: int = 0

    # momentum applies to momentum_sgd only; rho is adadelta/rmsprop decay
    momentum: float = 0.9
    nesterov: bool = False
    b1: float = 0.9
    b2: float = 0.999
    eps: float = 1e-8
    rho: float = 0.9
    weight_decay: float = 0.0
    l2_regularization: float = 0.0
    gradient_clip_norm: float | None = None

    def __post_init__(self) -> None:
        if self.kind not in OPTIMIZER_KINDS:
            raise ConfigurationError(f"unknown optimizer {self.kind!r}; expected one of {OPTIMIZER_KINDS}")
        if self.learning_rate < 0:
            raise ConfigurationError(f"learning_rate must be >= 0, got {self.learning_rate}")
        if self.batch_size < 0:
            raise ConfigurationError(f"batch_size must be >= 0, got {self.batch_size}")
        if self.gradient_clip_norm is not None and self.gradient_clip_norm <= 0:
            raise ConfigurationError(f"gradient_clip_norm must be > 0, got {self.gradient_clip_norm}")
