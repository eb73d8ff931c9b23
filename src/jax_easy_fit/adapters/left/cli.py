from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path

import inject
import typer

# Default to CPU unless explicitly overridden by the user.
# This avoids noisy CUDA plugin initialization errors on machines without CUDA libraries.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

from jax_easy_fit.adapters.left.inject_config import configure_injections
from jax_easy_fit.adapters.right.backends.jax_backend import JaxComputeBackend
from jax_easy_fit.adapters.right.data_loaders.npz_dataset import NpzDatasetProvider
from jax_easy_fit.adapters.right.metrics_jsonl import CompositeMetricsSink, JsonlFileMetricsSink
from jax_easy_fit.adapters.right.metrics_plotting import plot_fit_results, plot_metrics_from_logs
from jax_easy_fit.adapters.right.metrics_stdout import StdoutMetricsSink
from jax_easy_fit.adapters.right.model_store_filesystem import FilesystemModelStore
from jax_easy_fit.core.domain.commands.fit import FitCommand
from jax_easy_fit.core.domain.entities.base import ExampleShape
from jax_easy_fit.core.domain.entities.dataset import DatasetInfo
from jax_easy_fit.core.domain.entities.evaluation import EvaluateItem
from jax_easy_fit.core.domain.entities.model import MlpModelFns, ModelFns, RecurrentModelFns, describe_architecture
from jax_easy_fit.core.domain.entities.optimizer import OPTIMIZER_KINDS, OptimizerSpec
from jax_easy_fit.core.domain.errors.training import TrainingError
from jax_easy_fit.core.domain.utils import metrics as metric_reducers
from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort
from jax_easy_fit.core.ports.dataset_provider import DatasetProviderPort
from jax_easy_fit.core.ports.model_store import ModelStorePort
from jax_easy_fit.core.use_cases.evaluate_model import EvaluateModelUseCase
from jax_easy_fit.core.use_cases.fit_model import FitModelUseCase

app = typer.Typer(add_completion=False, no_args_is_help=True)

TASKS = ("regression", "binary", "multiclass", "multilabel")


def _per_head(values: list[str], heads: int, option: str) -> list[str]:
    if len(values) == 1:
        return values * heads
    if len(values) != heads:
        raise typer.BadParameter(f"{option} takes 1 or {heads} values, got {len(values)}")
    return values


def _build_model(info: DatasetInfo, *, model_kind: str, hidden: list[int], head_activation: list[str]) -> ModelFns:
    model_kind = model_kind.lower().strip()
    if model_kind == "auto":
        model_kind = "rnn" if info.example_shape is ExampleShape.SEQUENCE else "mlp"
    activations = tuple(_per_head(head_activation, info.head_count, "--head-activation"))

    if model_kind == "mlp":
        if info.example_shape is ExampleShape.SEQUENCE:
            raise typer.BadParameter("mlp cannot consume sequence datasets; use --model rnn")
        return MlpModelFns(
            input_shape=info.input_shape,
            output_dims=info.output_dims,
            hidden_sizes=tuple(hidden),
            head_activations=activations,
        )
    if model_kind == "rnn":
        if info.example_shape is not ExampleShape.SEQUENCE:
            raise typer.BadParameter("rnn needs a sequence dataset (ragged x arrays)")
        return RecurrentModelFns(
            input_dim=info.input_shape[0],
            output_dims=info.output_dims,
            hidden_size=hidden[0] if hidden else 16,
            head_activations=activations,
        )
    raise typer.BadParameter("model must be one of: auto, mlp, rnn")


def _stop_when_below(target: float):
    def predicate(epoch: int, loss, evaluation) -> bool:
        losses = loss if isinstance(loss, tuple) else (loss,)
        return all(value <= target for value in losses)

    return predicate


def _step_decay(every: int, factor: float):
    def rule(epoch: int, rate):
        if epoch % every:
            return rate
        if isinstance(rate, tuple):
            return tuple(r * factor for r in rate)
        return rate * factor

    return rule


@app.command()
def fit(
    npz_path: str = typer.Option(..., help="Path to .npz with x_train/y_train (or y_train_<k> per head)"),
    model_kind: str = typer.Option("auto", "--model", help="Model to use: auto | mlp | rnn"),
    hidden: list[int] = typer.Option([64], help="Repeatable hidden sizes: --hidden 64 --hidden 32"),
    head_activation: list[str] = typer.Option(["identity"], help="Output activation, once or once per head"),
    epochs: int = typer.Option(10, min=1),
    batch_size: int = typer.Option(32, min=1),
    optimizer: str = typer.Option("adam", help=f"One of: {', '.join(OPTIMIZER_KINDS)}"),
    lr: float = typer.Option(1e-3),
    weight_decay: float = typer.Option(0.0),
    loss: list[str] = typer.Option(["squared_error"], help="Loss, once or once per head"),
    evaluation: list[str] = typer.Option(["absolute_error"], "--eval", help="Evaluation function, once or once per head"),
    shuffle: bool = typer.Option(False, "--shuffle/--no-shuffle", help="Reshuffle the training set every epoch"),
    seed: int = typer.Option(0, help="0 draws a fresh seed"),
    target_loss: float = typer.Option(0.0, help="If >0, stop once every head's loss is at or below this value"),
    lr_decay_every: int = typer.Option(0, help="If >0, multiply the learning rate by --lr-decay-factor every N epochs"),
    lr_decay_factor: float = typer.Option(0.5),
    max_epoch_retries: int = typer.Option(3, min=0),
    on_retries_exhausted: str = typer.Option("raise", help="raise | continue"),
    model_out: str = typer.Option("", help="If set, save the trained parameters (safetensors) to this path"),
    log_path: str = typer.Option(
        "",
        help="If set, append metrics/events as JSONL to this path (e.g. logs/fit.jsonl)",
    ),
    plot_out: str = typer.Option("", help="If set, save a PNG of the loss/eval curves to this path"),
) -> None:
    """Fit a model on an NPZ dataset with the epoch loop."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    if on_retries_exhausted not in ("raise", "continue"):
        raise typer.BadParameter("--on-retries-exhausted must be one of: raise, continue")

    try:
        dataset = NpzDatasetProvider(path=npz_path)
        info = dataset.info
        model = _build_model(info, model_kind=model_kind, hidden=hidden, head_activation=head_activation)
        heads = info.head_count
        optimizer_spec = OptimizerSpec(kind=optimizer, learning_rate=lr, weight_decay=weight_decay)
    except TrainingError as exc:
        raise typer.BadParameter(str(exc)) from exc

    stdout_metrics = StdoutMetricsSink()
    metrics = (
        CompositeMetricsSink(stdout_metrics, JsonlFileMetricsSink(path=log_path))
        if log_path
        else stdout_metrics
    )
    configure_injections(
        backend=JaxComputeBackend(),
        metrics_sink=metrics,
        model_store=FilesystemModelStore(),
        dataset_provider=dataset,
    )

    cmd = FitCommand(
        epochs=epochs,
        batch_size=batch_size,
        shuffle=shuffle,
        seed=seed,
        input_name=model.input_names[0],
        max_epoch_retries=max_epoch_retries,
        on_retries_exhausted=on_retries_exhausted,
    )
    metrics.log(
        step=0,
        metrics={
            "event": "run_start",
            "command": "fit",
            "npz_path": npz_path,
            "architecture": describe_architecture(model),
            "optimizer": optimizer,
            "lr": lr,
            **{k: v for k, v in asdict(cmd).items() if k != "input_name"},
        },
    )

    backend = inject.instance(ComputeBackendPort)
    state = backend.initialize(model, seed=seed)
    features, labels = inject.instance(DatasetProviderPort).load("train")
    losses = _per_head(loss, heads, "--loss")
    evaluations = _per_head(evaluation, heads, "--eval")

    use_case = inject.instance(FitModelUseCase)
    result = use_case.fit_dataset(
        cmd,
        state=state,
        features=features,
        labels=labels,
        shape=info.example_shape,
        loss=losses[0] if heads == 1 else losses,
        evaluation=evaluations[0] if heads == 1 else evaluations,
        optimizer=optimizer_spec if heads == 1 else [optimizer_spec] * heads,
        learning_rate_rule=_step_decay(lr_decay_every, lr_decay_factor) if lr_decay_every > 0 else None,
        stop_predicate=_stop_when_below(target_loss) if target_loss > 0 else None,
    )

    results = result if isinstance(result, list) else [result]
    typer.echo(f"Fit {use_case.state.value} after {results[0].epoch_count} epoch(s)")
    for r in results:
        typer.echo(f"Head {r.head}: {r.summary()}")
        if r.is_advisory:
            typer.echo(f"Warning: epochs {list(r.failed_epochs)} exhausted their retries; treat as advisory")

    if model_out:
        saved = inject.instance(ModelStorePort).save(state, model_out)
        typer.echo(f"Saved model to: {saved}")
    if plot_out:
        plot_fit_results(result, out_path=plot_out, title=describe_architecture(model))
        typer.echo(f"Saved plot to: {plot_out}")


def _echo_metrics(task: str, items: Iterator[EvaluateItem], threshold: float) -> None:
    if task == "regression":
        for i, m in enumerate(metric_reducers.regression_metrics(items)):
            typer.echo(f"  output[{i}]: MAE={m.mae:.6g} RMSE={m.rmse:.6g} R2={m.determination:.6g}")
    elif task == "binary":
        m = metric_reducers.binary_classification_metrics(items, threshold=threshold)
        typer.echo(
            f"  accuracy={m.accuracy:.4f} precision={m.precision:.4f} "
            f"recall={m.recall:.4f} f1={m.f1_score:.4f}"
        )
        typer.echo(f"  TP={m.true_positive} TN={m.true_negative} FP={m.false_positive} FN={m.false_negative}")
    else:
        if task == "multiclass":
            m = metric_reducers.one_label_classification_metrics(items)
        else:
            m = metric_reducers.multi_label_classification_metrics(items, threshold=threshold)
        typer.echo(f"  accuracy={m.accuracy:.4f}")
        for c in m.classes:
            typer.echo(
                f"  class {c.index}: precision={c.precision:.4f} recall={c.recall:.4f} "
                f"f1={c.f1_score:.4f} fraction={c.fraction:.4f}"
            )


@app.command()
def evaluate(
    npz_path: str = typer.Option(..., help="Path to .npz with x_test/y_test (or x_valid/y_valid)"),
    model_in: str = typer.Option(..., help="Parameters saved by `fit --model-out`"),
    model_kind: str = typer.Option("auto", "--model", help="Model used at fit time: auto | mlp | rnn"),
    hidden: list[int] = typer.Option([64], help="Hidden sizes used at fit time"),
    head_activation: list[str] = typer.Option(["identity"], help="Output activation(s) used at fit time"),
    task: str = typer.Option("regression", help=f"Metrics to report: {' | '.join(TASKS)}"),
    threshold: float = typer.Option(0.5, help="Decision threshold for binary/multilabel tasks"),
    split: str = typer.Option("test", help="Dataset split: train | test"),
    batch_size: int = typer.Option(512, min=1),
) -> None:
    """Evaluate a saved model on an NPZ dataset split."""

    task = task.lower().strip()
    if task not in TASKS:
        raise typer.BadParameter(f"task must be one of: {', '.join(TASKS)}")
    if split not in ("train", "test"):
        raise typer.BadParameter("split must be one of: train, test")

    try:
        dataset = NpzDatasetProvider(path=npz_path)
        model = _build_model(dataset.info, model_kind=model_kind, hidden=hidden, head_activation=head_activation)
    except TrainingError as exc:
        raise typer.BadParameter(str(exc)) from exc

    configure_injections(backend=JaxComputeBackend(), model_store=FilesystemModelStore(), dataset_provider=dataset)
    store = inject.instance(ModelStorePort)
    state = store.load(model, model_in)
    features, labels = dataset.load(split)

    use_case = inject.instance(EvaluateModelUseCase)
    typer.echo(f"Evaluating split {split!r} with {describe_architecture(model)}")
    counted = 0

    # items are streamed into the reducers; multi-head models take one forward pass per head
    def head_items(head: int):
        nonlocal counted
        counted = 0
        for item in use_case.evaluate_dataset(
            state,
            features,
            labels,
            batch_size=batch_size,
            shape=dataset.info.example_shape,
            input_name=model.input_names[0],
        ):
            counted += 1
            yield item if state.head_count == 1 else item[head]

    for head in range(state.head_count):
        if state.head_count > 1:
            typer.echo(f"Head {head}:")
        _echo_metrics(task, head_items(head), threshold)
    typer.echo(f"Evaluated {counted} example(s)")


@app.command(name="plot-metrics")
def plot_metrics(
    log_path: list[str] = typer.Option(..., help="Repeatable JSONL log paths written by `fit --log-path`"),
    out_path: str = typer.Option("", help="Where to save the PNG (required unless --show)"),
    x_axis: str = typer.Option("epoch", help="step | global_step | epoch"),
    metric: list[str] = typer.Option([], help="Repeatable metric names (default: loss/eval/lr curves)"),
    group_by: str = typer.Option("suffix", help="suffix | none"),
    title: str = typer.Option(""),
    show: bool = typer.Option(False, "--show/--no-show"),
) -> None:
    """Plot metric curves from JSONL logs."""

    try:
        saved = plot_metrics_from_logs(
            log_paths=[Path(p) for p in log_path],
            out_path=out_path or None,
            show=show,
            x_axis=x_axis,
            metrics=metric or None,
            group_by=group_by,
            title=title or None,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if saved:
        typer.echo(f"Saved plot to: {saved}")


if __name__ == "__main__":
    app()
