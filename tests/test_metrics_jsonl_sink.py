from __future__ import annotations

import json

from jax_easy_fit.adapters.right.metrics_jsonl import CompositeMetricsSink, JsonlFileMetricsSink
from jax_easy_fit.adapters.right.metrics_stdout import StdoutMetricsSink
from jax_easy_fit.core.domain.entities.fit import FitState


def test_jsonl_metrics_sink_writes_valid_lines(tmp_path) -> None:
    p = tmp_path / "metrics.jsonl"
    sink = JsonlFileMetricsSink(path=p)

    sink.log(step=0, metrics={"event": "fit_start", "epochs": 3})
    sink.log(step=10, metrics={"epoch": 1, "train/loss": 0.5, "train/eval": 0.9})

    text = p.read_text(encoding="utf-8").strip()
    lines = [ln for ln in text.splitlines() if ln.strip()]
    assert len(lines) == 2

    rec0 = json.loads(lines[0])
    assert rec0["step"] == 0
    assert rec0["metrics"]["event"] == "fit_start"

    rec1 = json.loads(lines[1])
    assert rec1["step"] == 10
    assert "train/loss" in rec1["metrics"]


def test_jsonl_sink_writes_null_for_non_finite_values(tmp_path) -> None:
    p = tmp_path / "metrics.jsonl"
    sink = JsonlFileMetricsSink(path=p)

    sink.log(step=0, metrics={"train/loss": float("nan"), "train/lr": float("inf"), "state": FitState.COMPLETED})

    rec = json.loads(p.read_text(encoding="utf-8"))
    assert rec["metrics"] == {"train/loss": None, "train/lr": None, "state": "completed"}


def test_composite_sink_tees_and_skips_missing_sinks(tmp_path, capsys) -> None:
    p = tmp_path / "metrics.jsonl"
    sink = CompositeMetricsSink(StdoutMetricsSink(), None, JsonlFileMetricsSink(path=p))

    sink.log(step=4, metrics={"epoch": 2, "train/loss": 0.25})
    sink.log(step=4, metrics={"event": "early_stop", "epoch": 2})

    out = capsys.readouterr().out.splitlines()
    assert out[0] == "[epoch=2 step=4] epoch=2, train/loss=0.25"
    assert out[1].startswith("[step=4] event=early_stop")
    assert len(p.read_text(encoding="utf-8").splitlines()) == 2
