from __future__ import annotations

from typing import Any

from jax_easy_fit.core.ports.metrics_sink import MetricsSinkPort


def _fmt(value: Any) -> str:
    return f"{value:.6g}" if isinstance(value, float) else str(value)


class StdoutMetricsSink(MetricsSinkPort):
    def log(self, *, step: int, metrics: dict[str, Any]) -> None:
        items = ", ".join(f"{k}={_fmt(v)}" for k, v in metrics.items())
        if "event" in metrics:
            print(f"[step={step}] {items}")
        else:
            print(f"[epoch={metrics.get('epoch', '?')} step={step}] {items}")
