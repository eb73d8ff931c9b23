from __future__ import annotations

from typing import Optional

import inject

from jax_easy_fit.core.ports.compute_backend import ComputeBackendPort
from jax_easy_fit.core.ports.dataset_provider import DatasetProviderPort
from jax_easy_fit.core.ports.metrics_sink import MetricsSinkPort
from jax_easy_fit.core.ports.model_store import ModelStorePort
from jax_easy_fit.core.use_cases.encode_dataset import DatasetEncoder
from jax_easy_fit.core.use_cases.evaluate_model import EvaluateModelUseCase
from jax_easy_fit.core.use_cases.fit_model import FitModelUseCase


# pylint: disable=invalid-name
def get_dependencies_injection_config(
    *,
    backend: ComputeBackendPort,
    metrics_sink: Optional[MetricsSinkPort] = None,
    model_store: Optional[ModelStorePort] = None,
    dataset_provider: Optional[DatasetProviderPort] = None,
):
    """Return an inject binder function.

    No imports occur inside the returned function.
    """

    def configure_dependencies_injection(binder: inject.Binder) -> None:
        binder.bind(ComputeBackendPort, backend)
        if metrics_sink is not None:
            binder.bind(MetricsSinkPort, metrics_sink)
        if model_store is not None:
            binder.bind(ModelStorePort, model_store)
        if dataset_provider is not None:
            binder.bind(DatasetProviderPort, dataset_provider)

        # Use cases share one encoder so both see the same backend.
        encoder = DatasetEncoder(backend)
        binder.bind(DatasetEncoder, encoder)
        binder.bind(
            FitModelUseCase,
            FitModelUseCase(backend=backend, metrics_sink=metrics_sink, encoder=encoder),
        )
        binder.bind(
            EvaluateModelUseCase,
            EvaluateModelUseCase(backend=backend, encoder=encoder),
        )

    return configure_dependencies_injection


def configure_injections(
    *,
    backend: ComputeBackendPort,
    metrics_sink: Optional[MetricsSinkPort] = None,
    model_store: Optional[ModelStorePort] = None,
    dataset_provider: Optional[DatasetProviderPort] = None,
) -> None:
    """Configure inject with this app's runtime bindings.

    Safe to call multiple times (clears previous bindings).
    """

    config = get_dependencies_injection_config(
        backend=backend,
        metrics_sink=metrics_sink,
        model_store=model_store,
        dataset_provider=dataset_provider,
    )

    if inject.is_configured():
        inject.clear_and_configure(config)
    else:
        inject.configure(config)
