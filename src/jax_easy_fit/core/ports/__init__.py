from .compute_backend import ComputeBackendPort, TrainerSessionPort
from .dataset_provider import DatasetProviderPort
from .metrics_sink import MetricsSinkPort
from .model_store import ModelStorePort

__all__ = [
	"ComputeBackendPort",
	"DatasetProviderPort",
	"MetricsSinkPort",
	"ModelStorePort",
	"TrainerSessionPort",
]
