
from .npz_dataset import NpzDatasetProvider

__all__ = [
	"NpzDatasetProvider",
]
