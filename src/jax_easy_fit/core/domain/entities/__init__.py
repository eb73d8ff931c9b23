"""Domain entities.

Batches, model functions, fit results and metric records used by the core.
Keep filesystem/network I/O in adapters.
"""

from .base import *
from .dataset import *
from .evaluation import *
from .fit import *
from .model import *
from .optimizer import *
