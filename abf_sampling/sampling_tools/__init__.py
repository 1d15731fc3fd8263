from .grid import *
from .statistics import *
from .reduction import *
from .harmonic_constraint import *
from .enhanced_sampling import *
from .abf import *
from .checkpoint import *
from .utils import *

__all__ = [
    "Grid",
    "BinStatistics",
    "ParallelReducer",
    "SerialCommunicator",
    "ThreadGroup",
    "ThreadCommunicator",
    "MPICommunicator",
    "RestraintSpec",
    "HarmonicWalls",
    "EnhancedSampling",
    "Phase",
    "ABF",
    "read_checkpoint",
    "write_checkpoint",
    "gram_schmidt",
]
