from .config import ABFConfig, load_config
from .exceptions import ConfigurationError, CheckpointError, ReductionFailure
from .sampling_tools import ABF, Grid, BinStatistics, ParallelReducer

__version__ = "1.0.0"
