class ConfigurationError(ValueError):
    """Invalid configuration, raised before any simulation step is taken"""


class CheckpointError(ValueError):
    """Malformed or shape-incompatible checkpoint data"""


class ReductionFailure(RuntimeError):
    """A walker failed to reach the reduction barrier or sent mismatched data"""
