from .sampling_data import *

__all__ = [
    "SamplingData",
    "MDInterface",
]
