from .thermodynamic_integration import *

__all__ = [
    "integrate",
    "integrate_2d",
]
