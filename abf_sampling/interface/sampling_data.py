import numpy as np
from dataclasses import dataclass
from typing import Protocol


@dataclass
class SamplingData:
    """The data a simulation engine hands to ABF after every integration step."""

    cvs: np.ndarray  # values of the collective variables, shape (ncv,)
    wdotp: np.ndarray  # momentum conjugate to the CVs, dot(W, p), shape (ncv,)
    step: int  # MD step number
    temp: float = None  # Temperature in Kelvin, None keeps the last value


class MDInterface(Protocol):
    def get_sampling_data(self) -> SamplingData:
        """Define this function for your MD class to provide the
        required sampling data for ABF. The engine is responsible for
        the collective variables and their conjugate momenta; ABF
        returns one bias force per CV that the engine has to distribute
        to the atoms, e.g.,

        ```
        class MD:
            # Your MD code
            ...

            def get_sampling_data(self):
                from abf_sampling.interface.sampling_data import SamplingData

                cvs   = ...
                wdotp = ...
                step  = ...
                temp  = ...

                return SamplingData(cvs, wdotp, step, temp)
        ```
        """
        ...
