import json
import numpy as np
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from .exceptions import ConfigurationError
from .units import kB_in_kcalmol

RESTRAINT_POLICIES = ("sum", "override")

# key: (type check, required)
_SCHEMA = {
    "cv_lower": ("float_list", True),
    "cv_upper": ("float_list", True),
    "cv_bins": ("int_list", True),
    "cv_periodic": ("bool_list", False),
    "restraint_lower": ("float_list", False),
    "restraint_upper": ("float_list", False),
    "restraint_spring_constants": ("float_list", False),
    "minimum_count": ("int", False),
    "timestep": ("float", True),
    "unit_conversion": ("float", False),
    "orthogonalization": ("bool", False),
    "bias_directions": ("float_matrix", False),
    "restraint_policy": ("str", False),
    "reduction_interval": ("int", False),
    "checkpoint_interval": ("int", False),
    "output_file": ("str", False),
    "checkpoint_file": ("str", False),
    "traj_file": ("opt_str", False),
    "restart_file": ("opt_str", False),
    "boltzmann_constant": ("float", False),
}


def _is_number(x) -> bool:
    return isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(
        x, (bool, np.bool_)
    )


def _is_int(x) -> bool:
    return isinstance(x, (int, np.integer)) and not isinstance(x, (bool, np.bool_))


_CHECKS = {
    "float": _is_number,
    "int": _is_int,
    "bool": lambda x: isinstance(x, (bool, np.bool_)),
    "str": lambda x: isinstance(x, str),
    "opt_str": lambda x: x is None or isinstance(x, str),
    "float_list": lambda x: isinstance(x, (list, tuple, np.ndarray))
    and all(_is_number(v) for v in x),
    "int_list": lambda x: isinstance(x, (list, tuple, np.ndarray))
    and all(_is_int(v) for v in x),
    "bool_list": lambda x: isinstance(x, (list, tuple, np.ndarray))
    and all(isinstance(v, (bool, np.bool_)) for v in x),
    "float_matrix": lambda x: isinstance(x, (list, tuple, np.ndarray))
    and all(
        isinstance(row, (list, tuple, np.ndarray)) and all(_is_number(v) for v in row)
        for row in x
    ),
}


@dataclass
class ABFConfig:
    """Validated configuration of an ABF run

    Per CV the grid is given by `cv_lower`, `cv_upper`, `cv_bins` and
    `cv_periodic`, the confining walls by `restraint_lower`,
    `restraint_upper` and `restraint_spring_constants`.
    """

    cv_lower: List[float]
    cv_upper: List[float]
    cv_bins: List[int]
    timestep: float
    cv_periodic: List[bool] = None
    restraint_lower: List[float] = None
    restraint_upper: List[float] = None
    restraint_spring_constants: List[float] = None
    minimum_count: int = 100
    unit_conversion: float = 1.0
    orthogonalization: bool = False
    bias_directions: List[List[float]] = field(default_factory=list)
    restraint_policy: str = "sum"
    reduction_interval: int = 1
    checkpoint_interval: int = 1000
    output_file: str = "abf.out"
    checkpoint_file: str = "restart_abf.json"
    traj_file: Optional[str] = "CV_traj.dat"
    restart_file: Optional[str] = None
    boltzmann_constant: float = kB_in_kcalmol

    def __post_init__(self):
        ncv = len(self.cv_bins)
        for key in ("cv_lower", "cv_upper"):
            if len(getattr(self, key)) != ncv:
                raise ConfigurationError(
                    f" >>> Fatal Error: `{key}` needs {ncv} entries, one per CV!"
                )

        if self.cv_periodic is None:
            self.cv_periodic = [False for _ in range(ncv)]
        elif len(self.cv_periodic) != ncv:
            raise ConfigurationError(
                f" >>> Fatal Error: `cv_periodic` needs {ncv} entries, one per CV!"
            )

        restraints = [self.restraint_lower, self.restraint_upper, self.restraint_spring_constants]
        if all(r is None for r in restraints):
            # no walls
            self.restraint_lower = list(self.cv_lower)
            self.restraint_upper = list(self.cv_upper)
            self.restraint_spring_constants = [0.0 for _ in range(ncv)]
        elif any(r is None for r in restraints):
            raise ConfigurationError(
                " >>> Fatal Error: Restraints need lower and upper bounds and spring constants!"
            )
        elif any(len(r) != ncv for r in restraints):
            raise ConfigurationError(
                f" >>> Fatal Error: Restraints need {ncv} entries, one per CV!"
            )

        if self.minimum_count < 0:
            raise ConfigurationError(" >>> Fatal Error: `minimum_count` has to be >= 0!")
        if self.timestep <= 0.0:
            raise ConfigurationError(" >>> Fatal Error: `timestep` has to be > 0!")
        if self.unit_conversion <= 0.0:
            raise ConfigurationError(" >>> Fatal Error: `unit_conversion` has to be > 0!")
        if self.boltzmann_constant <= 0.0:
            raise ConfigurationError(" >>> Fatal Error: `boltzmann_constant` has to be > 0!")
        if self.reduction_interval < 1:
            raise ConfigurationError(" >>> Fatal Error: `reduction_interval` has to be > 0!")
        if self.restraint_policy not in RESTRAINT_POLICIES:
            raise ConfigurationError(
                f" >>> Fatal Error: `restraint_policy` has to be one of {RESTRAINT_POLICIES}!"
            )
        for d in self.bias_directions:
            if len(d) != ncv:
                raise ConfigurationError(
                    f" >>> Fatal Error: Bias directions need {ncv} components, one per CV!"
                )

    @property
    def ncoords(self) -> int:
        return len(self.cv_bins)

    @property
    def grid_config(self) -> dict:
        return {
            "lower": list(self.cv_lower),
            "upper": list(self.cv_upper),
            "number_points": list(self.cv_bins),
            "periodic": list(self.cv_periodic),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ABFConfig":
        """validate configuration document and build config

        Raises:
            ConfigurationError: unknown or missing keys, wrong types
        """
        if not isinstance(data, dict):
            raise ConfigurationError(" >>> Fatal Error: ABF configuration has to be a mapping!")

        unknown = sorted(set(data) - set(_SCHEMA))
        if unknown:
            raise ConfigurationError(
                f" >>> Fatal Error: Unknown ABF options: {', '.join(unknown)}"
            )

        kwargs = {}
        for key, (kind, required) in _SCHEMA.items():
            if key not in data:
                if required:
                    raise ConfigurationError(f" >>> Fatal Error: Missing ABF option `{key}`!")
                continue
            value = data[key]
            if not _CHECKS[kind](value):
                raise ConfigurationError(
                    f" >>> Fatal Error: ABF option `{key}` has invalid value `{value}` (expected {kind})!"
                )
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(filename: str) -> ABFConfig:
    """read ABF configuration from JSON file"""
    try:
        with open(filename, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(
            f" >>> Fatal Error: Cannot read ABF configuration `{filename}`: {e}"
        ) from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f" >>> Fatal Error: ABF configuration `{filename}` is not valid JSON: {e}"
        ) from e
    return ABFConfig.from_dict(data)
