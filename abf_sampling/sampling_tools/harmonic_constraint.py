import numpy as np
from dataclasses import dataclass
from typing import List, Sequence

from ..exceptions import ConfigurationError
from .grid import Grid
from .utils import diff


@dataclass
class RestraintSpec:
    """Harmonic wall of one collective variable

    Outside of [lower, upper] the CV is pushed back by -k*(xi - bound),
    a spring constant of 0 disables the wall.
    """

    lower: float
    upper: float
    spring_constant: float = 0.0

    def __post_init__(self):
        self.lower = float(self.lower)
        self.upper = float(self.upper)
        self.spring_constant = float(self.spring_constant)
        if self.spring_constant < 0.0:
            raise ConfigurationError(
                " >>> Fatal Error: Spring constant of restraint has to be >= 0!"
            )
        if self.lower >= self.upper:
            raise ConfigurationError(
                f" >>> Fatal Error: Restraint bounds [{self.lower}, {self.upper}] are inverted!"
            )

    @property
    def enabled(self) -> bool:
        return self.spring_constant > 0.0


class HarmonicWalls:
    """Harmonic walls that confine collective variables to the sampled region

    Args:
        restraints: one RestraintSpec per CV
        periodicity: per CV None or [lower, upper] of the periodic range,
                     distances of periodic CVs use the minimum image
    """

    def __init__(
        self,
        restraints: Sequence[RestraintSpec],
        periodicity: List[list] = None,
    ):
        self.restraints = list(restraints)
        self.ncoords = len(self.restraints)
        if periodicity is None:
            periodicity = [None for _ in range(self.ncoords)]
        if len(periodicity) != self.ncoords:
            raise ConfigurationError(
                " >>> Fatal Error: Periodicity has to be given for every restrained CV!"
            )
        self.periodicity = periodicity

    @classmethod
    def from_grid(cls, restraints: Sequence[RestraintSpec], grid: Grid) -> "HarmonicWalls":
        """walls for the CVs of `grid`, validated against the grid bounds"""
        periodicity = [
            [lo, up] if p else None
            for lo, up, p in zip(grid.lower, grid.upper, grid.periodic)
        ]
        walls = cls(restraints, periodicity)
        walls.validate(grid)
        return walls

    def validate(self, grid: Grid):
        """check that walls lie at least one bin width outside of the grid

        Raises:
            ConfigurationError: wall inside of the grid bounds or closer than one bin
        """
        if self.ncoords != grid.dimension:
            raise ConfigurationError(
                f" >>> Fatal Error: Got {self.ncoords} restraints for {grid.dimension} CVs!"
            )
        for i, (res, lo, up, dx, p) in enumerate(
            zip(self.restraints, grid.lower, grid.upper, grid.spacing, grid.periodic)
        ):
            if not res.enabled or p:
                continue
            if res.lower > lo or res.upper < up:
                raise ConfigurationError(
                    f" >>> Fatal Error: Restraint [{res.lower}, {res.upper}] of CV{i} lies inside the grid [{lo}, {up}]!"
                )
            if res.lower > lo - dx or res.upper < up + dx:
                raise ConfigurationError(
                    f" >>> Fatal Error: Restraint [{res.lower}, {res.upper}] of CV{i} has to lie at least one bin width ({dx}) outside of the grid [{lo}, {up}]!"
                )

    def _distances(self, xi: Sequence[float]) -> np.ndarray:
        """signed distance of xi beyond the walls, 0 inside"""
        xi = np.asarray(xi, dtype=float)
        if len(xi) != self.ncoords:
            raise IndexError(
                f" >>> Fatal Error: Got {len(xi)} CVs for {self.ncoords} restraints!"
            )
        d = np.zeros(self.ncoords)
        for i, res in enumerate(self.restraints):
            if not res.enabled:
                continue
            if self.periodicity[i]:
                # distances to both walls, the closer image decides
                dl = diff(xi[i], res.lower, self.periodicity[i])
                du = diff(xi[i], res.upper, self.periodicity[i])
                if dl < 0.0 and abs(dl) <= abs(du):
                    d[i] = dl
                elif du > 0.0 and abs(du) < abs(dl):
                    d[i] = du
            elif xi[i] < res.lower:
                d[i] = xi[i] - res.lower
            elif xi[i] > res.upper:
                d[i] = xi[i] - res.upper
        return d

    def active(self, xi: Sequence[float]) -> np.ndarray:
        """mask of CVs that are pushed back by a wall"""
        return self._distances(xi) != 0.0

    def forces(self, xi: Sequence[float]) -> np.ndarray:
        """confinement force along every CV"""
        k = np.array([res.spring_constant for res in self.restraints])
        return -k * self._distances(xi)

    def energy(self, xi: Sequence[float]) -> float:
        """confinement energy"""
        k = np.array([res.spring_constant for res in self.restraints])
        d = self._distances(xi)
        return float(0.5 * np.sum(k * d * d))
