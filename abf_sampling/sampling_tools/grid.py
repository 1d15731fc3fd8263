import itertools
import numpy as np
from typing import Sequence, Tuple, Iterator, Union

from ..exceptions import ConfigurationError, CheckpointError
from .utils import correct_periodicity


class Grid:
    """Generic N-dimensional grid that discretizes collective variables

    Every dimension is split into `num_points` intervals of width
    spacing = (upper - lower) / num_points. Bin `n` is the half-open interval
    [lower + n*spacing, lower + (n+1)*spacing), its center lies at
    lower + (n+0.5)*spacing. Bins are indexed from 0 to num_points-1.

    Non-periodic dimensions carry an underflow bin (index -1) for all values
    below `lower` and an overflow bin (index num_points) for all values at or
    above `upper`. In periodic dimensions values are wrapped back into range.

    The stored element type is given by a numpy `dtype` and an
    `element_shape`, e.g. `element_shape=(ncv,)` stores a vector per bin.
    All bins, including under- and overflow bins, live in one contiguous
    array.

    Args:
        num_points: number of bins per dimension
        lower: lower edges of the grid
        upper: upper edges of the grid
        periodic: periodicity per dimension, defaults to non-periodic
        dtype: numpy dtype of stored elements
        element_shape: shape of the element stored per bin
    """

    def __init__(
        self,
        num_points: Sequence[int],
        lower: Sequence[float],
        upper: Sequence[float],
        periodic: Sequence[bool] = None,
        dtype: object = float,
        element_shape: Tuple[int, ...] = (),
    ):
        if periodic is None:
            periodic = [False for _ in range(len(num_points))]

        lengths = {len(num_points), len(lower), len(upper), len(periodic)}
        if len(lengths) != 1:
            raise ConfigurationError(
                " >>> Fatal Error: Number of grid points, lower and upper edges and periodicity must be given for every dimension!"
            )
        if len(num_points) == 0:
            raise ConfigurationError(" >>> Fatal Error: Grid needs at least one dimension!")

        for n in num_points:
            try:
                valid = not isinstance(n, (bool, np.bool_)) and int(n) == n and n > 0
            except (TypeError, ValueError):
                valid = False
            if not valid:
                raise ConfigurationError(
                    f" >>> Fatal Error: Number of grid points has to be a positive integer, got `{n}`!"
                )

        self._num_points = np.asarray(num_points, dtype=int)
        self._lower = np.asarray(lower, dtype=float)
        self._upper = np.asarray(upper, dtype=float)
        self._periodic = np.asarray(periodic, dtype=bool)

        if not (np.isfinite(self._lower).all() and np.isfinite(self._upper).all()):
            raise ConfigurationError(" >>> Fatal Error: Grid edges have to be finite!")
        if (self._lower >= self._upper).any():
            raise ConfigurationError(
                " >>> Fatal Error: Lower grid edges have to be smaller than upper edges!"
            )

        self._spacing = (self._upper - self._lower) / self._num_points

        # periodic dimensions have no under- and overflow bins
        self._offset = np.where(self._periodic, 0, 1)
        self._extents = tuple(int(n) for n in self._num_points + 2 * self._offset)
        self._element_shape = tuple(int(n) for n in element_shape)
        self._data = np.zeros(self._extents + self._element_shape, dtype=dtype)

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "Grid":
        """build grid from configuration mapping with keys
        `lower`, `upper`, `number_points` and optionally `periodic`
        """
        missing = [key for key in ("lower", "upper", "number_points") if key not in config]
        if missing:
            raise ConfigurationError(
                f" >>> Fatal Error: Grid definition misses {', '.join(missing)}!"
            )
        return cls(
            config["number_points"],
            config["lower"],
            config["upper"],
            periodic=config.get("periodic"),
            **kwargs,
        )

    @property
    def dimension(self) -> int:
        return len(self._num_points)

    @property
    def num_points(self) -> np.ndarray:
        return self._num_points.copy()

    @property
    def lower(self) -> np.ndarray:
        return self._lower.copy()

    @property
    def upper(self) -> np.ndarray:
        return self._upper.copy()

    @property
    def periodic(self) -> np.ndarray:
        return self._periodic.copy()

    @property
    def spacing(self) -> np.ndarray:
        return self._spacing.copy()

    @property
    def shape(self) -> Tuple[int, ...]:
        """extents of storage including under- and overflow bins"""
        return self._extents

    @property
    def element_shape(self) -> Tuple[int, ...]:
        return self._element_shape

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    @property
    def size(self) -> int:
        """number of storage slots"""
        return int(np.prod(self._extents))

    @property
    def data(self) -> np.ndarray:
        """storage array of shape `shape + element_shape` (writable view)"""
        return self._data

    @property
    def interior(self) -> np.ndarray:
        """view of the storage without under- and overflow bins"""
        index = tuple(
            slice(o, o + n) for o, n in zip(self._offset, self._num_points)
        )
        return self._data[index]

    def same_shape(self, other: "Grid") -> bool:
        """True if `other` discretizes the same CV space"""
        return (
            self.dimension == other.dimension
            and np.array_equal(self._num_points, other._num_points)
            and np.array_equal(self._lower, other._lower)
            and np.array_equal(self._upper, other._upper)
            and np.array_equal(self._periodic, other._periodic)
        )

    def get_indices(self, x: Sequence[float]) -> Tuple[int, ...]:
        """get grid indices for point x

        Args:
            x: point in CV space, one value per dimension

        Returns:
            indices: bin index per dimension, -1 and num_points denote the
                     under- and overflow bins of non-periodic dimensions
        """
        x = np.asarray(x, dtype=float).ravel()
        if len(x) != self.dimension:
            raise IndexError(
                f" >>> Fatal Error: Point of dimension {len(x)} does not match grid of dimension {self.dimension}!"
            )
        if not np.isfinite(x).all():
            raise ValueError(f" >>> Fatal Error: Cannot assign non-finite point {x} to grid!")

        indices = []
        for d in range(self.dimension):
            n = int(self._num_points[d])
            if self._periodic[d]:
                xd = correct_periodicity(x[d], [self._lower[d], self._upper[d]])
                idx = int(np.floor((xd - self._lower[d]) / self._spacing[d]))
                idx = min(max(idx, 0), n - 1)
            elif x[d] < self._lower[d]:
                idx = -1
            elif x[d] >= self._upper[d]:
                idx = n
            else:
                idx = int(np.floor((x[d] - self._lower[d]) / self._spacing[d]))
                # rounding may push points just below `upper` out of range
                idx = min(max(idx, 0), n - 1)
            indices.append(idx)
        return tuple(indices)

    def storage_index(self, indices: Sequence[int]) -> Tuple[int, ...]:
        """map grid indices to indices of the storage array"""
        if len(indices) != self.dimension:
            raise IndexError(
                f" >>> Fatal Error: Got {len(indices)} indices for grid of dimension {self.dimension}!"
            )
        storage = []
        for d, idx in enumerate(indices):
            n = int(self._num_points[d])
            if int(idx) != idx or idx < -1 or idx > n:
                raise IndexError(
                    f" >>> Fatal Error: Index {idx} out of range [-1, {n}] in dimension {d}!"
                )
            idx = int(idx)
            if self._periodic[d]:
                storage.append(idx % n)
            else:
                storage.append(idx + 1)
        return tuple(storage)

    def flat_index(self, indices: Sequence[int]) -> int:
        """linear offset of bin `indices` in the storage"""
        return int(np.ravel_multi_index(self.storage_index(indices), self._extents))

    def at(self, indices: Sequence[int]) -> Union[np.ndarray, object]:
        """element at grid indices, vector elements are returned as writable views"""
        return self._data[self.storage_index(indices)]

    def __getitem__(self, indices: Sequence[int]):
        return self.at(indices)

    def __setitem__(self, indices: Sequence[int], value):
        self._data[self.storage_index(indices)] = value

    def at_point(self, x: Sequence[float]):
        """element of the bin that contains point x"""
        return self.at(self.get_indices(x))

    def set_point(self, x: Sequence[float], value):
        self[self.get_indices(x)] = value

    def is_interior(self, indices: Sequence[int]) -> bool:
        """False for under- and overflow bins"""
        return all(0 <= idx < n for idx, n in zip(indices, self._num_points))

    def center(self, indices: Sequence[int]) -> np.ndarray:
        """nominal position of bin `indices`"""
        return self._lower + (np.asarray(indices, dtype=float) + 0.5) * self._spacing

    def centers(self) -> list:
        """bin centers of interior bins for every dimension"""
        return [
            self._lower[d] + (np.arange(self._num_points[d]) + 0.5) * self._spacing[d]
            for d in range(self.dimension)
        ]

    def interior_indices(self) -> Iterator[Tuple[int, ...]]:
        """all interior bins in storage order"""
        return itertools.product(*[range(int(n)) for n in self._num_points])

    def zeros_like(self, dtype: object = None, element_shape: Tuple[int, ...] = None) -> "Grid":
        """empty grid over the same CV space"""
        return Grid(
            self._num_points,
            self._lower,
            self._upper,
            periodic=self._periodic,
            dtype=self.dtype if dtype is None else dtype,
            element_shape=self._element_shape if element_shape is None else element_shape,
        )

    def to_dict(self, with_data: bool = True) -> dict:
        """serialize grid to a JSON compatible dictionary"""
        out = {
            "number_points": [int(n) for n in self._num_points],
            "lower": [float(x) for x in self._lower],
            "upper": [float(x) for x in self._upper],
            "periodic": [bool(p) for p in self._periodic],
        }
        if with_data:
            out["dtype"] = self.dtype.str
            out["element_shape"] = list(self._element_shape)
            out["data"] = self._data.ravel().tolist()
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Grid":
        """restore grid written by `to_dict`"""
        try:
            grid = cls.from_config(
                data,
                dtype=np.dtype(data.get("dtype", "<f8")),
                element_shape=tuple(data.get("element_shape", ())),
            )
        except (TypeError, ValueError) as e:
            raise CheckpointError(f" >>> Fatal Error: Invalid grid definition: {e}") from e

        if "data" in data:
            values = np.asarray(data["data"], dtype=grid.dtype)
            if values.size != grid._data.size:
                raise CheckpointError(
                    f" >>> Fatal Error: Grid data has {values.size} entries, expected {grid._data.size}!"
                )
            grid._data[...] = values.reshape(grid._data.shape)
        return grid
