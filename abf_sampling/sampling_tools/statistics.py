import numpy as np
from typing import Sequence, Tuple

from ..exceptions import CheckpointError
from .grid import Grid


class BinStatistics:
    """Per-bin accumulators of the ABF mean force

    Hit counts and running sums of the generalized force are stored on grids
    that share the binning of the CV grid, including under- and overflow
    bins. Two views are kept:

    * the global view (`histogram`, `force`), identical on all walkers after
      every synchronization,
    * the local buffer of increments collected by this walker since the
      last synchronization.

    Args:
        grid: grid over CV space, only its binning is used
        ncv: number of force components per bin, defaults to grid dimension
    """

    def __init__(self, grid: Grid, ncv: int = None):
        self.ncv = grid.dimension if ncv is None else int(ncv)
        self.histogram = grid.zeros_like(dtype=np.int64, element_shape=())
        self.force = grid.zeros_like(dtype=np.float64, element_shape=(self.ncv,))
        self._local_hist = np.zeros_like(self.histogram.data)
        self._local_force = np.zeros_like(self.force.data)

    @property
    def grid(self) -> Grid:
        return self.histogram

    @property
    def counts(self) -> np.ndarray:
        """global hit counts, storage layout of the grid"""
        return self.histogram.data

    @property
    def force_sums(self) -> np.ndarray:
        """global force sums, storage layout of the grid"""
        return self.force.data

    @property
    def pending_counts(self) -> np.ndarray:
        return self._local_hist

    @property
    def pending_force_sums(self) -> np.ndarray:
        return self._local_force

    @property
    def n_pending(self) -> int:
        """number of local samples not yet merged into the global view"""
        return int(self._local_hist.sum())

    def record_sample(self, x: Sequence[float], force: Sequence[float]) -> Tuple[int, ...]:
        """add force sample taken at CV value x to the local buffer

        Returns:
            indices: bin the sample was recorded in
        """
        indices = self.histogram.get_indices(x)
        self.record_sample_at(indices, force)
        return indices

    def record_sample_at(self, indices: Sequence[int], force: Sequence[float]):
        """add force sample to bin `indices` of the local buffer"""
        force = np.asarray(force, dtype=float).ravel()
        if len(force) != self.ncv:
            raise IndexError(
                f" >>> Fatal Error: Force sample of length {len(force)} does not match {self.ncv} CVs!"
            )
        idx = self.histogram.storage_index(indices)
        self._local_hist[idx] += 1
        self._local_force[idx] += force

    def merge(self, hist: np.ndarray, force: np.ndarray):
        """add reduced increments of all walkers to the global view and
        clear the local buffer
        """
        hist = np.asarray(hist)
        force = np.asarray(force)
        if hist.shape != self.counts.shape or force.shape != self.force_sums.shape:
            raise ValueError(
                f" >>> Fatal Error: Reduced statistics of shape {hist.shape}/{force.shape} do not match local shape {self.counts.shape}/{self.force_sums.shape}!"
            )
        self.histogram.data[...] += hist.astype(np.int64)
        self.force.data[...] += force
        self._local_hist[...] = 0
        self._local_force[...] = 0.0

    def flush(self):
        """merge local buffer without other walkers"""
        self.merge(self._local_hist.copy(), self._local_force.copy())

    def hit_count(self, indices: Sequence[int]) -> int:
        return int(self.histogram.at(indices))

    def force_sum(self, indices: Sequence[int]) -> np.ndarray:
        return np.array(self.force.at(indices))

    def mean_force(self, indices: Sequence[int], min_count: int = 1) -> np.ndarray:
        """force estimate of a bin, force_sum / max(count, min_count)

        Bins with fewer than `min_count` samples are damped by count/min_count.
        """
        return self.force_sum(indices) / max(self.hit_count(indices), int(min_count), 1)

    def interior_counts(self) -> np.ndarray:
        return np.array(self.histogram.interior)

    def interior_mean_force(self, min_count: int = 1) -> np.ndarray:
        """mean force of interior bins, shape (ncv, *num_points)"""
        denom = np.maximum(self.histogram.interior, max(int(min_count), 1))
        mean = self.force.interior / denom[..., np.newaxis]
        return np.moveaxis(mean, -1, 0)

    def set_histogram(self, hist: np.ndarray, force: np.ndarray):
        """overwrite global view, e.g. from restart data"""
        hist = np.asarray(hist)
        force = np.asarray(force, dtype=float)
        if hist.size != self.counts.size or force.size != self.force_sums.size:
            raise CheckpointError(
                f" >>> Fatal Error: Histogram with {hist.size} bins and {force.size} forces does not fit grid with {self.counts.size} bins and {self.force_sums.size} forces!"
            )
        if (hist < 0).any():
            raise CheckpointError(" >>> Fatal Error: Negative hit counts in histogram!")
        if np.any(hist.astype(np.int64) != hist):
            raise CheckpointError(" >>> Fatal Error: Non-integer hit counts in histogram!")
        self.histogram.data[...] = hist.astype(np.int64).reshape(self.counts.shape)
        self.force.data[...] = force.reshape(self.force_sums.shape)
