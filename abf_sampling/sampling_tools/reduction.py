import threading
import numpy as np
from typing import List

from ..exceptions import ReductionFailure
from .statistics import BinStatistics


class SerialCommunicator:
    """Communicator of a simulation with a single walker"""

    rank = 0
    size = 1

    def check_shape(self, shape: tuple):
        pass

    def sum_reduce(self, array: np.ndarray) -> np.ndarray:
        return np.array(array, copy=True)


class ThreadGroup:
    """Group of walkers that run as threads of one process

    Every walker thread uses its own communicator from `communicators`.
    Reductions gather the buffers in rank order behind a barrier, rank 0
    sums them and all walkers read back the same result.

    Args:
        size: number of walkers
        timeout: seconds to wait for the other walkers at the barrier,
                 None waits forever
    """

    def __init__(self, size: int, timeout: float = None):
        if int(size) < 1:
            raise ValueError(" >>> Fatal Error: Thread group needs at least one walker!")
        self.size = int(size)
        self.timeout = timeout
        self._barrier = threading.Barrier(self.size, timeout=timeout)
        self._slots = [None for _ in range(self.size)]
        self._result = None
        self._error = None
        self.communicators = [ThreadCommunicator(self, rank) for rank in range(self.size)]

    def __getitem__(self, rank: int) -> "ThreadCommunicator":
        return self.communicators[rank]

    def __len__(self) -> int:
        return self.size

    def _wait(self):
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError as e:
            raise ReductionFailure(
                " >>> Fatal Error: Walker failed to reach the reduction barrier!"
            ) from e

    def abort(self):
        """release all walkers waiting at the barrier with a failure"""
        self._barrier.abort()

    def _exchange(self, rank: int, item) -> List[object]:
        """place `item` in slot `rank` and return all slots in rank order"""
        self._slots[rank] = item
        self._wait()
        items = list(self._slots)
        self._wait()
        return items

    def _sum_reduce(self, rank: int, array: np.ndarray) -> np.ndarray:
        buffers = self._exchange(rank, np.asarray(array))
        if rank == 0:
            self._error = None
            shapes = {b.shape for b in buffers}
            if len(shapes) != 1:
                self._error = f" >>> Fatal Error: Walkers sent buffers of different shapes {sorted(shapes)}!"
                self._result = None
            else:
                result = np.zeros_like(buffers[0])
                for b in buffers:
                    result += b
                self._result = result
        self._wait()
        error, result = self._error, self._result
        self._wait()
        if error is not None:
            raise ReductionFailure(error)
        return np.array(result, copy=True)


class ThreadCommunicator:
    """Communicator of one walker thread in a `ThreadGroup`"""

    def __init__(self, group: ThreadGroup, rank: int):
        self.group = group
        self.rank = rank
        self.size = group.size

    def check_shape(self, shape: tuple):
        shapes = self.group._exchange(self.rank, tuple(shape))
        if len(set(shapes)) != 1:
            raise ReductionFailure(
                f" >>> Fatal Error: Walkers have grids of different shapes {shapes}!"
            )

    def sum_reduce(self, array: np.ndarray) -> np.ndarray:
        return self.group._sum_reduce(self.rank, array)


class MPICommunicator:
    """Communicator for walkers that run as MPI processes

    Args:
        comm: mpi4py communicator, defaults to MPI.COMM_WORLD
    """

    def __init__(self, comm: object = None):
        from mpi4py import MPI

        self.MPI = MPI
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()

    def check_shape(self, shape: tuple):
        try:
            shapes = self.comm.allgather(tuple(shape))
        except self.MPI.Exception as e:
            raise ReductionFailure(f" >>> Fatal Error: Failed to gather grid shapes: {e}") from e
        if len(set(shapes)) != 1:
            raise ReductionFailure(
                f" >>> Fatal Error: Walkers have grids of different shapes {shapes}!"
            )

    def sum_reduce(self, array: np.ndarray) -> np.ndarray:
        send = np.ascontiguousarray(array)
        recv = np.zeros_like(send)
        try:
            self.comm.Reduce(send, recv, op=self.MPI.SUM, root=0)
            self.comm.Bcast(recv, root=0)
        except self.MPI.Exception as e:
            raise ReductionFailure(f" >>> Fatal Error: Reduction of ABF statistics failed: {e}") from e
        return recv


class ParallelReducer:
    """Synchronizes ABF statistics of all walkers

    Every `interval` steps each walker contributes the increments it
    collected since the last synchronization, the element-wise sum over all
    walkers is added to the global view of every walker. Walkers without new
    samples contribute zeros, so all of them have to call `sync`.

    Args:
        communicator: communicator of the walker group, defaults to a single walker
        interval: number of steps between synchronizations
    """

    def __init__(self, communicator: object = None, interval: int = 1):
        if int(interval) < 1:
            raise ValueError(" >>> Fatal Error: Reduction interval has to be int > 0!")
        self.comm = SerialCommunicator() if communicator is None else communicator
        self.interval = int(interval)
        self.nsyncs = 0

    @property
    def rank(self) -> int:
        return self.comm.rank

    @property
    def size(self) -> int:
        return self.comm.size

    def due(self, step: int) -> bool:
        return step % self.interval == 0

    def check(self, statistics: BinStatistics):
        """verify that all walkers use the same binning"""
        self.comm.check_shape(statistics.force_sums.shape)

    def sync(self, statistics: BinStatistics):
        """merge pending increments of all walkers into the global statistics"""
        hist = self.comm.sum_reduce(statistics.pending_counts)
        force = self.comm.sum_reduce(statistics.pending_force_sums)
        try:
            statistics.merge(hist, force)
        except ValueError as e:
            raise ReductionFailure(str(e)) from e
        self.nsyncs += 1
