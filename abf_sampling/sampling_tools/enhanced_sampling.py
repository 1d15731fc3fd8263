#!/usr/bin/env python
import os
import numpy as np
from enum import Enum
from abc import ABC, abstractmethod

from ..interface.sampling_data import MDInterface, SamplingData
from .grid import Grid


class Phase(Enum):
    """Lifecycle of a sampling method"""

    INITIALIZING = "initializing"
    RUNNING = "running"
    FINALIZING = "finalizing"


class EnhancedSampling(ABC):
    """Abstract class for grid based sampling algorithms

    The simulation engine drives a method through three hooks:
    `pre_simulation` once before the first step, `post_integration` after
    every integration step and `post_simulation` once at the end. The
    current `phase` guards against calls out of order.

    Args:
        grid: grid over CV space
        md: Object of the MD Interface, source of sampling data if hooks
            are called without data
        verbose: print verbose information
    """

    def __init__(
        self,
        grid: Grid,
        md: MDInterface = None,
        verbose: bool = True,
    ):
        self.the_md = md
        self.grid = grid
        self.ncoords = grid.dimension
        self.verbose = verbose
        self.phase = Phase.INITIALIZING

    @abstractmethod
    def pre_simulation(self, data: SamplingData = None):
        pass

    @abstractmethod
    def post_integration(self, data: SamplingData = None) -> np.ndarray:
        pass

    @abstractmethod
    def post_simulation(self):
        pass

    @abstractmethod
    def get_pmf(self):
        pass

    @abstractmethod
    def write_restart(self):
        pass

    @abstractmethod
    def restart(self):
        pass

    @abstractmethod
    def write_traj(self):
        pass

    def _require_phase(self, hook: str, *phases: Phase):
        if self.phase not in phases:
            raise RuntimeError(
                f" >>> Fatal Error: `{hook}` cannot be called in phase `{self.phase.value}`!"
            )

    def _get_sampling_data(self, data: SamplingData = None) -> SamplingData:
        """sampling data of current step, taken from the MD interface if not given"""
        if data is not None:
            return data
        if self.the_md is None:
            raise ValueError(
                " >>> Fatal Error: No sampling data given and no MD interface attached!"
            )
        return self.the_md.get_sampling_data()

    def _check_cvs(self, *arrays) -> tuple:
        """convert per CV arrays and check their length"""
        out = []
        for a in arrays:
            a = np.asarray(a, dtype=float).ravel()
            if len(a) != self.ncoords:
                raise IndexError(
                    f" >>> Fatal Error: Got {len(a)} values for {self.ncoords} collective variables!"
                )
            out.append(a)
        return tuple(out)

    def write_output(self, data: dict, filename: str = "free_energy.dat"):
        """write results on the grid to output file

        Args:
            data: results to write, arrays with the shape of the grid interior
            filename: name of output file
        """
        centers = self.grid.centers()

        # head of data columns
        with open(filename, "w") as fout:
            for i in range(self.ncoords):
                fout.write("%14s\t" % "CV{dim}".format(dim=i))
            for kw in data.keys():
                fout.write("%14s\t" % kw)
            fout.write("\n")

            # write data to columns
            for idx in self.grid.interior_indices():
                for d, i in enumerate(idx):
                    fout.write("%14.6f\t" % centers[d][i])
                for dat in data.values():
                    fout.write("%14.6f\t" % np.asarray(dat)[idx])
                fout.write("\n")

    def _write_traj(self, steps: list, data: dict, filename: str = "CV_traj.dat"):
        """append buffered trajectory to file, header is written to new files

        Args:
            steps: time of buffered frames
            data: per column list of buffered values
            filename: name of trajectory file
        """
        new_file = not os.path.isfile(filename)
        with open(filename, "a") as traj_out:
            if new_file:
                traj_out.write("%14s\t" % "time")
                for kw in data.keys():
                    traj_out.write("%14s\t" % kw)
                traj_out.write("\n")
            for n, t in enumerate(steps):
                traj_out.write("%14.6f\t" % t)
                for val in data.values():
                    traj_out.write("%14.6f\t" % val[n])
                traj_out.write("\n")
