import logging
import numpy as np
from typing import Union, Sequence

from ..config import ABFConfig, load_config
from ..exceptions import CheckpointError
from ..interface.sampling_data import MDInterface, SamplingData
from ..processing_tools.thermodynamic_integration import integrate, integrate_2d
from .enhanced_sampling import EnhancedSampling, Phase
from .grid import Grid
from .statistics import BinStatistics
from .harmonic_constraint import RestraintSpec, HarmonicWalls
from .reduction import ParallelReducer
from .checkpoint import read_checkpoint, write_checkpoint
from .utils import gram_schmidt


class ABF(EnhancedSampling):
    """Adaptive Biasing Force Method

       see: Darve et. al., J. Chem. Phys. (2008); https://doi.org/10.1063/1.2829861

    The generalized force along the CVs is obtained from the time derivative
    of the conjugate momentum dot(W, p) supplied by the MD engine. Its
    running sum and the number of samples are accumulated per bin and
    shared among all walkers. The bias force cancels the mean force,
    bins with less than `minimum_count` samples are biased with
    force_sum/minimum_count only.

    Outside of the grid the CVs are pushed back by harmonic walls.

    Args:
        config: ABFConfig, configuration dict or name of JSON configuration file
        md: Object of the MD Interface
        communicator: communicator of the walker group (see `sampling_tools.reduction`),
                      defaults to a single walker
        verbose: print verbose information
    """

    def __init__(
        self,
        config: Union[ABFConfig, dict, str],
        md: MDInterface = None,
        communicator: object = None,
        verbose: bool = True,
    ):
        if isinstance(config, str):
            config = load_config(config)
        elif isinstance(config, dict):
            config = ABFConfig.from_dict(config)
        self.config = config

        super().__init__(Grid.from_config(config.grid_config), md=md, verbose=verbose)

        self.stats = BinStatistics(self.grid)
        self.restraints = [
            RestraintSpec(lo, up, k)
            for lo, up, k in zip(
                config.restraint_lower,
                config.restraint_upper,
                config.restraint_spring_constants,
            )
        ]
        self.walls = HarmonicWalls.from_grid(self.restraints, self.grid)
        self.reducer = ParallelReducer(communicator, interval=config.reduction_interval)

        self.min_count = int(config.minimum_count)
        self.timestep = float(config.timestep)
        self.unitconv = float(config.unit_conversion)
        self.orthogonalization = bool(config.orthogonalization)
        self.restraint_policy = config.restraint_policy
        self.bias_directions = [np.asarray(d, dtype=float) for d in config.bias_directions]
        self.kB = float(config.boltzmann_constant)
        self.beta = None

        # state of the run
        self.iteration = 0
        self.wdotp_old = np.zeros(self.ncoords)
        self.F_old = np.zeros(self.ncoords)
        self._has_wdotp_old = False
        self.bias = np.zeros(self.ncoords)
        self.pmf = None
        self.rho = None

        # trajectories between outputs
        self.time_traj = []
        self.traj = []
        self.bias_traj = []

        if self.verbose:
            for i in range(self.ncoords):
                print(f"\n Initialize CV{i} as collective variable:")
                print(f"\t Minimum{i}:\t{self.grid.lower[i]}")
                print(f"\t Maximum{i}:\t{self.grid.upper[i]}")
                print(f"\t Bin width{i}:\t{self.grid.spacing[i]}")
                print(f"\t Periodic{i}:\t{self.grid.periodic[i]}")
                if self.restraints[i].enabled:
                    print(
                        f"\t Walls{i}:\t[{self.restraints[i].lower}, {self.restraints[i].upper}], k = {self.restraints[i].spring_constant}"
                    )
            print("\t----------------------------------------------")
            print(f"\t Total number of bins:\t\t{int(np.prod(self.grid.num_points))}\n")

    @property
    def rank(self) -> int:
        return self.reducer.rank

    def add_bias_direction(self, direction: Sequence[float]):
        """register a previously biased direction in CV space for orthogonalization"""
        direction = np.asarray(direction, dtype=float).ravel()
        if len(direction) != self.ncoords:
            raise ValueError(
                f" >>> Fatal Error: Bias direction needs {self.ncoords} components!"
            )
        self.bias_directions.append(direction)

    def pre_simulation(self, data: SamplingData = None):
        """prepare run, restore restart file and take first momenta

        Args:
            data: sampling data of the initial configuration, taken from the
                  MD interface if omitted and available
        """
        self._require_phase("pre_simulation", Phase.INITIALIZING)
        self.reducer.check(self.stats)

        if self.config.restart_file:
            self.restart(self.config.restart_file)

        if data is None and self.the_md is not None:
            data = self.the_md.get_sampling_data()
        if data is not None:
            _, wdotp = self._check_cvs(data.cvs, data.wdotp)
            self.wdotp_old = wdotp
            self._has_wdotp_old = True
            # no bias was applied before the first step of this run
            self.F_old = np.zeros(self.ncoords)
            self._update_beta(data.temp)

        if self.orthogonalization and not self.bias_directions:
            logging.warning(
                " >>> Warning: Orthogonalization is enabled, but no bias directions are registered"
            )

        if self.verbose:
            print(" >>> INFO: ABF Parameters:")
            print("\t ---------------------------------------------")
            print(f"\t Minimum count:\t{self.min_count}")
            print(f"\t Timestep:\t{self.timestep}")
            print(f"\t Unit conversion:\t{self.unitconv}")
            print(f"\t Orthogonalization:\t{self.orthogonalization}")
            print(f"\t Restraint policy:\t{self.restraint_policy}")
            print(f"\t Walkers:\t{self.reducer.size}")
            print(f"\t Reduction interval:\t{self.reducer.interval}")
            print("\t ---------------------------------------------")

        self.phase = Phase.RUNNING

    def post_integration(self, data: SamplingData = None) -> np.ndarray:
        """Apply ABF after an integration step

        Args:
            data: sampling data of the current step, taken from the MD
                  interface if omitted

        Returns:
            bias_force: bias force along every CV
        """
        self._require_phase("post_integration", Phase.RUNNING)
        data = self._get_sampling_data(data)
        xi, wdotp = self._check_cvs(data.cvs, data.wdotp)

        self.iteration += 1
        self._update_beta(data.temp)

        # backward difference of momenta, the bias of the last step is removed
        if self._has_wdotp_old:
            force_sample = (
                self.unitconv * (wdotp - self.wdotp_old) / self.timestep - self.F_old
            )
            self.stats.record_sample(xi, force_sample)
        self.wdotp_old = wdotp
        self._has_wdotp_old = True

        interval = self.config.checkpoint_interval
        write_output = interval > 0 and self.iteration % interval == 0
        if self.reducer.due(self.iteration) or write_output:
            self.reducer.sync(self.stats)

        self.bias = self.calc_bias_force(xi)
        self.F_old = np.copy(self.bias)

        self.time_traj.append(self.iteration * self.timestep)
        self.traj.append(xi)
        self.bias_traj.append(np.copy(self.bias))

        if write_output:
            self.write_traj()
            self._write_results()

        return self.bias

    def post_simulation(self):
        """final synchronization of all walkers, write results and restart file"""
        self._require_phase("post_simulation", Phase.RUNNING)
        self.phase = Phase.FINALIZING
        self.reducer.sync(self.stats)
        self.write_traj()
        self._write_results()

    def calc_bias_force(self, xi: Sequence[float]) -> np.ndarray:
        """bias force at CV value xi from the synchronized statistics

        Args:
            xi: current value of collective variables

        Returns:
            bias_force: force along every CV
        """
        (xi,) = self._check_cvs(xi)
        bink = self.grid.get_indices(xi)

        bias_force = np.zeros(self.ncoords)
        if self.grid.is_interior(bink):
            bias_force = -self.stats.mean_force(bink, self.min_count)
            if self.orthogonalization and self.ncoords > 1 and self.bias_directions:
                bias_force = gram_schmidt(bias_force, self.bias_directions)

        if self.restraint_policy == "override":
            bias_force[self.walls.active(xi)] = 0.0
        return bias_force + self.walls.forces(xi)

    def _update_beta(self, temp: float):
        if temp is not None and temp > 0.0:
            self.beta = 1.0 / (self.kB * temp)

    def get_pmf(self, method: str = "trapezoid") -> np.ndarray:
        """free energy from the mean force on the grid

        Args:
            method: integration rule for 1D CVs ('trapezoid' or 'rectangle')

        Returns:
            pmf: free energy on the interior bins, None for more than two CVs
        """
        grad = -self.stats.interior_mean_force()
        dx = self.grid.spacing

        if self.ncoords == 1:
            if self.beta is not None:
                self.pmf, self.rho = integrate(grad[0], dx[0], RT=1.0 / self.beta, method=method)
            else:
                self.pmf = integrate(grad[0], dx[0], method=method)
            self.pmf -= np.nanmin(self.pmf)
        elif self.ncoords == 2:
            self.pmf = integrate_2d(grad[0], grad[1], dx[0], dx[1], periodic=self.grid.periodic)
        else:
            self.pmf = None
            if self.verbose:
                print(" >>> Info: On-the-fly integration only available for 1D and 2D coordinates")
        return self.pmf

    def _write_results(self):
        """output and restart file, written by the first walker only"""
        if self.rank != 0:
            return
        self.get_pmf()
        self.write_output_file(self.config.output_file)
        self.write_restart(self.config.checkpoint_file)

    def write_output_file(self, filename: str = "abf.out"):
        """write histogram, mean force and free energy on the grid"""
        output = {"hist": self.stats.interior_counts()}
        mean_force = self.stats.interior_mean_force()
        for i in range(self.ncoords):
            output[f"mean force {i}"] = mean_force[i]
        if self.pmf is not None:
            output["free energy"] = self.pmf
        self.write_output(output, filename=filename)

    def get_state(self) -> dict:
        """checkpoint of statistics, run state and configuration"""
        return {
            "type": "ABF",
            "grid": self.grid.to_dict(with_data=False),
            "N": self.stats.counts.ravel().tolist(),
            "F": self.stats.force_sums.ravel().tolist(),
            "iteration": int(self.iteration),
            "restraint_lower": [r.lower for r in self.restraints],
            "restraint_upper": [r.upper for r in self.restraints],
            "restraint_spring_constants": [r.spring_constant for r in self.restraints],
            "restraint_policy": self.restraint_policy,
            "minimum_count": self.min_count,
            "timestep": self.timestep,
            "unit_conversion": self.unitconv,
            "orthogonalization": self.orthogonalization,
            "bias_directions": [d.tolist() for d in self.bias_directions],
            "reduction_interval": self.reducer.interval,
            "checkpoint_interval": int(self.config.checkpoint_interval),
            "filename": self.config.output_file,
            "wdotp_old": self.wdotp_old.tolist(),
            "F_old": self.F_old.tolist(),
        }

    def write_restart(self, filename: str = "restart_abf.json"):
        """write restart file

        Args:
            filename: name of restart file
        """
        write_checkpoint(filename, self.get_state())

    def restart(self, filename: str = "restart_abf.json"):
        """restart from restart file

        Args:
            filename: name of restart file
        """
        self._require_phase("restart", Phase.INITIALIZING)
        state = read_checkpoint(filename)

        grid = Grid.from_dict(state["grid"])
        if not grid.same_shape(self.grid):
            raise CheckpointError(
                f" >>> Fatal Error: Grid of restart file `{filename}` does not match the grid of this run!"
            )
        for key, value in (
            ("minimum_count", self.min_count),
            ("timestep", self.timestep),
            ("unit_conversion", self.unitconv),
        ):
            if state[key] != value:
                logging.warning(
                    f" >>> Warning: `{key}` of restart file ({state[key]}) differs from this run ({value})"
                )

        wdotp_old = np.asarray(state["wdotp_old"], dtype=float)
        F_old = np.asarray(state["F_old"], dtype=float)
        bias_directions = [np.asarray(d, dtype=float) for d in state["bias_directions"]]

        # nothing is changed before the histogram passed validation
        self.stats.set_histogram(state["N"], state["F"])
        self.iteration = state["iteration"]
        self.bias_directions = bias_directions

        # momenta of the checkpoint belong to the first walker, all others
        # start their backward differences from scratch
        if self.rank == 0:
            self.wdotp_old = wdotp_old
            self.F_old = F_old
            self._has_wdotp_old = self.iteration > 0
        else:
            self.wdotp_old = np.zeros(self.ncoords)
            self.F_old = np.zeros(self.ncoords)
            self._has_wdotp_old = False

        if self.verbose:
            print(f" >>> Info: ABF restarted from `{filename}`!")

    def write_traj(self):
        """append trajectory since last output to trajectory file"""
        if not self.config.traj_file or not self.time_traj:
            return
        filename = self.config.traj_file
        if self.reducer.size > 1:
            filename = f"{filename}.{self.rank}"

        traj = np.asarray(self.traj)
        bias = np.asarray(self.bias_traj)
        data = {}
        for i in range(self.ncoords):
            data[f"Xi{i}"] = traj[:, i]
        for i in range(self.ncoords):
            data[f"bias{i}"] = bias[:, i]
        self._write_traj(self.time_traj, data, filename=filename)

        # reset trajectories to save memory
        self.time_traj = []
        self.traj = []
        self.bias_traj = []
