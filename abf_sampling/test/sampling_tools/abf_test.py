import json
import logging
import threading
import numpy as np
import pytest as pytest
from abf_sampling.sampling_tools.abf import ABF
from abf_sampling.sampling_tools.enhanced_sampling import Phase
from abf_sampling.sampling_tools.reduction import ThreadGroup
from abf_sampling.interface.sampling_data import SamplingData
from abf_sampling.exceptions import CheckpointError, ConfigurationError


def config_1d(**kwargs):
    config = {
        "cv_lower": [0.0],
        "cv_upper": [10.0],
        "cv_bins": [10],
        "timestep": 0.5,
        "unit_conversion": 2.0,
        "minimum_count": 5,
        "restraint_lower": [-1.0],
        "restraint_upper": [11.0],
        "restraint_spring_constants": [10.0],
        "checkpoint_interval": 0,
        "traj_file": None,
    }
    config.update(kwargs)
    return config


def config_periodic(**kwargs):
    config = {
        "cv_lower": [-180.0],
        "cv_upper": [180.0],
        "cv_bins": [36],
        "cv_periodic": [True],
        "timestep": 1.0,
        "minimum_count": 1,
        "restraint_lower": [-90.0],
        "restraint_upper": [90.0],
        "restraint_spring_constants": [1.0],
        "checkpoint_interval": 0,
        "traj_file": None,
    }
    config.update(kwargs)
    return config


def config_2d(**kwargs):
    config = {
        "cv_lower": [0.0, 0.0],
        "cv_upper": [10.0, 10.0],
        "cv_bins": [10, 10],
        "timestep": 1.0,
        "minimum_count": 1,
        "checkpoint_interval": 0,
        "traj_file": None,
    }
    config.update(kwargs)
    return config


class ConstantForce:
    """integrates the conjugate momentum of a CV held at `xi` under a constant force"""

    def __init__(self, abf, xi, force):
        self.abf = abf
        self.xi = np.asarray(xi, dtype=float)
        self.force = np.asarray(force, dtype=float)
        self.wdotp = np.zeros_like(self.xi)
        self.step = 0

    def get_sampling_data(self):
        return SamplingData(self.xi, self.wdotp, self.step, temp=300.0)

    def run(self, nsteps):
        for _ in range(nsteps):
            self.wdotp = self.wdotp + self.abf.timestep * (self.force + self.abf.bias) / self.abf.unitconv
            self.step += 1
            self.abf.post_integration(self.get_sampling_data())
        return self.abf.bias


def test_lifecycle(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    abf = ABF(config_1d(), verbose=False)
    assert abf.phase == Phase.INITIALIZING
    with pytest.raises(RuntimeError):
        abf.post_integration(SamplingData([2.5], [0.0], 1))
    with pytest.raises(RuntimeError):
        abf.post_simulation()

    abf.pre_simulation(SamplingData([2.5], [0.0], 0))
    assert abf.phase == Phase.RUNNING
    with pytest.raises(RuntimeError):
        abf.pre_simulation()
    with pytest.raises(RuntimeError):
        abf.restart("restart_abf.json")

    abf.post_integration(SamplingData([2.5], [0.0], 1))
    abf.post_simulation()
    assert abf.phase == Phase.FINALIZING
    with pytest.raises(RuntimeError):
        abf.post_integration(SamplingData([2.5], [0.0], 2))
    with pytest.raises(RuntimeError):
        abf.post_simulation()


def test_bias_converges_to_constant_force():
    abf = ABF(config_1d(), verbose=False)
    md = ConstantForce(abf, [2.5], [1.5])
    abf.pre_simulation(md.get_sampling_data())
    for n in range(1, 11):
        bias = md.run(1)
        assert bias == pytest.approx([-1.5 * min(n, 5) / 5])
    assert abf.stats.hit_count((2,)) == 10
    assert abf.stats.mean_force((2,)) == pytest.approx([1.5])


def test_first_step_without_momenta_is_not_sampled():
    abf = ABF(config_1d(), verbose=False)
    abf.pre_simulation()
    abf.post_integration(SamplingData([2.5], [0.0], 1))
    assert abf.stats.hit_count((2,)) == 0
    abf.post_integration(SamplingData([2.5], [0.0], 2))
    assert abf.stats.hit_count((2,)) == 1


def test_data_from_md_interface():
    abf = ABF(config_1d(), verbose=False)
    md = ConstantForce(abf, [2.5], [1.5])
    abf.the_md = md
    abf.pre_simulation()
    md.wdotp = md.wdotp + abf.timestep * md.force / abf.unitconv
    bias = abf.post_integration()
    assert abf.stats.hit_count((2,)) == 1
    assert bias == pytest.approx([-0.3])
    assert abf.beta == pytest.approx(1.0 / (abf.kB * 300.0))


def test_missing_data_raises():
    abf = ABF(config_1d(), verbose=False)
    abf.pre_simulation()
    with pytest.raises(ValueError):
        abf.post_integration()


def test_wrong_number_of_cvs_raises():
    abf = ABF(config_1d(), verbose=False)
    abf.pre_simulation()
    with pytest.raises(IndexError):
        abf.post_integration(SamplingData([1.0, 2.0], [0.0, 0.0], 1))
    with pytest.raises(IndexError):
        abf.calc_bias_force([1.0, 2.0])


def test_walls_outside_of_grid():
    abf = ABF(config_1d(), verbose=False)
    assert abf.calc_bias_force([11.5]) == pytest.approx([-5.0])
    assert abf.calc_bias_force([-1.5]) == pytest.approx([5.0])
    assert abf.calc_bias_force([10.5]) == pytest.approx([0.0])


def test_sentinel_samples_do_not_bias():
    abf = ABF(config_1d(minimum_count=1), verbose=False)
    abf.stats.record_sample([10.5], [3.0])
    abf.stats.flush()
    assert abf.stats.hit_count((10,)) == 1
    assert abf.calc_bias_force([10.5]) == pytest.approx([0.0])


def test_walls_inside_of_grid_raise():
    with pytest.raises(ConfigurationError):
        ABF(config_1d(restraint_lower=[1.0]), verbose=False)


def test_restraint_policy_sum():
    abf = ABF(config_periodic(), verbose=False)
    abf.stats.record_sample([100.0], [2.0])
    abf.stats.record_sample([0.0], [2.0])
    abf.stats.flush()
    assert abf.calc_bias_force([100.0]) == pytest.approx([-12.0])
    assert abf.calc_bias_force([0.0]) == pytest.approx([-2.0])


def test_restraint_policy_override():
    abf = ABF(config_periodic(restraint_policy="override"), verbose=False)
    abf.stats.record_sample([100.0], [2.0])
    abf.stats.record_sample([0.0], [2.0])
    abf.stats.flush()
    assert abf.calc_bias_force([100.0]) == pytest.approx([-10.0])
    assert abf.calc_bias_force([0.0]) == pytest.approx([-2.0])


def test_orthogonalization():
    abf = ABF(config_2d(orthogonalization=True, bias_directions=[[1.0, 0.0]]), verbose=False)
    abf.stats.record_sample([2.5, 2.5], [2.0, 3.0])
    abf.stats.flush()
    bias = abf.calc_bias_force([2.5, 2.5])
    assert bias == pytest.approx([0.0, -3.0])

    abf.add_bias_direction([1.0, 1.0])
    bias = abf.calc_bias_force([2.5, 2.5])
    assert bias == pytest.approx([0.0, 0.0], abs=1.0e-12)


def test_orthogonalization_is_orthogonal_to_all_directions():
    directions = [[1.0, 2.0, 0.5], [0.0, 0.0, 0.0]]
    config = {
        "cv_lower": [0.0, 0.0, 0.0],
        "cv_upper": [1.0, 1.0, 1.0],
        "cv_bins": [2, 2, 2],
        "timestep": 1.0,
        "minimum_count": 1,
        "orthogonalization": True,
        "bias_directions": directions,
        "traj_file": None,
    }
    abf = ABF(config, verbose=False)
    abf.stats.record_sample([0.25, 0.25, 0.25], [1.0, -2.0, 3.0])
    abf.stats.flush()
    bias = abf.calc_bias_force([0.25, 0.25, 0.25])
    assert np.isfinite(bias).all()
    assert abs(np.dot(bias, directions[0])) < 1.0e-10


def test_without_orthogonalization():
    abf = ABF(config_2d(bias_directions=[[1.0, 0.0]]), verbose=False)
    abf.stats.record_sample([2.5, 2.5], [2.0, 3.0])
    abf.stats.flush()
    assert abf.calc_bias_force([2.5, 2.5]) == pytest.approx([-2.0, -3.0])


def test_bias_direction_of_wrong_length_raises():
    abf = ABF(config_2d(), verbose=False)
    with pytest.raises(ValueError):
        abf.add_bias_direction([1.0])


def test_pmf_1d():
    abf = ABF(config_1d(minimum_count=1), verbose=False)
    for x in abf.grid.centers()[0]:
        abf.stats.record_sample([x], [-1.0])
    abf.stats.flush()
    pmf = abf.get_pmf()
    assert pmf == pytest.approx(np.arange(10, dtype=float))
    assert abf.rho is None


def test_pmf_1d_with_temperature():
    abf = ABF(config_1d(minimum_count=1), verbose=False)
    abf.pre_simulation(SamplingData([2.5], [0.0], 0, temp=300.0))
    for x in abf.grid.centers()[0]:
        abf.stats.record_sample([x], [-1.0])
    abf.stats.flush()
    pmf = abf.get_pmf()
    assert np.nanmin(pmf) == pytest.approx(0.0)
    assert abf.rho.sum() * abf.grid.spacing[0] == pytest.approx(1.0)


def test_pmf_2d_shape():
    abf = ABF(config_2d(), verbose=False)
    abf.stats.record_sample([2.5, 2.5], [1.0, 1.0])
    abf.stats.flush()
    pmf = abf.get_pmf()
    assert pmf.shape == (10, 10)
    assert pmf.min() == pytest.approx(0.0)


def test_output_files(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    abf = ABF(config_1d(checkpoint_interval=2, traj_file="CV_traj.dat"), verbose=False)
    md = ConstantForce(abf, [2.5], [1.5])
    abf.pre_simulation(md.get_sampling_data())

    md.run(1)
    assert not (tmp_path / "abf.out").exists()
    md.run(1)
    assert (tmp_path / "abf.out").exists()
    assert (tmp_path / "restart_abf.json").exists()
    assert len((tmp_path / "CV_traj.dat").read_text().splitlines()) == 3
    assert len((tmp_path / "abf.out").read_text().splitlines()) == 11

    md.run(3)
    abf.post_simulation()
    assert len((tmp_path / "CV_traj.dat").read_text().splitlines()) == 6


def test_restart(tmp_path):
    filename = str(tmp_path / "restart_abf.json")
    abf = ABF(config_1d(), verbose=False)
    md = ConstantForce(abf, [2.5], [1.5])
    abf.pre_simulation(md.get_sampling_data())
    md.run(7)
    abf.write_restart(filename)

    new = ABF(config_1d(restart_file=filename), verbose=False)
    new.pre_simulation()
    assert new.iteration == 7
    assert np.array_equal(new.stats.counts, abf.stats.counts)
    assert np.array_equal(new.stats.force_sums, abf.stats.force_sums)
    assert new.wdotp_old == pytest.approx(abf.wdotp_old)
    assert new.calc_bias_force([2.5]) == pytest.approx(abf.bias)

    # continues sampling from the stored momenta
    new.post_integration(SamplingData([2.5], md.wdotp, 8))
    assert new.stats.hit_count((2,)) == 8


def test_restart_is_idempotent(tmp_path):
    first = str(tmp_path / "first.json")
    second = str(tmp_path / "second.json")
    abf = ABF(config_2d(bias_directions=[[1.0, 0.0]]), verbose=False)
    abf.stats.record_sample([2.5, 3.5], [0.1, 0.2])
    abf.stats.record_sample([12.0, 3.5], [0.3, -0.7])
    abf.stats.flush()
    abf.write_restart(first)

    new = ABF(config_2d(), verbose=False)
    new.restart(first)
    new.write_restart(second)
    with open(first) as f1, open(second) as f2:
        assert f1.read() == f2.read()


def test_restart_from_other_grid_raises(tmp_path):
    filename = str(tmp_path / "restart_abf.json")
    ABF(config_1d(), verbose=False).write_restart(filename)
    new = ABF(config_1d(cv_bins=[20], restart_file=filename), verbose=False)
    with pytest.raises(CheckpointError):
        new.pre_simulation()


def test_restart_with_other_parameters_warns(tmp_path, caplog):
    filename = str(tmp_path / "restart_abf.json")
    ABF(config_1d(), verbose=False).write_restart(filename)
    new = ABF(config_1d(minimum_count=50), verbose=False)
    with caplog.at_level(logging.WARNING):
        new.restart(filename)
    assert "minimum_count" in caplog.text


def test_missing_restart_file_raises(tmp_path):
    abf = ABF(config_1d(restart_file=str(tmp_path / "missing.json")), verbose=False)
    with pytest.raises(CheckpointError):
        abf.pre_simulation()


def test_walkers_share_statistics(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    nwalkers = 2
    group = ThreadGroup(nwalkers, timeout=10.0)
    walkers = [None for _ in range(nwalkers)]
    errors = []

    def run(rank):
        try:
            abf = ABF(config_1d(reduction_interval=2), communicator=group[rank], verbose=False)
            md = ConstantForce(abf, [2.5 + 2.0 * rank], [1.5])
            abf.pre_simulation(md.get_sampling_data())
            md.run(4)
            abf.post_simulation()
            walkers[rank] = abf
        except Exception as e:
            errors.append(e)
            group.abort()

    threads = [threading.Thread(target=run, args=(rank,)) for rank in range(nwalkers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)

    assert errors == []
    assert walkers[0].rank == 0
    assert walkers[1].rank == 1
    for abf in walkers:
        assert abf.stats.counts.sum() == 8
        assert abf.stats.hit_count((2,)) == 4
        assert abf.stats.hit_count((4,)) == 4
        assert abf.reducer.nsyncs == 3
    assert np.array_equal(walkers[0].stats.force_sums, walkers[1].stats.force_sums)

    # only the first walker writes results
    assert (tmp_path / "restart_abf.json").exists()
    assert (tmp_path / "abf.out").exists()


def run_walker_group(nwalkers, target):
    """run target(rank, communicator) for every walker in its own thread"""
    group = ThreadGroup(nwalkers, timeout=10.0)
    results = [None for _ in range(nwalkers)]
    errors = []

    def work(rank):
        try:
            results[rank] = target(rank, group[rank])
        except Exception as e:
            errors.append(e)
            group.abort()

    threads = [threading.Thread(target=work, args=(rank,)) for rank in range(nwalkers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)
    return results, errors


def test_restart_of_walkers_keeps_shared_statistics(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    # constant momenta, no force acts on the walkers
    momenta = [0.0, 100.0]

    def first_run(rank, comm):
        abf = ABF(config_1d(), communicator=comm, verbose=False)
        abf.pre_simulation(SamplingData([2.5], [momenta[rank]], 0))
        for step in range(1, 3):
            abf.post_integration(SamplingData([2.5], [momenta[rank]], step))
        abf.post_simulation()
        return abf

    walkers, errors = run_walker_group(2, first_run)
    assert errors == []
    assert walkers[0].stats.counts.sum() == 4
    assert (walkers[0].stats.force_sums == 0.0).all()

    def second_run(rank, comm):
        abf = ABF(config_1d(restart_file="restart_abf.json"), communicator=comm, verbose=False)
        abf.pre_simulation()
        abf.post_integration(SamplingData([2.5], [momenta[rank]], 3))
        return abf

    walkers, errors = run_walker_group(2, second_run)
    assert errors == []
    assert walkers[0].iteration == 3
    assert walkers[1].iteration == 3
    for abf in walkers:
        # only the first walker continues its backward difference
        assert abf.stats.hit_count((2,)) == 5
        assert (abf.stats.force_sums == 0.0).all()


def test_walkers_take_fresh_momenta_after_restart(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    momenta = [0.0, 100.0]
    ABF(config_1d(), verbose=False).write_restart("restart_abf.json")

    def run(rank, comm):
        abf = ABF(config_1d(restart_file="restart_abf.json"), communicator=comm, verbose=False)
        abf.pre_simulation(SamplingData([2.5], [momenta[rank]], 0))
        abf.post_integration(SamplingData([2.5], [momenta[rank]], 1))
        return abf

    walkers, errors = run_walker_group(2, run)
    assert errors == []
    for abf in walkers:
        assert abf.stats.hit_count((2,)) == 2
        assert (abf.stats.force_sums == 0.0).all()


@pytest.mark.parametrize(
    "key, value",
    [
        ("wdotp_old", ["abc"]),
        ("F_old", [None]),
        ("bias_directions", [["x"]]),
        ("restraint_upper", [True]),
    ],
)
def test_restart_from_corrupted_checkpoint_changes_nothing(tmp_path, key, value):
    filename = tmp_path / "restart_abf.json"
    abf = ABF(config_1d(), verbose=False)
    abf.stats.record_sample([2.5], [1.0])
    abf.stats.flush()
    abf.iteration = 4
    state = abf.get_state()
    state[key] = value
    filename.write_text(json.dumps(state))

    new = ABF(config_1d(), verbose=False)
    with pytest.raises(CheckpointError):
        new.restart(str(filename))
    assert new.stats.counts.sum() == 0
    assert new.iteration == 0
    assert new.bias_directions == []


def test_fresh_momenta_after_restart_reset_previous_bias(tmp_path):
    filename = str(tmp_path / "restart_abf.json")
    abf = ABF(config_1d(), verbose=False)
    md = ConstantForce(abf, [2.5], [1.5])
    abf.pre_simulation(md.get_sampling_data())
    md.run(7)
    abf.write_restart(filename)
    assert abf.F_old == pytest.approx([-1.5])

    new = ABF(config_1d(restart_file=filename), verbose=False)
    new.pre_simulation(SamplingData([2.5], [3.0], 0))
    assert new.F_old == pytest.approx([0.0])

    # unbiased step of the new run under the same constant force
    new.post_integration(SamplingData([2.5], [3.0 + 0.5 * 1.5 / 2.0], 1))
    assert new.stats.hit_count((2,)) == 8
    assert new.stats.mean_force((2,)) == pytest.approx([1.5])


def test_walls_closer_than_one_bin_raise():
    config = config_1d(
        restraint_lower=[-0.1],
        restraint_upper=[10.1],
        restraint_spring_constants=[1.0],
    )
    with pytest.raises(ConfigurationError):
        ABF(config, verbose=False)


def test_orthogonalization_without_directions_warns(caplog):
    abf = ABF(config_2d(orthogonalization=True), verbose=False)
    with caplog.at_level(logging.WARNING):
        abf.pre_simulation()
    assert "no bias directions" in caplog.text


def test_orthogonalization_with_directions_does_not_warn(caplog):
    abf = ABF(config_2d(orthogonalization=True, bias_directions=[[1.0, 0.0]]), verbose=False)
    with caplog.at_level(logging.WARNING):
        abf.pre_simulation()
    assert caplog.text == ""
