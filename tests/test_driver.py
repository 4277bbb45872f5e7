# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the MCMC schedule, initial values and the chain workers."""

import warnings

from types import SimpleNamespace

import numpy as np
import pytest

from ecostanpy.exceptions import DataMismatchError, InitializationError
from ecostanpy.model import driver
from ecostanpy.model.driver import (
    ChainTask,
    InferenceDriver,
    MCMCSchedule,
    correct_latent_inits,
    run_chain,
)
from ecostanpy.model.variants import get_model_instance


def test_schedule_defaults():
    schedule = MCMCSchedule()
    assert (schedule.nburn, schedule.niter, schedule.thin) == (100000, 100000, 100)
    assert schedule.chains == 3
    assert schedule.n_draws == 1000
    assert MCMCSchedule(niter=10, thin=3).n_draws == 4


@pytest.mark.parametrize(
    "kwargs",
    [{"nburn": 0}, {"niter": -1}, {"thin": 0}, {"chains": 0}, {"niter": 5, "thin": 10}],
)
def test_schedule_validation(kwargs):
    with pytest.raises(ValueError):
        MCMCSchedule(**kwargs)


def test_latent_inits_are_raised_above_observed_counts():
    with pytest.warns(UserWarning, match="Raised 2 of 3 initial values of N_TC"):
        corrected = correct_latent_inits(
            np.array([0, 2, 5]), np.array([3, 2, 1]), varname="N_TC"
        )
    np.testing.assert_array_equal(corrected, [4, 3, 5])
    assert corrected.dtype == np.int64

    with pytest.warns(UserWarning):
        corrected = correct_latent_inits(np.array([0, 2]), np.array([3, 2]), margin=5)
    np.testing.assert_array_equal(corrected, [8, 7])


def test_feasible_latent_inits_are_kept_silently():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        corrected = correct_latent_inits(np.array([4, 9]), np.array([3, 2]))
    np.testing.assert_array_equal(corrected, [4, 9])


def test_latent_init_errors():
    with pytest.raises(ValueError):
        correct_latent_inits(np.array([1]), np.array([0]), margin=0)
    with pytest.raises(DataMismatchError):
        correct_latent_inits(np.array([1, 2]), np.array([0]))


@pytest.fixture
def inference_driver(selected):
    model = get_model_instance("community", ("tc", "ds"))
    return InferenceDriver(
        model,
        selected.to_model_data(),
        schedule=MCMCSchedule(nburn=10, niter=10, thin=1, chains=2),
        init_retries=2,
    )


@pytest.mark.filterwarnings("ignore:Raised")
def test_chain_tasks(inference_driver):
    tasks = inference_driver.prepare_chains(seed=3, exe_file="model.exe")
    assert [task.chain_id for task in tasks] == [1, 2]
    assert tasks[0].seed != tasks[1].seed

    data = inference_driver.data
    for task in tasks:
        assert task.exe_file == "model.exe"
        assert len(task.inits) == 3
        assert task.varnames == inference_driver.model.reported_varnames
        assert task.schedule.chains == 2
        for suffix in ("TC", "DS"):
            assert (task.latent_inits[f"N_{suffix}"] >= data[f"yN_{suffix}"] + 1).all()

    # Chain tasks depend only on the seed
    again = inference_driver.prepare_chains(seed=3, exe_file="model.exe")
    for first, second in zip(tasks, again):
        assert first.seed == second.seed
        np.testing.assert_array_equal(
            first.inits[0]["alpha0_raw"], second.inits[0]["alpha0_raw"]
        )
    other = inference_driver.prepare_chains(seed=4, exe_file="model.exe")
    assert tasks[0].seed != other[0].seed


def test_driver_rejects_bad_input_before_compiling(selected):
    model = get_model_instance("single", ("tc",))
    data = selected.to_model_data(streams=("tc",))
    with pytest.raises(DataMismatchError):
        InferenceDriver(model, {k: v for k, v in data.items() if k != "yN_TC"})
    with pytest.raises(ValueError):
        InferenceDriver(model, data, init_retries=-1)
    with pytest.raises(ValueError, match="another program"):
        InferenceDriver(
            model, data, stan_model=SimpleNamespace(code=lambda: "model {}")
        )


class FakeFit:
    """Stands in for the fit of a single CmdStan chain."""

    def __init__(self, n_draws):
        self.n_draws = n_draws
        self.runset = SimpleNamespace(csv_files=["output-1.csv"])

    def stan_variable(self, varname):
        return np.full((self.n_draws, 2), 0.5)

    def method_variables(self):
        return {
            "lp__": np.zeros((self.n_draws, 1)),
            "divergent__": np.zeros((self.n_draws, 1)),
        }


class FakeCmdStanModel:
    """Stands in for a compiled model that fails a set number of times."""

    n_failures = 0
    calls = []

    def __init__(self, exe_file):
        self.exe_file = exe_file

    def sample(self, **kwargs):
        FakeCmdStanModel.calls.append(kwargs)
        if len(FakeCmdStanModel.calls) <= FakeCmdStanModel.n_failures:
            raise RuntimeError("Rejecting initial value")
        return FakeFit(kwargs["iter_sampling"] // kwargs["thin"])


@pytest.fixture
def fake_cmdstan(monkeypatch):
    monkeypatch.setattr(FakeCmdStanModel, "calls", [])
    monkeypatch.setattr(driver, "CmdStanModel", FakeCmdStanModel)
    return FakeCmdStanModel


@pytest.fixture
def task():
    return ChainTask(
        chain_id=2,
        seed=10,
        exe_file="model.exe",
        data={"NSPECIES": 2},
        inits=({"alpha0": [0.0, 0.0]}, {"alpha0": [1.0, 1.0]}, {"alpha0": [2.0, 2.0]}),
        latent_inits={},
        schedule=MCMCSchedule(nburn=5, niter=8, thin=2, chains=1),
        varnames=("alpha0",),
    )


def test_run_chain(fake_cmdstan, task):
    result = run_chain(task)
    assert result.chain_id == 2
    assert result.attempts == 1
    assert result.draws["alpha0"].shape == (4, 2)
    assert set(result.sample_stats) == {"lp", "diverging"}
    assert result.sample_stats["lp"].shape == (4,)
    assert result.csv_files == ("output-1.csv",)

    call = fake_cmdstan.calls[0]
    assert call["chains"] == 1
    assert call["chain_ids"] == 2
    assert call["seed"] == 10
    assert (call["iter_warmup"], call["iter_sampling"], call["thin"]) == (5, 8, 2)


def test_run_chain_retries_with_new_inits(fake_cmdstan, task, monkeypatch):
    monkeypatch.setattr(fake_cmdstan, "n_failures", 2)
    with pytest.warns(UserWarning, match="Chain 2 failed on attempt 1 of 3"):
        result = run_chain(task)
    assert result.attempts == 3
    assert [call["inits"] for call in fake_cmdstan.calls] == list(task.inits)
    assert [call["seed"] for call in fake_cmdstan.calls] == [10, 11, 12]


def test_run_chain_gives_up(fake_cmdstan, task, monkeypatch):
    monkeypatch.setattr(fake_cmdstan, "n_failures", 3)
    with pytest.warns(UserWarning):
        with pytest.raises(InitializationError, match="3 attempts"):
            run_chain(task)
