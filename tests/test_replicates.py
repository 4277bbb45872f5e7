# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the truth tables and the replicate harness."""

import os.path

import numpy as np
import pandas as pd
import pytest

from ecostanpy import replicates
from ecostanpy.exceptions import ReplicateError
from ecostanpy.model.driver import MCMCSchedule
from ecostanpy.model.results import SampleResults
from ecostanpy.model.results.hmc import SUMMARY_COLUMNS
from ecostanpy.replicates import (
    FAILURE_COLUMNS,
    ReplicateConfig,
    run_replicates,
    truth_table,
)
from ecostanpy.simulation.detection import overall_detection_probability

# Stands in for a compiled executable that is never used
COMPILED = object()


def test_single_species_truth(selected):
    truth = truth_table(selected, "single", ("tc",))
    assert list(truth.columns) == ["param", "truth", "sp", "tot_tc"]
    assert not truth["param"].duplicated().any()
    assert not truth["param"].str.startswith(("mu_", "sd_")).any()
    assert not truth["param"].str.contains("_ds").any()

    # One row per species and parameter
    info = selected.sp_info.set_index("sp")
    params = truth.set_index("param")
    for sp in info.index:
        assert params.loc[f"alpha0[{sp}]", "truth"] == info.loc[sp, "alpha0"]
        assert params.loc[f"gamma0_c[{sp}]", "sp"] == sp
        assert params.loc[f"alpha1[{sp}]", "tot_tc"] == info.loc[sp, "tot_tc"]
        assert params.loc[f"pie_sp_c[{sp}]", "truth"] == pytest.approx(
            overall_detection_probability(
                np.exp(info.loc[sp, "gamma0_c"]), selected.bins
            )
        )

    # One row per count record
    latent = truth.loc[truth["param"].str.startswith("N_TC[")]
    assert len(latent) == len(selected.counts["tc"])
    np.testing.assert_array_equal(latent["truth"], selected.latent_truth("tc"))
    np.testing.assert_array_equal(
        latent["sp"].to_numpy(dtype=np.int64), selected.counts["tc"]["sp"]
    )


def test_community_truth(selected, hyper):
    truth = truth_table(selected, "community", ("tc", "ds"))
    assert list(truth.columns) == ["param", "truth", "sp", "tot_tc", "tot_ds"]
    community = truth.loc[truth["sp"].isna()].set_index("param")["truth"]
    assert community.to_dict() == {
        "mu_alpha0": hyper.mu_alpha0,
        "sd_alpha0": hyper.sigma_alpha0,
        "mu_alpha1": hyper.mu_alpha1,
        "sd_alpha1": hyper.sigma_alpha1,
        "mu_gamma0_c": hyper.mu_gamma0_c,
        "sd_gamma0_c": hyper.sigma_gamma0_c,
        "mu_gamma0_ds": hyper.mu_gamma0_ds,
        "sd_gamma0_ds": hyper.sigma_gamma0_ds,
    }
    assert truth["param"].str.startswith("N_DS[").sum() == len(selected.counts["ds"])

    # Only the hyperparameters of the streams fit
    truth = truth_table(selected, "community", ("ds",))
    assert "mu_gamma0_ds" in truth["param"].tolist()
    assert "mu_gamma0_c" not in truth["param"].tolist()


def test_region_truth(selected):
    truth = truth_table(
        selected,
        "single",
        ("tc",),
        region_effects=np.array([0.2, -0.1]),
        sigma_region=0.3,
    ).set_index("param")
    assert truth.loc["eps_region[2]", "truth"] == -0.1
    assert truth.loc["sd_region", "truth"] == 0.3
    assert pd.isna(truth.loc["sd_region", "sp"])


def test_config_validation(tmp_path):
    for kwargs in (
        {"variant": "multi"},
        {"streams": ("tc", "aerial")},
        {"rule": "abundant"},
        {"on_error": "ignore"},
    ):
        with pytest.raises(ValueError):
            ReplicateConfig(**kwargs)

    config = ReplicateConfig(output_dir=str(tmp_path), prefix="icm_single")
    assert config.results_path(7) == os.path.join(
        str(tmp_path), "icm_single_simrep_0007_results.csv"
    )
    assert config.failure_path(12).endswith("icm_single_simrep_0012_failed.csv")
    assert config.draws_path(1).endswith("icm_single_simrep_0001_draws.nc")


def test_invalid_replicate_ranges(tmp_path):
    config = ReplicateConfig(output_dir=str(tmp_path))
    with pytest.raises(ValueError):
        run_replicates(config, min_simrep=3, max_simrep=2, stan_model=COMPILED)
    with pytest.raises(ValueError):
        run_replicates(
            ReplicateConfig(output_dir=str(tmp_path / "missing")), stan_model=COMPILED
        )


@pytest.fixture
def study(tmp_path, small_design, hyper):
    return ReplicateConfig(
        hyper=hyper,
        design=small_design,
        variant="community",
        schedule=MCMCSchedule(nburn=10, niter=10, thin=1, chains=2),
        output_dir=str(tmp_path),
    )


@pytest.fixture
def fake_driver(monkeypatch, make_chains):
    """Replace sampling with well-mixed draws of the right shapes."""

    class FakeDriver:
        seeds = []

        def __init__(self, model, data, **kwargs):
            self.model = model
            self.data = data
            self.kwargs = kwargs

        def run(self, seed=None, progress=False):
            FakeDriver.seeds.append(seed)
            chains = make_chains(self.model.reported_varnames, self.data, seed=seed)
            return SampleResults(model=self.model, chains=chains)

    monkeypatch.setattr(replicates, "InferenceDriver", FakeDriver)
    return FakeDriver


def test_failed_replicate_is_skipped_with_marker(study):
    config = ReplicateConfig(**{**vars(study), "rule": "common", "n_species": 100})
    with pytest.warns(UserWarning, match="Replicate 1 skipped"):
        log = run_replicates(config, seed=1, stan_model=COMPILED)
    assert log.n_completed == 0
    assert log.n_failed == 1
    assert log.failures[1].startswith("SelectionError")

    marker = pd.read_csv(config.failure_path(1))
    assert list(marker.columns) == FAILURE_COLUMNS
    assert marker.loc[0, "simrep"] == 1
    assert marker.loc[0, "error_type"] == "SelectionError"
    assert not os.path.exists(config.results_path(1))


def test_failed_replicate_aborts(study):
    config = ReplicateConfig(
        **{**vars(study), "rule": "common", "n_species": 100, "on_error": "abort"}
    )
    with pytest.raises(ReplicateError) as error:
        run_replicates(
            config, min_simrep=2, max_simrep=3, seed=1, stan_model=COMPILED
        )
    assert error.value.simrep == 2
    assert not os.path.exists(config.failure_path(2))


def test_replicates_write_joined_tables(study, fake_driver):
    log = run_replicates(
        study, min_simrep=1, max_simrep=2, seed=5, stan_model=COMPILED
    )
    assert log.n_completed == 2
    assert log.n_failed == 0
    assert set(log.elapsed) == {1, 2}

    table = pd.read_csv(log.results[2])
    assert os.path.basename(log.results[2]) == "icm_simrep_0002_results.csv"
    assert list(table.columns) == [
        "param",
        "truth",
        "sp",
        "tot_tc",
        "tot_ds",
        *SUMMARY_COLUMNS[1:],
        "simrep",
    ]
    assert (table["simrep"] == 2).all()

    # Every reported quantity has a known truth
    assert table["truth"].notna().all()
    assert table["param"].str.startswith("mu_alpha0").sum() == 1
    assert table["param"].str.startswith("N_TC[").sum() > 0


def test_replicates_do_not_depend_on_the_range(study, fake_driver, tmp_path):
    first = run_replicates(
        study, min_simrep=1, max_simrep=3, seed=5, stan_model=COMPILED
    )
    truth = pd.read_csv(first.results[3])[["param", "truth"]]

    rerun = ReplicateConfig(**{**vars(study), "output_dir": str(tmp_path / "rerun")})
    os.mkdir(rerun.output_dir)
    second = run_replicates(
        rerun, min_simrep=3, max_simrep=3, seed=5, stan_model=COMPILED
    )
    pd.testing.assert_frame_equal(
        truth, pd.read_csv(second.results[3])[["param", "truth"]]
    )
    assert fake_driver.seeds[2] == fake_driver.seeds[3]


def test_replicate_draws_are_saved(study, fake_driver):
    config = ReplicateConfig(**{**vars(study), "save_draws": True})
    run_replicates(config, seed=5, stan_model=COMPILED)
    assert SampleResults.from_disk(config.draws_path(1)).n_chains == 2


def test_replicate_diagnostics_are_reported(study, fake_driver, capsys):
    run_replicates(study, seed=5, stan_model=COMPILED)
    assert "Diagnostic tests results' summaries:" in capsys.readouterr().out


def test_unexpected_errors_leave_a_marker(study, fake_driver, monkeypatch):
    def fail(self, seed=None, progress=False):
        raise KeyError("N_TC")

    monkeypatch.setattr(fake_driver, "run", fail)
    with pytest.warns(UserWarning, match="Replicate 1 skipped"):
        log = run_replicates(study, seed=5, stan_model=COMPILED)
    assert log.failures[1].startswith("KeyError")
    assert pd.read_csv(study.failure_path(1)).loc[0, "error_type"] == "KeyError"

    config = ReplicateConfig(**{**vars(study), "on_error": "abort"})
    with pytest.raises(ReplicateError) as error:
        run_replicates(
            config, min_simrep=2, max_simrep=2, seed=5, stan_model=COMPILED
        )
    assert isinstance(error.value.__cause__, KeyError)
