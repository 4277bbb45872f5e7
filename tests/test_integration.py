# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""End-to-end runs against a CmdStan installation."""

import pandas as pd
import pytest

from cmdstanpy import cmdstan_path

from ecostanpy.exceptions import DataMismatchError
from ecostanpy.model.driver import MCMCSchedule
from ecostanpy.model.results.hmc import SUMMARY_COLUMNS
from ecostanpy.model.variants import get_model_instance
from ecostanpy.replicates import ReplicateConfig, run_replicates


def _has_cmdstan() -> bool:
    try:
        cmdstan_path()
    except ValueError:
        return False
    return True


requires_cmdstan = pytest.mark.skipif(
    not _has_cmdstan(), reason="CmdStan installation not found"
)

SHORT_SCHEDULE = MCMCSchedule(nburn=200, niter=200, thin=2, chains=2)


@requires_cmdstan
@pytest.mark.filterwarnings("ignore:Raised")
def test_single_species_fit(selected, tmp_path):
    model = get_model_instance("single", ("tc",))
    results = model.mcmc(
        data=selected.to_model_data(streams=("tc",)),
        schedule=SHORT_SCHEDULE,
        seed=11,
        output_dir=str(tmp_path),
        progress=False,
    )
    assert results.n_chains == 2
    assert results.n_draws == 100

    summary = results.summary()
    assert list(summary.columns) == SUMMARY_COLUMNS
    assert f"N_TC[{len(selected.counts['tc'])}]" in summary["param"].tolist()

    # Latent abundance never falls below the observed counts
    latent = results.inference_obj.posterior["N_TC"].values
    assert (latent >= selected.counts["tc"]["count"].to_numpy()).all()


@requires_cmdstan
@pytest.mark.filterwarnings("ignore:Raised")
def test_replicate_study(small_design, hyper, tmp_path):
    config = ReplicateConfig(
        hyper=hyper,
        design=small_design,
        variant="community",
        schedule=SHORT_SCHEDULE,
        output_dir=str(tmp_path),
    )
    log = run_replicates(config, min_simrep=1, max_simrep=2, seed=3)
    assert log.n_completed + log.n_failed == 2
    for path in log.results.values():
        table = pd.read_csv(path)
        assert table["truth"].notna().all()
        assert table["mean"].notna().all()


@requires_cmdstan
def test_compiled_model_validates_inputs(selected, tmp_path):
    model = get_model_instance("single", ("tc",))
    stan_model = model.to_stan(output_dir=str(tmp_path))
    assert stan_model.code() == model.stan_code()

    data = selected.to_model_data(streams=("tc",))
    assert stan_model.gather_inputs(**data)["NCOUNTS_TC"] == data["NCOUNTS_TC"]
    with pytest.raises(DataMismatchError):
        stan_model.gather_inputs(**{**data, "yN_TC": data["yN_TC"][:-1]})
