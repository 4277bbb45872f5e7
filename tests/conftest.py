# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Shared fixtures of the EcoStanPy test suite."""

import numpy as np
import pytest

from ecostanpy.model.driver import ChainResult
from ecostanpy.simulation import (
    CommunityHyperparameters,
    SurveyDesign,
    select_species,
    simulate_community,
)


@pytest.fixture
def rng():
    return np.random.default_rng(20240601)


@pytest.fixture
def small_design():
    return SurveyDesign(nsp=6, nsites=12, nrep=1, b=200.0, width=25.0, nsites_tc_fact=2)


@pytest.fixture
def hyper():
    return CommunityHyperparameters()


@pytest.fixture
def community(hyper, small_design):
    return simulate_community(hyper, small_design, np.random.default_rng(7))


@pytest.fixture
def selected(community):
    return select_species(community, rule="all")


def _variable_shape(varname: str, data: dict) -> tuple[int, ...]:
    """Shape of a recorded model variable given its data bundle."""
    if varname.startswith(("mu_", "sd_")):
        return ()
    if varname.startswith("N_"):
        return (data[f"NCOUNTS_{varname[2:]}"],)
    if varname == "eps_region":
        return (data["NREGIONS"],)
    return (data["NSPECIES"],)


@pytest.fixture
def make_chains():
    """Factory of well-mixed chain results for any model and data bundle."""

    def factory(varnames, data, n_chains=2, n_draws=40, seed=0):
        rng = np.random.default_rng(seed)
        return [
            ChainResult(
                chain_id=chain_id,
                draws={
                    varname: rng.normal(
                        1.0, 0.1, size=(n_draws, *_variable_shape(varname, data))
                    )
                    for varname in varnames
                },
                sample_stats={
                    "lp": rng.normal(size=n_draws),
                    "diverging": np.zeros(n_draws, dtype=bool),
                },
                attempts=1,
                csv_files=(),
            )
            for chain_id in range(1, n_chains + 1)
        ]

    return factory
