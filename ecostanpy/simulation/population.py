# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Site covariates and latent (true) abundance.

Latent abundance is built in a single pass over the full species x site x
replicate cross product. The expected count of each record is log-linear in the
site covariate,

    en = offset * exp(alpha0[sp] + alpha1[sp] * x[site] + eps[region[site]])

and the true count is a Poisson draw with that rate.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

import ecostanpy

from ecostanpy.defaults import DEFAULT_COVARIATE_RANGE, DEFAULT_NREP

if TYPE_CHECKING:
    from ecostanpy import custom_types

# Columns identifying a latent abundance record
RECORD_KEYS: list[str] = ["sp", "site", "rep"]


def standardize(x: npt.NDArray) -> npt.NDArray[np.float64]:
    """Center and scale to unit (sample) standard deviation.

    A constant vector is only centered.
    """
    x = np.asarray(x, dtype=float)
    sd = x.std(ddof=1) if x.size > 1 else 0.0
    return (x - x.mean()) / sd if sd > 0 else x - x.mean()


def draw_site_covariates(
    nsites: "custom_types.Integer",
    rng: Optional[np.random.Generator] = None,
    nregions: "custom_types.Integer" = 1,
    covariate_range: tuple[float, float] = DEFAULT_COVARIATE_RANGE,
) -> pd.DataFrame:
    """Draw the site covariate table of one observation stream.

    :param nsites: Number of sites
    :type nsites: custom_types.Integer
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]
    :param nregions: Number of regions sites are spread across. Defaults to 1.
    :type nregions: custom_types.Integer
    :param covariate_range: Range of the raw uniform covariate draw. Defaults
        to (-2, 2).
    :type covariate_range: tuple[float, float]

    :returns: One row per site with columns ``site`` (1..nsites), ``x`` (the
        standardized covariate), ``offset`` (survey area, 1) and ``region``
        (1..nregions, balanced across sites in random order)
    :rtype: pd.DataFrame

    :raises ValueError: If ``nsites`` or ``nregions`` is not positive
    """
    rng = rng or ecostanpy.RNG
    if nsites < 1:
        raise ValueError("At least one site must be simulated.")
    if nregions < 1:
        raise ValueError("At least one region is required.")

    return pd.DataFrame(
        {
            "site": np.arange(1, nsites + 1),
            "x": standardize(rng.uniform(*covariate_range, size=nsites)),
            "offset": np.ones(nsites),
            "region": rng.permutation(np.arange(nsites) % nregions) + 1,
        }
    )


def draw_region_effects(
    nregions: "custom_types.Integer",
    sigma_region: "custom_types.Float",
    rng: Optional[np.random.Generator] = None,
) -> npt.NDArray[np.float64]:
    """Draw the region random effects on log abundance.

    :param nregions: Number of regions
    :type nregions: custom_types.Integer
    :param sigma_region: Standard deviation of the region effects. Zero turns
        region effects off.
    :type sigma_region: custom_types.Float
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]

    :returns: One effect per region
    :rtype: npt.NDArray[np.float64]
    """
    rng = rng or ecostanpy.RNG
    if sigma_region < 0:
        raise ValueError("The region standard deviation must be non-negative.")
    if sigma_region == 0:
        return np.zeros(nregions)
    return rng.normal(0.0, sigma_region, size=nregions)


def draw_latent_abundance(
    species: pd.DataFrame,
    sites: pd.DataFrame,
    nrep: "custom_types.Integer" = DEFAULT_NREP,
    rng: Optional[np.random.Generator] = None,
    region_effects: Optional[npt.NDArray] = None,
) -> pd.DataFrame:
    """Draw the true abundance of every species at every site and replicate.

    :param species: Species table as returned by
        :py:func:`~ecostanpy.simulation.community.draw_species`
    :type species: pd.DataFrame
    :param sites: Site table as returned by :py:func:`draw_site_covariates`
    :type sites: pd.DataFrame
    :param nrep: Number of temporal replicates. Defaults to 1.
    :type nrep: custom_types.Integer
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]
    :param region_effects: One effect per region. Defaults to None (no region
        effects).
    :type region_effects: Optional[npt.NDArray]

    :returns: One row per (species, site, replicate), sorted by those keys, with
        the species parameters, ``x``, ``offset``, ``region``, the expected
        count ``en`` and the true count ``n``
    :rtype: pd.DataFrame

    :raises AssertionError: If the cross product is incomplete or duplicated
    """
    rng = rng or ecostanpy.RNG
    if nrep < 1:
        raise ValueError("At least one replicate is required.")

    # Full cross product of the index ranges, then attach species and site data
    index = pd.MultiIndex.from_product(
        [species["sp"], sites["site"], np.arange(1, nrep + 1)], names=RECORD_KEYS
    ).to_frame(index=False)
    latent = index.merge(species, on="sp", how="left").merge(
        sites, on="site", how="left"
    )

    # Every combination must be present exactly once
    assert len(latent) == len(species) * len(sites) * nrep
    assert not latent.duplicated(RECORD_KEYS).any()

    # Expected and realized abundance
    eps = (
        np.zeros(len(latent))
        if region_effects is None
        else np.asarray(region_effects)[latent["region"].to_numpy() - 1]
    )
    latent["en"] = latent["offset"] * np.exp(
        latent["alpha0"] + latent["alpha1"] * latent["x"] + eps
    )
    latent["n"] = rng.poisson(latent["en"].to_numpy())

    return latent.sort_values(RECORD_KEYS, ignore_index=True)
