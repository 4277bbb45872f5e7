# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Simulation of a complete multi-species, two-stream survey.

A simulated community consists of the species parameters drawn from the
community hyperparameters and, for each observation stream, a site covariate
table, latent abundance, group-level observations and aggregated counts:

    - ``"tc"``: single-visit transect counts on ``nsites * nsites_tc_fact``
      sites, with detection scale ``exp(gamma0_c)``
    - ``"ds"``: distance-sampling surveys on ``nsites`` sites, with detection
      scale ``exp(gamma0_ds)``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

import ecostanpy

from ecostanpy.defaults import (
    DEFAULT_BIN_WIDTH,
    DEFAULT_COVARIATE_RANGE,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_NREGIONS,
    DEFAULT_NREP,
    DEFAULT_NSITES,
    DEFAULT_NSITES_TC_FACT,
    DEFAULT_NSP,
    DEFAULT_SIGMA_REGION,
)
from ecostanpy.simulation.community import CommunityHyperparameters, draw_species
from ecostanpy.simulation.detection import DistanceBins, distance_bins
from ecostanpy.simulation.groups import (
    aggregate_counts,
    detected_groups,
    simulate_groups,
)
from ecostanpy.simulation.population import (
    draw_latent_abundance,
    draw_region_effects,
    draw_site_covariates,
)

# Observation streams in the order they are simulated
STREAMS: tuple[str, ...] = ("tc", "ds")

# Column of the species table holding the log detection scale of each stream
STREAM_SCALE_COLS: dict[str, str] = {"tc": "gamma0_c", "ds": "gamma0_ds"}


@dataclass(frozen=True)
class SurveyDesign:
    """Dimensions of a simulated survey."""

    nsp: int = DEFAULT_NSP
    nsites: int = DEFAULT_NSITES
    nrep: int = DEFAULT_NREP
    b: float = DEFAULT_MAX_DISTANCE
    width: float = DEFAULT_BIN_WIDTH
    nsites_tc_fact: int = DEFAULT_NSITES_TC_FACT
    nregions: int = DEFAULT_NREGIONS
    sigma_region: float = DEFAULT_SIGMA_REGION
    covariate_range: tuple[float, float] = DEFAULT_COVARIATE_RANGE

    @property
    def nsites_tc(self) -> int:
        """Number of count sites."""
        return self.nsites * self.nsites_tc_fact

    def nsites_for(self, stream: str) -> int:
        """Number of sites surveyed by a stream."""
        return self.nsites_tc if stream == "tc" else self.nsites


@dataclass
class StreamData:
    """Everything simulated for one observation stream.

    :ivar sites: Site covariate table
    :ivar latent: Latent abundance, one row per species x site x replicate
    :ivar groups: Group table including zero-count placeholders
    :ivar counts: Aggregated detections per species x site x replicate
    :ivar distances: Detected groups with their distance class
    """

    sites: pd.DataFrame
    latent: pd.DataFrame
    groups: pd.DataFrame
    counts: pd.DataFrame
    distances: pd.DataFrame


@dataclass
class SimulatedCommunity:
    """A simulated community with known truth.

    :ivar hyper: Hyperparameters the species were drawn from
    :ivar design: Survey design
    :ivar bins: Distance classes
    :ivar species: Species parameters
    :ivar region_effects: Region effects on log abundance
    :ivar streams: Simulated data of each observation stream
    """

    hyper: CommunityHyperparameters
    design: SurveyDesign
    bins: DistanceBins
    species: pd.DataFrame
    region_effects: np.ndarray
    streams: dict[str, StreamData] = field(default_factory=dict)

    @property
    def community_truth(self) -> pd.DataFrame:
        """Community-level truth rows."""
        return self.hyper.truth_table()

    def total_detections(
        self,
        streams: tuple[str, ...] = STREAMS,
        max_sites: Optional[dict[str, int]] = None,
    ) -> pd.Series:
        """Total detected individuals per species over the given streams.

        :param streams: Streams to sum over. Defaults to all streams.
        :type streams: tuple[str, ...]
        :param max_sites: Highest site index counted in each stream. Streams
            missing from the mapping are counted over all their sites.
            Defaults to None (all sites).
        :type max_sites: Optional[dict[str, int]]

        :returns: Totals indexed by the original species index, including
            species that were never detected
        :rtype: pd.Series
        """
        max_sites = max_sites or {}
        totals = pd.Series(0, index=self.species["sp"].to_numpy(), dtype=np.int64)
        for stream in streams:
            counts = self.streams[stream].counts
            if stream in max_sites:
                counts = counts.loc[counts["site"] <= max_sites[stream]]
            totals = totals.add(
                counts.groupby("sp")["count"].sum(), fill_value=0
            ).astype(np.int64)
        return totals


def simulate_stream(
    stream: str,
    species: pd.DataFrame,
    design: SurveyDesign,
    bins: DistanceBins,
    region_effects: np.ndarray,
    rng: np.random.Generator,
) -> StreamData:
    """Simulate the sites, latent abundance and observations of one stream.

    :param stream: Observation stream, ``"tc"`` or ``"ds"``
    :type stream: str
    :param species: Species parameters
    :type species: pd.DataFrame
    :param design: Survey design
    :type design: SurveyDesign
    :param bins: Distance classes
    :type bins: DistanceBins
    :param region_effects: Region effects on log abundance
    :type region_effects: np.ndarray
    :param rng: Random source
    :type rng: np.random.Generator

    :returns: The simulated stream
    :rtype: StreamData
    """
    if stream not in STREAM_SCALE_COLS:
        raise ValueError(f"Unknown stream: {stream}")

    sites = draw_site_covariates(
        design.nsites_for(stream),
        rng,
        nregions=design.nregions,
        covariate_range=design.covariate_range,
    )
    latent = draw_latent_abundance(
        species, sites, design.nrep, rng, region_effects=region_effects
    )
    groups = simulate_groups(latent, STREAM_SCALE_COLS[stream], bins, rng)

    return StreamData(
        sites=sites,
        latent=latent,
        groups=groups,
        counts=aggregate_counts(groups, latent),
        distances=detected_groups(groups),
    )


def simulate_community(
    hyper: Optional[CommunityHyperparameters] = None,
    design: Optional[SurveyDesign] = None,
    rng: Optional[np.random.Generator] = None,
    streams: tuple[str, ...] = STREAMS,
) -> SimulatedCommunity:
    """Simulate a multi-species community surveyed by counts and distance sampling.

    :param hyper: Community hyperparameters. Defaults to the package defaults.
    :type hyper: Optional[CommunityHyperparameters]
    :param design: Survey design. Defaults to the package defaults.
    :type design: Optional[SurveyDesign]
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]
    :param streams: Streams to simulate. Defaults to both.
    :type streams: tuple[str, ...]

    :returns: The simulated community with known truth
    :rtype: SimulatedCommunity

    Example:
        >>> import ecostanpy as esp
        >>> community = esp.simulation.simulate_community(
        ...     design=esp.simulation.SurveyDesign(nsp=5, nsites=20),
        ...     rng=np.random.default_rng(1),
        ... )
        >>> community.streams["tc"].counts.head()
    """
    hyper = hyper or CommunityHyperparameters()
    design = design or SurveyDesign()
    rng = rng or ecostanpy.RNG

    # Draws shared by both streams
    bins = distance_bins(design.b, design.width)
    species = draw_species(hyper, design.nsp, rng)
    region_effects = draw_region_effects(design.nregions, design.sigma_region, rng)

    return SimulatedCommunity(
        hyper=hyper,
        design=design,
        bins=bins,
        species=species,
        region_effects=region_effects,
        streams={
            stream: simulate_stream(stream, species, design, bins, region_effects, rng)
            for stream in streams
        },
    )
