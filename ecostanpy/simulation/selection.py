# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Selection of the species a model variant is fit to.

The dataset selector filters a simulated community down to the species that
meet a rule and produces the exact table shapes the model expects:

    - ``"common"``: the species with the highest total detections
    - ``"rare"``: the species with the lowest non-zero total detections
    - ``"all"``: every species with at least one detection

Ties are broken by the original species order. Selected species are re-indexed
to a contiguous ``1..k`` range (preserving their original order) and the tables
of each stream are truncated to the requested number of sites. Species are
ranked on their detections within the kept sites, so a species never detected
there can never be selected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from ecostanpy.exceptions import SelectionError
from ecostanpy.model.fragments import DATA_SUFFIX
from ecostanpy.simulation.community import CommunityHyperparameters
from ecostanpy.simulation.datasets import STREAMS, SimulatedCommunity
from ecostanpy.simulation.detection import DistanceBins
from ecostanpy.simulation.population import RECORD_KEYS

if TYPE_CHECKING:
    from ecostanpy import custom_types

# Valid selection rules
SELECTION_RULES: tuple[str, ...] = ("common", "rare", "all")


@dataclass
class SelectedDataset:
    """The data of the selected species, ready to instantiate a model.

    :ivar rule: Rule the species were selected with
    :ivar bins: Distance classes
    :ivar hyper: Community hyperparameters of the simulation
    :ivar species_map: Original (``sp_orig``) and new (``sp``) species indices
    :ivar sp_info: Truth and totals per selected species, indexed by new ``sp``
    :ivar counts: Per-stream aggregated counts of the selected species
    :ivar distances: Per-stream detected groups of the selected species
    :ivar nregions: Number of regions in the survey
    """

    rule: str
    bins: DistanceBins
    hyper: CommunityHyperparameters
    species_map: pd.DataFrame
    sp_info: pd.DataFrame
    counts: dict[str, pd.DataFrame]
    distances: dict[str, pd.DataFrame]
    nregions: int

    @property
    def n_species(self) -> int:
        """Number of selected species."""
        return len(self.species_map)

    @property
    def streams(self) -> tuple[str, ...]:
        """Streams available in the dataset."""
        return tuple(self.counts)

    def latent_truth(self, stream: str) -> npt.NDArray[np.int64]:
        """True latent abundance of each count row of a stream, in row order."""
        return self.counts[stream]["true_n"].to_numpy(dtype=np.int64)

    def to_model_data(
        self, streams: Optional[tuple[str, ...]] = None, regions: bool = False
    ) -> "custom_types.StanData":
        """Build the data bundle the Stan model expects.

        :param streams: Streams to include. Defaults to every stream available.
        :type streams: Optional[tuple[str, ...]]
        :param regions: Whether to include region indices. Defaults to False.
        :type regions: bool

        :returns: Data keyed by Stan variable name. Shared entries are
            ``NSPECIES``, ``NBINS``, ``MIDPOINT``, ``V`` and ``B``. Each stream
            ``S`` (``TC`` or ``DS``) adds ``NCOUNTS_S``, ``SP_S``, ``HAB_S``,
            ``AREA_S`` and ``yN_S`` (plus ``REGION_S`` with regions); the
            distance-sampling stream also adds ``NGROUPS_DS``, ``SP_GROUP_DS``
            and ``DCLASS_DS``.
        :rtype: custom_types.StanData

        :raises SelectionError: If a requested stream is not available
        """
        streams = self.streams if streams is None else streams
        if missing := set(streams) - set(self.streams):
            raise SelectionError(f"Streams not available: {', '.join(sorted(missing))}")

        # Shared data
        data = {
            "NSPECIES": self.n_species,
            "NBINS": self.bins.nbins,
            "MIDPOINT": self.bins.midpoints,
            "V": self.bins.width,
            "B": self.bins.b,
        }
        if regions:
            data["NREGIONS"] = self.nregions

        # Stream data
        for stream in streams:
            suffix = DATA_SUFFIX[stream]
            counts = self.counts[stream]
            data.update(
                {
                    f"NCOUNTS_{suffix}": len(counts),
                    f"SP_{suffix}": counts["sp"].to_numpy(dtype=np.int64),
                    f"HAB_{suffix}": counts["x"].to_numpy(dtype=float),
                    f"AREA_{suffix}": counts["offset"].to_numpy(dtype=float),
                    f"yN_{suffix}": counts["count"].to_numpy(dtype=np.int64),
                }
            )
            if regions:
                data[f"REGION_{suffix}"] = counts["region"].to_numpy(dtype=np.int64)

            # Group-level distance classes
            if stream == "ds":
                distances = self.distances[stream]
                data.update(
                    {
                        "NGROUPS_DS": len(distances),
                        "SP_GROUP_DS": distances["sp"].to_numpy(dtype=np.int64),
                        "DCLASS_DS": distances["dclass"].to_numpy(dtype=np.int64),
                    }
                )

        return data


def rank_species(
    totals: pd.Series, rule: str, n_species: "custom_types.Integer" = 1
) -> list[int]:
    """Choose species by their total detections.

    :param totals: Total detections indexed by original species index, in
        original species order
    :type totals: pd.Series
    :param rule: ``"common"``, ``"rare"`` or ``"all"``
    :type rule: str
    :param n_species: Number of species chosen by ``"common"``/``"rare"``.
        Defaults to 1.
    :type n_species: custom_types.Integer

    :returns: Original indices of the chosen species, in original order
    :rtype: list[int]

    :raises SelectionError: If the rule is unknown, no species has a non-zero
        total, or fewer species qualify than requested
    """
    if rule not in SELECTION_RULES:
        raise SelectionError(
            f"Unknown selection rule: {rule}. Options are {', '.join(SELECTION_RULES)}."
        )
    if n_species < 1:
        raise SelectionError("At least one species must be selected.")

    # Only detected species qualify
    detected = totals[totals > 0]
    if len(detected) == 0:
        raise SelectionError("No species has a non-zero total detection count.")

    # Stable sorting breaks ties by original order
    if rule == "all":
        chosen = detected
    else:
        if len(detected) < n_species:
            raise SelectionError(
                f"Only {len(detected)} species were detected but {n_species} were "
                "requested."
            )
        chosen = detected.sort_values(
            ascending=(rule == "rare"), kind="stable"
        ).iloc[:n_species]

    return sorted(int(sp) for sp in chosen.index)


def select_species(
    community: SimulatedCommunity,
    rule: str = "common",
    n_species: "custom_types.Integer" = 1,
    total_streams: Optional[tuple[str, ...]] = None,
    n_sites: Optional[Union["custom_types.Integer", dict[str, int]]] = None,
) -> SelectedDataset:
    """Filter a simulated community down to the species meeting a rule.

    :param community: The simulated community
    :type community: SimulatedCommunity
    :param rule: ``"common"``, ``"rare"`` or ``"all"``. Defaults to "common".
    :type rule: str
    :param n_species: Number of species for ``"common"``/``"rare"``. Defaults to 1.
    :type n_species: custom_types.Integer
    :param total_streams: Streams whose detections are totalled when ranking
        species. Defaults to every simulated stream.
    :type total_streams: Optional[tuple[str, ...]]
    :param n_sites: Number of sites to keep, either one value for all streams
        or one per stream. Defaults to None (all sites).
    :type n_sites: Optional[Union[custom_types.Integer, dict[str, int]]]

    :returns: The selected dataset
    :rtype: SelectedDataset

    :raises SelectionError: If the rule cannot be satisfied or more sites are
        requested than were simulated
    """
    streams = tuple(s for s in STREAMS if s in community.streams)
    total_streams = streams if total_streams is None else total_streams

    max_sites = {
        stream: _resolve_n_sites(community, stream, n_sites) for stream in streams
    }

    # Rank the species on the kept sites only and build the new contiguous index
    chosen = rank_species(
        community.total_detections(total_streams, max_sites=max_sites),
        rule,
        n_species,
    )
    species_map = pd.DataFrame(
        {"sp_orig": chosen, "sp": np.arange(1, len(chosen) + 1)}
    )
    remap = dict(zip(species_map["sp_orig"], species_map["sp"]))

    # Filter, re-index and truncate every stream
    counts, distances = {}, {}
    for stream in streams:
        max_site = max_sites[stream]
        stream_data = community.streams[stream]
        counts[stream] = _filter_table(stream_data.counts, remap, max_site).sort_values(
            RECORD_KEYS, ignore_index=True
        )
        distances[stream] = _filter_table(stream_data.distances, remap, max_site)

    # Truth and totals per selected species
    sp_info = species_map.merge(
        community.species.rename(columns={"sp": "sp_orig"}), on="sp_orig"
    )
    for stream in streams:
        totals = counts[stream].groupby("sp")[["true_n", "count"]].sum()
        sp_info[f"tot_{stream}"] = sp_info["sp"].map(totals["true_n"]).fillna(0)
        sp_info[f"obs_{stream}"] = sp_info["sp"].map(totals["count"]).fillna(0)

    return SelectedDataset(
        rule=rule,
        bins=community.bins,
        hyper=community.hyper,
        species_map=species_map,
        sp_info=sp_info,
        counts=counts,
        distances=distances,
        nregions=community.design.nregions,
    )


def _resolve_n_sites(
    community: SimulatedCommunity,
    stream: str,
    n_sites: Optional[Union["custom_types.Integer", dict[str, int]]],
) -> int:
    """Number of sites kept for a stream, checked against what was simulated."""
    available = community.design.nsites_for(stream)
    requested = n_sites.get(stream) if isinstance(n_sites, dict) else n_sites
    if requested is None:
        return available
    if requested < 1 or requested > available:
        raise SelectionError(
            f"Requested {requested} sites for stream '{stream}' but {available} "
            "were simulated."
        )
    return int(requested)


def _filter_table(
    table: pd.DataFrame, remap: dict, max_site: "custom_types.Integer"
) -> pd.DataFrame:
    """Keep the rows of selected species and sites, with species re-indexed."""
    kept = table.loc[table["sp"].isin(remap) & (table["site"] <= max_site)].copy()
    kept["sp"] = kept["sp"].map(remap).astype(np.int64)
    return kept.reset_index(drop=True)
