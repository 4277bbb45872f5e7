# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Groups, distances and the observation process.

The individuals of every latent abundance record are clustered into groups of
variable size. Each group is assigned a radial distance drawn uniformly on
``[0, B]`` and every individual in the group is detected independently with the
half-normal probability at that distance. Records with a true count of zero
produce one placeholder row with a group size of zero and no distance.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

import ecostanpy

from ecostanpy.defaults import DEFAULT_GROUP_WEIGHT_RANGE
from ecostanpy.simulation.detection import DistanceBins, distance_class, half_normal
from ecostanpy.simulation.population import RECORD_KEYS

if TYPE_CHECKING:
    from ecostanpy import custom_types

# Columns of the group table
GROUP_COLUMNS: list[str] = [
    *RECORD_KEYS,
    "group",
    "gs",
    "distance",
    "dclass",
    "p_detect",
    "detected",
]


def partition_groups(
    n: "custom_types.Integer",
    rng: Optional[np.random.Generator] = None,
    weight_range: tuple[float, float] = DEFAULT_GROUP_WEIGHT_RANGE,
) -> npt.NDArray[np.int64]:
    """Cluster ``n`` individuals into a random number of non-empty groups.

    The number of groups ``G`` is uniform on ``1..n``. Every group receives one
    individual and the remaining ``n - G`` are allocated multinomially with
    random, heterogeneous weights drawn uniformly from ``weight_range``.

    :param n: Number of individuals
    :type n: custom_types.Integer
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]
    :param weight_range: Range of the group weights. Defaults to (0, 0.5).
    :type weight_range: tuple[float, float]

    :returns: Group sizes, all positive and summing to ``n``. Empty if ``n`` is 0.
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If ``n`` is negative
    """
    rng = rng or ecostanpy.RNG
    if n < 0:
        raise ValueError("The number of individuals cannot be negative.")
    if n == 0:
        return np.zeros(0, dtype=np.int64)

    # How many groups, and how strongly each attracts the remaining individuals
    n_groups = rng.integers(1, n, endpoint=True)
    weights = rng.uniform(*weight_range, size=n_groups)
    if weights.sum() <= 0:
        weights = np.ones(n_groups)

    return 1 + rng.multinomial(n - n_groups, weights / weights.sum()).astype(np.int64)


def simulate_groups(
    latent: pd.DataFrame,
    scale_col: str,
    bins: DistanceBins,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Partition latent individuals into groups and simulate their detection.

    :param latent: Latent abundance table as returned by
        :py:func:`~ecostanpy.simulation.population.draw_latent_abundance`
    :type latent: pd.DataFrame
    :param scale_col: Column holding the log detection scale of the stream
        (``gamma0_c`` or ``gamma0_ds``)
    :type scale_col: str
    :param bins: Distance classes of the survey
    :type bins: DistanceBins
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]

    :returns: One row per group (``group`` numbered from 1 within each record)
        plus one placeholder row (``group`` 0, ``gs`` 0, missing distance,
        class and detection) per record with a true count of zero
    :rtype: pd.DataFrame
    """
    rng = rng or ecostanpy.RNG

    # Group sizes for every record
    sizes = [partition_groups(n, rng) for n in latent["n"].to_numpy()]
    n_groups = np.array([len(s) for s in sizes], dtype=np.int64)
    rows_per_record = np.maximum(n_groups, 1)

    # Expand the record keys to one row per group (or placeholder)
    record_idx = np.repeat(np.arange(len(latent)), rows_per_record)
    groups = latent[RECORD_KEYS].iloc[record_idx].reset_index(drop=True)
    is_group = np.repeat(n_groups > 0, rows_per_record)
    starts = np.repeat(np.cumsum(rows_per_record) - rows_per_record, rows_per_record)
    groups["group"] = np.where(is_group, np.arange(len(groups)) - starts + 1, 0)
    groups["gs"] = np.zeros(len(groups), dtype=np.int64)
    groups.loc[is_group, "gs"] = np.concatenate([*sizes, np.zeros(0, dtype=np.int64)])

    # Distances and the observation process for real groups only
    n_real = int(is_group.sum())
    distance = rng.uniform(0.0, bins.b, size=n_real)
    sigma = np.exp(latent[scale_col].to_numpy()[record_idx[is_group]])
    p_detect = half_normal(distance, sigma)
    detected = rng.binomial(groups.loc[is_group, "gs"].to_numpy(), p_detect)

    groups["distance"] = np.nan
    groups.loc[is_group, "distance"] = distance
    groups["dclass"] = pd.array([pd.NA] * len(groups), dtype="Int64")
    groups.loc[is_group, "dclass"] = distance_class(distance, bins.width, bins.nbins)
    groups["p_detect"] = np.nan
    groups.loc[is_group, "p_detect"] = p_detect
    groups["detected"] = pd.array([pd.NA] * len(groups), dtype="Int64")
    groups.loc[is_group, "detected"] = detected

    return groups[GROUP_COLUMNS]


def aggregate_counts(groups: pd.DataFrame, latent: pd.DataFrame) -> pd.DataFrame:
    """Aggregate detections to the species x site x replicate level.

    :param groups: Group table as returned by :py:func:`simulate_groups`
    :type groups: pd.DataFrame
    :param latent: The latent abundance table the groups were built from
    :type latent: pd.DataFrame

    :returns: One row per record with ``count`` (detected individuals),
        ``n_groups_obs`` (groups with at least one detection), ``true_n``,
        ``x``, ``offset`` and ``region``
    :rtype: pd.DataFrame
    """
    detected = groups["detected"].fillna(0).astype(np.int64)
    per_record = (
        groups.assign(count=detected, group_obs=(detected > 0).astype(np.int64))
        .groupby(RECORD_KEYS, as_index=False)
        .agg(count=("count", "sum"), n_groups_obs=("group_obs", "sum"))
    )
    counts = latent[[*RECORD_KEYS, "n", "x", "offset", "region"]].merge(
        per_record, on=RECORD_KEYS, how="left", validate="one_to_one"
    )
    counts[["count", "n_groups_obs"]] = (
        counts[["count", "n_groups_obs"]].fillna(0).astype(np.int64)
    )
    return counts.rename(columns={"n": "true_n"}).sort_values(
        RECORD_KEYS, ignore_index=True
    )[[*RECORD_KEYS, "true_n", "count", "n_groups_obs", "x", "offset", "region"]]


def detected_groups(groups: pd.DataFrame) -> pd.DataFrame:
    """Group-level table of groups with at least one detected individual.

    :param groups: Group table as returned by :py:func:`simulate_groups`
    :type groups: pd.DataFrame

    :returns: Rows of detected groups with ``sp``, ``site``, ``rep``, ``gs``,
        ``detected`` and ``dclass`` (a plain integer column)
    :rtype: pd.DataFrame
    """
    mask = groups["detected"].fillna(0) > 0
    return (
        groups.loc[mask, [*RECORD_KEYS, "gs", "detected", "dclass"]]
        .astype({"detected": np.int64, "dclass": np.int64})
        .reset_index(drop=True)
    )
