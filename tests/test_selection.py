# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the dataset selector."""

import numpy as np
import pandas as pd
import pytest

from ecostanpy.exceptions import PreconditionError, SelectionError
from ecostanpy.simulation.datasets import simulate_community
from ecostanpy.simulation.selection import rank_species, select_species


def test_rank_species_rules():
    totals = pd.Series([0, 10, 3, 10, 1, 0], index=range(1, 7))
    assert rank_species(totals, "common") == [2]
    assert rank_species(totals, "common", 2) == [2, 4]
    assert rank_species(totals, "common", 3) == [2, 3, 4]
    assert rank_species(totals, "rare") == [5]
    assert rank_species(totals, "rare", 2) == [3, 5]
    assert rank_species(totals, "all") == [2, 3, 4, 5]


def test_rank_species_ties_follow_original_order():
    totals = pd.Series([4, 7, 7, 7, 4], index=range(1, 6))
    assert rank_species(totals, "common") == [2]
    assert rank_species(totals, "common", 2) == [2, 3]
    assert rank_species(totals, "rare") == [1]


def test_rank_species_never_picks_undetected_species():
    totals = pd.Series([0, 0, 2], index=range(1, 4))
    assert rank_species(totals, "rare") == [3]
    assert rank_species(totals, "all") == [3]
    with pytest.raises(SelectionError):
        rank_species(totals, "rare", 2)


def test_rank_species_errors():
    with pytest.raises(SelectionError, match="non-zero"):
        rank_species(pd.Series([0, 0], index=[1, 2]), "common")
    with pytest.raises(SelectionError, match="Unknown"):
        rank_species(pd.Series([1, 2], index=[1, 2]), "abundant")
    with pytest.raises(SelectionError):
        rank_species(pd.Series([1, 2], index=[1, 2]), "common", 0)

    # Selection failures are precondition failures
    assert issubclass(SelectionError, PreconditionError)


def _with_absent_species(community, absent: int):
    """Zero out every true and observed count of one species."""
    for stream in community.streams.values():
        mask = stream.counts["sp"] == absent
        stream.counts.loc[mask, ["true_n", "count", "n_groups_obs"]] = 0
        stream.distances.drop(
            stream.distances.index[stream.distances["sp"] == absent], inplace=True
        )
    return community


@pytest.mark.parametrize("rule", ["common", "rare", "all"])
def test_species_without_individuals_is_never_selected(community, rule):
    absent = 2
    community = _with_absent_species(community, absent)
    n_detected = int((community.total_detections() > 0).sum())
    selected = select_species(
        community, rule=rule, n_species=n_detected if rule != "all" else 1
    )
    assert absent not in selected.species_map["sp_orig"].tolist()
    np.testing.assert_array_equal(
        selected.species_map["sp"], np.arange(1, selected.n_species + 1)
    )
    for stream in selected.streams:
        assert set(selected.counts[stream]["sp"]) <= set(selected.species_map["sp"])


def test_selection_reindexes_contiguously(community):
    selected = select_species(community, rule="common", n_species=3)
    assert selected.n_species == 3
    assert selected.species_map["sp"].tolist() == [1, 2, 3]

    # Original order is preserved
    assert selected.species_map["sp_orig"].is_monotonic_increasing
    for stream in ("tc", "ds"):
        assert set(selected.counts[stream]["sp"]) == {1, 2, 3}
        if len(selected.distances[stream]):
            assert set(selected.distances[stream]["sp"]) <= {1, 2, 3}


def test_selection_is_deterministic(small_design, hyper):
    def run():
        community = simulate_community(hyper, small_design, np.random.default_rng(42))
        return select_species(community, rule="common", n_species=2, n_sites=5)

    first, second = run(), run()
    pd.testing.assert_frame_equal(first.species_map, second.species_map)
    for stream in ("tc", "ds"):
        pd.testing.assert_frame_equal(first.counts[stream], second.counts[stream])
        pd.testing.assert_frame_equal(first.distances[stream], second.distances[stream])


def test_site_truncation(community):
    selected = select_species(community, rule="all", n_sites={"tc": 4, "ds": 3})
    assert selected.counts["tc"]["site"].max() <= 4
    assert selected.counts["ds"]["site"].max() <= 3
    assert len(selected.counts["tc"]) == 4 * selected.n_species
    assert len(selected.counts["ds"]) == 3 * selected.n_species
    if len(selected.distances["ds"]):
        assert selected.distances["ds"]["site"].max() <= 3

    with pytest.raises(SelectionError):
        select_species(community, rule="all", n_sites=1000)
    with pytest.raises(SelectionError):
        select_species(community, rule="all", n_sites=0)


def test_species_info(community):
    selected = select_species(community, rule="all")
    info = selected.sp_info
    assert {"sp", "sp_orig", "alpha0", "gamma0_c", "tot_tc", "obs_ds"} <= set(info)
    for stream in ("tc", "ds"):
        totals = selected.counts[stream].groupby("sp")["true_n"].sum()
        np.testing.assert_array_equal(
            info.set_index("sp").loc[totals.index, f"tot_{stream}"], totals
        )
        assert (info[f"obs_{stream}"] <= info[f"tot_{stream}"]).all()


def test_model_data_bundle(selected):
    data = selected.to_model_data()
    assert data["NSPECIES"] == selected.n_species
    assert data["NBINS"] == 8
    assert data["NCOUNTS_TC"] == len(selected.counts["tc"])
    assert len(data["SP_TC"]) == data["NCOUNTS_TC"]
    assert len(data["yN_DS"]) == data["NCOUNTS_DS"]
    assert len(data["DCLASS_DS"]) == data["NGROUPS_DS"]
    if data["NGROUPS_DS"]:
        assert data["DCLASS_DS"].min() >= 1
    np.testing.assert_array_equal(data["yN_TC"], selected.counts["tc"]["count"])
    assert "NREGIONS" not in data

    # Only the requested streams
    data = selected.to_model_data(streams=("tc",), regions=True)
    assert "NCOUNTS_DS" not in data
    assert "NGROUPS_DS" not in data
    assert data["NREGIONS"] == 1
    assert (data["REGION_TC"] == 1).all()


def test_model_data_missing_stream(community):
    selected = select_species(
        simulate_community(
            community.hyper,
            community.design,
            np.random.default_rng(0),
            streams=("tc",),
        ),
        rule="all",
    )
    with pytest.raises(SelectionError):
        selected.to_model_data(streams=("ds",))


def test_latent_truth(selected):
    truth = selected.latent_truth("tc")
    assert truth.dtype == np.int64
    assert (truth >= selected.counts["tc"]["count"].to_numpy()).all()


@pytest.mark.parametrize("rule", ["common", "rare", "all"])
def test_truncated_selection_only_keeps_detected_species(small_design, hyper, rule):
    n_selected = 0
    for seed in range(30):
        community = simulate_community(
            hyper, small_design, np.random.default_rng(seed)
        )
        kept = community.total_detections(max_sites={"tc": 2, "ds": 2})
        try:
            selected = select_species(community, rule=rule, n_sites=2)
        except SelectionError:
            assert (kept == 0).all()
            continue

        n_selected += 1
        info = selected.sp_info
        assert ((info["obs_tc"] + info["obs_ds"]) > 0).all()
        assert kept.loc[selected.species_map["sp_orig"]].tolist() == (
            info["obs_tc"] + info["obs_ds"]
        ).astype(np.int64).tolist()
        if rule == "common":
            assert kept.loc[selected.species_map["sp_orig"][0]] == kept.max()
    assert n_selected > 0


def test_total_detections_over_kept_sites(community):
    full = community.total_detections()
    kept = community.total_detections(max_sites={"tc": 3, "ds": 1})
    assert (kept <= full).all()

    counts = community.streams["tc"].counts
    expected = counts.loc[counts["site"] <= 3].groupby("sp")["count"].sum()
    tc_only = community.total_detections(("tc",), max_sites={"tc": 3})
    np.testing.assert_array_equal(
        tc_only.loc[expected.index].to_numpy(), expected.to_numpy()
    )
