# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the command line entry point of simulation studies."""

import pytest

from ecostanpy.pipelines import simulate_replicates
from ecostanpy.pipelines.simulate_replicates import (
    build_config,
    check_args,
    parse_args,
)
from ecostanpy.replicates import ReplicateLog


@pytest.fixture
def base_argv(tmp_path):
    return ["--variant", "community", "--output_dir", str(tmp_path)]


def test_defaults(base_argv, tmp_path):
    args = parse_args(base_argv)
    check_args(args)
    config = build_config(args)
    assert config.variant == "community"
    assert config.streams == ("tc", "ds")
    assert config.rule == "all"
    assert config.on_error == "skip"
    assert config.output_dir == str(tmp_path)
    assert config.hyper.mu_alpha0 == 0.87
    assert config.design.nsp == 15
    assert config.schedule.n_draws == 1000


def test_overrides(base_argv):
    args = parse_args(
        base_argv
        + [
            "--streams",
            "ds",
            "--rule",
            "rare",
            "--n_species",
            "2",
            "--mu_alpha0",
            "1.5",
            "--nsites",
            "20",
            "--b",
            "500",
            "--n_chains",
            "2",
            "--n_burn",
            "50",
            "--n_iter",
            "40",
            "--thin",
            "4",
            "--abort_on_error",
            "--prefix",
            "icm_rare",
        ]
    )
    check_args(args)
    config = build_config(args)
    assert config.streams == ("ds",)
    assert (config.rule, config.n_species) == ("rare", 2)
    assert config.hyper.mu_alpha0 == 1.5
    assert config.hyper.mu_alpha1 == 0.05
    assert (config.design.nsites, config.design.b) == (20, 500.0)
    assert config.design.width == 25.0
    assert config.schedule.chains == 2
    assert config.schedule.n_draws == 10
    assert config.on_error == "abort"
    assert config.prefix == "icm_rare"


@pytest.mark.parametrize(
    "extra",
    [
        ["--seed", "0"],
        ["--streams", "tc", "tc"],
        ["--n_species", "0"],
        ["--nsites", "-3"],
        ["--n_chains", "0"],
        ["--thin", "0"],
        ["--min_simrep", "5", "--max_simrep", "2"],
    ],
)
def test_invalid_arguments(base_argv, extra):
    with pytest.raises(ValueError):
        check_args(parse_args(base_argv + extra))


def test_missing_output_dir(tmp_path):
    args = parse_args(["--variant", "single", "--output_dir", str(tmp_path / "x")])
    with pytest.raises(ValueError, match="does not exist"):
        check_args(args)


def test_unknown_variant_is_rejected(base_argv):
    with pytest.raises(SystemExit):
        parse_args(["--variant", "multi", "--output_dir", "."])


def test_run_study(base_argv, monkeypatch):
    calls = {}

    def fake_run_replicates(config, **kwargs):
        calls["config"] = config
        calls.update(kwargs)
        return ReplicateLog()

    monkeypatch.setattr(simulate_replicates, "run_replicates", fake_run_replicates)
    args = parse_args(base_argv + ["--max_simrep", "3", "--seed", "7"])
    assert isinstance(simulate_replicates.run_study(args), ReplicateLog)
    assert calls["max_simrep"] == 3
    assert calls["seed"] == 7
    assert calls["force_compile"] is False
    assert calls["config"].variant == "community"
