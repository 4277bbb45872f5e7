# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Runs a simulation study of an integrated community abundance model."""

from __future__ import annotations

import argparse
import os.path

from dataclasses import fields
from typing import Optional

from ecostanpy.defaults import (
    DEFAULT_BIN_WIDTH,
    DEFAULT_CHAINS,
    DEFAULT_HYPERPARAMS,
    DEFAULT_INIT_MARGIN,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_NBURN,
    DEFAULT_NITER,
    DEFAULT_NREGIONS,
    DEFAULT_NREP,
    DEFAULT_NSITES,
    DEFAULT_NSITES_TC_FACT,
    DEFAULT_NSP,
    DEFAULT_OUTPUT_PREFIX,
    DEFAULT_SIGMA_REGION,
    DEFAULT_THIN,
)
from ecostanpy.model.driver import MCMCSchedule
from ecostanpy.model.variants import VARIANTS
from ecostanpy.replicates import ReplicateConfig, ReplicateLog, run_replicates
from ecostanpy.simulation.community import CommunityHyperparameters
from ecostanpy.simulation.datasets import STREAMS, SurveyDesign
from ecostanpy.simulation.selection import SELECTION_RULES

# Design arguments and their defaults
DESIGN_ARGS: dict[str, tuple[type, float]] = {
    "nsp": (int, DEFAULT_NSP),
    "nsites": (int, DEFAULT_NSITES),
    "nrep": (int, DEFAULT_NREP),
    "b": (float, DEFAULT_MAX_DISTANCE),
    "width": (float, DEFAULT_BIN_WIDTH),
    "nsites_tc_fact": (int, DEFAULT_NSITES_TC_FACT),
    "nregions": (int, DEFAULT_NREGIONS),
    "sigma_region": (float, DEFAULT_SIGMA_REGION),
}


def define_base_parser() -> argparse.ArgumentParser:
    """Defines the base parser shared by all pipelines."""
    # Build the base parser
    parser = argparse.ArgumentParser(add_help=False)

    # A few required arguments
    required_group = parser.add_argument_group("required arguments")
    required_group.add_argument(
        "--variant",
        type=str,
        choices=list(VARIANTS),
        required=True,
        help="Model variant to fit.",
    )
    required_group.add_argument(
        "--output_dir",
        type=str,
        required=True,
        help="Path to the folder where the output will be saved.",
    )

    # Now some optionals
    optional_group = parser.add_argument_group("optional arguments")
    optional_group.add_argument(
        "--streams",
        type=str,
        nargs="+",
        choices=list(STREAMS),
        default=list(STREAMS),
        help="Observation streams the model is fit to. Default = both.",
    )
    optional_group.add_argument(
        "--regions",
        action="store_true",
        help="Include region random effects on abundance.",
    )
    optional_group.add_argument(
        "--rule",
        type=str,
        choices=list(SELECTION_RULES),
        default="all",
        help="Species selection rule. Default = all.",
    )
    optional_group.add_argument(
        "--n_species",
        type=int,
        default=1,
        help="Number of species kept by the common and rare rules. Default = 1.",
    )
    optional_group.add_argument(
        "--n_sites",
        type=int,
        default=None,
        help="Number of sites kept per stream. Default = all.",
    )
    optional_group.add_argument(
        "--seed",
        type=int,
        default=1025,
        help="Random seed for reproducibility.",
    )

    # Now some hyperparameters that can be overridden
    hyperparam_group = parser.add_argument_group(
        "hyperparameters",
        description="Community hyperparameters of the simulation.",
    )
    for k, v in DEFAULT_HYPERPARAMS.items():
        hyperparam_group.add_argument(
            f"--{k}",
            type=float,
            default=None,
            help=f"{k} hyperparameter. Default = {v}.",
        )

    # And the survey design
    design_group = parser.add_argument_group(
        "design", description="Dimensions of the simulated survey."
    )
    for k, (argtype, v) in DESIGN_ARGS.items():
        design_group.add_argument(
            f"--{k}",
            type=argtype,
            default=None,
            help=f"{k} design constant. Default = {v}.",
        )

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    # Build the parser specifically for this pipeline
    parser = argparse.ArgumentParser(
        description="Run a simulation study of an integrated community model.",
        parents=[define_base_parser()],
    )

    # Add arguments specific to this pipeline
    run_group = parser.add_argument_group("run arguments")
    run_group.add_argument(
        "--min_simrep",
        type=int,
        default=1,
        help="First replicate index. Default = 1.",
    )
    run_group.add_argument(
        "--max_simrep",
        type=int,
        default=1,
        help="Last replicate index (inclusive). Default = 1.",
    )
    run_group.add_argument(
        "--prefix",
        type=str,
        default=DEFAULT_OUTPUT_PREFIX,
        help=f"Prefix of the output files. Default = {DEFAULT_OUTPUT_PREFIX}.",
    )
    run_group.add_argument(
        "--n_chains",
        type=int,
        default=DEFAULT_CHAINS,
        help=f"Number of chains to run. Default = {DEFAULT_CHAINS}.",
    )
    run_group.add_argument(
        "--n_burn",
        type=int,
        default=DEFAULT_NBURN,
        help=f"Number of burn-in iterations. Default = {DEFAULT_NBURN}.",
    )
    run_group.add_argument(
        "--n_iter",
        type=int,
        default=DEFAULT_NITER,
        help=f"Number of iterations after burn-in. Default = {DEFAULT_NITER}.",
    )
    run_group.add_argument(
        "--thin",
        type=int,
        default=DEFAULT_THIN,
        help=f"Thinning interval. Default = {DEFAULT_THIN}.",
    )
    run_group.add_argument(
        "--init_margin",
        type=int,
        default=DEFAULT_INIT_MARGIN,
        help=(
            "Margin added to observed counts when setting initial latent "
            f"abundance. Default = {DEFAULT_INIT_MARGIN}."
        ),
    )
    run_group.add_argument(
        "--abort_on_error",
        action="store_true",
        help="Abort the run when a replicate fails instead of skipping it.",
    )
    run_group.add_argument(
        "--save_draws",
        action="store_true",
        help="Also save the raw draws of every replicate.",
    )
    run_group.add_argument(
        "--force_compile",
        action="store_true",
        help="Force compilation of the model even if it is already compiled.",
    )

    return parser.parse_args(argv)


def check_base_args(args: argparse.Namespace) -> None:
    """Checks command line arguments shared by all pipelines"""
    # Output dir must exist
    if not os.path.exists(args.output_dir):
        raise ValueError(f"Output directory does not exist: {args.output_dir}.")

    # Seed must be a positive integer
    if args.seed <= 0:
        raise ValueError("Seed must be a positive integer.")

    # Streams cannot repeat
    if len(set(args.streams)) != len(args.streams):
        raise ValueError(f"Streams cannot be repeated: {args.streams}.")

    # Counts must be positive
    for arg in ("n_species", "n_sites", "nsp", "nsites", "nrep", "nregions"):
        if (value := getattr(args, arg)) is not None and value <= 0:
            raise ValueError(f"{arg} must be a positive integer.")


def check_args(args: argparse.Namespace) -> None:
    """Checks command line arguments for validity."""
    # Check base arguments
    check_base_args(args)

    # Chains, burn-in, iterations and thinning must be positive integers
    for arg in ("n_chains", "n_burn", "n_iter", "thin"):
        if getattr(args, arg) <= 0:
            raise ValueError(f"{arg} must be a positive integer.")

    # The replicate range must be valid
    if args.min_simrep < 0 or args.max_simrep < args.min_simrep:
        raise ValueError(
            f"Invalid replicate range: {args.min_simrep} to {args.max_simrep}."
        )


def build_config(args: argparse.Namespace) -> ReplicateConfig:
    """Build the study configuration, overriding defaults with provided values."""
    provided = {k: v for k, v in vars(args).items() if v is not None}
    return ReplicateConfig(
        hyper=CommunityHyperparameters(
            **{k: v for k, v in provided.items() if k in DEFAULT_HYPERPARAMS}
        ),
        design=SurveyDesign(
            **{
                f.name: provided[f.name]
                for f in fields(SurveyDesign)
                if f.name in DESIGN_ARGS and f.name in provided
            }
        ),
        variant=args.variant,
        streams=tuple(args.streams),
        regions=args.regions,
        rule=args.rule,
        n_species=args.n_species,
        n_sites=args.n_sites,
        schedule=MCMCSchedule(
            nburn=args.n_burn, niter=args.n_iter, thin=args.thin, chains=args.n_chains
        ),
        output_dir=args.output_dir,
        prefix=args.prefix,
        on_error="abort" if args.abort_on_error else "skip",
        save_draws=args.save_draws,
        init_margin=args.init_margin,
    )


def run_study(args: argparse.Namespace) -> ReplicateLog:
    """Run the replicates of the configured study."""
    config = build_config(args)
    return run_replicates(
        config,
        min_simrep=args.min_simrep,
        max_simrep=args.max_simrep,
        seed=args.seed,
        force_compile=args.force_compile,
    )


def main():
    """Main function to run a simulation study."""
    # Parse command line arguments
    args = parse_args()

    # Check arguments
    check_args(args)

    # Run the study
    run_study(args)


if __name__ == "__main__":
    main()
