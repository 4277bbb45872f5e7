# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Simulation-study harness.

Every replicate builds its own fresh state: it simulates a community, selects
the species the model is fit to, builds the data bundle, runs the chains and
joins the posterior summary with the known truth. The joined table is written
to ``<prefix>_simrep_<NNNN>_results.csv`` in the output directory.

Replicates run sequentially, each with an independent random stream spawned
from one root seed, and reuse a single compiled executable. A replicate that
fails either aborts the run (``on_error="abort"``) or is skipped
(``on_error="skip"``). A skipped replicate always leaves a
``<prefix>_simrep_<NNNN>_failed.csv`` marker recording what went wrong.
"""

from __future__ import annotations

import os.path
import time
import warnings

from dataclasses import dataclass, field
from typing import Literal, Optional, TYPE_CHECKING

import numpy as np
import pandas as pd

from tqdm import tqdm

from ecostanpy import utils
from ecostanpy.defaults import DEFAULT_INIT_MARGIN, DEFAULT_OUTPUT_PREFIX
from ecostanpy.exceptions import ReplicateError
from ecostanpy.model.driver import InferenceDriver, MCMCSchedule
from ecostanpy.model.fragments import DATA_SUFFIX, PARAM_SUFFIX
from ecostanpy.model.variants import VARIANTS, get_model_instance
from ecostanpy.simulation.community import CommunityHyperparameters
from ecostanpy.simulation.datasets import (
    STREAM_SCALE_COLS,
    SurveyDesign,
    simulate_community,
)
from ecostanpy.simulation.detection import overall_detection_probability
from ecostanpy.simulation.selection import SELECTION_RULES, select_species

if TYPE_CHECKING:
    from ecostanpy import custom_types
    from ecostanpy.model.stan.stan_model import StanModel
    from ecostanpy.simulation.selection import SelectedDataset

# Columns of the failure marker written for a skipped replicate
FAILURE_COLUMNS: list[str] = ["simrep", "error_type", "message"]


@dataclass(frozen=True)
class ReplicateConfig:
    """Everything that defines one simulation study.

    :ivar hyper: Community hyperparameters of the simulation
    :ivar design: Survey design of the simulation
    :ivar variant: Model variant, ``"single"`` or ``"community"``
    :ivar streams: Streams the model is fit to
    :ivar regions: Whether the model includes region random effects
    :ivar rule: Species selection rule
    :ivar n_species: Number of species selected by ``"common"``/``"rare"``
    :ivar n_sites: Number of sites kept per stream. None keeps all.
    :ivar schedule: MCMC schedule
    :ivar output_dir: Directory receiving the per-replicate files
    :ivar prefix: File name prefix
    :ivar on_error: ``"skip"`` or ``"abort"``
    :ivar save_draws: Whether to also save the raw draws of each replicate
    :ivar init_margin: Margin added to observed counts in initial values
    """

    hyper: CommunityHyperparameters = field(default_factory=CommunityHyperparameters)
    design: SurveyDesign = field(default_factory=SurveyDesign)
    variant: str = "community"
    streams: tuple[str, ...] = ("tc", "ds")
    regions: bool = False
    rule: str = "all"
    n_species: int = 1
    n_sites: Optional[int] = None
    schedule: MCMCSchedule = field(default_factory=MCMCSchedule)
    output_dir: str = "."
    prefix: str = DEFAULT_OUTPUT_PREFIX
    on_error: Literal["skip", "abort"] = "skip"
    save_draws: bool = False
    init_margin: int = DEFAULT_INIT_MARGIN

    def __post_init__(self):
        if self.variant not in VARIANTS:
            raise ValueError(f"Unknown model variant: {self.variant}")
        if unknown := set(self.streams) - set(STREAM_SCALE_COLS):
            raise ValueError(f"Unknown streams: {', '.join(sorted(unknown))}")
        if self.rule not in SELECTION_RULES:
            raise ValueError(f"Unknown selection rule: {self.rule}")
        if self.on_error not in ("skip", "abort"):
            raise ValueError(f"on_error must be 'skip' or 'abort', got {self.on_error}")

    def results_path(self, simrep: "custom_types.Integer") -> str:
        """Path of the results table of a replicate."""
        return utils.simrep_path(self.output_dir, self.prefix, simrep, "results.csv")

    def failure_path(self, simrep: "custom_types.Integer") -> str:
        """Path of the failure marker of a replicate."""
        return utils.simrep_path(self.output_dir, self.prefix, simrep, "failed.csv")

    def draws_path(self, simrep: "custom_types.Integer") -> str:
        """Path of the raw draws of a replicate."""
        return utils.simrep_path(self.output_dir, self.prefix, simrep, "draws.nc")


@dataclass
class ReplicateLog:
    """Outcome of a run of replicates.

    :ivar results: Results table path of each completed replicate
    :ivar failures: Error message of each skipped replicate
    :ivar elapsed: Wall time of each replicate in seconds
    """

    results: dict[int, str] = field(default_factory=dict)
    failures: dict[int, str] = field(default_factory=dict)
    elapsed: dict[int, float] = field(default_factory=dict)

    @property
    def n_completed(self) -> int:
        return len(self.results)

    @property
    def n_failed(self) -> int:
        return len(self.failures)


def truth_table(
    selected: "SelectedDataset",
    variant: str,
    streams: tuple[str, ...],
    hyper: Optional[CommunityHyperparameters] = None,
    region_effects: Optional[np.ndarray] = None,
    sigma_region: Optional["custom_types.Float"] = None,
) -> pd.DataFrame:
    """Known values of every recorded quantity of a fitted model.

    :param selected: The dataset the model was fit to
    :type selected: SelectedDataset
    :param variant: ``"single"`` or ``"community"``
    :type variant: str
    :param streams: Streams the model was fit to
    :type streams: tuple[str, ...]
    :param hyper: Community hyperparameters. Defaults to those of the dataset.
    :type hyper: Optional[CommunityHyperparameters]
    :param region_effects: True region effects, if the model includes them.
        Defaults to None.
    :type region_effects: Optional[np.ndarray]
    :param sigma_region: True standard deviation of the region effects.
        Defaults to None.
    :type sigma_region: Optional[custom_types.Float]

    :returns: Columns ``param``, ``truth``, ``sp`` (None for community-level
        rows) and ``tot_<stream>`` (total true abundance of the species in each
        stream)
    :rtype: pd.DataFrame
    """
    hyper = hyper or selected.hyper
    sp_info = selected.sp_info
    tot_cols = [f"tot_{stream}" for stream in streams]

    # Species-level parameters
    species_truth = {
        "alpha0": sp_info["alpha0"].to_numpy(),
        "alpha1": sp_info["alpha1"].to_numpy(),
    }
    for stream in streams:
        suffix = PARAM_SUFFIX[stream]
        gamma0 = sp_info[STREAM_SCALE_COLS[stream]].to_numpy()
        species_truth[f"gamma0_{suffix}"] = gamma0
        species_truth[f"pie_sp_{suffix}"] = overall_detection_probability(
            np.exp(gamma0), selected.bins
        )
    frames = [
        sp_info[["sp", *tot_cols]].assign(
            param=[f"{name}[{sp}]" for sp in sp_info["sp"]], truth=values
        )
        for name, values in species_truth.items()
    ]

    # Community-level parameters of the included streams
    if VARIANTS[variant].HIERARCHICAL:
        community = hyper.truth_table()
        keep = {"alpha0", "alpha1"} | {
            f"gamma0_{PARAM_SUFFIX[stream]}" for stream in streams
        }
        frames.append(community.loc[community["param"].str[3:].isin(keep)])

    # Region effects
    if region_effects is not None:
        frames.append(
            pd.DataFrame(
                {
                    "param": utils.element_names("eps_region", region_effects.shape),
                    "truth": region_effects,
                }
            )
        )
        if sigma_region is not None:
            frames.append(
                pd.DataFrame({"param": ["sd_region"], "truth": [sigma_region]})
            )

    # Latent abundance of every count record
    for stream in streams:
        counts = selected.counts[stream]
        latent = f"N_{DATA_SUFFIX[stream]}"
        frames.append(
            pd.DataFrame(
                {
                    "param": utils.element_names(latent, (len(counts),)),
                    "truth": selected.latent_truth(stream),
                    "sp": counts["sp"].to_numpy(),
                }
            )
        )

    truth = pd.concat(frames, ignore_index=True)
    truth["sp"] = truth["sp"].astype("Int64")
    return truth[["param", "truth", "sp", *tot_cols]]


def run_replicate(
    simrep: "custom_types.Integer",
    config: ReplicateConfig,
    rng: np.random.Generator,
    stan_model: Optional["StanModel"] = None,
    progress: bool = False,
) -> str:
    """Simulate, select, fit and summarize one replicate.

    :param simrep: Replicate index
    :type simrep: custom_types.Integer
    :param config: Study configuration
    :type config: ReplicateConfig
    :param rng: Random stream of the replicate
    :type rng: np.random.Generator
    :param stan_model: Compiled model to reuse. Defaults to None (compile).
    :type stan_model: Optional[StanModel]
    :param progress: Whether to display the chain progress bar. Defaults to False.
    :type progress: bool

    :returns: Path of the results table
    :rtype: str

    :raises PreconditionError: If the simulated data cannot be fit (e.g., no
        species meets the selection rule). Raised before any compilation.
    :raises InitializationError: If a chain cannot be initialized
    """
    # Simulate every stream so the random stream does not depend on the model
    community = simulate_community(config.hyper, config.design, rng)
    selected = select_species(
        community,
        rule=config.rule,
        n_species=config.n_species,
        total_streams=config.streams,
        n_sites=config.n_sites,
    )

    # Build the model and check the data before sampling
    model = get_model_instance(config.variant, config.streams, config.regions)
    driver = InferenceDriver(
        model,
        selected.to_model_data(config.streams, regions=config.regions),
        schedule=config.schedule,
        init_margin=config.init_margin,
        stan_model=stan_model,
    )
    results = driver.run(seed=int(rng.integers(0, 2**31 - 1)), progress=progress)
    summary = results.summary()
    results.diagnose(summary=summary)

    # Join the posterior summary with the truth
    truth = truth_table(
        selected,
        config.variant,
        config.streams,
        region_effects=community.region_effects if config.regions else None,
        sigma_region=config.design.sigma_region if config.regions else None,
    )
    joined = summary.merge(truth, on="param", how="left", validate="one_to_one")
    joined["simrep"] = simrep
    joined = joined[[*truth.columns, *summary.columns[1:], "simrep"]]

    # Persist
    path = config.results_path(simrep)
    joined.to_csv(path, index=False)
    if config.save_draws:
        results.save_netcdf(config.draws_path(simrep))

    return path


def write_failure(
    simrep: "custom_types.Integer", config: ReplicateConfig, error: Exception
) -> str:
    """Write the marker of a skipped replicate.

    :returns: Path of the marker
    :rtype: str
    """
    path = config.failure_path(simrep)
    pd.DataFrame(
        [[simrep, type(error).__name__, str(error)]], columns=FAILURE_COLUMNS
    ).to_csv(path, index=False)
    return path


def compile_model(config: ReplicateConfig, **stan_kwargs) -> "StanModel":
    """Compile the executable shared by every replicate of a study.

    :param config: Study configuration
    :type config: ReplicateConfig
    :param stan_kwargs: Options passed to :py:meth:`Model.to_stan()
        <ecostanpy.model.model.Model.to_stan>`

    :returns: The compiled model
    :rtype: StanModel
    """
    model = get_model_instance(config.variant, config.streams, config.regions)
    return model.to_stan(output_dir=config.output_dir, **stan_kwargs)


def run_replicates(
    config: ReplicateConfig,
    min_simrep: "custom_types.Integer" = 1,
    max_simrep: "custom_types.Integer" = 1,
    seed: Optional["custom_types.Integer"] = None,
    stan_model: Optional["StanModel"] = None,
    **stan_kwargs,
) -> ReplicateLog:
    """Run replicates ``min_simrep`` through ``max_simrep`` (inclusive).

    :param config: Study configuration
    :type config: ReplicateConfig
    :param min_simrep: First replicate index. Defaults to 1.
    :type min_simrep: custom_types.Integer
    :param max_simrep: Last replicate index. Defaults to 1.
    :type max_simrep: custom_types.Integer
    :param seed: Root seed. Replicate ``i`` always receives the ``i``-th stream
        spawned from it, whatever the range run. Defaults to None (unseeded).
    :type seed: Optional[custom_types.Integer]
    :param stan_model: Compiled model to reuse. Defaults to None (compiled once
        before the first replicate).
    :type stan_model: Optional[StanModel]
    :param stan_kwargs: Compilation options

    :returns: Paths of the completed replicates and errors of the skipped ones
    :rtype: ReplicateLog

    :raises ValueError: If the replicate range is invalid or the output
        directory does not exist
    :raises ReplicateError: If a replicate fails and ``on_error`` is ``"abort"``
    """
    if min_simrep < 0 or max_simrep < min_simrep:
        raise ValueError(f"Invalid replicate range: {min_simrep} to {max_simrep}.")
    if not os.path.isdir(config.output_dir):
        raise ValueError(f"Output directory does not exist: {config.output_dir}.")

    # One independent stream per replicate index
    children = np.random.SeedSequence(seed).spawn(max_simrep + 1)

    if stan_model is None:
        print("Compiling model...")
        stan_model = compile_model(config, **stan_kwargs)

    log = ReplicateLog()
    for simrep in tqdm(
        range(min_simrep, max_simrep + 1), desc="Replicates", unit="replicate"
    ):
        start = time.perf_counter()
        try:
            log.results[simrep] = run_replicate(
                simrep, config, np.random.default_rng(children[simrep]), stan_model
            )
        except Exception as error:  # pylint: disable=broad-except
            if config.on_error == "abort":
                raise ReplicateError(simrep, str(error)) from error
            log.failures[simrep] = f"{type(error).__name__}: {error}"
            marker = write_failure(simrep, config, error)
            warnings.warn(f"Replicate {simrep} skipped ({error}). See {marker}.")
        finally:
            log.elapsed[simrep] = time.perf_counter() - start

        print(f"Replicate {simrep} finished in {log.elapsed[simrep]:.1f}s.")

    print(
        f"{log.n_completed} of {max_simrep - min_simrep + 1} replicates completed, "
        f"{log.n_failed} skipped."
    )
    return log
