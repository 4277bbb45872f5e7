# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Parallel MCMC over independent chains.

The inference driver compiles a model once, prepares one immutable task per
chain (the executable, the data, a seed and a set of corrected initial values)
and runs the tasks in a pool of worker processes. Chains share no state: each
worker runs its own burn-in and sampling phase and returns a typed result. The
results are joined once every chain has finished.

Initial latent abundance is always raised to at least the observed count plus a
positive margin before sampling, since the observed count of a record can never
exceed its latent abundance. A chain that still fails to start is retried with
freshly drawn (and corrected) initial values up to a retry limit.
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass
from multiprocessing import Pool
from typing import Any, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from cmdstanpy import CmdStanModel
from tqdm import tqdm

import ecostanpy

from ecostanpy import utils
from ecostanpy.defaults import (
    DEFAULT_CHAINS,
    DEFAULT_INIT_MARGIN,
    DEFAULT_INIT_RETRIES,
    DEFAULT_NBURN,
    DEFAULT_NITER,
    DEFAULT_THIN,
)
from ecostanpy.exceptions import DataMismatchError, InitializationError

if TYPE_CHECKING:
    from ecostanpy import custom_types
    from ecostanpy.model.model import Model
    from ecostanpy.model.stan.stan_model import StanModel

results = utils.lazy_import("ecostanpy.model.results")

# Sampler diagnostics recorded from every chain, named as ArviZ names them
SAMPLE_STATS: dict[str, str] = {
    "lp__": "lp",
    "accept_stat__": "acceptance_rate",
    "stepsize__": "step_size",
    "treedepth__": "tree_depth",
    "n_leapfrog__": "n_steps",
    "divergent__": "diverging",
    "energy__": "energy",
}


@dataclass(frozen=True)
class MCMCSchedule:
    """Burn-in, sampling and thinning of every chain.

    :ivar nburn: Number of burn-in (warmup) iterations
    :ivar niter: Number of post-burn-in iterations, before thinning
    :ivar thin: Thinning interval
    :ivar chains: Number of independent chains
    """

    nburn: int = DEFAULT_NBURN
    niter: int = DEFAULT_NITER
    thin: int = DEFAULT_THIN
    chains: int = DEFAULT_CHAINS

    def __post_init__(self):
        for name in ("nburn", "niter", "thin", "chains"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive.")
        if self.thin > self.niter:
            raise ValueError(
                "The thinning interval cannot exceed the number of iterations."
            )

    @property
    def n_draws(self) -> int:
        """Number of draws saved per chain."""
        return -(-self.niter // self.thin)


@dataclass(frozen=True)
class ChainTask:
    """Everything a worker needs to run one chain.

    :ivar chain_id: 1-based chain identifier
    :ivar seed: Seed of the chain's sampler
    :ivar exe_file: Path to the compiled Stan executable
    :ivar data: Validated data bundle
    :ivar inits: Initial values for the first attempt followed by those of
        every retry
    :ivar latent_inits: Corrected initial latent abundance of the first attempt
    :ivar schedule: Burn-in, sampling and thinning
    :ivar varnames: Variables to record
    :ivar output_dir: Directory for CmdStan output files. None for temporary.
    """

    chain_id: int
    seed: int
    exe_file: str
    data: dict[str, Any]
    inits: tuple[dict[str, Any], ...]
    latent_inits: dict[str, npt.NDArray]
    schedule: MCMCSchedule
    varnames: tuple[str, ...]
    output_dir: Optional[str] = None


@dataclass(frozen=True)
class ChainResult:
    """Draws and diagnostics of one finished chain.

    :ivar chain_id: 1-based chain identifier
    :ivar draws: Draws of every recorded variable, with a leading draw dimension
    :ivar sample_stats: Sampler diagnostics of every draw
    :ivar attempts: Number of attempts the chain needed
    :ivar csv_files: CmdStan output files
    """

    chain_id: int
    draws: dict[str, npt.NDArray]
    sample_stats: dict[str, npt.NDArray]
    attempts: int
    csv_files: tuple[str, ...]


def correct_latent_inits(
    latent: npt.NDArray,
    observed: npt.NDArray,
    margin: "custom_types.Integer" = DEFAULT_INIT_MARGIN,
    varname: str = "N",
) -> npt.NDArray[np.int64]:
    """Raise initial latent abundance to at least the observed count plus a margin.

    :param latent: Initial guess of the latent abundance of every record
    :type latent: npt.NDArray
    :param observed: Observed count of every record
    :type observed: npt.NDArray
    :param margin: Positive margin added to the observed counts. Defaults to 1.
    :type margin: custom_types.Integer
    :param varname: Name of the latent variable, used in the warning. Defaults
        to "N".
    :type varname: str

    :returns: The corrected latent abundance
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If the margin is not positive
    :raises DataMismatchError: If the shapes of the inputs disagree

    A warning reports how many values were raised. Nothing is corrected
    silently.
    """
    if margin < 1:
        raise ValueError("The initial value margin must be positive.")
    latent = np.asarray(latent, dtype=np.int64)
    observed = np.asarray(observed, dtype=np.int64)
    if latent.shape != observed.shape:
        raise DataMismatchError(
            f"Initial {varname} has shape {latent.shape} but the observed counts "
            f"have shape {observed.shape}."
        )

    # Raise everything below the floor
    floor = observed + margin
    if n_corrected := int((latent < floor).sum()):
        warnings.warn(
            f"Raised {n_corrected} of {latent.size} initial values of {varname} to "
            f"the observed count plus {margin}."
        )

    return np.maximum(latent, floor)


def run_chain(task: ChainTask) -> ChainResult:
    """Run one chain, retrying with the next set of initial values on failure.

    This is the worker function of the inference driver and only depends on
    its task.

    :param task: The chain to run
    :type task: ChainTask

    :returns: The draws and diagnostics of the chain
    :rtype: ChainResult

    :raises InitializationError: If every attempt fails
    """
    model = CmdStanModel(exe_file=task.exe_file)

    last_error = None
    for attempt, inits in enumerate(task.inits, 1):
        try:
            fit = model.sample(
                data=task.data,
                chains=1,
                chain_ids=task.chain_id,
                seed=task.seed + attempt - 1,
                inits=inits,
                iter_warmup=task.schedule.nburn,
                iter_sampling=task.schedule.niter,
                thin=task.schedule.thin,
                output_dir=task.output_dir,
                show_progress=False,
            )
        except RuntimeError as error:
            warnings.warn(
                f"Chain {task.chain_id} failed on attempt {attempt} of "
                f"{len(task.inits)}: {error}"
            )
            last_error = error
            continue

        # Record the draws of the single chain
        method_variables = fit.method_variables()
        return ChainResult(
            chain_id=task.chain_id,
            draws={varname: fit.stan_variable(varname) for varname in task.varnames},
            sample_stats={
                arviz_name: method_variables[stan_name][:, 0]
                for stan_name, arviz_name in SAMPLE_STATS.items()
                if stan_name in method_variables
            },
            attempts=attempt,
            csv_files=tuple(fit.runset.csv_files),
        )

    raise InitializationError(
        f"Chain {task.chain_id} could not be initialized in {len(task.inits)} attempts."
    ) from last_error


class InferenceDriver:
    """Runs independent MCMC chains of a model in parallel worker processes.

    :param model: The model to fit
    :type model: Model
    :param data: Data bundle, validated on construction
    :type data: custom_types.StanData
    :param schedule: Burn-in, sampling, thinning and number of chains. Defaults
        to the package defaults.
    :type schedule: Optional[MCMCSchedule]
    :param output_dir: Directory for compilation and CmdStan output files.
        Defaults to None (temporary).
    :type output_dir: Optional[str]
    :param init_margin: Margin added to observed counts when correcting initial
        latent abundance. Defaults to 1.
    :type init_margin: custom_types.Integer
    :param init_retries: Number of times a failing chain is re-initialized.
        Defaults to 3.
    :type init_retries: custom_types.Integer
    :param stan_model: An already compiled Stan model of the same program.
        Defaults to None (compiled on the first run).
    :type stan_model: Optional[StanModel]
    :param stan_kwargs: Additional compilation options passed to
        :py:meth:`Model.to_stan() <ecostanpy.model.model.Model.to_stan>`

    :raises DataMismatchError: If the data do not match the model
    :raises ValueError: If the compiled model was built from another program
    """

    def __init__(
        self,
        model: "Model",
        data: "custom_types.StanData",
        schedule: Optional[MCMCSchedule] = None,
        output_dir: Optional[str] = None,
        init_margin: "custom_types.Integer" = DEFAULT_INIT_MARGIN,
        init_retries: "custom_types.Integer" = DEFAULT_INIT_RETRIES,
        stan_model: Optional["StanModel"] = None,
        **stan_kwargs,
    ):
        # Fail before any compilation if the data cannot be used
        self.model = model
        self.data = model.validate_data(data)
        self.schedule = schedule or MCMCSchedule()
        self.output_dir = output_dir
        self.init_margin = init_margin
        if init_retries < 0:
            raise ValueError("The number of retries cannot be negative.")
        self.init_retries = init_retries

        # A shared executable must have been compiled from the same program
        if stan_model is not None and stan_model.code() != model.stan_code():
            raise ValueError("The compiled Stan model was built from another program.")
        self._stan_model = stan_model
        self._stan_kwargs = stan_kwargs

    def compile(self) -> "StanModel":
        """Compile the model, once.

        :returns: The compiled model
        :rtype: StanModel
        """
        if self._stan_model is None:
            self._stan_model = self.model.to_stan(
                output_dir=self.output_dir, **self._stan_kwargs
            )
        return self._stan_model

    def prepare_chains(
        self, seed: Optional["custom_types.Integer"] = None, exe_file: str = ""
    ) -> list[ChainTask]:
        """Build one immutable task per chain.

        Every chain gets an independent random stream spawned from ``seed``,
        from which its sampler seed and all of its candidate initial values are
        drawn. Initial latent abundance is corrected here, before any sampling.

        :param seed: Root seed. Defaults to None (drawn from the global generator).
        :type seed: Optional[custom_types.Integer]
        :param exe_file: Path to the compiled executable. Defaults to "".
        :type exe_file: str

        :returns: One task per chain
        :rtype: list[ChainTask]
        """
        if seed is None:
            seed = ecostanpy.RNG.integers(0, 2**32 - 1)
        children = np.random.SeedSequence(int(seed)).spawn(self.schedule.chains)

        tasks = []
        for chain_id, child in enumerate(children, 1):
            rng = np.random.default_rng(child)
            attempts = [
                self.model.make_inits(self.data, rng, margin=self.init_margin)
                for _ in range(1 + self.init_retries)
            ]
            tasks.append(
                ChainTask(
                    chain_id=chain_id,
                    seed=int(rng.integers(0, 2**31 - 1)),
                    exe_file=exe_file,
                    data=self.data,
                    inits=tuple(inits for inits, _ in attempts),
                    latent_inits=attempts[0][1],
                    schedule=self.schedule,
                    varnames=self.model.reported_varnames,
                    output_dir=self.output_dir,
                )
            )

        return tasks

    def run(
        self,
        seed: Optional["custom_types.Integer"] = None,
        processes: Optional["custom_types.Integer"] = None,
        progress: bool = True,
    ) -> "results.SampleResults":
        """Compile the model and run every chain to completion.

        :param seed: Root seed. Defaults to None (drawn from the global generator).
        :type seed: Optional[custom_types.Integer]
        :param processes: Number of worker processes. Defaults to one per chain.
        :type processes: Optional[custom_types.Integer]
        :param progress: Whether to display a progress bar. Defaults to True.
        :type progress: bool

        :returns: The joined results of all chains
        :rtype: results.SampleResults

        :raises InitializationError: If a chain fails on every attempt
        """
        tasks = self.prepare_chains(seed=seed, exe_file=self.compile().exe_file)

        # The pool is torn down before returning, whatever happens
        with Pool(processes=processes or len(tasks)) as pool:
            chains = list(
                tqdm(
                    pool.imap_unordered(run_chain, tasks),
                    total=len(tasks),
                    desc="Chains",
                    unit="chain",
                    disable=not progress,
                )
            )

        return results.SampleResults(
            model=self.model,
            chains=sorted(chains, key=lambda chain: chain.chain_id),
        )
