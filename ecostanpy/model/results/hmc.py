# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Analysis of MCMC results.

This module provides :py:class:`SampleResults`, which joins the draws of
independently run chains into an ArviZ ``InferenceData`` object and produces the
posterior summary table consumed by downstream reporting:

    ``param, mean, sd, 2.5%, 50%, 97.5%, Rhat, n.eff``

with one row per scalar element of every recorded variable, named with 1-based
indices (e.g. ``alpha0[1]``, ``N_TC[12]``).
"""

from __future__ import annotations

import warnings

from typing import Optional, Sequence, TYPE_CHECKING, Union

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr

from ecostanpy import utils
from ecostanpy.defaults import DEFAULT_QUANTILES, DEFAULT_RHAT_THRESH

if TYPE_CHECKING:
    from ecostanpy import custom_types
    from ecostanpy.model.driver import ChainResult
    from ecostanpy.model.model import Model

# Columns of the summary table
SUMMARY_COLUMNS: list[str] = [
    "param",
    "mean",
    "sd",
    "2.5%",
    "50%",
    "97.5%",
    "Rhat",
    "n.eff",
]


def quantile_label(quantile: "custom_types.Float") -> str:
    """Column label of a posterior quantile, e.g. ``2.5%``."""
    return f"{quantile * 100:g}%"


def chains_to_inference_data(chains: Sequence["ChainResult"]) -> az.InferenceData:
    """Stack the draws of independent chains into an ``InferenceData`` object.

    :param chains: Results of every chain, in chain order
    :type chains: Sequence[ChainResult]

    :returns: Object with ``posterior`` and ``sample_stats`` groups, each
        variable with leading ``(chain, draw)`` dimensions
    :rtype: az.InferenceData

    :raises ValueError: If no chains are given or the chains recorded different
        variables
    """
    if len(chains) == 0:
        raise ValueError("At least one chain is required.")
    varnames = set(chains[0].draws)
    if any(set(chain.draws) != varnames for chain in chains[1:]):
        raise ValueError("Every chain must record the same variables.")

    return az.from_dict(
        posterior={
            name: np.stack([chain.draws[name] for chain in chains])
            for name in chains[0].draws
        },
        sample_stats={
            name: np.stack([chain.sample_stats[name] for chain in chains])
            for name in chains[0].sample_stats
        },
    )


class SampleResults:
    """Joined results of the chains of one MCMC run.

    Users will not typically instantiate this class directly. It is returned by
    :py:meth:`Model.mcmc() <ecostanpy.model.model.Model.mcmc>` and
    :py:meth:`InferenceDriver.run() <ecostanpy.model.driver.InferenceDriver.run>`.

    :param model: Model that was fit. Defaults to None.
    :type model: Optional[Model]
    :param chains: Results of every chain. Ignored if ``inference_obj`` is given.
        Defaults to None.
    :type chains: Optional[Sequence[ChainResult]]
    :param inference_obj: Pre-existing InferenceData or NetCDF path. Defaults to
        None.
    :type inference_obj: Optional[Union[az.InferenceData, str]]

    :ivar model: Model that was fit, if known
    :ivar inference_obj: The draws and sampler diagnostics
    :ivar attempts: Number of attempts each chain needed, if known

    :raises ValueError: If neither chains nor an inference object are given
    """

    def __init__(
        self,
        model: Optional["Model"] = None,
        chains: Optional[Sequence["ChainResult"]] = None,
        inference_obj: Optional[Union[az.InferenceData, str]] = None,
    ):
        self.model = model
        self.attempts = {}

        # Build the inference object from the chains if none is given
        if inference_obj is None:
            if chains is None:
                raise ValueError("Either chains or an inference object is required.")
            inference_obj = chains_to_inference_data(chains)
            self.attempts = {chain.chain_id: chain.attempts for chain in chains}

        # If the inference object is a string, we assume that it is a NetCDF file
        # to be loaded from disk
        if isinstance(inference_obj, str):
            inference_obj = az.from_netcdf(filename=inference_obj, engine="h5netcdf")

        self.inference_obj = inference_obj

    def _flatten(self, dataset: xr.Dataset, column: str) -> pd.Series:
        """One value per scalar element of every variable, indexed by element name."""
        values = {}
        for varname, dataarray in dataset.data_vars.items():
            array = np.asarray(dataarray.values)
            values.update(
                zip(
                    utils.element_names(varname, array.shape),
                    array.reshape(-1),
                )
            )
        return pd.Series(values, name=column, dtype=float)

    def summary(
        self,
        var_names: Optional[list[str]] = None,
        quantiles: tuple[float, ...] = DEFAULT_QUANTILES,
    ) -> pd.DataFrame:
        """Posterior summary of every scalar element of the recorded variables.

        :param var_names: Variables to summarize. Defaults to None (all).
        :type var_names: Optional[list[str]]
        :param quantiles: Posterior quantiles to report. Defaults to (0.025, 0.5,
            0.975).
        :type quantiles: tuple[float, ...]

        :returns: Columns ``param``, ``mean``, ``sd``, one per quantile (e.g.
            ``2.5%``), ``Rhat`` (rank-normalized split R-hat) and ``n.eff``
            (bulk effective sample size)
        :rtype: pd.DataFrame
        """
        posterior = self.inference_obj.posterior
        if var_names is not None:
            posterior = posterior[var_names]
        posterior = posterior.astype(float)
        sample_dims = ("chain", "draw")

        # Statistics and diagnostics per element. Constant draws give undefined
        # diagnostics, which are reported as missing.
        columns = [
            self._flatten(posterior.mean(dim=sample_dims), "mean"),
            self._flatten(posterior.std(dim=sample_dims, ddof=1), "sd"),
        ]
        for quantile in quantiles:
            columns.append(
                self._flatten(
                    posterior.quantile(quantile, dim=sample_dims).drop_vars("quantile"),
                    quantile_label(quantile),
                )
            )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            columns.append(self._flatten(az.rhat(posterior), "Rhat"))
            columns.append(self._flatten(az.ess(posterior), "n.eff"))

        return pd.concat(columns, axis=1).rename_axis("param").reset_index()

    def diagnose(
        self,
        r_hat_thresh: "custom_types.Float" = DEFAULT_RHAT_THRESH,
        silent: bool = False,
        summary: Optional[pd.DataFrame] = None,
    ) -> tuple[int, list[str]]:
        """Report divergent transitions and variables that failed to converge.

        Non-convergence is reported, never raised.

        :param r_hat_thresh: R-hat above which a variable has not converged.
            Defaults to 1.1.
        :type r_hat_thresh: custom_types.Float
        :param silent: Whether to suppress printed output and warnings. Defaults
            to False.
        :type silent: bool
        :param summary: A table already returned by `summary`. Defaults to None,
            in which case it is computed.
        :type summary: Optional[pd.DataFrame]

        :returns: Number of divergent transitions and the names of the elements
            whose R-hat exceeds the threshold
        :rtype: tuple[int, list[str]]
        """
        # Divergences
        n_divergent, n_draws = 0, 0
        if "diverging" in self.inference_obj.sample_stats:
            diverging = self.inference_obj.sample_stats["diverging"].values
            n_divergent, n_draws = int(diverging.sum()), diverging.size

        # Convergence
        if summary is None:
            summary = self.summary()
        failed = summary.loc[summary["Rhat"] > r_hat_thresh, "param"].tolist()

        # If silent, return the test results now
        if silent:
            return n_divergent, failed

        header = "Diagnostic tests results' summaries:"
        print(header)
        print("-" * len(header))
        if n_draws > 0:
            print(
                f"{n_divergent} of {n_draws} ({n_divergent / n_draws:.2%}) samples diverged."
            )
        print(
            f"{len(failed)} of {len(summary)} ({len(failed) / len(summary):.2%}) "
            f"variables had an R-hat above {r_hat_thresh}."
        )
        if n_divergent > 0 or len(failed) > 0:
            warnings.warn(
                f"MCMC diagnostics flagged {n_divergent} divergent samples and "
                f"{len(failed)} unconverged variables."
            )

        return n_divergent, failed

    def save_netcdf(self, path: str) -> str:
        """Persist the raw draws.

        :param path: Output file path
        :type path: str

        :returns: The path written to
        :rtype: str
        """
        return self.inference_obj.to_netcdf(path, engine="h5netcdf")

    @classmethod
    def from_disk(cls, path: str, model: Optional["Model"] = None) -> "SampleResults":
        """Load results saved with :py:meth:`save_netcdf`.

        :param path: Path to the NetCDF file
        :type path: str
        :param model: Model that was fit. Defaults to None.
        :type model: Optional[Model]

        :returns: The loaded results
        :rtype: SampleResults
        """
        return cls(model=model, inference_obj=path)

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        return self.inference_obj.posterior.sizes["chain"]

    @property
    def n_draws(self) -> int:
        """Number of draws per chain."""
        return self.inference_obj.posterior.sizes["draw"]
