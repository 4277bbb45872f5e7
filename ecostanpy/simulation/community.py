# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Community hyperparameters and per-species parameter draws."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional, TYPE_CHECKING

import numpy as np
import pandas as pd

import ecostanpy

from ecostanpy.defaults import DEFAULT_HYPERPARAMS, DEFAULT_NSP

if TYPE_CHECKING:
    from ecostanpy import custom_types

# Species-level parameters and the hyperparameters they are drawn from
SPECIES_PARAMS: dict[str, tuple[str, str]] = {
    "alpha0": ("mu_alpha0", "sigma_alpha0"),
    "alpha1": ("mu_alpha1", "sigma_alpha1"),
    "gamma0_c": ("mu_gamma0_c", "sigma_gamma0_c"),
    "gamma0_ds": ("mu_gamma0_ds", "sigma_gamma0_ds"),
}


@dataclass(frozen=True)
class CommunityHyperparameters:
    """Means and between-species standard deviations of the species parameters.

    ``alpha0``/``alpha1`` are the abundance intercept and covariate slope;
    ``gamma0_c``/``gamma0_ds`` are the log detection scales of the count and
    distance-sampling streams.
    """

    mu_alpha0: float = DEFAULT_HYPERPARAMS["mu_alpha0"]
    sigma_alpha0: float = DEFAULT_HYPERPARAMS["sigma_alpha0"]
    mu_alpha1: float = DEFAULT_HYPERPARAMS["mu_alpha1"]
    sigma_alpha1: float = DEFAULT_HYPERPARAMS["sigma_alpha1"]
    mu_gamma0_c: float = DEFAULT_HYPERPARAMS["mu_gamma0_c"]
    sigma_gamma0_c: float = DEFAULT_HYPERPARAMS["sigma_gamma0_c"]
    mu_gamma0_ds: float = DEFAULT_HYPERPARAMS["mu_gamma0_ds"]
    sigma_gamma0_ds: float = DEFAULT_HYPERPARAMS["sigma_gamma0_ds"]

    def __post_init__(self):
        # Every value must be finite and every standard deviation non-negative
        for name, value in asdict(self).items():
            if not np.isfinite(value):
                raise ValueError(f"Hyperparameter {name} must be finite.")
            if name.startswith("sigma") and value < 0:
                raise ValueError(f"Hyperparameter {name} must be non-negative.")

    def truth_table(self) -> pd.DataFrame:
        """Community-level truth, named as the community models name them.

        :returns: Columns ``param`` and ``truth``, e.g. ``mu_alpha0`` and
            ``sd_alpha0``.
        :rtype: pd.DataFrame
        """
        return pd.DataFrame(
            [
                {"param": name.replace("sigma_", "sd_"), "truth": value}
                for name, value in asdict(self).items()
            ]
        )


def draw_species(
    hyper: Optional[CommunityHyperparameters] = None,
    nsp: "custom_types.Integer" = DEFAULT_NSP,
    rng: Optional[np.random.Generator] = None,
) -> pd.DataFrame:
    """Draw the parameters of every species from the community distribution.

    :param hyper: Community hyperparameters. Defaults to the package defaults.
    :type hyper: Optional[CommunityHyperparameters]
    :param nsp: Number of species. Defaults to 15.
    :type nsp: custom_types.Integer
    :param rng: Random source. Defaults to the global generator.
    :type rng: Optional[np.random.Generator]

    :returns: One row per species with columns ``sp`` (1..nsp), ``alpha0``,
        ``alpha1``, ``gamma0_c`` and ``gamma0_ds``.
    :rtype: pd.DataFrame

    :raises ValueError: If ``nsp`` is not positive
    """
    hyper = hyper or CommunityHyperparameters()
    rng = rng or ecostanpy.RNG
    if nsp < 1:
        raise ValueError("At least one species must be simulated.")

    # One independent normal draw per species and parameter
    return pd.DataFrame(
        {
            "sp": np.arange(1, nsp + 1),
            **{
                param: rng.normal(
                    loc=getattr(hyper, mu), scale=getattr(hyper, sigma), size=nsp
                )
                for param, (mu, sigma) in SPECIES_PARAMS.items()
            },
        }
    )
