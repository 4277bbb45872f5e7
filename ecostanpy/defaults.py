# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for EcoStanPy package components.

This module centralizes default values used across the simulation, model and
inference components of the package.

The module is organized into logical groups covering:
    - Community hyperparameters of the data-generating process
    - Survey design constants
    - MCMC schedule and initialization settings
    - Stan model compilation settings
    - Posterior summary and diagnostic thresholds
    - Output naming conventions

Default values cannot be programmatically altered. Use the configuration
dataclasses (e.g., :py:class:`~ecostanpy.simulation.community.CommunityHyperparameters`)
to change them for a run.
"""

from typing import Any

# Community hyperparameters
DEFAULT_HYPERPARAMS: dict[str, float] = {
    "mu_alpha0": 0.87,
    "sigma_alpha0": 1.95,
    "mu_alpha1": 0.05,
    "sigma_alpha1": 0.25,
    "mu_gamma0_c": 5.0,
    "sigma_gamma0_c": 0.25,
    "mu_gamma0_ds": 5.5,
    "sigma_gamma0_ds": 0.25,
}
"""Default community hyperparameters used to draw species parameters.

``alpha0``/``alpha1`` are the abundance intercept and covariate slope,
``gamma0_c``/``gamma0_ds`` the log detection scale of the count and
distance-sampling streams.

:type: dict[str, float]
"""

# Survey design
DEFAULT_NSP: int = 15
"""Default number of species in the simulated community.

:type: int
"""

DEFAULT_NSITES: int = 50
"""Default number of distance-sampling sites.

:type: int
"""

DEFAULT_NREP: int = 1
"""Default number of temporal replicates per site.

:type: int
"""

DEFAULT_MAX_DISTANCE: float = 1000.0
"""Default distance to which animals are counted.

:type: float
"""

DEFAULT_BIN_WIDTH: float = 25.0
"""Default width of the distance classes.

:type: float
"""

DEFAULT_NSITES_TC_FACT: int = 2
"""Default multiplication factor giving the number of count sites relative to
distance-sampling sites.

:type: int
"""

DEFAULT_NREGIONS: int = 1
"""Default number of regions sites are spread across.

:type: int
"""

DEFAULT_SIGMA_REGION: float = 0.0
"""Default standard deviation of region random effects on abundance.

:type: float
"""

DEFAULT_COVARIATE_RANGE: tuple[float, float] = (-2.0, 2.0)
"""Range of the uniform draw used for raw site covariates before standardization.

:type: tuple[float, float]
"""

DEFAULT_GROUP_WEIGHT_RANGE: tuple[float, float] = (0.0, 0.5)
"""Range of the uniform weights used to allocate individuals to groups.

:type: tuple[float, float]
"""

# MCMC schedule
DEFAULT_NBURN: int = 100000
"""Default number of burn-in iterations per chain.

:type: int
"""

DEFAULT_NITER: int = 100000
"""Default number of post-burn-in iterations per chain (before thinning).

:type: int
"""

DEFAULT_THIN: int = 100
"""Default thinning interval.

:type: int
"""

DEFAULT_CHAINS: int = 3
"""Default number of independent chains.

:type: int
"""

DEFAULT_INIT_MARGIN: int = 1
"""Margin added to observed counts when correcting initial latent abundance.

:type: int
"""

DEFAULT_INIT_RETRIES: int = 3
"""Default number of times a chain is re-initialized before giving up.

:type: int
"""

# Stan model
DEFAULT_FORCE_COMPILE: bool = False
"""Default setting for forcing Stan model recompilation.

:type: bool
"""

DEFAULT_STANC_OPTIONS: dict[str, Any] = {"O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, bool]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {}
"""Default C++ compilation options for Stan models.

Chains run as separate processes, so threading support is not required.

:type: dict[str, Any]
"""

DEFAULT_MODEL_NAME: str = "model"
"""Default name for generated Stan models.

:type: str
"""

# Summaries and diagnostics
DEFAULT_QUANTILES: tuple[float, ...] = (0.025, 0.5, 0.975)
"""Posterior quantiles reported in summary tables.

:type: tuple[float, ...]
"""

DEFAULT_RHAT_THRESH: float = 1.1
"""Default threshold for the R-hat convergence diagnostic.

Values above this threshold indicate potential convergence issues across chains.

:type: float
"""

# Output naming
DEFAULT_OUTPUT_PREFIX: str = "icm"
"""Default prefix for replicate output files.

:type: str
"""

DEFAULT_SIMREP_WIDTH: int = 4
"""Number of digits used to zero-pad replicate indices in file names.

:type: int
"""
