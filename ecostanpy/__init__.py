# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
EcoStanPy: Integrated community abundance models with Stan.

EcoStanPy simulates multi-species count and distance-sampling surveys with known
ground truth and fits hierarchical "integrated community models" to them with
Stan. Models are assembled from composable fragments (detection, abundance,
region effects, likelihood terms) so that single-species, community, count-only,
distance-only and integrated variants share one code path.

Key Features:
    - Generative simulation of species, latent abundance, groups and distances
    - Selection of "common", "rare" or all detected species from a simulation
    - Composable Stan model fragments and ready-made model variants
    - Parallel, independently seeded MCMC chains with convergence summaries
    - Replicate harness that writes truth-vs-estimate tables per replicate

Global Variables:
    RNG: Global random number generator for reproducible computations
    __version__: Package version string

Example:
    >>> import ecostanpy as esp
    >>> esp.manual_seed(42)
    >>> community = esp.simulation.simulate_community()
"""

from typing import Optional, TYPE_CHECKING

from typeguard import install_import_hook

import numpy as np

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("ecostanpy")

# Define the global random number generator
RNG: np.random.Generator
"""Global random number generator for EcoStanPy.

Simulation functions fall back to this generator when no explicit generator is
passed. It can be seeded using the manual_seed() function.

:type: np.random.Generator
"""

if TYPE_CHECKING:
    from ecostanpy import custom_types


def manual_seed(seed: Optional["custom_types.Integer"] = None):
    """Set the seed for the global random number generator.

    :param seed: Seed value for random number generation. If None, uses
                system entropy to generate a random seed.
    :type seed: Union[custom_types.Integer, None]

    Example:
        >>> import ecostanpy as esp
        >>> esp.manual_seed(42)
        >>> random_values = esp.RNG.normal(0, 1, size=10)
    """
    global RNG  # pylint: disable=global-statement
    RNG = np.random.default_rng(seed)


manual_seed()  # Set the seed for the global random number generator

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from ecostanpy import utils

from ecostanpy.model.model import Model

simulation = utils.lazy_import("ecostanpy.simulation")
replicates = utils.lazy_import("ecostanpy.replicates")
