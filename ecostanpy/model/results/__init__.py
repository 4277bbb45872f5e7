# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Results of fitting EcoStanPy models.

:py:class:`~ecostanpy.model.results.hmc.SampleResults` joins the chains of an
MCMC run and produces the posterior summary table and convergence diagnostics.
"""

from ecostanpy.model.results.hmc import SampleResults
