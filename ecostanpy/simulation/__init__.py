# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Generative simulation of multi-species count and distance-sampling surveys.

This submodule simulates communities with known ground truth. The simulation is
built from a chain of vectorized table-building steps, each a pure function of
its inputs and a random source:

    1. :py:func:`~ecostanpy.simulation.community.draw_species` draws the
       parameters of every species from the community hyperparameters.
    2. :py:func:`~ecostanpy.simulation.population.draw_latent_abundance` draws
       the true abundance of every species at every site and replicate.
    3. :py:func:`~ecostanpy.simulation.groups.simulate_groups` clusters the
       individuals into groups, places the groups at random distances and
       simulates the detection of every individual.
    4. :py:func:`~ecostanpy.simulation.selection.select_species` filters the
       simulation down to the species a model is fit to.

:py:func:`~ecostanpy.simulation.datasets.simulate_community` chains steps 1-3
for both observation streams.

Example:
    >>> import ecostanpy as esp
    >>> esp.manual_seed(42)
    >>> community = esp.simulation.simulate_community()
    >>> selected = esp.simulation.select_species(community, rule="common")
    >>> data = selected.to_model_data(streams=("tc", "ds"))
"""

from ecostanpy.simulation.community import CommunityHyperparameters, draw_species
from ecostanpy.simulation.datasets import (
    STREAMS,
    SimulatedCommunity,
    SurveyDesign,
    simulate_community,
)
from ecostanpy.simulation.detection import distance_bins, half_normal
from ecostanpy.simulation.selection import SelectedDataset, select_species
