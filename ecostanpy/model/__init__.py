# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Model construction and inference for EcoStanPy.

This module provides the infrastructure for building, compiling and fitting the
integrated community models. The primary interface is the
:py:class:`~ecostanpy.model.model.Model` class, which collects model fragments
and exposes methods for code generation, initialization and MCMC.

Models are constructed from building blocks called fragments (see
:py:mod:`ecostanpy.model.fragments`), each contributing declarations and
statements to the generated Stan program:

    - The shared distance classes
    - Detection, one fragment per observation stream
    - Abundance regression coefficients and optional region effects
    - The count likelihood of each stream and the distance-class likelihood of
      the distance-sampling stream

Ready-made variants live in :py:mod:`ecostanpy.model.variants`:

    1. :py:class:`~ecostanpy.model.variants.SingleSpeciesModel`, in which every
       species has independent priors.
    2. :py:class:`~ecostanpy.model.variants.CommunityModel`, in which species
       parameters are drawn from community distributions.

Each variant can include the count stream, the distance-sampling stream or
both (the integrated model).

Example:
    >>> import ecostanpy as esp
    >>> from ecostanpy.model.variants import CommunityModel
    >>> model = CommunityModel(streams=("tc", "ds"))
    >>> res = model.mcmc(data=selected.to_model_data(("tc", "ds")))
    >>> res.summary()
"""
