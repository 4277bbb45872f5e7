# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for EcoStanPy.

This module provides type aliases used throughout the EcoStanPy package. All
imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools.
"""

from typing import Literal, TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, "np.floating"]
"""Type alias for floating-point values.

Accepts both Python's built-in float and NumPy floating-point types.

:type: Union[float, np.floating]
"""

# Data bundle passed to Stan
StanData = dict[str, Union[int, float, "npt.NDArray"]]
"""Type alias for the data bundle handed to a compiled Stan program.

Keys are Stan data variable names; values are scalars or arrays.

:type: dict[str, Union[int, float, npt.NDArray]]
"""

# Initial values for a single chain
ChainInits = dict[str, Union[float, "npt.NDArray"]]
"""Type alias for the initial values of a single MCMC chain.

:type: dict[str, Union[float, npt.NDArray]]
"""

# Observation streams
Stream = Literal["tc", "ds"]
"""Type alias for the observation streams: transect counts ("tc") and distance
sampling ("ds").

:type: Literal["tc", "ds"]
"""

# Species selection rules
SelectionRule = Literal["common", "rare", "all"]
"""Type alias for the species selection rules of the dataset selector.

:type: Literal["common", "rare", "all"]
"""
