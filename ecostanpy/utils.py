# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions for the EcoStanPy package.

This module provides:

    - A lazy importing mechanism used by the package namespace
    - Helpers for naming flattened array elements the way summary tables do
    - Helpers for naming replicate output files

Users will not typically need to interact with this module directly.
"""

from __future__ import annotations

import importlib.util
import itertools
import os.path
import sys

from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from ecostanpy.defaults import DEFAULT_SIMREP_WIDTH

if TYPE_CHECKING:
    from ecostanpy import custom_types


def lazy_import(name: str):
    """Import a module only when it is first needed.

    :param name: The fully qualified module name to import
    :type name: str

    :returns: The imported module
    :rtype: module

    :raises ImportError: If the specified module cannot be found
    """
    # Check if the module is already imported
    if name in sys.modules:
        return sys.modules[name]

    # Get the spec
    spec = importlib.util.find_spec(name)
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")

    # Create the module with a lazy loader
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def element_names(varname: str, shape: tuple[int, ...]) -> list[str]:
    """Build 1-based element names for every entry of an array variable.

    :param varname: Name of the variable
    :type varname: str
    :param shape: Shape of the variable (excluding chain and draw dimensions)
    :type shape: tuple[int, ...]

    :returns: Names in row-major order, e.g. ``pie_c[1,1]``, ``pie_c[1,2]``, ...
        Scalars keep their bare name.
    :rtype: list[str]

    Example:
        >>> element_names("alpha0", (3,))
        ['alpha0[1]', 'alpha0[2]', 'alpha0[3]']
    """
    if len(shape) == 0:
        return [varname]
    return [
        f"{varname}[{','.join(str(i + 1) for i in index)}]"
        for index in itertools.product(*(range(dim) for dim in shape))
    ]


def simrep_label(
    simrep: "custom_types.Integer", width: int = DEFAULT_SIMREP_WIDTH
) -> str:
    """Zero-pad a replicate index for use in file names.

    :param simrep: Replicate index
    :type simrep: custom_types.Integer
    :param width: Number of digits. Defaults to 4.
    :type width: int

    :returns: Zero-padded index, e.g. ``0007``
    :rtype: str

    :raises ValueError: If the index is negative
    """
    if simrep < 0:
        raise ValueError(f"Replicate index must be non-negative, got {simrep}.")
    return f"{int(simrep):0{width}d}"


def simrep_path(
    output_dir: str,
    prefix: str,
    simrep: "custom_types.Integer",
    suffix: str,
    width: int = DEFAULT_SIMREP_WIDTH,
) -> str:
    """Build the path of a replicate output file.

    :param output_dir: Directory holding replicate outputs
    :type output_dir: str
    :param prefix: File name prefix identifying the model variant
    :type prefix: str
    :param simrep: Replicate index
    :type simrep: custom_types.Integer
    :param suffix: File name suffix, e.g. ``results.csv``
    :type suffix: str
    :param width: Number of digits used to zero-pad the index. Defaults to 4.
    :type width: int

    :returns: ``<output_dir>/<prefix>_simrep_<NNNN>_<suffix>``
    :rtype: str
    """
    return os.path.join(
        output_dir, f"{prefix}_simrep_{simrep_label(simrep, width)}_{suffix}"
    )


def as_int_array(values) -> npt.NDArray[np.int64]:
    """Convert a sequence (or pandas series) to a 1D int64 array."""
    return np.asarray(values, dtype=np.int64).reshape(-1)


def as_float_array(values) -> npt.NDArray[np.float64]:
    """Convert a sequence (or pandas series) to a 1D float64 array."""
    return np.asarray(values, dtype=np.float64).reshape(-1)
