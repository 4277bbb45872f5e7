# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Tests for the utility functions."""

import os.path
import sys

import numpy as np
import pytest

from ecostanpy import utils


def test_element_names():
    assert utils.element_names("sd_alpha0", ()) == ["sd_alpha0"]
    assert utils.element_names("alpha0", (3,)) == ["alpha0[1]", "alpha0[2]", "alpha0[3]"]
    assert utils.element_names("pie_c", (2, 3))[:4] == [
        "pie_c[1,1]",
        "pie_c[1,2]",
        "pie_c[1,3]",
        "pie_c[2,1]",
    ]


def test_simrep_names():
    assert utils.simrep_label(7) == "0007"
    assert utils.simrep_label(12345) == "12345"
    assert utils.simrep_label(3, width=2) == "03"
    with pytest.raises(ValueError):
        utils.simrep_label(-1)

    assert utils.simrep_path("out", "icm", 42, "results.csv") == os.path.join(
        "out", "icm_simrep_0042_results.csv"
    )


def test_lazy_import():
    assert utils.lazy_import("ecostanpy.defaults") is sys.modules["ecostanpy.defaults"]
    module = utils.lazy_import("ecostanpy.exceptions")
    assert issubclass(module.SelectionError, module.PreconditionError)
    with pytest.raises(ImportError):
        utils.lazy_import("ecostanpy.no_such_module")


def test_array_conversion():
    ints = utils.as_int_array([[1, 2], [3, 4]])
    assert ints.dtype == np.int64
    assert ints.shape == (4,)
    assert utils.as_float_array((1, 2)).dtype == np.float64
