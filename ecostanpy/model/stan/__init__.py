# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan integration for EcoStanPy.

This submodule assembles Stan programs from model fragments, validates data
bundles against the declarations of the program, and manages compilation of the
program with CmdStan (cached between runs unless recompilation is forced).
"""
