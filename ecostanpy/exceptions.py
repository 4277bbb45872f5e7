# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Custom exception classes for the EcoStanPy package.

All custom exceptions inherit from the base EcoStanPyError class to allow for
unified exception handling when needed. Precondition violations are raised
before any inference is attempted so that no MCMC compute is wasted on a
dataset or configuration that cannot be fit.
"""


class EcoStanPyError(Exception):
    """Base class for all exceptions in the EcoStanPy package.

    Example:
        >>> try:
        ...     # EcoStanPy operations
        ...     pass
        ... except EcoStanPyError as e:
        ...     print(f"EcoStanPy error occurred: {e}")
    """


class PreconditionError(EcoStanPyError):
    """Raised when a dataset or configuration cannot be used for inference.

    Raised before compilation or sampling begins.
    """


class SelectionError(PreconditionError):
    """Raised when the dataset selector cannot satisfy its rule.

    Typical causes are that no species has a non-zero total detection count or
    that more sites are requested than were simulated.
    """


class DataMismatchError(PreconditionError):
    """Raised when a data bundle does not match the model it is passed to.

    This covers missing or unexpected data variables, arrays whose lengths
    disagree with the dimension constants, and indices that fall outside of
    their declared range.
    """


class InitializationError(EcoStanPyError):
    """Raised when an MCMC chain cannot be initialized after every retry."""


class ReplicateError(EcoStanPyError):
    """Raised when a simulation replicate fails and the harness is set to abort.

    :param simrep: The replicate index that failed
    :type simrep: int
    :param message: Error message describing the failure
    :type message: str
    """

    def __init__(self, simrep: int, message: str):
        super().__init__(f"Replicate {simrep} failed: {message}")
        self.simrep = simrep
