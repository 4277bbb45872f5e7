# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Half-normal detection function and distance-class utilities.

The same quantities are used by the data-generating process (to decide whether
individuals are detected) and by the model (to build per-bin detection
probabilities), so they live in one place:

    - :py:func:`half_normal` gives the detection probability at a distance
    - :py:func:`distance_bins` discretizes ``[0, B]`` into classes of width ``V``
    - :py:func:`distance_class` maps continuous distances to 1-based classes
    - :py:func:`bin_detection_probabilities` gives ``g(midpoint_k) * V / B``,
      whose sum is the probability that an individual present is counted
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from scipy import special

from ecostanpy.defaults import DEFAULT_BIN_WIDTH, DEFAULT_MAX_DISTANCE

if TYPE_CHECKING:
    from ecostanpy import custom_types


@dataclass(frozen=True)
class DistanceBins:
    """Discretization of the surveyed distance range into equal-width classes.

    :ivar b: Distance to which animals are counted (``B``)
    :ivar width: Width of each distance class (``V``)
    :ivar nbins: Number of classes (``B / V``)
    :ivar midpoints: Midpoint of each class
    """

    b: float
    width: float
    nbins: int
    midpoints: npt.NDArray[np.float64]

    @property
    def edges(self) -> npt.NDArray[np.float64]:
        """Class boundaries, from 0 to ``b`` inclusive."""
        return np.arange(self.nbins + 1) * self.width


def distance_bins(
    b: "custom_types.Float" = DEFAULT_MAX_DISTANCE,
    width: "custom_types.Float" = DEFAULT_BIN_WIDTH,
) -> DistanceBins:
    """Build the distance classes used by both simulation and model.

    :param b: Distance to which animals are counted. Defaults to 1000.
    :type b: custom_types.Float
    :param width: Width of the distance classes. Defaults to 25.
    :type width: custom_types.Float

    :returns: The distance classes
    :rtype: DistanceBins

    :raises ValueError: If ``b`` or ``width`` is not positive, or if ``b`` is
        not a whole multiple of ``width``

    Example:
        >>> bins = distance_bins(1000, 25)
        >>> bins.nbins, bins.midpoints[0], bins.midpoints[-1]
        (40, 12.5, 987.5)
    """
    if b <= 0 or width <= 0:
        raise ValueError("Both the maximum distance and bin width must be positive.")

    # The number of classes must be whole
    nbins = int(round(b / width))
    if not np.isclose(nbins * width, b):
        raise ValueError(
            f"The maximum distance ({b}) must be a multiple of the bin width ({width})."
        )

    return DistanceBins(
        b=float(b),
        width=float(width),
        nbins=nbins,
        midpoints=(np.arange(nbins) + 0.5) * width,
    )


def half_normal(
    d: Union["custom_types.Float", npt.NDArray],
    sigma: Union["custom_types.Float", npt.NDArray],
) -> Union[float, npt.NDArray[np.float64]]:
    """Half-normal detection function ``p(d) = exp(-d^2 / (2 sigma^2))``.

    :param d: Distance(s) from the observer
    :type d: Union[custom_types.Float, npt.NDArray]
    :param sigma: Scale parameter(s); broadcast against ``d``
    :type sigma: Union[custom_types.Float, npt.NDArray]

    :returns: Detection probability, 1 at distance 0 and non-increasing in ``d``
    :rtype: npt.NDArray[np.float64]
    """
    d = np.asarray(d, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    return np.exp(-d * d / (2 * sigma * sigma))


def distance_class(
    d: Union["custom_types.Float", npt.NDArray],
    width: "custom_types.Float",
    nbins: "custom_types.Integer",
) -> Union["custom_types.Integer", npt.NDArray[np.int64]]:
    """Map continuous distances to 1-based distance classes.

    :param d: Distance(s) in ``[0, nbins * width]``
    :type d: Union[custom_types.Float, npt.NDArray]
    :param width: Width of the distance classes
    :type width: custom_types.Float
    :param nbins: Number of distance classes
    :type nbins: custom_types.Integer

    :returns: ``floor(d / width) + 1``. A distance lying exactly on the outer
        boundary is assigned to the last class.
    :rtype: npt.NDArray[np.int64]

    :raises ValueError: If any distance is negative or beyond the outer boundary
    """
    d = np.asarray(d, dtype=float)
    if np.any(d < 0) or np.any(d > nbins * width):
        raise ValueError("Distances must lie within [0, nbins * width].")
    return np.minimum(np.floor_divide(d, width).astype(np.int64) + 1, nbins)


def bin_detection_probabilities(
    sigma: Union["custom_types.Float", npt.NDArray], bins: DistanceBins
) -> npt.NDArray[np.float64]:
    """Probability that an individual present falls in and is detected in each class.

    :param sigma: Scale parameter, scalar or one per species
    :type sigma: Union[custom_types.Float, npt.NDArray]
    :param bins: The distance classes
    :type bins: DistanceBins

    :returns: ``g(midpoint_k) * V / B``, shape ``(nbins,)`` for a scalar scale or
        ``(nbins, n_species)`` for a vector of scales
    :rtype: npt.NDArray[np.float64]
    """
    sigma = np.asarray(sigma, dtype=float)
    midpoints = bins.midpoints if sigma.ndim == 0 else bins.midpoints[:, None]
    return half_normal(midpoints, sigma) * (bins.width / bins.b)


def overall_detection_probability(
    sigma: Union["custom_types.Float", npt.NDArray], bins: DistanceBins
) -> Union[float, npt.NDArray[np.float64]]:
    """Probability that an individual present within ``B`` is counted.

    This is the midpoint-rule approximation used by the model (``pie_sp``).

    :param sigma: Scale parameter, scalar or one per species
    :type sigma: Union[custom_types.Float, npt.NDArray]
    :param bins: The distance classes
    :type bins: DistanceBins

    :returns: Sum of the per-class detection probabilities
    :rtype: Union[float, npt.NDArray[np.float64]]
    """
    pie = bin_detection_probabilities(sigma, bins).sum(axis=0)
    return float(pie) if np.ndim(pie) == 0 else pie


def exact_detection_probability(
    sigma: Union["custom_types.Float", npt.NDArray], b: "custom_types.Float"
) -> Union[float, npt.NDArray[np.float64]]:
    """Exact average of the half-normal detection function over ``[0, b]``.

    :param sigma: Scale parameter(s)
    :type sigma: Union[custom_types.Float, npt.NDArray]
    :param b: Distance to which animals are counted
    :type b: custom_types.Float

    :returns: ``sigma * sqrt(pi / 2) * erf(b / (sigma * sqrt(2))) / b``
    :rtype: Union[float, npt.NDArray[np.float64]]
    """
    sigma = np.asarray(sigma, dtype=float)
    res = sigma * np.sqrt(np.pi / 2) * special.erf(b / (sigma * np.sqrt(2))) / b
    return float(res) if res.ndim == 0 else res


def bin_probabilities_given_detection(
    sigma: Union["custom_types.Float", npt.NDArray], bins: DistanceBins
) -> npt.NDArray[np.float64]:
    """Probability of each distance class for a detected individual.

    :param sigma: Scale parameter, scalar or one per species
    :type sigma: Union[custom_types.Float, npt.NDArray]
    :param bins: The distance classes
    :type bins: DistanceBins

    :returns: Per-class probabilities proportional to the detection function,
        summing to one over classes
    :rtype: npt.NDArray[np.float64]
    """
    pie = bin_detection_probabilities(sigma, bins)
    return pie / pie.sum(axis=0)
