# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Ready-made model variants.

Both variants are assembled from the same fragments and differ only in whether
the species parameters are independent (:py:class:`SingleSpeciesModel`) or
drawn from community distributions (:py:class:`CommunityModel`). Either can
include the count stream (``"tc"``), the distance-sampling stream (``"ds"``) or
both, in which case the streams share the abundance parameters while keeping
separate detection parameters.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

from ecostanpy.model.fragments import (
    AbundanceFragment,
    CountLikelihoodFragment,
    DetectionFragment,
    DistanceBinsFragment,
    DistanceClassFragment,
    PARAM_SUFFIX,
    RegionEffectFragment,
)
from ecostanpy.model.model import Model

if TYPE_CHECKING:
    from ecostanpy import custom_types


class StreamModel(Model):
    """Base class of the variants: one detection and count likelihood per stream.

    :param streams: Observation streams to include. Defaults to ``("tc",)``.
    :type streams: tuple[str, ...]
    :param regions: Whether to include region random effects on abundance.
        Defaults to False.
    :type regions: bool
    :param default_data: Default data bundle. Defaults to None.
    :type default_data: Optional[custom_types.StanData]

    :raises ValueError: If no stream, an unknown stream or a repeated stream is
        given
    """

    HIERARCHICAL: bool = False

    def __init__(
        self,
        streams: tuple[str, ...] = ("tc",),
        regions: bool = False,
        default_data: Optional["custom_types.StanData"] = None,
    ):
        super().__init__(default_data=default_data)

        # Check the streams
        if len(streams) == 0:
            raise ValueError("At least one observation stream is required.")
        if unknown := set(streams) - set(PARAM_SUFFIX):
            raise ValueError(f"Unknown streams: {', '.join(sorted(unknown))}")
        if len(set(streams)) != len(streams):
            raise ValueError(f"Streams cannot be repeated: {streams}")
        self.regions = regions

        # Fragments shared by all streams
        self.bins = DistanceBinsFragment()
        self.abundance = AbundanceFragment(self.bins, hierarchical=self.HIERARCHICAL)
        region = None
        if regions:
            self.region = region = RegionEffectFragment(self.bins)

        # Detection and likelihood of every stream
        for stream in streams:
            detection = DetectionFragment(
                stream, self.bins, hierarchical=self.HIERARCHICAL
            )
            setattr(self, f"detection_{stream}", detection)
            setattr(
                self,
                f"counts_{stream}",
                CountLikelihoodFragment(stream, self.abundance, detection, region),
            )
            if stream == "ds":
                self.dclass_ds = DistanceClassFragment(detection)

    @property
    def default_model_name(self) -> str:
        name = super().default_model_name
        return f"{name}_region" if self.regions else name


class SingleSpeciesModel(StreamModel):
    """Species with independent priors.

    Each species has ``alpha0, alpha1 ~ normal(0, 2)`` and a log detection scale
    per stream ``gamma0 ~ uniform(0, 10)``.
    """

    HIERARCHICAL = False


class CommunityModel(StreamModel):
    """Species parameters drawn from community distributions.

    Every species parameter is ``normal(mu, sd)`` across species, written in
    non-centered form, with the community means and standard deviations
    estimated jointly with the species parameters.
    """

    HIERARCHICAL = True


# Variants by name
VARIANTS: dict[str, type[StreamModel]] = {
    "single": SingleSpeciesModel,
    "community": CommunityModel,
}


def get_model_instance(
    variant: str,
    streams: tuple[str, ...] = ("tc",),
    regions: bool = False,
    data: Optional["custom_types.StanData"] = None,
) -> StreamModel:
    """Build a model variant by name.

    :param variant: ``"single"`` or ``"community"``
    :type variant: str
    :param streams: Observation streams to include. Defaults to ``("tc",)``.
    :type streams: tuple[str, ...]
    :param regions: Whether to include region random effects. Defaults to False.
    :type regions: bool
    :param data: Default data bundle, validated on construction. Defaults to None.
    :type data: Optional[custom_types.StanData]

    :returns: The model
    :rtype: StreamModel

    :raises ValueError: If the variant is unknown
    :raises DataMismatchError: If the data do not match the model
    """
    if variant not in VARIANTS:
        raise ValueError(
            f"Unknown model variant: {variant}. Options are {', '.join(VARIANTS)}."
        )
    return VARIANTS[variant](streams=tuple(streams), regions=regions, default_data=data)
