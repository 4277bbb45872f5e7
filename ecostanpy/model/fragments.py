# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Composable building blocks of the integrated community models.

Every model variant is assembled from the same small set of fragments. A
fragment is a pure description of what it contributes to a Stan program:

    - Data declarations (with the dimension constant and bounds of each array,
      which are also used to validate data bundles before inference)
    - Parameter, transformed parameter and generated quantity declarations
    - Transformed parameter, model and generated quantity statements
    - Initial values for the parameters it declares

Fragments reference the fragments they depend on (their ``parents``), so a model
can order them such that every variable is declared before it is used. The
fragments are:

    - :py:class:`DistanceBinsFragment`: the shared distance-class constants
    - :py:class:`DetectionFragment`: half-normal detection per stream
    - :py:class:`AbundanceFragment`: the abundance regression coefficients
    - :py:class:`RegionEffectFragment`: region random effects on abundance
    - :py:class:`CountLikelihoodFragment`: the count likelihood of a stream
    - :py:class:`DistanceClassFragment`: the distance-class likelihood

Whether a variant is single-species or a community model is a property of the
detection and abundance fragments (``hierarchical``). Which streams a variant
includes is decided by which detection and likelihood fragments it holds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal, Optional, TYPE_CHECKING, Union

import numpy as np
import numpy.typing as npt

from ecostanpy.exceptions import DataMismatchError

if TYPE_CHECKING:
    from ecostanpy import custom_types

# Suffixes used to name the variables of each stream
PARAM_SUFFIX: dict[str, str] = {"tc": "c", "ds": "ds"}
DATA_SUFFIX: dict[str, str] = {"tc": "TC", "ds": "DS"}

# Range of the uniform prior on the log detection scale of single-species models
GAMMA0_BOUNDS: tuple[float, float] = (0.0, 10.0)


@dataclass(frozen=True)
class DataDeclaration:
    """Declaration of a single Stan data variable.

    :ivar name: Name of the variable
    :ivar basetype: ``"int"`` or ``"real"``
    :ivar dim: Name of the dimension constant for arrays. None for scalars.
    :ivar lower: Lower bound, either a number or the name of a data constant
    :ivar upper: Upper bound, either a number or the name of a data constant
    """

    name: str
    basetype: Literal["int", "real"]
    dim: Optional[str] = None
    lower: Optional[Union[int, float, str]] = None
    upper: Optional[Union[int, float, str]] = None

    @property
    def stan_bounds(self) -> str:
        """The bounds as written in a Stan declaration, e.g. ``<lower=1>``."""
        bounds = [
            f"{key}={value}"
            for key, value in (("lower", self.lower), ("upper", self.upper))
            if value is not None
        ]
        return f"<{', '.join(bounds)}>" if bounds else ""

    def declaration(self) -> str:
        """Stan declaration of the variable."""
        if self.dim is None:
            return f"{self.basetype}{self.stan_bounds} {self.name}"
        if self.basetype == "int":
            return f"array[{self.dim}] int{self.stan_bounds} {self.name}"
        return f"vector{self.stan_bounds}[{self.dim}] {self.name}"

    def _resolve_bound(self, bound, data: "custom_types.StanData"):
        """Numeric value of a bound that may name a data constant."""
        return data[bound] if isinstance(bound, str) else bound

    def validate(self, data: "custom_types.StanData") -> None:
        """Check the value of this variable within a data bundle.

        :param data: The full data bundle. Must contain this variable and any
            constant its dimension or bounds refer to.
        :type data: custom_types.StanData

        :raises DataMismatchError: If the value is not of the declared type, the
            length of an array disagrees with its dimension constant, or any
            value falls outside of the declared bounds
        """
        value = np.asarray(data[self.name])

        # Shape
        if self.dim is None:
            if value.ndim != 0:
                raise DataMismatchError(
                    f"Data variable {self.name} must be a scalar, got shape {value.shape}."
                )
        elif value.ndim != 1 or len(value) != data[self.dim]:
            raise DataMismatchError(
                f"Data variable {self.name} must have length {self.dim}="
                f"{data[self.dim]}, got shape {value.shape}."
            )

        # Nothing else to check for empty arrays
        if value.size == 0:
            return

        # Type
        if not np.all(np.isfinite(value.astype(float))):
            raise DataMismatchError(f"Data variable {self.name} has non-finite values.")
        if self.basetype == "int" and not np.all(np.mod(value, 1) == 0):
            raise DataMismatchError(
                f"Data variable {self.name} must be integer-valued."
            )

        # Bounds
        if self.lower is not None and value.min() < (
            lower := self._resolve_bound(self.lower, data)
        ):
            raise DataMismatchError(
                f"Data variable {self.name} has values below its lower bound {lower}."
            )
        if self.upper is not None and value.max() > (
            upper := self._resolve_bound(self.upper, data)
        ):
            raise DataMismatchError(
                f"Data variable {self.name} has values above its upper bound {upper}."
            )

    @property
    def depends_on(self) -> tuple[str, ...]:
        """Names of the data constants this declaration refers to."""
        return tuple(
            ref
            for ref in (self.dim, self.lower, self.upper)
            if isinstance(ref, str)
        )


class ModelFragment(ABC):
    """Base class for all model fragments.

    :param parents: Fragments this fragment depends on. None entries are ignored.
    :type parents: Optional[ModelFragment]

    Subclasses override the block-contribution methods they need. All of them
    return lists of Stan code lines without trailing semicolons.
    """

    def __init__(self, *parents: Optional["ModelFragment"]):
        self._parents = [parent for parent in parents if parent is not None]
        self._name: Optional[str] = None

    def data_declarations(self) -> list[DataDeclaration]:
        """Data variables this fragment needs."""
        return []

    def parameter_declarations(self) -> list[str]:
        """Declarations for the parameters block."""
        return []

    def transformed_parameter_declarations(self) -> list[str]:
        """Declarations for the transformed parameters block."""
        return []

    def transformed_parameter_statements(self) -> list[str]:
        """Statements for the transformed parameters block."""
        return []

    @abstractmethod
    def model_statements(self) -> list[str]:
        """Prior and likelihood statements for the model block."""

    def generated_quantity_declarations(self) -> list[str]:
        """Declarations for the generated quantities block."""
        return []

    def generated_quantity_statements(self) -> list[str]:
        """Statements for the generated quantities block."""
        return []

    def reported_varnames(self) -> list[str]:
        """Variables reported in posterior summaries."""
        return []

    def draw_inits(
        self,
        rng: np.random.Generator,  # pylint: disable=unused-argument
        data: "custom_types.StanData",  # pylint: disable=unused-argument
    ) -> "custom_types.ChainInits":
        """Draw initial values for the parameters declared by this fragment."""
        return {}

    def __str__(self) -> str:
        parents = ", ".join(parent.name for parent in self._parents)
        return f"{self.name} = {self.__class__.__name__}({parents})"

    @property
    def parents(self) -> list["ModelFragment"]:
        """Fragments this fragment depends on."""
        return self._parents.copy()

    @property
    def name(self) -> str:
        """Name of the fragment within its model."""
        return self._name or self.__class__.__name__

    @name.setter
    def name(self, name: str) -> None:
        if self._name is not None and self._name != name:
            raise ValueError(
                f"Fragment already named {self._name} cannot be renamed to {name}."
            )
        self._name = name


class DistanceBinsFragment(ModelFragment):
    """The distance classes and the number of species, shared by all streams."""

    def data_declarations(self) -> list[DataDeclaration]:
        return [
            DataDeclaration("NSPECIES", "int", lower=1),
            DataDeclaration("NBINS", "int", lower=1),
            DataDeclaration("MIDPOINT", "real", dim="NBINS", lower=0),
            DataDeclaration("V", "real", lower=0),
            DataDeclaration("B", "real", lower=0),
        ]

    def model_statements(self) -> list[str]:
        return []


class DetectionFragment(ModelFragment):
    """Half-normal detection of one observation stream.

    Per species, the log detection scale ``gamma0`` gives the half-normal scale
    ``omega = exp(gamma0)``. The probability that an individual present is
    counted within distance class ``k`` is the detection function at the class
    midpoint weighted by the fraction of the survey radius the class covers,

        pie[k, s] = exp(-MIDPOINT[k]^2 / (2 * omega[s]^2)) * V / B

    and the overall probability ``pie_sp`` is its sum over classes.

    :param stream: ``"tc"`` or ``"ds"``
    :type stream: str
    :param bins: The shared distance-class fragment
    :type bins: DistanceBinsFragment
    :param hierarchical: Whether the species scales are drawn from a community
        distribution (non-centered). Otherwise each has a ``uniform(0, 10)``
        prior. Defaults to False.
    :type hierarchical: bool
    """

    def __init__(
        self, stream: str, bins: DistanceBinsFragment, hierarchical: bool = False
    ):
        if stream not in PARAM_SUFFIX:
            raise ValueError(f"Unknown stream: {stream}")
        super().__init__(bins)
        self.stream = stream
        self.hierarchical = hierarchical

        # Variable names
        suffix = PARAM_SUFFIX[stream]
        self.gamma0 = f"gamma0_{suffix}"
        self.mu = f"mu_gamma0_{suffix}"
        self.sd = f"sd_gamma0_{suffix}"
        self.raw = f"gamma0_{suffix}_raw"
        self.omega = f"omega_{suffix}"
        self.pie = f"pie_{suffix}"
        self.pie_sp = f"pie_sp_{suffix}"

    def parameter_declarations(self) -> list[str]:
        lower, upper = GAMMA0_BOUNDS
        if self.hierarchical:
            return [
                f"real<lower={lower}, upper={upper}> {self.mu}",
                f"real<lower=0> {self.sd}",
                f"vector[NSPECIES] {self.raw}",
            ]
        return [f"vector<lower={lower}, upper={upper}>[NSPECIES] {self.gamma0}"]

    def transformed_parameter_declarations(self) -> list[str]:
        declarations = [
            f"vector[NSPECIES] {self.omega}",
            f"matrix[NBINS, NSPECIES] {self.pie}",
            f"vector<lower=0>[NSPECIES] {self.pie_sp}",
        ]
        if self.hierarchical:
            declarations.insert(0, f"vector[NSPECIES] {self.gamma0}")
        return declarations

    def transformed_parameter_statements(self) -> list[str]:
        statements = []
        if self.hierarchical:
            statements.append(f"{self.gamma0} = {self.mu} + {self.sd} * {self.raw}")
        return statements + [
            f"{self.omega} = exp({self.gamma0})",
            "for (s in 1:NSPECIES) {",
            f"{self.pie}[:, s] = exp(-square(MIDPOINT) / (2 * square({self.omega}[s])))"
            " * (V / B)",
            f"{self.pie_sp}[s] = sum({self.pie}[:, s])",
            "}",
        ]

    def model_statements(self) -> list[str]:
        lower, upper = GAMMA0_BOUNDS
        if self.hierarchical:
            return [
                f"{self.mu} ~ uniform({lower}, {upper})",
                f"{self.sd} ~ normal(0, 2)",
                f"{self.raw} ~ std_normal()",
            ]
        return [f"{self.gamma0} ~ uniform({lower}, {upper})"]

    def reported_varnames(self) -> list[str]:
        varnames = [self.gamma0, self.pie_sp]
        if self.hierarchical:
            varnames = [self.mu, self.sd] + varnames
        return varnames

    def draw_inits(
        self, rng: np.random.Generator, data: "custom_types.StanData"
    ) -> "custom_types.ChainInits":
        # Start near the typical log scale, well within the prior range
        lower, upper = GAMMA0_BOUNDS
        if self.hierarchical:
            return {
                self.mu: float(np.clip(rng.normal(5.5, 0.5), lower + 0.5, upper - 0.5)),
                self.sd: float(rng.uniform(0.1, 0.5)),
                self.raw: rng.normal(0.0, 1.0, size=data["NSPECIES"]),
            }
        return {
            self.gamma0: np.clip(
                rng.normal(5.5, 0.5, size=data["NSPECIES"]), lower + 0.5, upper - 0.5
            )
        }


class AbundanceFragment(ModelFragment):
    """Per-species abundance intercepts ``alpha0`` and covariate slopes ``alpha1``.

    :param bins: The shared distance-class fragment (provides ``NSPECIES``)
    :type bins: DistanceBinsFragment
    :param hierarchical: Whether the coefficients are drawn from a community
        distribution (non-centered, ``mu ~ normal(0, 2)``, ``sd ~ half-normal(2)``).
        Otherwise each has a ``normal(0, 2)`` prior. Defaults to False.
    :type hierarchical: bool
    """

    COEFFICIENTS: tuple[str, ...] = ("alpha0", "alpha1")

    def __init__(self, bins: DistanceBinsFragment, hierarchical: bool = False):
        super().__init__(bins)
        self.hierarchical = hierarchical

    def parameter_declarations(self) -> list[str]:
        if self.hierarchical:
            return [
                line
                for coef in self.COEFFICIENTS
                for line in (
                    f"real mu_{coef}",
                    f"real<lower=0> sd_{coef}",
                    f"vector[NSPECIES] {coef}_raw",
                )
            ]
        return [f"vector[NSPECIES] {coef}" for coef in self.COEFFICIENTS]

    def transformed_parameter_declarations(self) -> list[str]:
        if self.hierarchical:
            return [f"vector[NSPECIES] {coef}" for coef in self.COEFFICIENTS]
        return []

    def transformed_parameter_statements(self) -> list[str]:
        if self.hierarchical:
            return [
                f"{coef} = mu_{coef} + sd_{coef} * {coef}_raw"
                for coef in self.COEFFICIENTS
            ]
        return []

    def model_statements(self) -> list[str]:
        if self.hierarchical:
            return [
                line
                for coef in self.COEFFICIENTS
                for line in (
                    f"mu_{coef} ~ normal(0, 2)",
                    f"sd_{coef} ~ normal(0, 2)",
                    f"{coef}_raw ~ std_normal()",
                )
            ]
        return [f"{coef} ~ normal(0, 2)" for coef in self.COEFFICIENTS]

    def reported_varnames(self) -> list[str]:
        varnames = list(self.COEFFICIENTS)
        if self.hierarchical:
            varnames = [
                f"{prefix}_{coef}"
                for coef in self.COEFFICIENTS
                for prefix in ("mu", "sd")
            ] + varnames
        return varnames

    def draw_inits(
        self, rng: np.random.Generator, data: "custom_types.StanData"
    ) -> "custom_types.ChainInits":
        nspecies = data["NSPECIES"]
        if self.hierarchical:
            inits = {}
            for coef in self.COEFFICIENTS:
                inits[f"mu_{coef}"] = float(rng.normal(0.0, 1.0))
                inits[f"sd_{coef}"] = 1.0
                inits[f"{coef}_raw"] = rng.normal(0.0, 1.0, size=nspecies)
            return inits
        return {coef: rng.normal(0.0, 1.0, size=nspecies) for coef in self.COEFFICIENTS}

    def inits_from_log_abundance(
        self, inits: "custom_types.ChainInits", log_abundance: npt.NDArray
    ) -> "custom_types.ChainInits":
        """Set the starting intercepts to per-species log mean abundances.

        :param inits: Initial values of one chain
        :type inits: custom_types.ChainInits
        :param log_abundance: Log mean latent abundance per unit area of every
            species
        :type log_abundance: npt.NDArray

        :returns: Updated copy of the initial values
        :rtype: custom_types.ChainInits
        """
        inits = inits.copy()
        if self.hierarchical:
            inits["mu_alpha0"] = float(log_abundance.mean())
            inits["sd_alpha0"] = 1.0
            inits["alpha0_raw"] = log_abundance - log_abundance.mean()
        else:
            inits["alpha0"] = log_abundance.copy()
        return inits


class RegionEffectFragment(ModelFragment):
    """Non-centered region random effects on log abundance.

    ``eps_region = sd_region * eps_region_raw`` with ``eps_region_raw ~
    std_normal()`` and ``sd_region ~ half-normal(1)``.
    """

    def data_declarations(self) -> list[DataDeclaration]:
        return [DataDeclaration("NREGIONS", "int", lower=1)]

    def parameter_declarations(self) -> list[str]:
        return ["real<lower=0> sd_region", "vector[NREGIONS] eps_region_raw"]

    def transformed_parameter_declarations(self) -> list[str]:
        return ["vector[NREGIONS] eps_region"]

    def transformed_parameter_statements(self) -> list[str]:
        return ["eps_region = sd_region * eps_region_raw"]

    def model_statements(self) -> list[str]:
        return ["sd_region ~ normal(0, 1)", "eps_region_raw ~ std_normal()"]

    def reported_varnames(self) -> list[str]:
        return ["sd_region", "eps_region"]

    def draw_inits(
        self, rng: np.random.Generator, data: "custom_types.StanData"
    ) -> "custom_types.ChainInits":
        return {
            "sd_region": float(rng.uniform(0.1, 1.0)),
            "eps_region_raw": rng.normal(0.0, 1.0, size=data["NREGIONS"]),
        }


class CountLikelihoodFragment(ModelFragment):
    """Count likelihood of one observation stream.

    For every count record ``i``, the latent abundance is Poisson with

        log(lambda[i]) = alpha0[SP[i]] + alpha1[SP[i]] * HAB[i] + log(AREA[i])
                         (+ eps_region[REGION[i]])

    and the observed count is ``Binomial(N[i], pie_sp[SP[i]])``. The discrete
    latent abundance is summed out exactly, which gives ``y[i] ~
    Poisson(lambda[i] * pie_sp[SP[i]])``. ``N`` is drawn in the generated
    quantities from its full conditional, ``N[i] = y[i] + Poisson(lambda[i] *
    (1 - pie_sp[SP[i]]))``, so it is reported like any other variable.

    :param stream: ``"tc"`` or ``"ds"``
    :type stream: str
    :param abundance: The abundance fragment
    :type abundance: AbundanceFragment
    :param detection: The detection fragment of the same stream
    :type detection: DetectionFragment
    :param region: The region effect fragment. Defaults to None (no region
        effects).
    :type region: Optional[RegionEffectFragment]
    """

    def __init__(
        self,
        stream: str,
        abundance: AbundanceFragment,
        detection: DetectionFragment,
        region: Optional[RegionEffectFragment] = None,
    ):
        if detection.stream != stream:
            raise ValueError(
                f"Detection of stream {detection.stream} cannot be used for the "
                f"counts of stream {stream}."
            )
        super().__init__(abundance, detection, region)
        self.stream = stream
        self.detection = detection
        self.region = region

        # Variable names
        suffix = DATA_SUFFIX[stream]
        self.ncounts = f"NCOUNTS_{suffix}"
        self.species = f"SP_{suffix}"
        self.habitat = f"HAB_{suffix}"
        self.area = f"AREA_{suffix}"
        self.region_index = f"REGION_{suffix}"
        self.observed = f"yN_{suffix}"
        self.latent = f"N_{suffix}"
        self.log_lambda = f"log_lambda_{stream}"

    def data_declarations(self) -> list[DataDeclaration]:
        declarations = [
            DataDeclaration(self.ncounts, "int", lower=0),
            DataDeclaration(self.species, "int", self.ncounts, 1, "NSPECIES"),
            DataDeclaration(self.habitat, "real", self.ncounts),
            DataDeclaration(self.area, "real", self.ncounts, lower=0),
            DataDeclaration(self.observed, "int", self.ncounts, lower=0),
        ]
        if self.region is not None:
            declarations.append(
                DataDeclaration(self.region_index, "int", self.ncounts, 1, "NREGIONS")
            )
        return declarations

    def transformed_parameter_declarations(self) -> list[str]:
        return [f"vector[{self.ncounts}] {self.log_lambda}"]

    def transformed_parameter_statements(self) -> list[str]:
        rhs = (
            f"alpha0[{self.species}] + alpha1[{self.species}] .* {self.habitat}"
            f" + log({self.area})"
        )
        if self.region is not None:
            rhs += f" + eps_region[{self.region_index}]"
        return [f"{self.log_lambda} = {rhs}"]

    def model_statements(self) -> list[str]:
        return [
            f"{self.observed} ~ poisson_log({self.log_lambda}"
            f" + log({self.detection.pie_sp}[{self.species}]))"
        ]

    def generated_quantity_declarations(self) -> list[str]:
        return [f"array[{self.ncounts}] int {self.latent}"]

    def generated_quantity_statements(self) -> list[str]:
        return [
            f"for (i in 1:{self.ncounts}) {{",
            f"{self.latent}[i] = {self.observed}[i] + poisson_log_rng("
            f"{self.log_lambda}[i] + log1m({self.detection.pie_sp}[{self.species}[i]]))",
            "}",
        ]

    def reported_varnames(self) -> list[str]:
        return [self.latent]

    def draw_latent_guess(
        self, rng: np.random.Generator, data: "custom_types.StanData"
    ) -> npt.NDArray[np.int64]:
        """Draw a rough initial guess of the latent abundance of every record.

        The guess is not constrained by the observed counts and must be
        corrected before it is used.
        """
        observed = np.asarray(data[self.observed], dtype=np.int64)
        return rng.poisson(np.maximum(observed, 1)).astype(np.int64)


class DistanceClassFragment(ModelFragment):
    """Distance-class likelihood of the detected groups of one stream.

    The class of every detected group is categorical with probabilities
    proportional to the class detection probabilities of its species,
    ``DCLASS[j] ~ categorical(pie[:, SP_GROUP[j]] / pie_sp[SP_GROUP[j]])``.

    :param detection: The detection fragment of the stream
    :type detection: DetectionFragment
    """

    def __init__(self, detection: DetectionFragment):
        super().__init__(detection)
        self.detection = detection

        suffix = DATA_SUFFIX[detection.stream]
        self.ngroups = f"NGROUPS_{suffix}"
        self.species = f"SP_GROUP_{suffix}"
        self.dclass = f"DCLASS_{suffix}"

    def data_declarations(self) -> list[DataDeclaration]:
        return [
            DataDeclaration(self.ngroups, "int", lower=0),
            DataDeclaration(self.species, "int", self.ngroups, 1, "NSPECIES"),
            DataDeclaration(self.dclass, "int", self.ngroups, 1, "NBINS"),
        ]

    def model_statements(self) -> list[str]:
        pie, pie_sp = self.detection.pie, self.detection.pie_sp
        return [
            f"for (j in 1:{self.ngroups}) {{",
            f"{self.dclass}[j] ~ categorical({pie}[:, {self.species}[j]]"
            f" / {pie_sp}[{self.species}[j]])",
            "}",
        ]
