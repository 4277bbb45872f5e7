# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Core Model class for EcoStanPy.

This module contains the Model class that serves as the primary interface for
building, compiling and fitting the integrated community models. The Model
class orchestrates the composition of model fragments and provides methods for
code generation, initialization and MCMC.

The Model class wraps the ``__init__`` of its subclasses to automatically
register the fragments defined as instance attributes, enabling model
construction through simple attribute assignment.
"""

from __future__ import annotations

from typing import Any, Optional, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

from ecostanpy import utils
from ecostanpy.defaults import (
    DEFAULT_CPP_OPTIONS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_INIT_MARGIN,
    DEFAULT_INIT_RETRIES,
    DEFAULT_STANC_OPTIONS,
)
from ecostanpy.model.fragments import (
    AbundanceFragment,
    CountLikelihoodFragment,
    DataDeclaration,
    ModelFragment,
)

if TYPE_CHECKING:
    from ecostanpy import custom_types
    from ecostanpy.model.driver import MCMCSchedule
    from ecostanpy.model.results import hmc as hmc_results

driver = utils.lazy_import("ecostanpy.model.driver")
stan_model = utils.lazy_import("ecostanpy.model.stan.stan_model")


class Model:
    """Primary interface for assembling and fitting integrated community models.

    :param args: Positional arguments (unused, for subclass compatibility)
    :param default_data: Default data bundle. When provided, any instance method
        requiring data will use it if not otherwise provided. Defaults to None.
    :type default_data: Optional[custom_types.StanData]
    :param kwargs: Additional keyword arguments (unused, for subclass compatibility)

    Models are built by subclassing Model and assigning fragments as instance
    attributes in the ``__init__`` method. Every fragment a registered fragment
    depends on must itself be registered.

    Example:
        >>> class CountModel(Model):
        ...     def __init__(self):
        ...         super().__init__()
        ...         self.bins = DistanceBinsFragment()
        ...         self.abundance = AbundanceFragment(self.bins)
        ...         self.detection_tc = DetectionFragment("tc", self.bins)
        ...         self.counts_tc = CountLikelihoodFragment(
        ...             "tc", self.abundance, self.detection_tc
        ...         )
        >>>
        >>> print(CountModel().to_stan().code())
    """

    def __init__(
        self,
        *args,  # pylint: disable=unused-argument
        default_data: Optional["custom_types.StanData"] = None,
        **kwargs,  # pylint: disable=unused-argument
    ):
        """This should be overridden by the subclass."""
        # Set the default values for the model
        self._default_data = default_data

        self._fragments: tuple[ModelFragment, ...] = getattr(self, "_fragments", ())

        self._name_to_fragment: dict[str, ModelFragment] = getattr(
            self, "_name_to_fragment", {}
        )

        self._init_complete: bool = getattr(self, "_init_complete", False)

    def __init_subclass__(cls, **kwargs):
        """Configure automatic fragment registration for Model subclasses.

        :raises ValueError: If forbidden attribute names are used, a fragment
            depends on an unregistered fragment, or two fragments declare the
            same Stan variable
        """
        # The old __init__ method of the class is renamed to '_wrapped_init'
        if "_wrapped_init" in cls.__dict__:
            raise ValueError(
                "The attribute `_wrapped_init` cannot be defined in `Model` subclasses"
            )

        # Redefine the __init__ method of the class
        def __init__(
            self: "Model",
            *init_args,
            **init_kwargs,
        ):

            # Initialization is incomplete at this stage
            self._init_complete = False

            # Run the init method that was defined in the class.
            cls._wrapped_init(self, *init_args, **init_kwargs)

            # That's it if we are not the last subclass to be initialized
            if cls is not self.__class__:
                return

            # Find all the fragments that are defined in the class
            named_fragments = {}
            for attr in vars(self).keys():
                if not isinstance(retrieved := getattr(self, attr), ModelFragment):
                    continue

                # Private attributes cannot hold fragments
                if attr.startswith("_"):
                    raise ValueError(
                        f"Model fragment names cannot start with an underscore: "
                        f"{attr} is invalid."
                    )

                # Set the fragment name and record the fragment
                retrieved.name = attr
                named_fragments[attr] = retrieved

            # Order the fragments such that parents come before their children
            self._name_to_fragment = named_fragments
            self._fragments = self._order_fragments()

            # Initialization is complete
            self._init_complete = True

            # Set default data as itself. This will trigger the setter method
            # and will check that the data is valid.
            if self.has_default_data:
                self.default_data = self.default_data

        # Add the new __init__ method
        cls._wrapped_init = cls.__init__
        cls.__init__ = __init__

    def _order_fragments(self) -> tuple[ModelFragment, ...]:
        """Order the registered fragments so every parent precedes its children.

        :raises ValueError: If a fragment depends on an unregistered fragment or
            two fragments declare the same Stan variable
        """
        registered = set(self._name_to_fragment.values())

        # Depth-first walk up the tree from every fragment
        ordered: list[ModelFragment] = []

        def visit(fragment: ModelFragment) -> None:
            if fragment in ordered:
                return
            for parent in fragment.parents:
                if parent not in registered:
                    raise ValueError(
                        f"Fragment {fragment.name} depends on an unregistered "
                        f"{parent.__class__.__name__}."
                    )
                visit(parent)
            ordered.append(fragment)

        for fragment in self._name_to_fragment.values():
            visit(fragment)

        # No variable can be declared by two fragments
        declared = [
            line.split()[-1].split("=")[0]
            for fragment in ordered
            for method in (
                fragment.parameter_declarations,
                fragment.transformed_parameter_declarations,
                fragment.generated_quantity_declarations,
            )
            for line in method()
        ]
        if len(declared) != len(set(declared)):
            duplicates = sorted({name for name in declared if declared.count(name) > 1})
            raise ValueError(
                f"Variables declared more than once: {', '.join(duplicates)}"
            )

        return tuple(ordered)

    def to_stan(self, **kwargs) -> "stan_model.StanModel":
        """Compile the model to Stan code for MCMC sampling.

        :param kwargs: Additional compilation options passed to StanModel

        :returns: Compiled Stan model ready for MCMC sampling
        :rtype: stan_model.StanModel
        """
        return stan_model.StanModel(self, **kwargs)

    def stan_code(self) -> str:
        """Generate the Stan program of the model without compiling it.

        :returns: Stan program code
        :rtype: str
        """
        return stan_model.StanProgram(self).code

    def validate_data(
        self, data: Optional["custom_types.StanData"] = None
    ) -> "custom_types.StanData":
        """Check a data bundle against the model before any compilation.

        :param data: Data keyed by Stan variable name. Defaults to the default
            data of the model.
        :type data: Optional[custom_types.StanData]

        :returns: The validated and converted data
        :rtype: custom_types.StanData

        :raises DataMismatchError: If the data do not match the model
        :raises ValueError: If no data is given and the model has no default data
        """
        data = self.default_data if data is None else data
        if data is None:
            raise ValueError("No data provided and the model has no default data.")
        return stan_model.StanProgram(self).validate_data(data)

    def draw_inits(
        self, rng: np.random.Generator, data: "custom_types.StanData"
    ) -> "custom_types.ChainInits":
        """Draw initial values for every parameter of the model.

        :param rng: Random source
        :type rng: np.random.Generator
        :param data: Validated data bundle
        :type data: custom_types.StanData

        :returns: Initial values keyed by Stan parameter name
        :rtype: custom_types.ChainInits
        """
        inits = {}
        for fragment in self.fragments:
            inits.update(fragment.draw_inits(rng, data))
        return inits

    def inits_from_latent(
        self,
        inits: "custom_types.ChainInits",
        latent: dict[str, npt.NDArray],
        data: "custom_types.StanData",
    ) -> "custom_types.ChainInits":
        """Derive the starting abundance intercepts from latent abundance.

        The intercept of every species starts at the log of its mean latent
        abundance per unit area, pooled over all streams.

        :param inits: Initial values of one chain
        :type inits: custom_types.ChainInits
        :param latent: Latent abundance of every count record, keyed by the
            name of the latent variable (e.g. ``N_TC``)
        :type latent: dict[str, npt.NDArray]
        :param data: Validated data bundle
        :type data: custom_types.StanData

        :returns: Updated copy of the initial values
        :rtype: custom_types.ChainInits
        """
        # Total latent abundance and area surveyed per species
        totals = np.zeros(data["NSPECIES"])
        area = np.zeros(data["NSPECIES"])
        for fragment in self.count_fragments:
            species = np.asarray(data[fragment.species], dtype=np.int64) - 1
            np.add.at(totals, species, latent[fragment.latent])
            np.add.at(area, species, data[fragment.area])

        # Species without records keep a neutral intercept
        log_abundance = np.zeros(data["NSPECIES"])
        surveyed = (area > 0) & (totals > 0)
        log_abundance[surveyed] = np.log(totals[surveyed] / area[surveyed])

        return self.abundance_fragment.inits_from_log_abundance(inits, log_abundance)

    def make_inits(
        self,
        data: "custom_types.StanData",
        rng: np.random.Generator,
        margin: "custom_types.Integer" = DEFAULT_INIT_MARGIN,
    ) -> tuple["custom_types.ChainInits", dict[str, npt.NDArray]]:
        """Draw a complete, feasible set of initial values for one chain.

        The latent abundance guess of every count record is raised to at least
        its observed count plus ``margin`` before it is used to set the starting
        abundance intercepts.

        :param data: Validated data bundle
        :type data: custom_types.StanData
        :param rng: Random source
        :type rng: np.random.Generator
        :param margin: Margin added to observed counts. Defaults to 1.
        :type margin: custom_types.Integer

        :returns: Initial values of the Stan parameters and the corrected latent
            abundance keyed by latent variable name
        :rtype: tuple[custom_types.ChainInits, dict[str, npt.NDArray]]
        """
        inits = self.draw_inits(rng, data)
        latent = {
            fragment.latent: driver.correct_latent_inits(
                fragment.draw_latent_guess(rng, data),
                data[fragment.observed],
                margin=margin,
                varname=fragment.latent,
            )
            for fragment in self.count_fragments
        }
        return self.inits_from_latent(inits, latent, data), latent

    def mcmc(
        self,
        *,
        data: Optional["custom_types.StanData"] = None,
        schedule: Optional["MCMCSchedule"] = None,
        seed: Optional["custom_types.Integer"] = None,
        processes: Optional["custom_types.Integer"] = None,
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        model_name: Optional[str] = None,
        init_margin: "custom_types.Integer" = DEFAULT_INIT_MARGIN,
        init_retries: "custom_types.Integer" = DEFAULT_INIT_RETRIES,
        progress: bool = True,
    ) -> "hmc_results.SampleResults":
        """Sample from the posterior with independent, parallel chains.

        :param data: Data bundle. Uses the default data defined during
            initialization if not provided.
        :type data: Optional[custom_types.StanData]
        :param schedule: Burn-in, sampling, thinning and number of chains.
            Defaults to the package defaults.
        :type schedule: Optional[MCMCSchedule]
        :param seed: Seed from which every chain's seed and initial values are
            derived. Defaults to None (drawn from the global generator).
        :type seed: Optional[custom_types.Integer]
        :param processes: Number of worker processes. Defaults to one per chain.
        :type processes: Optional[custom_types.Integer]
        :param output_dir: Directory for compilation and output files. Defaults
            to None (temporary).
        :type output_dir: Optional[str]
        :param force_compile: Whether to force recompilation of Stan model.
            Defaults to False.
        :type force_compile: bool
        :param stanc_options: Options for Stan compiler. Defaults to None (uses
            DEFAULT_STANC_OPTIONS).
        :type stanc_options: Optional[dict[str, Any]]
        :param cpp_options: Options for C++ compilation. Defaults to None (uses
            DEFAULT_CPP_OPTIONS).
        :type cpp_options: Optional[dict[str, Any]]
        :param model_name: Name for compiled model. Defaults to the model's
            default name.
        :type model_name: Optional[str]
        :param init_margin: Margin added to observed counts when correcting
            initial latent abundance. Defaults to 1.
        :type init_margin: custom_types.Integer
        :param init_retries: Number of times a failing chain is re-initialized.
            Defaults to 3.
        :type init_retries: custom_types.Integer
        :param progress: Whether to display a progress bar. Defaults to True.
        :type progress: bool

        :returns: MCMC results
        :rtype: hmc_results.SampleResults

        :raises DataMismatchError: If the data do not match the model. Raised
            before compilation.
        :raises InitializationError: If a chain fails on every attempt
        """
        inference_driver = driver.InferenceDriver(
            self,
            self.default_data if data is None else data,
            schedule=schedule,
            output_dir=output_dir,
            init_margin=init_margin,
            init_retries=init_retries,
            force_compile=force_compile,
            stanc_options=stanc_options or DEFAULT_STANC_OPTIONS,
            cpp_options=cpp_options or DEFAULT_CPP_OPTIONS,
            model_name=model_name,
        )
        return inference_driver.run(seed=seed, processes=processes, progress=progress)

    def __str__(self) -> str:
        """Return the fragments of the model in dependency order.

        :returns: One line per fragment
        :rtype: str
        """
        header = self.__class__.__name__
        return "\n".join(
            [header, "=" * len(header)] + [str(fragment) for fragment in self.fragments]
        )

    def __contains__(self, name: str) -> bool:
        """Check if model contains a fragment with the given name.

        :param name: Name of the fragment to check
        :type name: str

        :returns: True if the fragment exists, False otherwise
        :rtype: bool
        """
        return name in self._name_to_fragment

    def __getitem__(self, name: str) -> ModelFragment:
        """Retrieve a fragment by name.

        :param name: Name of the fragment to retrieve
        :type name: str

        :returns: The requested fragment
        :rtype: ModelFragment

        :raises KeyError: If the fragment does not exist
        """
        return self._name_to_fragment[name]

    def __setattr__(self, name: str, value: Any) -> None:
        """Set model attribute with protection for model fragments.

        :raises AttributeError: If attempting to replace a registered fragment
        """
        # We cannot set attributes that are model fragments
        if (
            hasattr(self, "_name_to_fragment")
            and name in self._name_to_fragment
            and getattr(self, "_init_complete", False)
        ):
            raise AttributeError(
                "Model fragments can only be set during initialization."
            )

        # Otherwise, set the attribute
        super().__setattr__(name, value)

    @property
    def default_data(self) -> Optional["custom_types.StanData"]:
        """Default data bundle of the model, if any.

        :raises DataMismatchError: When setting data that do not match the model
        """
        return self._default_data

    @default_data.setter
    def default_data(self, data: Optional["custom_types.StanData"]) -> None:
        # Validate the data once the model is fully assembled
        if data is not None and self._init_complete:
            data = self.validate_data(data)
        self._default_data = data

    @property
    def has_default_data(self) -> bool:
        """Whether the model has default data.

        :returns: True if default data is set
        :rtype: bool
        """
        return self._default_data is not None

    @property
    def fragments(self) -> tuple[ModelFragment, ...]:
        """All fragments of the model, parents before children.

        :returns: Ordered fragments
        :rtype: tuple[ModelFragment, ...]
        """
        return self._fragments

    @property
    def count_fragments(self) -> tuple[CountLikelihoodFragment, ...]:
        """Count likelihood fragments, one per observation stream.

        :returns: Count likelihood fragments
        :rtype: tuple[CountLikelihoodFragment, ...]
        """
        return tuple(
            fragment
            for fragment in self.fragments
            if isinstance(fragment, CountLikelihoodFragment)
        )

    @property
    def abundance_fragment(self) -> AbundanceFragment:
        """The abundance fragment of the model.

        :raises ValueError: If the model does not have exactly one
        """
        abundance = [
            fragment
            for fragment in self.fragments
            if isinstance(fragment, AbundanceFragment)
        ]
        if len(abundance) != 1:
            raise ValueError(
                f"Expected exactly one abundance fragment, found {len(abundance)}."
            )
        return abundance[0]

    @property
    def streams(self) -> tuple[str, ...]:
        """Observation streams the model includes.

        :returns: Stream names, e.g. ``("tc", "ds")``
        :rtype: tuple[str, ...]
        """
        return tuple(fragment.stream for fragment in self.count_fragments)

    @property
    def data_declarations(self) -> dict[str, DataDeclaration]:
        """Data declarations of the model keyed by variable name.

        :returns: Data declarations in declaration order
        :rtype: dict[str, DataDeclaration]
        """
        return stan_model.StanProgram(self).data_declarations

    @property
    def reported_varnames(self) -> tuple[str, ...]:
        """Variables recorded from every chain and reported in summaries.

        :returns: Stan variable names
        :rtype: tuple[str, ...]
        """
        return tuple(
            varname
            for fragment in self.fragments
            for varname in fragment.reported_varnames()
        )

    @property
    def default_model_name(self) -> str:
        """Name of the compiled executable, unique to the assembled program.

        :returns: Lowercase class name joined with the streams
        :rtype: str
        """
        return "_".join([self.__class__.__name__.lower(), *self.streams])
