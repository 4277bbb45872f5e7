# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code generation and compilation.

This module translates EcoStanPy models into Stan programs and manages the Stan
compilation workflow. Every block of the program is assembled from the
contributions of the model's fragments (declarations first, then statements) in
dependency order, so every variable is declared before it is used.

Users will not normally interact with this module directly. Instead, they will
either (1) use the :py:meth:`Model.to_stan() <ecostanpy.model.model.Model.to_stan>`
method to convert a model to a :py:class:`~ecostanpy.model.stan.stan_model.StanModel`
instance or (2) use this module implicitly when fitting a model via the
:py:meth:`Model.mcmc() <ecostanpy.model.model.Model.mcmc>` method.
"""

from __future__ import annotations

import os.path
import weakref

from tempfile import TemporaryDirectory
from typing import Any, Optional, TYPE_CHECKING

from cmdstanpy import CmdStanModel, format_stan_file

from ecostanpy import utils
from ecostanpy.defaults import (
    DEFAULT_CPP_OPTIONS,
    DEFAULT_FORCE_COMPILE,
    DEFAULT_STANC_OPTIONS,
)
from ecostanpy.exceptions import DataMismatchError
from ecostanpy.model.fragments import DataDeclaration

if TYPE_CHECKING:
    from ecostanpy import custom_types
    from ecostanpy.model.model import Model

# Number of spaces per indentation level
DEFAULT_INDENTATION = 4


class StanProgram:
    """A Stan program assembled from the fragments of a model.

    :param model: The model to build the program for
    :type model: Model

    :ivar model: The source model
    """

    def __init__(self, model: "Model"):
        self.model = model

        # Gather the data declarations, making sure none are duplicated with
        # conflicting definitions
        self._data_declarations: dict[str, DataDeclaration] = {}
        for fragment in model.fragments:
            for declaration in fragment.data_declarations():
                existing = self._data_declarations.setdefault(
                    declaration.name, declaration
                )
                if existing != declaration:
                    raise ValueError(
                        f"Conflicting declarations of data variable {declaration.name}."
                    )

    @staticmethod
    def finalize_line(text: str, indentation_level: "custom_types.Integer") -> str:
        """Indent a line of Stan code and terminate statements with a semicolon.

        :param text: Raw code text to format
        :type text: str
        :param indentation_level: Indentation level
        :type indentation_level: custom_types.Integer

        :returns: Formatted Stan code line
        :rtype: str
        """
        # Pad the input text with spaces
        formatted = f"{' ' * DEFAULT_INDENTATION * indentation_level}{text}"

        # Add a semicolon to the end if not a bracket or blank
        if text and text[-1] not in {"{", "}", ";"} and not text.startswith("#"):
            formatted += ";"

        return formatted

    def combine_lines(
        self, lines: list[str], indentation_level: "custom_types.Integer" = 1
    ) -> str:
        """Combine lines of Stan code, indenting the bodies of loops.

        :param lines: Code lines to combine
        :type lines: list[str]
        :param indentation_level: Indentation level of the first line. Defaults
            to 1.
        :type indentation_level: custom_types.Integer

        :returns: Combined and formatted Stan code
        :rtype: str
        """
        formatted = []
        for line in lines:
            if line.startswith("}"):
                indentation_level -= 1
            formatted.append(self.finalize_line(line, indentation_level))
            if line.endswith("{"):
                indentation_level += 1
        return "\n".join(formatted)

    def _write_block(
        self, prefix: str, declarations: list[str], statements: list[str]
    ) -> str:
        """Wrap declarations followed by statements in a program block.

        Returns an empty string if the block has no contents.
        """
        if len(declarations) + len(statements) == 0:
            return ""
        return f"{prefix} {{\n" + self.combine_lines(declarations + statements) + "\n}"

    def _collect(self, method: str) -> list[str]:
        """Concatenate the lines contributed by every fragment, in order."""
        return [
            line
            for fragment in self.model.fragments
            for line in getattr(fragment, method)()
        ]

    @property
    def data_block(self) -> str:
        """Stan data block.

        :returns: Stan data block code
        :rtype: str
        """
        declarations = [
            declaration.declaration()
            for declaration in self._data_declarations.values()
        ]
        return self._write_block("data", declarations, [])

    @property
    def parameters_block(self) -> str:
        """Stan parameters block.

        :returns: Stan parameters block code
        :rtype: str
        """
        return self._write_block(
            "parameters", self._collect("parameter_declarations"), []
        )

    @property
    def transformed_parameters_block(self) -> str:
        """Stan transformed parameters block.

        :returns: Stan transformed parameters block code or empty string if not
            needed
        :rtype: str
        """
        return self._write_block(
            "transformed parameters",
            self._collect("transformed_parameter_declarations"),
            self._collect("transformed_parameter_statements"),
        )

    @property
    def model_block(self) -> str:
        """Stan model block with prior and likelihood statements.

        :returns: Stan model block code
        :rtype: str
        """
        return self._write_block("model", [], self._collect("model_statements"))

    @property
    def generated_quantities_block(self) -> str:
        """Stan generated quantities block.

        :returns: Stan generated quantities block code or empty string if not
            needed
        :rtype: str
        """
        return self._write_block(
            "generated quantities",
            self._collect("generated_quantity_declarations"),
            self._collect("generated_quantity_statements"),
        )

    @property
    def code(self) -> str:
        """Complete Stan program code.

        :returns: Complete Stan program as formatted string
        :rtype: str
        """
        # Join steps that have contents
        return "\n".join(
            val
            for val in (
                self.data_block,
                self.parameters_block,
                self.transformed_parameters_block,
                self.model_block,
                self.generated_quantities_block,
            )
            if len(val.strip()) > 0
        )

    @property
    def data_declarations(self) -> dict[str, DataDeclaration]:
        """Data declarations keyed by variable name, in declaration order."""
        return self._data_declarations.copy()

    @property
    def user_provided_varnames(self) -> set[str]:
        """Names of every data variable the program needs."""
        return set(self._data_declarations)

    def validate_data(self, data: "custom_types.StanData") -> "custom_types.StanData":
        """Check a data bundle against the declarations of the program.

        :param data: Data keyed by Stan variable name
        :type data: custom_types.StanData

        :returns: The data with scalars converted to Python numbers and arrays to
            1D numpy arrays of the declared base type
        :rtype: custom_types.StanData

        :raises DataMismatchError: If data variables are missing or unexpected,
            an array length disagrees with its dimension constant, or a value is
            out of its declared bounds
        """
        # Report any missing or extra data
        provided = set(data.keys())
        if missing := self.user_provided_varnames - provided:
            raise DataMismatchError(f"Missing data: {', '.join(sorted(missing))}")
        elif extra := provided - self.user_provided_varnames:
            raise DataMismatchError(f"Extra data: {', '.join(sorted(extra))}")

        # Check scalars first so that dimensions and bounds can be resolved
        declarations = sorted(
            self._data_declarations.values(), key=lambda decl: decl.dim is not None
        )
        for declaration in declarations:
            declaration.validate(data)

        # Convert to the declared types
        converted = {}
        for name, declaration in self._data_declarations.items():
            is_int = declaration.basetype == "int"
            if declaration.dim is None:
                converted[name] = (int if is_int else float)(data[name])
            elif is_int:
                converted[name] = utils.as_int_array(data[name])
            else:
                converted[name] = utils.as_float_array(data[name])
        return converted


class StanModel(CmdStanModel):
    """CmdStanModel built from an EcoStanPy model.

    :param model: Model to compile to Stan
    :type model: Model
    :param output_dir: Directory for Stan files and compilation. Defaults to None
        (temporary).
    :type output_dir: Optional[str]
    :param force_compile: Whether to force recompilation. Defaults to False.
    :type force_compile: bool
    :param stanc_options: Options for Stan compiler. Defaults to None (uses defaults).
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for C++ compilation. Defaults to None (uses defaults).
    :type cpp_options: Optional[dict[str, Any]]
    :param model_name: Name for compiled model. Defaults to the model's
        default name.
    :type model_name: Optional[str]

    :ivar model: Reference to source EcoStanPy model
    :ivar program: Generated StanProgram instance
    :ivar output_dir: Directory containing Stan files
    :ivar stan_executable_path: Path to compiled Stan executable

    An executable already present in ``output_dir`` under ``model_name`` is
    reused unless ``force_compile`` is set.
    """

    def __init__(
        self,
        model: "Model",
        output_dir: Optional[str] = None,
        force_compile: bool = DEFAULT_FORCE_COMPILE,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        model_name: Optional[str] = None,
    ):
        # Set default options
        self._stanc_options = dict(stanc_options or DEFAULT_STANC_OPTIONS)
        cpp_options = cpp_options or DEFAULT_CPP_OPTIONS

        # Note the underlying EcoStanPy model
        self.model = model

        # Assemble the program
        self.program = StanProgram(model)

        # Set the output directory
        self._set_output_dir(output_dir)

        # Get the model name
        self.stan_executable_path = os.path.join(
            self.output_dir, model_name or model.default_model_name
        )

        # Write the Stan program
        self.write_stan_program()

        # Initialize the CmdStanModel
        super().__init__(
            stan_file=self.stan_program_path,
            exe_file=(
                self.stan_executable_path
                if os.path.exists(self.stan_executable_path) and not force_compile
                else None
            ),
            force_compile=force_compile,
            stanc_options=self._stanc_options,
            cpp_options=cpp_options,
        )

    def _set_output_dir(self, output_dir: Optional[str]) -> None:
        """Configure output directory with automatic cleanup for temporary directories.

        :param output_dir: Directory path or None for temporary directory
        :type output_dir: Optional[str]

        :raises FileNotFoundError: If specified directory doesn't exist
        """
        # Make a temporary directory if none is specified. Set up a weak reference
        # to clean up the temporary directory when the model is deleted.
        if output_dir is None:
            tempdir = TemporaryDirectory()
            weakref.finalize(self, tempdir.cleanup)
            output_dir = tempdir.name

        # Make sure the output directory exists
        if not os.path.exists(output_dir):
            raise FileNotFoundError(f"Output directory {output_dir} does not exist.")

        # Set the output directory
        self.output_dir = output_dir

    def write_stan_program(self) -> None:
        """Write and format the generated Stan program to disk.

        The file is only rewritten when the generated code differs from the
        code it was last formatted from, so a cached executable stays valid.
        """
        # Skip the write if the program is unchanged
        source_path = self.stan_program_path + ".src"
        code = self.code()
        if os.path.exists(self.stan_program_path) and os.path.exists(source_path):
            with open(source_path, "r", encoding="utf-8") as f:
                if f.read() == code:
                    return

        # Write the raw code
        for path in (self.stan_program_path, source_path):
            with open(path, "w", encoding="utf-8") as f:
                f.write(code)

        # Format the code
        format_stan_file(
            self.stan_program_path,
            overwrite_file=True,
            canonicalize=True,
            stanc_options=self._stanc_options,
        )

    def gather_inputs(self, **data: Any) -> "custom_types.StanData":
        """Validate and convert a data bundle for sampling.

        :param data: Data keyed by Stan variable name
        :type data: Any

        :returns: Data ready to be passed to CmdStan
        :rtype: custom_types.StanData

        :raises DataMismatchError: If the data do not match the program
        """
        return self.program.validate_data(data)

    def code(self) -> str:
        """Get the complete Stan program code.

        :returns: Stan program code as formatted string
        :rtype: str
        """
        return self.program.code

    @property
    def stan_program_path(self) -> str:
        """Get path to the generated Stan program file.

        :returns: Full path to .stan file
        :rtype: str
        """
        return self.stan_executable_path + ".stan"
