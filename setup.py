"""
Installs EcoStanPy
"""

import re

from setuptools import find_packages, setup


# Get package information
def get_package_info():
    """
    Gets version information for the installation.
    """
    # Set up variables
    package_version = None

    # Open the file containing version info
    with open("ecostanpy/__init__.py", "r", encoding="utf-8") as file:
        for line in file:
            # Check version
            if match_obj := re.match(r"__version__.+([0-9]+\.[0-9]+\.[0-9]+)", line):
                package_version = match_obj.group(1)

    # Checks on variables
    if package_version is None:
        raise IOError("Could not find information on version.")

    return package_version


# Run setup
setup(
    name="ecostanpy",
    version=get_package_info(),
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "arviz<1",
        "cmdstanpy",
        "h5netcdf",
        "numpy",
        "pandas",
        "scipy",
        "tqdm",
        "typeguard",
        "xarray",
    ],
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "ecostanpy-simulate=ecostanpy.pipelines.simulate_replicates:main",
        ]
    },
)
