"""
Python package for pencil beam dose influence calculation.

This package provides
- Core data structures (CT, structure sets, plans, machines).
- Generation of steering information for photon and ion beams.
- Dose influence matrix calculations and data structures.

Import packages as follows:

    from pyRadDose import (
        IonPlan,
        generate_stf,
        calc_dose_influence,
    )

Use the docstrings for a detailed overview.
"""

from importlib.metadata import version, PackageNotFoundError
import logging

from .plan._plans import Plan, validate_pln, IonPlan, PhotonPlan
from .ct._ct import CT, validate_ct
from .cst._cst import StructureSet, validate_cst
from .stf._generate_stf import generate_stf
from .stf import SteeringInformation, validate_stf
from .dose._calc_dose import calc_dose_influence, calc_dose_forward
from .dij import Dij
from .machines import register_machine_data

try:
    __version__ = version(__name__)
except PackageNotFoundError:
    # package is not installed
    pass

# Logging is not exposed by default and needs to be configured by the user.
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    "Plan",
    "IonPlan",
    "PhotonPlan",
    "validate_pln",
    "CT",
    "validate_ct",
    "StructureSet",
    "validate_cst",
    "generate_stf",
    "calc_dose_influence",
    "calc_dose_forward",
    "Dij",
    "SteeringInformation",
    "validate_stf",
    "register_machine_data",
]
