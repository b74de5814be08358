"""Core module with fundamental classes and functions for pyRadDose."""

from ._exceptions import (
    PyRadDoseError,
    ConfigurationError,
    TargetNotFoundError,
    MissingDataError,
    GeometryInconsistency,
    MissingWeight,
    CalculationCancelled,
)
from .datamodel import PyRadDoseBaseModel
from ._grids import Grid
from . import np2sitk

__all__ = [
    "PyRadDoseError",
    "ConfigurationError",
    "TargetNotFoundError",
    "MissingDataError",
    "GeometryInconsistency",
    "MissingWeight",
    "CalculationCancelled",
    "PyRadDoseBaseModel",
    "Grid",
    "np2sitk",
]
