"""Dose influence matrices and their evaluation."""

from ._dij import Dij, create_dij, validate_dij

__all__ = ["Dij", "create_dij", "validate_dij"]
