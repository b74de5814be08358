"""Contains custom exceptions for the pyRadDose package."""

from typing import Optional


class PyRadDoseError(Exception):
    """Exception for errors specifically thrown by pyRadDose."""


class ConfigurationError(PyRadDoseError, ValueError):
    """Invalid user configuration, detected before any computation starts."""


class TargetNotFoundError(ConfigurationError):
    """A target (or patient) region maps to zero voxels."""


class MissingDataError(PyRadDoseError, LookupError):
    """Machine data could not be resolved or lacks a required table."""


class CalculationCancelled(PyRadDoseError):
    """The caller requested cancellation between two beams."""


class GeometryInconsistency(PyRadDoseError):
    """
    Ray tracing produced an inconsistent geometry for a beam / ray.

    Parameters
    ----------
    message : str
        Description of the inconsistency.
    beam_ix : int, optional
        Index of the offending beam.
    ray_ix : int, optional
        Index of the offending ray within the beam.
    """

    def __init__(self, message: str, beam_ix: Optional[int] = None, ray_ix: Optional[int] = None):
        self.beam_ix = beam_ix
        self.ray_ix = ray_ix
        if beam_ix is not None:
            message = f"{message} (beam {beam_ix}, ray {ray_ix})"
        super().__init__(message)


class MissingWeight(ConfigurationError):
    """
    Direct dose calculation lacks the weight of a bixel.

    Parameters
    ----------
    beam_ix : int
        Beam index of the first bixel without a weight.
    ray_ix : int
        Ray index (within the beam) of that bixel.
    bixel_ix : int
        Bixel index (within the ray) of that bixel.
    """

    def __init__(self, beam_ix: int, ray_ix: int, bixel_ix: int):
        self.beam_ix = beam_ix
        self.ray_ix = ray_ix
        self.bixel_ix = bixel_ix
        super().__init__(f"No weight available for beam {beam_ix}, ray {ray_ix}, bixel {bixel_ix}")
