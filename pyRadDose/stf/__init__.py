"""Provides classes and methods for creating irradiation geometries (stf)."""

from ._beamlet import Beamlet
from ._ray import Ray
from ._beam import Beam
from ._steeringinformation import SteeringInformation, create_stf, validate_stf
from .generators import get_available_generators, get_generator, register_generator
from ._generate_stf import generate_stf

__all__ = [
    "get_available_generators",
    "get_generator",
    "register_generator",
    "SteeringInformation",
    "create_stf",
    "validate_stf",
    "Beam",
    "Ray",
    "Beamlet",
    "generate_stf",
]
