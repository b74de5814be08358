"""Beam geometry and steering information generators."""

from ._base import StfGeneratorBase
from ._externalbeam import StfGeneratorExternalBeamRayBixel, StfGeneratorExternalBeam
from ._ions import StfGeneratorIonRayBixel, StfGeneratorIMPT
from ._photons import StfGeneratorPhotonIMRT

from ._factory import get_generator, get_available_generators, register_generator

register_generator(StfGeneratorIMPT)
register_generator(StfGeneratorPhotonIMRT)

__all__ = [
    "StfGeneratorBase",
    "StfGeneratorExternalBeam",
    "StfGeneratorExternalBeamRayBixel",
    "StfGeneratorIonRayBixel",
    "StfGeneratorIMPT",
    "StfGeneratorPhotonIMRT",
    "get_generator",
    "get_available_generators",
    "register_generator",
]
