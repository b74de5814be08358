"""Dose engines computing influence matrices from steering information."""

from ._base import DoseEngineBase
from ._base_pencilbeam import PencilBeamEngineAbstract
from ._base_pencilbeam_particle import ParticlePencilBeamEngineAbstract
from ._hongpb import ParticleHongPencilBeamEngine

from ._factory import get_engine, get_available_engines, register_engine

register_engine(ParticleHongPencilBeamEngine)

__all__ = [
    "DoseEngineBase",
    "PencilBeamEngineAbstract",
    "ParticlePencilBeamEngineAbstract",
    "ParticleHongPencilBeamEngine",
    "get_engine",
    "get_available_engines",
    "register_engine",
]
