"""Provide methods for calculation dose."""

from ._sparse import SparseColumnBuilder
from ._calc_dose import calc_dose_influence, calc_dose_forward
from .engines import (
    DoseEngineBase,
    ParticleHongPencilBeamEngine,
    get_engine,
    get_available_engines,
    register_engine,
)

__all__ = [
    "calc_dose_influence",
    "calc_dose_forward",
    "SparseColumnBuilder",
    "DoseEngineBase",
    "ParticleHongPencilBeamEngine",
    "get_engine",
    "get_available_engines",
    "register_engine",
]
