"""Volumetric raytracers to determine the water-equivalent depths."""

from ._base import RayTracerBase
from ._siddon import RayTracerSiddon

__all__ = ["RayTracerSiddon", "RayTracerBase"]
