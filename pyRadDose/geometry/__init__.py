"""Geometry module."""

from .lps import (
    get_beam_rotation_matrix,
    get_couch_rotation_matrix,
    get_gantry_rotation_matrix,
    transform_patient_to_bev,
    transform_bev_to_patient,
)

__all__ = [
    "get_beam_rotation_matrix",
    "get_couch_rotation_matrix",
    "get_gantry_rotation_matrix",
    "transform_patient_to_bev",
    "transform_bev_to_patient",
]
