"""Defines a class representing a single ray.

The ray is pointing from the beam source to a position in the patient.
"""

from typing import Any, Optional
import numpy as np
from pydantic import (
    Field,
    field_validator,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
)
from numpydantic import NDArray, Shape

from ..core import PyRadDoseBaseModel
from ._beamlet import Beamlet


class Ray(PyRadDoseBaseModel):
    """
    A class representing a single ray.

    Attributes
    ----------
    ray_pos_bev : np.ndarray
        The ray position in the isocenter plane in BEV coordinates.
    ray_pos : np.ndarray
        The ray position in (x, y, z) coordinates relative to the isocenter.
    target_point_bev : np.ndarray
        The target point in BEV coordinates.
    target_point : np.ndarray
        The target point in (x, y, z) coordinates relative to the isocenter.
    ssd : float, optional
        Source to surface distance along the ray.
    target_entry_depths : np.ndarray
        Radiological depths at which the ray enters the target.
    target_exit_depths : np.ndarray
        Radiological depths at which the ray leaves the target.
    beamlets : list[Beamlet]
        The beamlets in the ray.
    """

    beamlets: list[Beamlet]

    ray_pos_bev: NDArray[Shape["3"], np.float64] = Field(alias="rayPos_bev")
    ray_pos: NDArray[Shape["3"], np.float64]

    target_point: Optional[NDArray[Shape["3"], np.float64]] = Field(default=None)
    target_point_bev: Optional[NDArray[Shape["3"], np.float64]] = Field(
        alias="targetPoint_bev", default=None
    )

    ssd: Optional[float] = Field(default=None, alias="SSD", gt=0.0)
    target_entry_depths: NDArray[Shape["*"], np.float64] = Field(
        default_factory=lambda: np.empty(0)
    )
    target_exit_depths: NDArray[Shape["*"], np.float64] = Field(
        default_factory=lambda: np.empty(0)
    )

    @field_validator("ray_pos_bev", "target_point_bev", "ray_pos", "target_point", mode="wrap")
    @classmethod
    def validate_nparray_dtype(
        cls, v: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> NDArray[Shape["3"], np.float64]:
        """Validate / convert arrays to have floating point values."""

        if v is not None:
            v = np.asarray(v, dtype=np.float64).reshape((3,))
        return handler(v, info)

    @field_validator("target_entry_depths", "target_exit_depths", mode="before")
    @classmethod
    def _cast_depths(cls, v: Any) -> Any:
        return np.atleast_1d(np.asarray(v, dtype=np.float64)).ravel()

    @property
    def num_of_bixels(self) -> int:
        """Number of beamlets in the ray."""
        return len(self.beamlets)

    @property
    def energies(self) -> np.ndarray:
        """Energies of the ray's beamlets."""
        return np.array([beamlet.energy for beamlet in self.beamlets], dtype=np.float64)
