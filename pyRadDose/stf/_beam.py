from typing import Any
import numpy as np
from pydantic import (
    Field,
    field_validator,
    computed_field,
)

from numpydantic import NDArray, Shape

from ..core import PyRadDoseBaseModel
from ._ray import Ray


class Beam(PyRadDoseBaseModel):
    """
    A class representing a single beam.

    Attributes
    ----------
    gantry_angle : float
        The gantry angle of the beam in (°).
    couch_angle : float
        The couch angle of the beam in (°).
    bixel_width : float
        The width of the bixels (lateral spot spacing) in (mm).
    radiation_mode : str
        The radiation mode of the beam (e.g. photon, proton, carbon).
    machine : str
        The machine used for the beam. (e.g. 'Generic')
    sad : float
        The source to axis distance in (mm).
    iso_center : np.ndarray
        The isocenter of the beam in (x, y, z) coordinates.
    rays : list[Ray]
        The rays of the beam.
    source_point_bev : np.ndarray
        The source point in BEV coordinates.
    source_point : np.ndarray
        The source point in (x, y, z) coordinates relative to the isocenter.
    """

    gantry_angle: float = Field(default=0.0)
    couch_angle: float = Field(default=0.0)
    bixel_width: float = Field(default=5.0, gt=0.0)
    radiation_mode: str = Field(default="protons")
    machine: str = Field(default="Generic")
    sad: float = Field(alias="SAD", default=100000.0, gt=0.0)
    iso_center: NDArray[Shape["3"], np.float64]
    rays: list[Ray] = Field(default_factory=list)

    source_point_bev: NDArray[Shape["3"], np.float64] = Field(
        alias="sourcePoint_bev", default=([0, -10000, 0]), validate_default=True
    )
    source_point: NDArray[Shape["3"], np.float64] = Field(
        default=([0, 0, 0]), validate_default=True
    )

    @field_validator("source_point", "source_point_bev", "iso_center", mode="before")
    @classmethod
    def validate_nparray_dtype(cls, v: Any) -> Any:
        """Validate arrays to have floating point values."""
        v = np.asarray(v, dtype=np.float64)
        return v.reshape((3,))

    @computed_field
    @property
    def num_of_bixels_per_ray(self) -> np.ndarray:
        """Number of bixels in each ray."""
        return np.array([len(ray.beamlets) for ray in self.rays], dtype=np.int64)

    @computed_field
    @property
    def num_of_rays(self) -> int:
        return len(self.rays)

    @computed_field(alias="totalNumOfBixels")
    @property
    def total_number_of_bixels(self) -> int:
        return int(np.sum(self.num_of_bixels_per_ray))

    @property
    def bixel_ray_map(self) -> NDArray[Shape["*"], np.int64]:
        """Map providing ray index in the beam for each bixel."""
        return np.repeat(np.arange(len(self.rays)), self.num_of_bixels_per_ray)

    @property
    def energies(self) -> np.ndarray:
        """Unique energies used in the beam."""
        if not self.rays:
            return np.empty(0, dtype=np.float64)
        return np.unique(np.concatenate([ray.energies for ray in self.rays]))
