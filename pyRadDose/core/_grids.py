from typing import Any
from typing_extensions import Self
from pydantic import (
    Field,
    field_validator,
    computed_field,
)
from numpydantic import NDArray, Shape
import numpy as np
import SimpleITK as sitk

from .datamodel import PyRadDoseBaseModel


class Grid(PyRadDoseBaseModel):
    """
    Class representing voxel grids in the LPS world system.

    Attributes
    ----------
    resolution : dict[str, float]
        The voxel spacing in mm in the x, y, and z directions.
    dimensions : tuple[int, int, int]
        The number of voxels in the x, y, and z directions.
    origin : np.ndarray
        The center of the first voxel in the LPS world system.
    direction : np.ndarray
        The direction cosines of the grid in the LPS world system.

    Notes
    -----
    Linear voxel indices in pyRadDose always follow numpy (C) ordering of the
    (z, y, x) shaped array, i.e. ``ix = i + nx * (j + ny * k)``.
    """

    resolution: dict[str, float]
    dimensions: tuple[int, int, int]
    origin: NDArray[Shape["3"], np.float64] = Field(
        default=np.array([0.0, 0.0, 0.0], dtype=np.float64), alias="cubeCoordOffset"
    )
    direction: NDArray[Shape["3,3"], np.float64] = Field(default=np.eye(3, dtype=np.float64))

    @computed_field(alias="numOfVoxels")
    @property
    def num_voxels(self) -> int:
        """Number of voxels in the grid."""
        return int(np.prod(self.dimensions))

    @property
    def resolution_vector(self) -> np.ndarray:
        """Return the resolution as a vector."""
        return np.array([self.resolution["x"], self.resolution["y"], self.resolution["z"]])

    @property
    def numpy_shape(self) -> tuple[int, int, int]:
        """Shape of a numpy array holding values on this grid (z, y, x)."""
        return tuple(self.dimensions[::-1])

    @field_validator("resolution", mode="after")
    @classmethod
    def _check_resolution(cls, value: dict[str, float]) -> dict[str, float]:
        """Check if resolution has the correct structure and values."""
        if not all(key in value for key in ["x", "y", "z"]):
            raise ValueError("resolution must have keys 'x', 'y', 'z'")

        for v in value.values():
            if not np.isfinite(v) or v <= 0:
                raise ValueError(f"resolution values must be positive floats, got {v}")

        return value

    @field_validator("dimensions")
    @classmethod
    def _check_dimensions(cls, value: tuple[int, int, int]) -> tuple[int, int, int]:
        """Check if dimensions has positive entries."""
        for dim in value:
            if dim <= 0:
                raise ValueError(f"dimension values must be positive integers, got {dim}")

        return value

    @field_validator("origin", mode="before")
    @classmethod
    def _check_origin(cls, value: Any) -> Any:
        """Check if origin has the correct shape (3,) and values."""
        try:
            value = np.asarray(value, dtype=np.float64).reshape((3,))
        except ValueError as exc:
            raise ValueError("origin must be convertible to a 1D numpy array of length 3") from exc
        return value

    @field_validator("direction", mode="before")
    @classmethod
    def _check_direction(cls, value: Any) -> Any:
        """Check if direction has the correct shape (3x3)."""
        try:
            value = np.asarray(value, dtype=np.float64).reshape((3, 3))
        except ValueError as exc:
            raise ValueError("direction must be convertible to a 3x3 numpy matrix") from exc
        return value

    @classmethod
    def from_sitk_image(cls, sitk_image: sitk.Image) -> Self:
        """
        Create a Grid object from a SimpleITK image.

        Parameters
        ----------
        sitk_image : sitk.Image
            The SimpleITK image to create the Grid object from.

        Returns
        -------
        Grid
            The Grid object created from the SimpleITK image.
        """
        keys = ["x", "y", "z"]
        resolution = dict(zip(keys, sitk_image.GetSpacing()))
        dimensions = sitk_image.GetSize()
        origin = sitk_image.GetOrigin()
        direction = sitk_image.GetDirection()
        return cls(
            resolution=resolution, dimensions=dimensions, origin=origin, direction=direction
        )

    def empty_image(self, pixel_id: int = sitk.sitkFloat64) -> sitk.Image:
        """Create a zero-filled SimpleITK image on this grid."""
        image = sitk.Image([int(d) for d in self.dimensions], pixel_id)
        image.SetSpacing(tuple(float(r) for r in self.resolution_vector))
        image.SetOrigin(tuple(float(o) for o in self.origin))
        image.SetDirection(tuple(float(d) for d in self.direction.ravel()))
        return image
