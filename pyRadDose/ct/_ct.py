"""Module for handling CT images in pyRadDose.

Defines a CT pydantic model and factories.
"""

from typing import Annotated, Any, Optional, Union
from pydantic import (
    Field,
    computed_field,
    model_validator,
)
import SimpleITK as sitk
import numpy as np

from ..core import PyRadDoseBaseModel, Grid
from ._hlut import default_hlut


class CT(PyRadDoseBaseModel):
    """
    A class representing a CT (Computed Tomography) image.

    Attributes
    ----------
    cube_hu : sitk.Image
        The CT image data in Hounsfield Units (HU).
    cube : sitk.Image, optional
        Precomputed relative electron density / water-equivalent image on the
        same grid. If present, it is used instead of converting ``cube_hu``.

    Notes
    -----
    Numpy input is expected in (z, y, x) ordering. The image geometry can be
    supplied with ``resolution`` (dict with x, y, z), ``origin`` and
    ``direction``. Without an origin the image is centered around zero.
    """

    cube_hu: Annotated[sitk.Image, Field(alias="cubeHU")]
    cube: Optional[sitk.Image] = None

    @model_validator(mode="before")
    @classmethod
    def validate_cube_hu(cls, data: Any) -> Any:
        """
        Validate and convert input data to SimpleITK image format.

        Converts numpy arrays to SimpleITK images and applies the specified
        image properties (origin, direction, spacing).
        """
        if isinstance(data, CT) or not isinstance(data, dict):
            return data

        data = dict(data)

        cube_hu = data.pop("cube_hu", None)
        if cube_hu is None:
            cube_hu = data.pop("cubeHU", None)
        if cube_hu is None:
            raise ValueError("HU cube not present in dictionary.")

        if isinstance(cube_hu, sitk.Image) and "origin" not in data:
            data["origin"] = cube_hu.GetOrigin()

        if isinstance(cube_hu, np.ndarray):
            cube_hu = sitk.GetImageFromArray(np.asarray(cube_hu, dtype=np.float64), False)

        if not isinstance(cube_hu, sitk.Image):
            raise ValueError(f"Unsupported format of HU cube: {type(cube_hu)}")
        if cube_hu.GetDimension() != 3:
            raise ValueError("Only 3D CT images are supported")

        cls._apply_image_properties(data, cube_hu)
        data["cube_hu"] = cube_hu

        cube = data.get("cube")
        if isinstance(cube, np.ndarray):
            cube = sitk.GetImageFromArray(np.asarray(cube, dtype=np.float64), False)
        if isinstance(cube, sitk.Image):
            if cube.GetSize() != cube_hu.GetSize():
                raise ValueError("Density cube and HU cube dimensions do not match")
            cube.CopyInformation(cube_hu)
            data["cube"] = cube

        return data

    @classmethod
    def _apply_image_properties(cls, data: dict, cube_hu: sitk.Image) -> None:
        """Apply direction, spacing, and origin properties to the SimpleITK image."""
        if "direction" in data:
            cube_hu.SetDirection(np.asarray(data["direction"], dtype=float).ravel().tolist())

        resolution = data.get("resolution")
        if isinstance(resolution, dict) and all(key in resolution for key in ("x", "y", "z")):
            cube_hu.SetSpacing([resolution["x"], resolution["y"], resolution["z"]])

        if "origin" in data:
            cube_hu.SetOrigin(np.asarray(data["origin"], dtype=float).tolist())
        else:
            centered_origin = -np.array(cube_hu.GetSize()) / 2.0 * np.array(cube_hu.GetSpacing())
            cube_hu.SetOrigin(centered_origin.tolist())

    @computed_field
    @property
    def resolution(self) -> dict:
        """Resolution of the CT image in x, y, and z directions."""
        spacing = self.cube_hu.GetSpacing()
        return {"x": spacing[0], "y": spacing[1], "z": spacing[2]}

    @computed_field
    @property
    def size(self) -> tuple:
        """Number of voxels in x, y, and z directions."""
        return self.cube_hu.GetSize()

    @computed_field
    @property
    def origin(self) -> tuple:
        """Coordinates of the center of the first voxel."""
        return self.cube_hu.GetOrigin()

    @computed_field
    @property
    def direction(self) -> tuple:
        """Direction cosines of the CT image."""
        return self.cube_hu.GetDirection()

    @property
    def grid(self) -> Grid:
        """Get the grid of the CT image."""
        return Grid.from_sitk_image(self.cube_hu)

    def compute_wet(self, hlut: np.ndarray) -> sitk.Image:
        """
        Compute the water equivalent image.

        Uses a provided appropriate Hounsfield Look-Up Table (HLUT).

        Parameters
        ----------
        hlut : np.ndarray
            N x 2 table with HU values in the first and densities in the
            second column.

        Returns
        -------
        sitk.Image
            The water equivalent image.
        """

        hlut = np.asarray(hlut, dtype=np.float64)
        if hlut.ndim != 2 or hlut.shape[1] != 2 or hlut.shape[0] < 2:
            raise ValueError(
                "HLUT must have 2 columns of values, with the first column being the HU values "
                "and the second column being the WET values with each at least 2 values."
            )

        ix = np.argsort(hlut[:, 0])
        xp = hlut[ix, 0]
        fp = hlut[ix, 1]

        ct_array = sitk.GetArrayViewFromImage(self.cube_hu)

        wet_image = sitk.GetImageFromArray(np.interp(ct_array, xp, fp))
        wet_image.CopyInformation(self.cube_hu)

        return wet_image

    def density_image(self, hlut: Optional[np.ndarray] = None) -> sitk.Image:
        """
        Return the density image used for ray tracing.

        The precomputed ``cube`` takes precedence, otherwise the HU image is
        converted with ``hlut`` (default: :func:`default_hlut`).
        """
        if self.cube is not None:
            return self.cube
        if hlut is None:
            hlut = default_hlut()
        return self.compute_wet(hlut)


def create_ct(data: Union[dict[str, Any], CT, None] = None, **kwargs) -> CT:
    """
    Create a CT object from various input types.

    Parameters
    ----------
    data : Union[dict[str, Any], CT, None], optional
        The input data to create the CT object from. Can be a dictionary,
        existing CT object or None.
    **kwargs
        Additional keyword arguments to create the CT object.

    Returns
    -------
    CT
        A CT object created from the input data or keyword arguments.
    """
    if data:
        if isinstance(data, CT):
            return data
        return CT.model_validate(data)
    return CT(**kwargs)


def validate_ct(ct: Union[dict[str, Any], CT, None] = None, **kwargs) -> CT:
    """
    Validate and create a CT object.

    Wrapper around create_ct ensuring the returned object is a valid CT.
    """
    return create_ct(ct, **kwargs)
