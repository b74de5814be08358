from typing import Any, Optional, Union
from typing_extensions import Annotated
from pydantic import (
    Field,
    field_validator,
    model_validator,
    StringConstraints,
)

import numpy as np
import SimpleITK as sitk

from ..core import PyRadDoseBaseModel, np2sitk
from ..ct import CT

# Default overlap priorities
DEFAULT_OVERLAPS = {"TARGET": 0, "OAR": 5, "HELPER": 10, "EXTERNAL": 15}


class VOI(PyRadDoseBaseModel):
    """
    Represents a Volume of Interest (VOI).

    Parameters
    ----------
    name : str
        The name of the VOI.
    ct_image : CT
        The CT image where the VOI is defined.
    mask : np.ndarray or sitk.Image
        Boolean mask (using 0,1) for referencing of voxels. Alternatively,
        ``indices`` (linear numpy-ordered voxel indices) can be passed on
        construction.
    alpha_x : float, optional
        The photon alpha of the tissue. Defaults to 0.1.
    beta_x : float, optional
        The photon beta of the tissue. Defaults to 0.05.
    overlap_priority : int
        The overlap priority of the VOI. Lowest number is overlapping higher numbers.
    prescription : float, optional
        Prescribed dose in Gy.
    """

    name: str
    ct_image: CT
    mask: sitk.Image
    alpha_x: float = Field(default=0.1, gt=0.0)
    beta_x: float = Field(default=0.05, gt=0.0)
    voi_type: Annotated[str, StringConstraints(strip_whitespace=True, to_upper=True)]

    overlap_priority: int = Field(
        alias="Priority", default_factory=lambda data: DEFAULT_OVERLAPS[data["voi_type"]]
    )
    prescription: Optional[float] = Field(default=None, ge=0.0)

    @model_validator(mode="before")
    @classmethod
    def _mask_from_indices(cls, data: Any) -> Any:
        """Build the mask from linear voxel indices if no mask was given."""
        if not isinstance(data, dict) or "indices" not in data:
            return data

        data = dict(data)
        indices = data.pop("indices")
        if data.get("mask") is not None:
            raise ValueError("Provide either a mask or voxel indices, not both")

        ct_image = data.get("ct_image", data.get("ctImage"))
        if not isinstance(ct_image, CT):
            raise ValueError("Creating a VOI from indices requires a CT object")

        data["mask"] = np2sitk.linear_indices_to_sitk_mask(indices, ct_image.cube_hu)
        return data

    @field_validator("mask", mode="before")
    @classmethod
    def validate_mask_type(cls, v: Any) -> Any:
        """
        Validates the mask type.

        Numpy masks are expected in (z, y, x) ordering and converted to
        SimpleITK images.
        """
        if isinstance(v, np.ndarray):
            if v.dtype == bool or np.issubdtype(v.dtype, np.integer):
                v = v.astype(np.uint8)
            if v.dtype != np.uint8:
                raise ValueError(
                    f"{v.dtype} is not supported for index mask. Please use uint8 or boolean mask."
                )

            if v.ndim == 3:
                return sitk.GetImageFromArray(v, False)

            raise ValueError("Dimensionality not supported!")

        if isinstance(v, sitk.Image):
            if sitk.GetArrayViewFromImage(v).dtype != np.uint8:
                raise ValueError(
                    f"{sitk.GetArrayViewFromImage(v).dtype} is not supported for index mask. "
                    "Please use uint8."
                )
            return v

        raise ValueError("mask must be either passed as numpy array or SimpleITK image")

    @model_validator(mode="after")
    def validate_mask(self):
        """Check that the mask matches the CT image and copy its geometry."""
        dims = self.mask.GetSize()
        if dims != self.ct_image.cube_hu.GetSize():
            raise ValueError(
                f"Mask provided with dimensions {dims}, "
                f"but ct has dimensions {self.ct_image.cube_hu.GetSize()}"
            )

        self.mask.CopyInformation(self.ct_image.cube_hu)
        return self

    @classmethod
    def from_indices(cls, indices: np.ndarray, ct_image: CT, **kwargs) -> "VOI":
        """Create the VOI from linear numpy-ordered voxel indices on the CT grid."""
        return cls(indices=indices, ct_image=ct_image, **kwargs)

    @property
    def indices_numpy(self) -> np.ndarray:
        """Linear indices of the voxels in the mask using C/numpy convention."""
        return np2sitk.sitk_mask_to_linear_indices(self.mask)

    @property
    def num_voxels(self) -> int:
        """Number of voxels in the VOI."""
        return int(np.count_nonzero(sitk.GetArrayViewFromImage(self.mask)))

    def prescribed_effect(self, dose: Optional[float] = None) -> float:
        """
        Biological effect of a dose in this tissue.

        Uses the linear-quadratic model ``alpha_x * D + beta_x * D**2``.

        Parameters
        ----------
        dose : float, optional
            Dose in Gy, defaults to the VOI's prescription.
        """
        if dose is None:
            dose = self.prescription
        if dose is None:
            raise ValueError(f"VOI {self.name} has no prescription")
        return self.alpha_x * dose + self.beta_x * dose**2


class OAR(VOI):
    """Represents an organ at risk (OAR)."""

    voi_type: str = "OAR"

    @field_validator("voi_type", mode="after")
    @classmethod
    def validate_voi_type(cls, v: str) -> str:
        """Validates the voi type for an OAR."""
        if v != "OAR":
            raise ValueError('VOI type for OAR must be "OAR"')
        return v


class Target(VOI):
    """Represents a target VOI."""

    voi_type: str = "TARGET"

    @field_validator("voi_type", mode="after")
    @classmethod
    def validate_voi_type(cls, v: str) -> str:
        """Validates the voi type for a Target."""
        if v != "TARGET":
            raise ValueError('VOI type for a Target must be "TARGET"')
        return v


class HelperVOI(VOI):
    """Represents a helper VOI."""

    voi_type: str = "HELPER"

    @field_validator("voi_type", mode="after")
    @classmethod
    def validate_voi_type(cls, v: str) -> str:
        if v != "HELPER":
            raise ValueError('VOI type for a HelperVOI must be "HELPER"')
        return v


class ExternalVOI(VOI):
    """
    Represents an external contour limiting voxels to be considered for
    planning (EXTERNAL).
    """

    voi_type: str = "EXTERNAL"

    @field_validator("voi_type", mode="after")
    @classmethod
    def validate_voi_type(cls, v: str) -> str:
        if v != "EXTERNAL":
            raise ValueError('VOI type for EXTERNAL must be "EXTERNAL"')
        return v


__VOITYPES__ = {"OAR": OAR, "TARGET": Target, "HELPER": HelperVOI, "EXTERNAL": ExternalVOI}


def create_voi(data: Union[dict[str, Any], VOI, None] = None, **kwargs) -> VOI:
    """
    Factory function to create a VOI object.

    Parameters
    ----------
    data : Union[dict[str, Any], VOI, None]
        Dictionary containing the data to create the VOI object.
    **kwargs
        Arbitrary keyword arguments.

    Returns
    -------
    VOI
        A VOI object of the class matching its ``voi_type``.
    """

    if data:
        if isinstance(data, VOI):
            return data

        voi_type = str(data.get("voi_type", data.get("voiType", ""))).strip().upper()

        if voi_type in __VOITYPES__:
            data = {**data, "voi_type": voi_type}
            data.pop("voiType", None)
            return __VOITYPES__[voi_type].model_validate(data)

        raise ValueError(f"Invalid VOI type: {voi_type}")

    voi_type = str(kwargs.get("voi_type", "")).strip().upper()

    if voi_type in __VOITYPES__:
        kwargs["voi_type"] = voi_type
        return __VOITYPES__[voi_type](**kwargs)

    raise ValueError(f"Invalid VOI type: {voi_type}")


def validate_voi(data: Union[dict[str, Any], VOI, None] = None, **kwargs) -> VOI:
    """
    Validates and creates a VOI object.

    Synonym to create_voi but should be used in validation context.
    """
    return create_voi(data, **kwargs)
