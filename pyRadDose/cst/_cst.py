"""Structure Set Implementation."""

from typing import Any, Union
from typing_extensions import Self
from pydantic import (
    Field,
    field_validator,
    model_validator,
)

import numpy as np
from scipy import ndimage
import SimpleITK as sitk

from ..core import PyRadDoseBaseModel
from ..ct import CT, validate_ct
from ._voi import VOI, ExternalVOI, validate_voi


class StructureSet(PyRadDoseBaseModel):
    """
    Represents a Structure Set for a Patient.

    Attributes
    ----------
    vois : list[VOI]
        The volumes of interest.
    ct_image : CT
        The CT all VOIs are defined on.
    """

    vois: list[VOI] = Field(description="List of VOIs in the Structure Set")
    ct_image: CT = Field(description="Reference to the CT Image")

    @model_validator(mode="before")
    @classmethod
    def _validate_input(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        data = dict(data)
        if data.get("vois") is None:
            raise ValueError("No cst provided. Please provide a cst.")
        ct_image = data.pop("ctImage", data.get("ct_image"))
        if ct_image is None:
            raise ValueError("No reference CT provided. Please provide a CT.")

        data["ct_image"] = validate_ct(ct_image)
        data["vois"] = [
            voi if isinstance(voi, VOI) else validate_voi({**voi, "ct_image": data["ct_image"]})
            for voi in data["vois"]
        ]
        return data

    @field_validator("vois", mode="after")
    @classmethod
    def _check_unique_names(cls, vois: list[VOI]) -> list[VOI]:
        names = [voi.name for voi in vois]
        if len(names) != len(set(names)):
            raise ValueError("VOI names in a structure set need to be unique")
        return vois

    @model_validator(mode="after")
    def check_cst(self) -> Self:
        """Check if the VOIs reference the same CT grid."""

        ct_grid = self.ct_image.grid
        for voi in self.vois:
            if voi.ct_image is not self.ct_image and voi.ct_image.grid != ct_grid:
                raise ValueError("All VOIs must reference the same CT image.")

        return self

    @property
    def voi_types(self) -> list:
        """Return the unique VOI types in the Structure Set."""
        return list({voi.voi_type for voi in self.vois})

    def get_voi(self, name: str) -> VOI:
        """Return the VOI with the given name."""
        for voi in self.vois:
            if voi.name == name:
                return voi
        raise KeyError(f"No VOI named {name}")

    def _mask_from_indices(self, indices: np.ndarray) -> sitk.Image:
        mask = np.zeros(sitk.GetArrayViewFromImage(self.ct_image.cube_hu).shape, dtype=np.uint8)
        mask.ravel()[indices] = 1

        mask_image = sitk.GetImageFromArray(mask)
        mask_image.CopyInformation(self.ct_image.cube_hu)
        return mask_image

    def target_union_voxels(self) -> np.ndarray:
        """Return the union of all target indices (numpy ordering)."""
        target_indices = [voi.indices_numpy for voi in self.vois if voi.voi_type == "TARGET"]
        if not target_indices:
            return np.empty(0, dtype=np.int64)

        return np.unique(np.concatenate(target_indices))

    def target_union_mask(self) -> sitk.Image:
        """Return the union mask of all targets."""
        return self._mask_from_indices(self.target_union_voxels())

    def voxels_of_interest(self) -> np.ndarray:
        """Return the union of the voxels of all VOIs (numpy ordering)."""
        if not self.vois:
            return np.empty(0, dtype=np.int64)
        return np.unique(np.concatenate([voi.indices_numpy for voi in self.vois]))

    def patient_voxels(self) -> np.ndarray:
        """Return the EXTERNAL contour's indices, or the union of all VOIs without one."""

        for voi in self.vois:
            if isinstance(voi, ExternalVOI):
                return voi.indices_numpy

        return self.voxels_of_interest()

    def patient_mask(self) -> sitk.Image:
        """Return the union mask of all patient contours (or the EXTERNAL contour if provided)."""
        return self._mask_from_indices(self.patient_voxels())

    def target_center_of_mass(self) -> np.ndarray:
        """Return the center of mass of the target in world coordinates."""
        mask_image = self.target_union_mask()
        # transposed view allows sitk (x, y, z) indexing
        mask = sitk.GetArrayViewFromImage(mask_image).T

        cm_index = ndimage.center_of_mass(mask)

        cm = mask_image.TransformContinuousIndexToPhysicalPoint(
            [float(c) for c in cm_index]
        )

        return np.array(cm)

    def apply_overlap_priorities(self) -> Self:
        """
        Resolve overlapping VOIs.

        A voxel shared by several VOIs is kept only in the VOIs with the
        lowest overlap priority number. VOIs of equal priority keep their
        common voxels.

        Returns
        -------
        StructureSet
            A new StructureSet with overlaps removed.
        """

        priorities = np.array([voi.overlap_priority for voi in self.vois])
        masks = [sitk.GetArrayFromImage(voi.mask).astype(bool) for voi in self.vois]

        new_vois = []
        for voi, priority, mask in zip(self.vois, priorities, masks):
            claimed = np.zeros_like(mask)
            for other_priority, other_mask in zip(priorities, masks):
                if other_priority < priority:
                    claimed |= other_mask

            new_mask = sitk.GetImageFromArray((mask & ~claimed).astype(np.uint8))
            new_mask.CopyInformation(voi.mask)
            new_vois.append(voi.model_copy(update={"mask": new_mask}))

        return self.model_copy(update={"vois": new_vois})


def create_cst(
    cst_data: Union[dict[str, Any], StructureSet, list, None] = None,
    ct: Union[CT, dict, None] = None,
    **kwargs,
) -> StructureSet:
    """
    Create a StructureSet from various input types.

    Parameters
    ----------
    cst_data : Union[dict[str, Any], StructureSet, list, None] , optional
        An existing StructureSet, a dictionary, or a list of VOIs / VOI
        dictionaries.
    ct : Union[CT, dict, None], optional
        The reference CT.
    **kwargs
        Additional keyword arguments to create the StructureSet.

    Returns
    -------
    StructureSet
        A StructureSet object created from the input data or keyword arguments.
    """

    if isinstance(cst_data, StructureSet):
        if ct is not None and cst_data.ct_image.grid != validate_ct(ct).grid:
            raise ValueError("CT image mismatch between StructureSet and provided CT")
        return cst_data
    if isinstance(cst_data, dict):
        cst_data = {**cst_data, **kwargs}
        if ct is not None:
            cst_data["ct_image"] = ct
    else:
        cst_data = {"vois": cst_data, "ct_image": ct, **kwargs}
    return StructureSet.model_validate(cst_data)


def validate_cst(
    cst_data: Union[dict[str, Any], StructureSet, list, None] = None,
    ct: Union[CT, dict, None] = None,
    **kwargs,
) -> StructureSet:
    """Validate StructureSet. Synonym of :func:`create_cst`."""
    return create_cst(cst_data, ct, **kwargs)
