"""Contains the dij class as a (collection of) influence matrices."""

from typing import Any, Union, Annotated, Optional, cast
from pydantic import (
    Field,
    field_validator,
    ValidationInfo,
    computed_field,
)

import numpy as np
from numpydantic import NDArray
import SimpleITK as sitk
import scipy.sparse as sp

from ..core import Grid
from ..core import PyRadDoseBaseModel

QUANTITIES = ["physical_dose", "let_dose", "alpha_dose", "sqrt_beta_dose"]


class Dij(PyRadDoseBaseModel):
    """
    Collection of Dose (or other quantity) Influence Matrices.

    Every quantity is stored as an object array holding one matrix per
    scenario. Rows are linear numpy-ordered voxel indices on the dose grid,
    columns follow the bixel traversal of the steering information.

    Attributes
    ----------
    dose_grid : Grid
        Grid the matrices are defined on.
    ct_grid : Grid
        Grid of the CT the dose was computed on.
    physical_dose : np.ndarray
        Physical dose matrices.
    let_dose : np.ndarray, optional
        Dose weighted LET matrices.
    alpha_dose, sqrt_beta_dose : np.ndarray, optional
        Biological influence matrices (dose times alpha / sqrt(beta)).
    num_of_beams : int
        Number of beams the matrices were computed for.
    beam_num, ray_num, bixel_num : np.ndarray
        Beam, ray (within the beam) and bixel (within the ray) index of each
        column. -1 marks accumulated columns of a direct calculation.
    bio_optimization : str
        Biological model the matrices support.
    warnings : list[str]
        Non-fatal conditions encountered during dose calculation.
    rad_depth_cubes : list[sitk.Image], optional
        Radiological depth cubes per beam.
    """

    dose_grid: Annotated[Grid, Field(default=None)]
    ct_grid: Annotated[Grid, Field(default=None)]

    physical_dose: Annotated[NDArray, Field(default=None)]
    let_dose: Annotated[Optional[NDArray], Field(default=None, alias="mLETDose")]
    alpha_dose: Annotated[Optional[NDArray], Field(default=None)]
    sqrt_beta_dose: Annotated[Optional[NDArray], Field(default=None)]

    num_of_beams: Annotated[int, Field(default=None, ge=0)]

    beam_num: Annotated[NDArray, Field(default=None)]
    ray_num: Annotated[NDArray, Field(default=None)]
    bixel_num: Annotated[NDArray, Field(default=None)]

    bio_optimization: str = Field(default="none", pattern="^(none|effect|RBExD)$")
    warnings: list[str] = Field(default_factory=list)

    rad_depth_cubes: Optional[list[sitk.Image]] = Field(default=None)

    @computed_field
    @property
    def total_num_of_bixels(self) -> int:
        """Number of bixels / beamlets in the dose influence matrix."""
        return int(self.bixel_num.size)

    @computed_field
    @property
    def num_of_voxels(self) -> int:
        """Number of voxels in the dose influence matrix."""
        return self.physical_dose.flat[0].shape[0]

    @computed_field
    @property
    def quantities(self) -> list[str]:
        """Name of available quantity matrices."""
        return [q for q in QUANTITIES if getattr(self, q) is not None]

    @field_validator("dose_grid", "ct_grid", mode="before")
    @classmethod
    def validate_grid(cls, grid: Union[Grid, dict]) -> Union[Grid, dict]:
        """Create grids from dictionaries."""
        if isinstance(grid, dict):
            grid = Grid.model_validate(grid)
        return grid

    @field_validator("physical_dose", "let_dose", "alpha_dose", "sqrt_beta_dose", mode="before")
    @classmethod
    def validate_matrices(cls, v: Any, info: ValidationInfo) -> np.ndarray:
        """
        Validate the influence matrices.

        Single matrices are wrapped into a scenario object array.

        Raises
        ------
            ValueError: if a matrix is not 2D numeric or its row count does not match the
            dose grid.
        """

        if v is None:
            return v

        if isinstance(v, (sp.spmatrix, sp.sparray)) or (
            isinstance(v, np.ndarray) and v.dtype != np.dtype(object)
        ):
            tmp = np.empty((1,), dtype=object)
            tmp[0] = v
            v = tmp

        if isinstance(v, list):
            tmp = np.empty((len(v),), dtype=object)
            for i, mat in enumerate(v):
                tmp[i] = mat
            v = tmp

        dose_grid = info.data.get("dose_grid")

        for i in range(v.size):
            mat = v.flat[i]
            if mat is None:
                continue
            if not isinstance(mat, (sp.spmatrix, sp.sparray, np.ndarray)) or not np.issubdtype(
                mat.dtype, np.number
            ):
                raise ValueError(f"{info.field_name} must be a numeric array.")
            if mat.ndim != 2:
                raise ValueError(f"{info.field_name} must be a 2D array.")
            if dose_grid is not None and mat.shape[0] != dose_grid.num_voxels:
                raise ValueError(
                    f"{info.field_name} has {mat.shape[0]} rows, but the dose grid has "
                    f"{dose_grid.num_voxels} voxels"
                )

        return v

    @field_validator("beam_num", "ray_num", "bixel_num", mode="before")
    @classmethod
    def _cast_numbering_arrays(cls, v: Any) -> Any:
        if v is None:
            return v
        return np.asarray(v, dtype=np.int64).ravel()

    @field_validator("beam_num", mode="after")
    @classmethod
    def validate_beam_num(cls, v: np.ndarray, info: ValidationInfo) -> np.ndarray:
        """
        Validate the beam indices against the number of beams.

        Raises
        ------
            ValueError: beam index out of range.
        """
        num_of_beams = info.data.get("num_of_beams")
        if num_of_beams is not None and v.size > 0 and np.any(v >= num_of_beams):
            raise ValueError("beam_num contains indices exceeding the number of beams.")
        return v

    @field_validator("beam_num", "ray_num", "bixel_num", mode="after")
    @classmethod
    def validate_numbering_arrays(cls, v: np.ndarray, info: ValidationInfo) -> np.ndarray:
        """
        Validate the numbering arrays.

        Raises
        ------
            ValueError: inconsistent numbering arrays.
        """
        if info.data.get("physical_dose") is not None:
            dij_matrices = cast(np.ndarray, info.data["physical_dose"])
            for i in range(dij_matrices.size):
                if dij_matrices.flat[i] is not None:
                    mat = cast(Union[sp.spmatrix, sp.sparray, np.ndarray], dij_matrices.flat[i])
                    if v.size != mat.shape[1]:
                        raise ValueError(
                            "Numbering arrays shape inconsistent with number of bixels"
                        )
        return v

    def get_result_arrays_from_intensity(
        self, intensity: np.ndarray, scenario_index: int = 0
    ) -> dict[str, np.ndarray]:
        """
        Compute result arrays from an intensity vector.

        Parameters
        ----------
        intensity : np.ndarray
            The intensity to apply to the dose influence matrix.
        scenario_index : int
            The scenario index to apply the intensity to.

        Returns
        -------
        dict[str, np.ndarray]
            ``physical_dose`` and, if available, ``let``, ``alpha``,
            ``sqrt_beta`` and ``effect`` as flat arrays over the dose grid.
        """

        intensity = np.asarray(intensity, dtype=np.float64).ravel()
        if intensity.size != self.total_num_of_bixels:
            raise ValueError(
                f"Intensity has {intensity.size} entries, but the influence matrix has "
                f"{self.total_num_of_bixels} columns"
            )

        out = {}

        if self.physical_dose is not None:
            out["physical_dose"] = self.physical_dose.flat[scenario_index] @ intensity

        if self.let_dose is not None:
            if self.physical_dose is None:
                raise ValueError("Physical dose must be calculated for dose-weighted let")

            indices = out["physical_dose"] > 0.05 * np.max(out["physical_dose"], initial=0.0)

            let_dose = self.let_dose.flat[scenario_index] @ intensity
            out["let"] = np.zeros_like(let_dose)
            out["let"][indices] = let_dose[indices] / out["physical_dose"][indices]

        if self.alpha_dose is not None and self.sqrt_beta_dose is not None:
            out["alpha"] = self.alpha_dose.flat[scenario_index] @ intensity
            out["sqrt_beta"] = self.sqrt_beta_dose.flat[scenario_index] @ intensity
            out["effect"] = out["alpha"] + out["sqrt_beta"] ** 2

        return out

    def compute_result_dose_grid(
        self, intensities: np.ndarray, scenario_index: int = 0
    ) -> dict[str, sitk.Image]:
        """
        Compute results on the dose grid from intensity vector.

        Parameters
        ----------
        intensities : np.ndarray
            The intensity to apply to the dose influence matrix.
        scenario_index : int
            The scenario index to apply the intensity to.

        Returns
        -------
        dict[str,sitk.Image]
            A dictionary containing the quantity images.
        """

        out = self.get_result_arrays_from_intensity(intensities, scenario_index=scenario_index)

        for key, value in out.items():
            out[key] = sitk.GetImageFromArray(
                np.asarray(value, dtype=np.float64).reshape(self.dose_grid.numpy_shape)
            )
            out[key].SetOrigin(tuple(float(o) for o in self.dose_grid.origin))
            out[key].SetSpacing(tuple(float(r) for r in self.dose_grid.resolution_vector))
            out[key].SetDirection(tuple(float(d) for d in self.dose_grid.direction.ravel()))

        return out


def create_dij(data: Union[dict[str, Any], Dij, None] = None, **kwargs) -> Dij:
    """
    Create a Dij object from raw data or keyword arguments.

    Parameters
    ----------
    data : Union[dict[str, Any], Dij, None]
        Dictionary containing the data to create the Dij object.
    **kwargs
        Arbitrary keyword arguments.

    Returns
    -------
    Dij
        A Dij object.
    """

    if data:
        if isinstance(data, Dij):
            return data
        return Dij.model_validate(data)

    return Dij(**kwargs)


def validate_dij(dij: Union[dict[str, Any], Dij, None] = None, **kwargs) -> Dij:
    """
    Validate and creates a Dij object.

    Synonym to create_dij but should be used in validation context.
    """
    return create_dij(dij, **kwargs)
