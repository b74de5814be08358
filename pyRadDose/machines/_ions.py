from typing import Any, Optional, Annotated, Union, ClassVar
from typing_extensions import Self

import numpy as np
from scipy.interpolate import interp1d
from pydantic import (
    Field,
    StringConstraints,
    model_validator,
    field_validator,
    ValidationInfo,
    AliasChoices,
)
from numpydantic import NDArray, Shape

from ..core import PyRadDoseBaseModel, MissingDataError
from ._base import ExternalBeamMachine


def _as_float_array(v: Any) -> Any:
    if v is None:
        return v
    return np.array(v, dtype=np.float64)


class IonBeamFocus(PyRadDoseBaseModel):
    """
    Initial beam width of a focus setting of the accelerator.

    Attributes
    ----------
    dist : np.ndarray
        Distances from the source at which the beam width is tabulated.
    sigma : np.ndarray
        Gaussian sigma of the beam in air at these distances.
    fwhm_iso : float, optional
        Full width at half maximum of the beam at the isocenter. Used to select
        the focus for a given spot spacing.
    """

    dist: NDArray[Shape["1-*"], np.float64]
    sigma: NDArray[Shape["1-*"], np.float64]
    fwhm_iso: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("fwhm_iso", "fwhmIso", "SisFWHMAtIso")
    )

    @field_validator("dist", "sigma", mode="before")
    @classmethod
    def _cast_arrays(cls, v: Any) -> Any:
        return np.atleast_1d(_as_float_array(v))

    @model_validator(mode="after")
    def _check_lengths(self) -> Self:
        if self.dist.shape != self.sigma.shape:
            raise ValueError("Focus distances and sigmas need to have the same length")
        return self

    def sigma_at(self, distance: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        """Linearly inter- / extrapolated initial beam sigma at a distance from the source."""
        if self.dist.size == 1:
            return np.full_like(np.asarray(distance, dtype=np.float64), self.sigma[0])

        return interp1d(self.dist, self.sigma, fill_value="extrapolate")(distance)


class LateralCutOff(PyRadDoseBaseModel):
    """
    Depth dependent lateral cut-off radius of an ion pencil beam kernel.

    Attributes
    ----------
    comp_fac : float
        Compensation factor for the dose truncated by the cut-off.
    cut_off : np.ndarray
        Cut-off radius (mm) at each depth. Infinite radii disable lateral
        rejection.
    depths : np.ndarray
        Radiological depths (without kernel offset) of the radii.
    """

    comp_fac: float = 1.0
    cut_off: NDArray[Shape["1-*"], np.float64] = Field(
        default=np.array([np.inf, np.inf], dtype=np.float64)
    )
    depths: NDArray[Shape["1-*"], np.float64] = Field(
        default=np.array([0.0, np.inf], dtype=np.float64)
    )

    @field_validator("cut_off", "depths", mode="before")
    @classmethod
    def _cast_arrays(cls, v: Any) -> Any:
        return np.atleast_1d(_as_float_array(v))

    @property
    def is_unlimited(self) -> bool:
        """Whether the cut-off applies no lateral rejection."""
        return bool(np.all(np.isinf(self.cut_off)))

    @property
    def max_cut_off(self) -> float:
        """Largest cut-off radius over all depths."""
        return float(np.max(self.cut_off))

    def cut_off_sq_at(self, rad_depths: np.ndarray, offset: float = 0.0) -> np.ndarray:
        """
        Interpolate the squared cut-off radius at radiological depths.

        Depths outside the tabulated range yield NaN, so that comparisons
        reject the respective voxels.
        """
        rad_depths = np.asarray(rad_depths, dtype=np.float64)
        if self.cut_off.size == 1:
            return np.full(rad_depths.shape, self.cut_off[0] ** 2)
        return np.interp(
            rad_depths,
            self.depths + offset,
            self.cut_off**2,
            left=np.nan,
            right=np.nan,
        )


class IonPencilBeamKernel(PyRadDoseBaseModel):
    """
    Tabulated pencil beam kernel of a single ion energy.

    Attributes
    ----------
    energy : float
        Nominal energy.
    peak_pos : float
        Bragg peak position in water (mm) without offset.
    offset : float
        Depth offset (mm) of the tabulated data, e.g. from a ripple filter.
    depths : np.ndarray
        Radiological depths of the tabulated data.
    idd : np.ndarray
        Integrated depth dose (alias ``Z``) in MeV cm^2 / g per primary.
    sigma : np.ndarray, optional
        Lateral sigma from scattering in the medium at each depth.
    let : np.ndarray, optional
        Dose averaged LET at each depth.
    alpha_x, beta_x : np.ndarray, optional
        Photon linear-quadratic parameters of the tabulated tissue classes.
    alpha, beta : np.ndarray, optional
        Ion LQ parameters per tissue class (rows) and depth (columns).
    lateral_cut_off : LateralCutOff, optional
        Cut-off computed by a dose engine.
    """

    energy: float
    peak_pos: float
    offset: float = 0.0
    depths: NDArray[Shape["1-*"], np.float64]

    idd: NDArray[Shape["1-*"], np.float64] = Field(
        validation_alias=AliasChoices("idd", "Z", "z"), serialization_alias="Z"
    )
    sigma: Optional[NDArray[Shape["1-*"], np.float64]] = None
    let: Optional[NDArray[Shape["1-*"], np.float64]] = Field(
        validation_alias=AliasChoices("let", "LET"), default=None
    )
    alpha_x: Optional[NDArray[Shape["1-*"], np.float64]] = None
    beta_x: Optional[NDArray[Shape["1-*"], np.float64]] = None
    alpha: Optional[NDArray[Shape["1-*,1-*"], np.float64]] = None
    beta: Optional[NDArray[Shape["1-*,1-*"], np.float64]] = None
    lateral_cut_off: Optional[LateralCutOff] = None

    @field_validator("depths", "idd", "sigma", "let", "alpha_x", "beta_x", mode="before")
    @classmethod
    def _cast_vectors(cls, v: Any) -> Any:
        if v is None:
            return v
        return np.atleast_1d(_as_float_array(v))

    @field_validator("alpha", "beta", mode="before")
    @classmethod
    def _cast_matrices(cls, v: Any) -> Any:
        if v is None:
            return v
        return np.atleast_2d(_as_float_array(v))

    @field_validator("idd", "sigma", "let", mode="after")
    @classmethod
    def validate_kernel_lengths(
        cls, v: Optional[np.ndarray], info: ValidationInfo
    ) -> Optional[np.ndarray]:
        """Validate the length of the kernel data."""
        if v is None or "depths" not in info.data:
            return v

        if v.shape != info.data["depths"].shape:
            raise ValueError("Kernel data length does not match the depth data length.")

        return v

    @field_validator("alpha", "beta", mode="after")
    @classmethod
    def validate_alpha_beta(cls, v: Optional[np.ndarray], info: ValidationInfo):
        """Validate the shape (tissue classes x depths) of the alpha-beta kernel data."""
        if v is None:
            return v

        depths = info.data.get("depths")
        alpha_x = info.data.get("alpha_x")
        if depths is None or alpha_x is None:
            raise ValueError("alpha / beta kernels require depths and alpha_x / beta_x")

        # transposed, but otherwise correct shape
        if v.shape == (depths.size, alpha_x.size) and v.shape[0] != v.shape[1]:
            v = np.ascontiguousarray(v.T)

        if v.shape != (alpha_x.size, depths.size):
            raise ValueError(
                "alpha / beta kernels need one row per reference tissue and one column per depth"
            )

        return v

    @property
    def max_depth(self) -> float:
        """Deepest tabulated depth including the offset."""
        return float(self.depths[-1] + self.offset)

    def tissue_index(self, alpha_x: float, beta_x: float) -> Optional[int]:
        """Index of the tabulated tissue class with the given photon parameters."""
        if self.alpha_x is None or self.beta_x is None:
            return None
        ix = np.flatnonzero(np.isclose(self.alpha_x, alpha_x) & np.isclose(self.beta_x, beta_x))
        if ix.size == 0:
            return None
        return int(ix[0])


class IonAccelerator(ExternalBeamMachine):
    """
    Machine Model for Ion Accelerators.

    Defines the minimum meta-data an ion machine must hold (energies, Bragg
    peak positions and beam foci) and optionally tabulated pencil-beam
    kernels.

    Attributes
    ----------
    sad : float
        The source-to-axis (-isocenter) distance of the machine
    bams_to_iso_dist : float
        Distance from the beam application and monitoring system to the
        isocenter.
    lut_spot_size : np.ndarray
        2 x N look up table from spot spacing (first row) to the minimum
        full width at half maximum at the isocenter (second row).
    fit_air_offset : float
        Air distance included in the fitting of the kernels.
    peak_positions : np.ndarray
        Bragg peak positions (with offset) for each energy.
    foci : dict[float, list[IonBeamFocus]]
        Available foci by energy.
    pb_kernels : dict[float, IonPencilBeamKernel], optional
        Pencil beam kernels by energy.
    """

    _possible_radiation_modes: ClassVar[list[str]] = ["protons", "helium", "carbon"]

    radiation_mode: Annotated[str, StringConstraints(pattern="^(protons|helium|carbon)$")] = Field(
        default="protons", validate_default=True
    )

    bams_to_iso_dist: float = Field(
        ge=0.0,
        default=0.0,
        description="Beam-monitoring-system/nozzle to iso center distance",
        alias="BAMStoIsoDist",
    )
    lut_spot_size: Optional[NDArray[Shape["2,*"], np.float64]] = Field(
        default=None,
        description="Look up table from lateral spot spacing to minimum FWHM at isocenter",
        validation_alias=AliasChoices("lut_spot_size", "LUTspotSize", "LUT_bxWidthminFWHM"),
    )
    fit_air_offset: float = Field(
        ge=0.0,
        default=0.0,
        description="Air distance included in fitting of the kernel",
    )

    peak_positions: NDArray[Shape["1-*"], np.float64]
    foci: dict[float, list[IonBeamFocus]]

    pb_kernels: Optional[dict[float, IonPencilBeamKernel]] = None

    @field_validator("lut_spot_size", mode="before")
    @classmethod
    def _cast_lut(cls, v: Any) -> Any:
        return _as_float_array(v)

    @field_validator("peak_positions", mode="before")
    @classmethod
    def _cast_peak_positions(cls, v: Any) -> Any:
        return np.atleast_1d(_as_float_array(v))

    @model_validator(mode="after")
    def _check_machine(self) -> Self:
        """Validate the machine model for consistency."""

        if self.bams_to_iso_dist > self.sad:
            raise ValueError("BAMS to iso distance must be smaller than SAD.")

        if self.peak_positions.shape != self.energies.shape:
            raise ValueError("Need exactly one peak position per energy.")

        if np.any(self.peak_positions < 0):
            raise MissingDataError(
                "At least one available peak position is negative - inconsistent machine data"
            )

        for energy in self.energies:
            if self._lookup(self.foci, energy) is None:
                raise MissingDataError(f"No focus data for energy {energy}")

        if self.pb_kernels is not None:
            for i, energy in enumerate(self.energies):
                kernel = self._lookup(self.pb_kernels, energy)
                if kernel is None:
                    raise MissingDataError(f"No pencil beam kernel for energy {energy}")
                if not np.isclose(self.peak_positions[i], kernel.peak_pos + kernel.offset):
                    raise MissingDataError(
                        f"Peak position of the model and the kernel data for energy {energy} "
                        "are inconsistent."
                    )

        return self

    @staticmethod
    def _lookup(data: dict[float, Any], energy: float, round_decimals: int = 4) -> Any:
        for key, value in data.items():
            if np.round(key, round_decimals) == np.round(energy, round_decimals):
                return value
        return None

    @property
    def has_pb_kernels(self) -> bool:
        """Test for existance of valid pencil-beam kernels."""
        return self.pb_kernels is not None

    @property
    def has_single_gaussian_kernel(self) -> bool:
        """True if all kernels have a single gaussian lateral scattering model."""
        if self.pb_kernels is None:
            return False

        return all(kernel.sigma is not None for kernel in self.pb_kernels.values())

    @property
    def has_let_kernel(self) -> bool:
        """True if all kernels have LET values."""
        if self.pb_kernels is None:
            return False

        return all(kernel.let is not None for kernel in self.pb_kernels.values())

    @property
    def has_alpha_beta_kernels(self) -> bool:
        """True if all kernels have alpha-beta values."""
        if self.pb_kernels is None:
            return False

        return all(
            kernel.alpha is not None and kernel.beta is not None
            for kernel in self.pb_kernels.values()
        )

    def get_kernel_by_index(self, ix_energy: int) -> IonPencilBeamKernel:
        """Get the pencil beam kernel for an energy index."""
        return self.get_kernel_by_energy(self.energies[ix_energy])

    def get_kernel_by_energy(self, energy: float) -> IonPencilBeamKernel:
        """Get the pencil beam kernel for a nominal energy (rounded to 4 decimals)."""
        if self.pb_kernels is None:
            raise MissingDataError(f"No pencil beam kernels available for machine {self.name}.")
        kernel = self._lookup(self.pb_kernels, energy)
        if kernel is None:
            raise MissingDataError(f"No pencil beam kernel for energy {energy}")
        return kernel

    def get_foci_by_index(self, ix_energy: int) -> list[IonBeamFocus]:
        """Get the available foci for an energy index."""
        return self._lookup(self.foci, self.energies[ix_energy])

    def min_fwhm_for_spot_spacing(self, spot_spacing: float) -> float:
        """Minimum FWHM at the isocenter required for a lateral spot spacing."""
        if self.lut_spot_size is None:
            raise MissingDataError(f"Machine {self.name} has no spot size look up table")
        return float(np.interp(spot_spacing, self.lut_spot_size[0], self.lut_spot_size[1]))
