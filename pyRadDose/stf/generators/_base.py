from abc import ABC, abstractmethod
from typing import Any, Union, ClassVar
import logging
import warnings

import numpy as np
import SimpleITK as sitk

from ...core import (
    np2sitk,
    ConfigurationError,
    TargetNotFoundError,
)
from ...plan import validate_pln, Plan
from ...ct import validate_ct, CT
from ...cst import validate_cst, StructureSet
from ...machines import Machine, load_from_name, validate_machine
from .._steeringinformation import SteeringInformation, validate_stf

logger = logging.getLogger(__name__)


class StfGeneratorBase(ABC):
    """
    Base class for steering information generators.

    Parameters
    ----------
    pln : Plan, optional
        A Plan object. If given, configuration will be loaded from the plan's
        ``prop_stf``.

    Attributes
    ----------
    add_margin : bool
        Dilate the target union before placing beamlets.
    machine : Union[str, Machine]
        Machine name or machine model.
    """

    # Class constants
    is_stf_generator: ClassVar[bool] = True
    name: ClassVar[str]
    short_name: ClassVar[str]
    possible_radiation_modes: ClassVar[list[str]]

    @property
    def radiation_mode(self):
        """Radiation Mode."""
        return self._radiation_mode

    @radiation_mode.setter
    def radiation_mode(self, value):
        if value in self.possible_radiation_modes:
            self._radiation_mode = value
        else:
            raise ConfigurationError(
                f"Invalid radiation mode. Possible modes are: {self.possible_radiation_modes}"
            )

    def _computed_target_margin(self) -> float:
        """Margin to be applied to the union of targets for stf generation."""
        return 0.0

    def __init__(self, pln: Union[Plan, dict, None] = None):
        self.add_margin: bool = True
        self.machine: Union[str, Machine] = "Generic"

        self._ct: CT = None
        self._cst: StructureSet = None
        self._target_voxels: np.ndarray = None
        self._patient_voxels: np.ndarray = None
        self._target_voxel_coordinates: np.ndarray = None
        self._target_mask: sitk.Image = None
        self._patient_mask: sitk.Image = None
        self._warnings: list[str] = []
        self._config_warnings: list[str] = []

        if pln is not None:
            self._assign_parameters_from_pln(pln)

    def generate(self, ct: Union[CT, dict], cst: Union[StructureSet, dict]) -> SteeringInformation:
        """
        Generate the steering information for the given CT and structure set.

        Returns
        -------
        SteeringInformation
            Validated steering information including the traversal index and
            all warnings issued during generation.
        """

        self._ct = validate_ct(ct)
        self._cst = validate_cst(cst, ct=self._ct)
        self._warnings = list(self._config_warnings)

        self._initialize()
        self._initialize_patient_geometry()
        beams = self._generate_source_geometry()

        stf = validate_stf(beams=beams, warnings=list(self._warnings))

        logger.info(
            "Generated %d beams with %d rays and %d bixels",
            stf.num_of_beams,
            stf.num_of_rays,
            stf.total_number_of_bixels,
        )
        return stf

    def _warn(self, message: str):
        """Issue a warning and keep it for the returned steering information."""
        warnings.warn(message, UserWarning, stacklevel=3)
        self._warnings.append(message)

    def _initialize(self):
        """Load and check the machine."""

        if isinstance(self.machine, str):
            tmp_machine = load_from_name(self.radiation_mode, self.machine)
        else:
            tmp_machine = self.machine

        tmp_machine = validate_machine(tmp_machine)

        if tmp_machine.radiation_mode != self.radiation_mode:
            raise ConfigurationError(
                f"Machine radiation mode {tmp_machine.radiation_mode} does not match the stf "
                f"generators radiation mode {self.radiation_mode}"
            )

        self.machine = tmp_machine

    def _initialize_patient_geometry(self):
        """Initialize patient and target geometry."""

        self._patient_voxels = self._cst.patient_voxels()

        if self._patient_voxels.size == 0:
            raise TargetNotFoundError("Contours do not contain any voxels")

        self._patient_mask = self._cst.patient_mask()
        self._target_mask = self._cst.target_union_mask()

        if self.add_margin:
            added_margin = self._computed_target_margin()
            resolution = self._ct.grid.resolution_vector

            # at least one voxel in each dimension
            dim_margins = np.maximum(resolution, added_margin)
            voxel_margin = np.ceil(dim_margins / resolution).astype(int)

            dilation = sitk.BinaryDilateImageFilter()
            dilation.SetKernelType(sitk.sitkBox)
            dilation.SetKernelRadius(voxel_margin.tolist())
            dilation.SetForegroundValue(1)

            self._target_mask = dilation.Execute(self._target_mask)

        self._target_voxels = np2sitk.sitk_mask_to_linear_indices(self._target_mask)

        if self._target_voxels.size == 0:
            raise TargetNotFoundError("No target found in structure set")

        self._target_voxel_coordinates = np2sitk.linear_indices_to_grid_coordinates(
            self._target_voxels, self._ct.grid
        )

    @abstractmethod
    def _generate_source_geometry(self) -> list[dict[str, Any]]:
        """Generate the beams of the steering information."""

    def _assign_parameters_from_pln(self, pln: Union[Plan, dict]):
        """Assign parameters from the plan prop_stf to the generator."""

        pln = validate_pln(pln)

        self.radiation_mode = pln.radiation_mode

        # every key in prop_stf is assigned if the generator knows it
        for key, value in pln.prop_stf.items():
            if key == "generator":
                continue
            if key.startswith("_") or not hasattr(self, key):
                message = f"Attribute {key} not existing in {self.name} generator"
                warnings.warn(message, UserWarning, stacklevel=3)
                self._config_warnings.append(message)
                continue
            setattr(self, key, value)

        self.machine = pln.machine
