"""Base class for all dose engines."""

import logging
import warnings
import time
from typing import Any, Callable, ClassVar, Optional, Union
from abc import ABC, abstractmethod

import numpy as np

from ...core import (
    Grid,
    ConfigurationError,
    MissingWeight,
    CalculationCancelled,
)
from ...core.np2sitk import linear_indices_to_grid_coordinates
from ...ct import CT, validate_ct
from ...cst import StructureSet, validate_cst
from ...stf import SteeringInformation, validate_stf
from ...plan import Plan, validate_pln
from ...dij import Dij, validate_dij
from ...machines import Machine, load_from_name, validate_machine

logger = logging.getLogger(__name__)


class DoseEngineBase(ABC):
    """
    Abstract Interface for all dose engines.

    All dose engines should inherit from this class.

    Parameters
    ----------
    pln : Plan
        The Plan object to assign properties from.

    Attributes
    ----------
    short_name : str
        The short name of the dose engine.
    name : str
        The name of the dose engine.
    possible_radiation_modes : list[str]
        The possible radiation modes for the dose engine.
    is_dose_engine : bool = True
        Helper class variable telling you that this is a dose engine
    bio_optimization : str
        Biological model requested by the plan.
    num_of_bixels_container : int, optional
        Number of columns buffered before they are moved into the sparse
        matrices. Defaults to a tenth of the bixels.
    """

    # Constant, Abstract properties
    short_name: ClassVar[str]
    name: ClassVar[str]
    possible_radiation_modes: ClassVar[list[str]] = NotImplemented
    is_dose_engine: ClassVar[bool] = True

    bio_optimization: str
    num_of_bixels_container: Optional[int]

    def __init__(self, pln: Union[Plan, dict] = None):
        self.bio_optimization = "none"
        self.num_of_bixels_container = None

        self._warnings: list[str] = []
        self._config_warnings: list[str] = []

        if pln is not None:
            self.assign_properties_from_pln(pln)

        self._ct_grid = None
        self.dose_grid = None

        # Protected properties with public get access
        self._machine = None  # base data of the machine used in the stf
        self._num_of_columns_dij = None  # number of columns in the dij
        self._vox_world_coords = None  # ct voxel coordinates in world
        self._vct_grid = None  # voxels inside the patient (linear indices)
        self._vct_grid_mask = None  # voxels inside patient as logical mask

        self._calc_dose_direct = False
        self._weights = None
        self._cancel = None

    @property
    def warnings(self) -> list[str]:
        """Non-fatal conditions of the last calculation."""
        return list(self._warnings)

    @property
    def machine(self) -> Optional[Machine]:
        """Machine used by the last calculation."""
        return self._machine

    def assign_properties_from_pln(self, pln: Union[Plan, dict]):
        """
        Assign properties from a Plan object to the Dose Engine.

        Every entry of ``prop_dose_calc`` naming an existing public property
        of the engine is set. Unknown entries are reported with a warning
        and ignored.

        Parameters
        ----------
        pln : Plan
            The Plan object to assign properties from.

        Raises
        ------
        ConfigurationError
            If the plan asks for a different engine.
        """

        pln = validate_pln(pln)

        self.bio_optimization = pln.bio_optimization

        prop_dict = dict(pln.prop_dose_calc)

        engine = prop_dict.pop("engine", None)
        if engine and engine not in (self.short_name, self.name):
            raise ConfigurationError(
                f"Inconsistent dose engines given! pln asks for '{engine}', "
                f"but you are using '{self.short_name}'!"
            )

        for field, value in prop_dict.items():
            if field.startswith("_") or not hasattr(self, field):
                message = f'Property "{field}" not found in Dose Engine {self.short_name}!'
                warnings.warn(message, UserWarning, stacklevel=3)
                self._config_warnings.append(message)
                continue

            setattr(self, field, value)

    def calc_dose_forward(
        self,
        ct: Union[CT, dict],
        cst: Union[StructureSet, dict],
        stf: Union[SteeringInformation, dict],
        weights: Optional[np.ndarray] = None,
        cancel: Union[Callable[[], bool], Any, None] = None,
    ) -> Dij:
        """
        Perform a forward dose calculation.

        Every bixel's contribution is weighted during the calculation and
        accumulated into a single column.

        Parameters
        ----------
        ct : CT
            The CT scan data.
        cst : StructureSet
            The structure set containing volumes of interest (VOIs).
        stf : SteeringInformation
            The steering information containing beam configurations.
        weights : np.ndarray, optional
            One weight per bixel in traversal order. Defaults to the weights
            stored in the steering information.
        cancel : threading.Event or callable, optional
            Cancellation flag checked between beams.

        Returns
        -------
        Dij
            Dose information with a single column.

        Raises
        ------
        MissingWeight
            If fewer weights than bixels are given.
        ConfigurationError
            If more weights than bixels are given.
        """
        time_start = time.perf_counter()

        ct, cst, stf = validate_inputs(ct, cst, stf)

        if weights is None:
            logger.info("No weights given. Using weights stored in stf.")
            weights = np.array(
                [
                    beamlet.weight
                    for beam in stf.beams
                    for ray in beam.rays
                    for beamlet in ray.beamlets
                ],
                dtype=np.float64,
            )
        else:
            weights = np.asarray(weights, dtype=np.float64).ravel()

        self._check_weights(weights, stf)

        self._weights = weights
        self._calc_dose_direct = True
        self._cancel = cancel
        try:
            dij = self._calc_dose(ct, cst, stf)
        finally:
            self._calc_dose_direct = False
            self._cancel = None

        logger.info(
            "Forward dose calculation done in %.2f seconds.", time.perf_counter() - time_start
        )

        return dij

    def calc_dose_influence(
        self,
        ct: Union[CT, dict],
        cst: Union[StructureSet, dict],
        stf: Union[SteeringInformation, dict],
        cancel: Union[Callable[[], bool], Any, None] = None,
    ) -> Dij:
        """
        Calculate the set of dose/quantity influence matrices.

        These are the matrices that map a fluence vector to a dose/quantity
        distribution.

        Parameters
        ----------
        ct : CT
            The CT scan data.
        cst : StructureSet
            The structure set containing volumes of interest (VOIs).
        stf : SteeringInformation
            The steering information containing beam configurations.
        cancel : threading.Event or callable, optional
            Cancellation flag checked between beams.

        Returns
        -------
        Dij
            The dose influence matrix collection

        Raises
        ------
        CalculationCancelled
            If the cancellation flag was set.
        """

        time_start = time.perf_counter()
        ct, cst, stf = validate_inputs(ct, cst, stf)

        self._calc_dose_direct = False
        self._cancel = cancel
        try:
            dij = self._calc_dose(ct, cst, stf)
        finally:
            self._cancel = None

        logger.info(
            "Dose influence matrix calculation done in %.2f seconds.",
            time.perf_counter() - time_start,
        )

        return dij

    def _check_weights(self, weights: np.ndarray, stf: SteeringInformation):
        """Match the weight vector against the bixel traversal of the stf."""
        num_bixels = stf.total_number_of_bixels

        if weights.size > num_bixels:
            raise ConfigurationError(
                f"{weights.size} weights given, but the stf only has {num_bixels} bixels"
            )

        if weights.size < num_bixels:
            column = weights.size
            beam_ix = int(stf.bixel_beam_index_map[column])
            ray_ix = int(stf.bixel_ray_index_per_beam_map[column])
            bixel_in_beam = int(stf.bixel_index_per_beam_map[column])
            first_bixel_of_ray = int(np.sum(stf.beams[beam_ix].num_of_bixels_per_ray[:ray_ix]))
            raise MissingWeight(beam_ix, ray_ix, bixel_in_beam - first_bixel_of_ray)

    def _check_cancel(self):
        """Raise if the caller requested cancellation."""
        if self._cancel is None:
            return

        if hasattr(self._cancel, "is_set"):
            cancelled = self._cancel.is_set()
        else:
            cancelled = self._cancel()

        if cancelled:
            raise CalculationCancelled("Dose calculation cancelled by the caller")

    def _warn(self, message: str):
        """Issue a warning and keep it for the returned Dij."""
        warnings.warn(message, UserWarning, stacklevel=3)
        self._warnings.append(message)

    def _init_dose_calc(self, ct: CT, cst: StructureSet, stf: SteeringInformation) -> dict:
        """
        Initialize the dose calculation.

        Sets up the grids, the bookkeeping of the columns, the voxel
        selection and loads the machine referenced by the steering
        information.

        Returns
        -------
        dict
            The dose influence matrix (dij) contents collected so far.
        """

        self._warnings = list(self._config_warnings)
        self._ct_grid = Grid.from_sitk_image(ct.cube_hu)

        if self._calc_dose_direct:
            logger.info("Forward dose calculation using '%s' Dose Engine...", self.name)
        else:
            logger.info("Dose influence matrix calculation using '%s' Dose Engine...", self.name)

        # Check if machine and radiation_mode are consistent
        machine = list({beam.machine for beam in stf.beams})
        radiation_mode = list({beam.radiation_mode for beam in stf.beams})

        if len(machine) != 1 or len(radiation_mode) != 1:
            raise ConfigurationError(
                "machine and radiation mode need to be unique within supplied stf!"
            )

        machine = machine[0]
        radiation_mode = radiation_mode[0]

        if radiation_mode not in self.possible_radiation_modes:
            raise ConfigurationError(
                f"Dose engine {self.short_name} does not support radiation mode {radiation_mode}"
            )

        # dose is computed on the ct grid
        self.dose_grid = self._ct_grid

        logger.info(
            "Dose Grid has Dimensions (%d,%d,%d) with resolution x=%f, y=%f, z=%f.",
            self.dose_grid.dimensions[0],
            self.dose_grid.dimensions[1],
            self.dose_grid.dimensions[2],
            self.dose_grid.resolution["x"],
            self.dose_grid.resolution["y"],
            self.dose_grid.resolution["z"],
        )

        dij = {
            "ct_grid": self._ct_grid,
            "dose_grid": self.dose_grid,
            "num_of_beams": stf.num_of_beams,
        }

        # Check if full dose influence data is required
        self._num_of_columns_dij = 1 if self._calc_dose_direct else stf.total_number_of_bixels

        if self._calc_dose_direct:
            dij["beam_num"] = np.array([-1], dtype=np.int64)
            dij["ray_num"] = np.array([-1], dtype=np.int64)
            dij["bixel_num"] = np.array([-1], dtype=np.int64)
        else:
            dij["beam_num"] = stf.bixel_beam_index_map.copy()
            dij["ray_num"] = stf.bixel_ray_index_per_beam_map.copy()
            dij["bixel_num"] = self._bixel_index_per_ray(stf)

        self._vct_grid = cst.voxels_of_interest()

        self._vct_grid_mask = np.zeros(self._ct_grid.num_voxels, dtype=bool)
        self._vct_grid_mask[self._vct_grid] = True

        # Convert CT subscripts to world coordinates.
        self._vox_world_coords = linear_indices_to_grid_coordinates(self._vct_grid, self._ct_grid)

        self._machine = self.load_machine(radiation_mode, machine)

        return dij

    @staticmethod
    def _bixel_index_per_ray(stf: SteeringInformation) -> np.ndarray:
        """Index of every bixel within its ray, in traversal order."""
        first_bixel_of_ray = [
            np.repeat(
                np.concatenate(([0], np.cumsum(beam.num_of_bixels_per_ray)))[:-1],
                beam.num_of_bixels_per_ray,
            )
            for beam in stf.beams
        ]
        if not first_bixel_of_ray:
            return np.empty(0, dtype=np.int64)

        return (stf.bixel_index_per_beam_map - np.concatenate(first_bixel_of_ray)).astype(
            np.int64
        )

    def _finalize_dose(self, dij: dict) -> Dij:
        dij["warnings"] = list(self._warnings)
        return validate_dij(dij)

    @abstractmethod
    def _calc_dose(self, ct: CT, cst: StructureSet, stf: SteeringInformation) -> Dij:
        raise NotImplementedError("Method '_calc_dose' must be implemented.")

    @staticmethod
    def load_machine(radiation_mode: str, machine_name: str) -> Machine:
        """
        Resolve a registered machine.

        The engine works on a copy, so that data attached during a
        calculation (e.g. lateral cut-offs) never leaks into the registry.
        """
        machine = validate_machine(load_from_name(radiation_mode, machine_name))
        return machine.model_copy(deep=True)


def validate_inputs(
    ct: Union[CT, dict], cst: Union[StructureSet, dict], stf: Union[SteeringInformation, dict]
) -> tuple[CT, StructureSet, SteeringInformation]:
    """Validate the inputs of a dose calculation."""
    ct = validate_ct(ct)
    return ct, validate_cst(cst, ct=ct), validate_stf(stf)
