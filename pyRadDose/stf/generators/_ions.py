"""Provides classes for generating steering information for ion beams."""

import logging
from typing import Any, Optional

import numpy as np
import SimpleITK as sitk

from ...core import ConfigurationError, GeometryInconsistency
from ...machines import IonAccelerator
from ...ct import default_hlut
from ._externalbeam import StfGeneratorExternalBeamRayBixel

logger = logging.getLogger(__name__)


class StfGeneratorIonRayBixel(StfGeneratorExternalBeamRayBixel):
    """
    Intermediate Interface for an Ion-Ray-Bixel Geometry Generator.

    Attributes
    ----------
    use_given_wet_image : bool
        Use the density cube provided with the CT for range determination
        instead of converting the HU values.
    """

    use_given_wet_image: bool

    def __init__(self, pln=None):
        self.use_given_wet_image = False
        self._wet_image = None
        super().__init__(pln)

    def _initialize(self):
        super()._initialize()

        if not isinstance(self.machine, IonAccelerator):
            raise ConfigurationError("Machine must be an instance of IonAccelerator")

        self._available_peak_positions = self.machine.peak_positions
        self._available_energies = self.machine.energies

        if self.use_given_wet_image and self._ct.cube is None:
            self._warn("No WET image provided in CT. Cannot use given WET image.")
            self.use_given_wet_image = False

        if self.use_given_wet_image:
            self._wet_image = self._ct.cube
        else:
            self._wet_image = self._ct.compute_wet(default_hlut(self.radiation_mode))

    def _initialize_patient_geometry(self):
        super()._initialize_patient_geometry()

        # densities outside of the patient are ignored
        self._wet_image = sitk.Mask(self._wet_image, self._patient_mask)


class StfGeneratorIMPT(StfGeneratorIonRayBixel):
    """Class representing an Ion IMPT Geometry Stf Generator.

    Each ray gets one spot for every energy whose Bragg peak lies within the
    target along the ray. Rays not hitting the target are removed.

    Attributes
    ----------
    name : str
        The name of the generator ("IMPT").
    short_name : str
        The short name of the generator ("IMPT").
    possible_radiation_modes : list[str]
        A list of possible radiation modes.
    longitudinal_spot_spacing : float, optional
        If set, consecutive energies of a ray whose peak positions are closer
        than ``longitudinal_spot_spacing - energy_collapse_tolerance`` are
        collapsed.
    energy_collapse_tolerance : float
        Tolerance (mm) of the energy collapse.
    """

    name = "IMPT"
    short_name = "IMPT"
    possible_radiation_modes = ["protons", "helium", "carbon"]

    longitudinal_spot_spacing: Optional[float]
    energy_collapse_tolerance: float

    # Alias for bixel_width
    @property
    def lateral_spot_spacing(self) -> float:
        """Alias for the bixel_width property."""
        return self.bixel_width

    @lateral_spot_spacing.setter
    def lateral_spot_spacing(self, value: float):
        self.bixel_width = value

    def __init__(self, pln=None):
        self.radiation_mode = "protons"
        self.longitudinal_spot_spacing = None
        self.energy_collapse_tolerance = 0.5
        super().__init__(pln)

    def _initialize(self):
        super()._initialize()

        # focus selection only depends on the energy for a fixed spot spacing
        self._focus_cache: dict[int, int] = {}
        self._min_fwhm = self.machine.min_fwhm_for_spot_spacing(self.bixel_width)

    def _create_rays(self, beam: dict[str, Any], beam_ix: int) -> list[dict[str, Any]]:
        rays = super()._create_rays(beam, beam_ix)

        traced = self._trace_rays(beam, rays, [self._wet_image, self._target_mask])

        hit_rays = []
        for r, (ray, (alphas, lengths, rho, d12)) in enumerate(zip(rays, traced)):
            in_target = rho[1] > 0.5
            if not np.any(in_target):
                logger.debug("Beam %d: ray %d misses the target", beam_ix, r)
                continue

            ssd = self._compute_ssd(alphas, rho[0], d12, beam_ix, r)
            if ssd is None:
                raise GeometryInconsistency(
                    "Could not determine SSD for ray hitting the target",
                    beam_ix=beam_ix,
                    ray_ix=r,
                )

            target_entry, target_exit = self._target_depths(lengths, rho[0], in_target)
            if target_entry.size != target_exit.size:
                raise GeometryInconsistency(
                    "Did not find same number of target entries and exits",
                    beam_ix=beam_ix,
                    ray_ix=r,
                )

            energy_ix = self._select_energies(target_entry, target_exit)
            if energy_ix.size == 0:
                logger.debug("Beam %d: no energy available for ray %d", beam_ix, r)
                continue

            ray["ssd"] = ssd
            ray["target_entry_depths"] = target_entry
            ray["target_exit_depths"] = target_exit
            ray["beamlets"] = [
                {
                    "energy": self._available_energies[e],
                    "focus_ix": self._select_focus(e),
                    "num_particles_per_mu": 1.0e6,
                    "min_mu": 0.0,
                    "max_mu": float("inf"),
                }
                for e in energy_ix
            ]
            logger.debug("Beam %d: ray %d with %d energies", beam_ix, r, energy_ix.size)
            hit_rays.append(ray)

        return hit_rays

    @staticmethod
    def _target_depths(
        lengths: np.ndarray, density: np.ndarray, in_target: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Radiological depths at the target entries and exits along a ray."""

        rel_depths = lengths * density
        rad_depths = np.cumsum(rel_depths) - rel_depths / 2.0

        transitions = np.diff(np.concatenate(([0], in_target.astype(np.int8), [0])))
        entry_ix = np.flatnonzero(transitions == 1)
        exit_ix = np.flatnonzero(transitions == -1) - 1

        target_entry = rad_depths[entry_ix] - rel_depths[entry_ix] / 2.0
        target_exit = rad_depths[exit_ix] + rel_depths[exit_ix] / 2.0

        return target_entry, target_exit

    def _select_energies(self, target_entry: np.ndarray, target_exit: np.ndarray) -> np.ndarray:
        """Indices (ascending) of the energies with a peak within the target."""

        peak_pos = self._available_peak_positions
        selected = np.zeros(peak_pos.shape, dtype=bool)
        for entry, exit_ in zip(target_entry, target_exit):
            selected |= (peak_pos >= entry) & (peak_pos <= exit_)

        energy_ix = np.flatnonzero(selected)
        energy_ix = energy_ix[np.argsort(self._available_energies[energy_ix], kind="stable")]

        if self.longitudinal_spot_spacing is not None and energy_ix.size > 1:
            energy_ix = self._collapse_energies(energy_ix)

        return energy_ix

    def _collapse_energies(self, energy_ix: np.ndarray) -> np.ndarray:
        """Drop energies with a peak too close to the previously kept one."""

        min_distance = self.longitudinal_spot_spacing - self.energy_collapse_tolerance
        kept = [energy_ix[0]]
        for e in energy_ix[1:]:
            distance = abs(
                self._available_peak_positions[e] - self._available_peak_positions[kept[-1]]
            )
            if distance >= min_distance:
                kept.append(e)
        return np.asarray(kept, dtype=np.int64)

    def _select_focus(self, energy_ix: int) -> int:
        """First focus wider than the minimum FWHM at the isocenter, else the last one."""

        if energy_ix not in self._focus_cache:
            foci = self.machine.get_foci_by_index(energy_ix)
            fwhm = np.array(
                [-np.inf if focus.fwhm_iso is None else focus.fwhm_iso for focus in foci]
            )
            wider = np.flatnonzero(fwhm > self._min_fwhm)
            self._focus_cache[energy_ix] = int(wider[0]) if wider.size > 0 else len(foci) - 1

        return self._focus_cache[energy_ix]
