"""Base class for particle pencil beam dose calculation algorithms."""

from abc import abstractmethod
from typing import cast, Literal, Any, Optional, Union
import logging
import time

import numpy as np
from scipy.integrate import cumulative_trapezoid

from ...core import ConfigurationError, MissingDataError
from ...ct import CT
from ...stf import SteeringInformation
from ...machines import IonAccelerator, IonPencilBeamKernel, LateralCutOff
from ...cst import StructureSet
from ...dij import Dij
from ...plan import Plan, validate_pln
from ._base_pencilbeam import PencilBeamEngineAbstract


logger = logging.getLogger(__name__)

# kernel units (MeV cm^2/g per primary) to Gy mm^2 per 1e6 primaries
CONVERSION_FACTOR = 1.6021766208e-02

# water equivalent thickness of air per mm
AIR_WET_PER_MM = 0.0011


class ParticlePencilBeamEngineAbstract(PencilBeamEngineAbstract):
    """
    Abstract interface for Particle Pencil-Beam dose calculation.

    This class extends PencilBeamEngineAbstract by adding infrastructure for particles spots and
    quantities like LET and biological dose for variable RBE calculations.

    Attributes
    ----------
    calc_let : bool
        Boolean which defines if LET should be calculated.
    calc_bio_dose : bool
        Boolean to query biological dose calculation.
    air_offset_correction : bool
        Corrects WEPL for SSD difference to kernel database.
    cut_off_method : Literal["integral", "relative"]
        Method used to determine lateral cut off. 'integral' uses the integral of the lateral
        dose profile to obtain the cut-off distance. 'relative' finds the lateral distance at which
        the dose drops to the requested cutoff
    """

    calc_let: bool
    calc_bio_dose: bool
    air_offset_correction: bool
    cut_off_method: Literal["integral", "relative"]

    def __init__(self, pln=None):
        self.calc_let = False
        self.calc_bio_dose = False
        self.air_offset_correction = True
        self.cut_off_method = "integral"

        # tissue class index of each voxel of interest
        self._v_tissue_index = None
        self._bio_dose_computed = False

        super().__init__(pln)

    def assign_properties_from_pln(self, pln: Union[Plan, dict]):
        pln = validate_pln(pln)
        super().assign_properties_from_pln(pln)

        # a biological optimization always needs the biological channels
        self.calc_bio_dose = bool(self.calc_bio_dose or pln.calc_bio_dose)

    @abstractmethod
    def _calc_particle_bixel(self, bixel: dict):
        pass

    def _init_dose_calc(self, ct: CT, cst: StructureSet, stf: SteeringInformation) -> dict:
        """
        Initialize dose calculation.

        Modified inherited method of the superclass DoseEngine,
        containing intialization which are specificly needed for
        pencil beam calculation and not for other engines.
        """

        if self.cut_off_method not in ("integral", "relative"):
            raise ConfigurationError(
                f"Invalid cut-off method '{self.cut_off_method}'. Must be 'integral' or 'relative'!"
            )

        dij = super()._init_dose_calc(ct, cst, stf)

        machine = self._machine
        if not isinstance(machine, IonAccelerator):
            raise ConfigurationError(
                f"Dose engine {self.short_name} requires an ion machine, got {type(machine)}"
            )

        if not machine.has_single_gaussian_kernel:
            raise MissingDataError(
                f"Machine {machine.name} provides no single Gaussian pencil-beam kernels!"
            )

        # biology
        self._bio_dose_computed = False
        if self.calc_bio_dose:
            if machine.radiation_mode == "protons":
                self._warn(
                    "Biological dose calculation is not supported for protons. "
                    "Only physical dose will be calculated."
                )
            elif not machine.has_alpha_beta_kernels:
                self._warn(
                    "Biological kernels not available. Biological dose will not be calculated."
                )
            else:
                self._load_biological_kernel(cst)
                dij = self._allocate_quantity_matrices(dij, ["alpha_dose", "sqrt_beta_dose"])
                self._bio_dose_computed = True

        dij["bio_optimization"] = self.bio_optimization if self._bio_dose_computed else "none"
        if self._bio_dose_computed and dij["bio_optimization"] == "none":
            dij["bio_optimization"] = "effect"

        # Allocate LET container and let sparse matrix in dij struct
        if self.calc_let:
            if machine.has_let_kernel:
                dij = self._allocate_quantity_matrices(dij, ["let_dose"])
            else:
                self._warn("No LET data found in machine data. LET calculation will be skipped.")

        return dij

    def _load_biological_kernel(self, cst: StructureSet):
        """
        Assign a tissue class of the kernels to every voxel of interest.

        Overlapping VOIs are resolved by their overlap priority.

        Raises
        ------
        MissingDataError
            If the photon parameters of a VOI match no tabulated tissue class.
        """

        machine = cast(IonAccelerator, self._machine)
        reference_kernel = next(iter(machine.pb_kernels.values()))

        tissue_index = np.full(self._ct_grid.num_voxels, -1, dtype=np.int64)

        resolved = cst.apply_overlap_priorities()
        # lowest priority number is written last and wins
        for voi in sorted(resolved.vois, key=lambda v: v.overlap_priority, reverse=True):
            indices = voi.indices_numpy
            if indices.size == 0:
                continue

            ix = reference_kernel.tissue_index(voi.alpha_x, voi.beta_x)
            if ix is None:
                raise MissingDataError(
                    f"No tissue class with alpha_x = {voi.alpha_x} and beta_x = {voi.beta_x} "
                    f"(VOI {voi.name}) found in the machine data"
                )

            logger.debug("VOI %s uses tissue class %d", voi.name, ix)
            tissue_index[indices] = ix

        self._v_tissue_index = tissue_index[self._vct_grid]

    def _init_beam(
        self, dij: dict, ct: CT, cst: StructureSet, stf: SteeringInformation, i: int
    ) -> dict:
        """
        Initialize beam for dose calculation.

        Extends the inherited method with particle-specific initialization.

        Parameters
        ----------
        dij : dict
            The dose influence matrix dictionary.
        ct : CT
            The CT object.
        cst : StructureSet
            The structure set object.
        stf : SteeringInformation
            The steering information object.
        i : int
            Index of the beam.

        Returns
        -------
        dict
            Updated Beam Information dictionary.
        """
        beam_info = super()._init_beam(dij, ct, cst, stf, i)

        machine = cast(IonAccelerator, self._machine)
        curr_beam = beam_info["beam"]

        # Since the ray cast starts at the skin and base data is generated at
        # some source to phantom distance, the nozzle to skin WEPL in air is
        # corrected explicitly
        if self.air_offset_correction:
            nozzle_to_skin = beam_info["ssd"] + machine.bams_to_iso_dist - machine.sad
            beam_info["rad_depth_offsets"] = AIR_WET_PER_MM * (
                nozzle_to_skin - machine.fit_air_offset
            )
        else:
            beam_info["rad_depth_offsets"] = np.zeros(curr_beam.num_of_rays)

        # Apply limit in depth
        max_energy = float(np.max(curr_beam.energies))
        max_energy_kernel = machine.get_kernel_by_energy(max_energy)
        max_depth = max_energy_kernel.max_depth + max(-np.min(beam_info["rad_depth_offsets"]), 0)

        with np.errstate(invalid="ignore"):
            beam_info["valid_coords"] &= beam_info["rad_depths"] <= max_depth

        # Precompute CutOff
        logger.info("Calculating lateral cutoffs for beam %d...", i + 1)
        t_start = time.perf_counter()
        self._calc_lateral_particle_cut_off(self.dosimetric_lateral_cutoff, beam_info)
        logger.info("Done in %f seconds.", time.perf_counter() - t_start)

        return beam_info

    def _calc_lateral_particle_cut_off(self, cut_off_level: float, beam_info: dict):
        """
        Compute the depth dependent lateral cut-off of all energies in a beam.

        For each energy the radial dose profile using the widest initial beam
        width of the beam is integrated at a set of depths. The cut-off radius
        is stored as a LateralCutOff on the kernel.

        Parameters
        ----------
        cut_off_level : float
            Fraction of the integral dose (or relative dose) to be retained.
        beam_info : dict
            The current beam data.
        """
        machine = cast(IonAccelerator, self._machine)
        beam = beam_info["beam"]

        if not 0.0 < cut_off_level <= 1.0:
            raise ConfigurationError(
                f"Lateral cut-off must be a value > 0 and <= 1, got {cut_off_level}"
            )

        if cut_off_level <= 0.98:
            logger.warning(
                "A lateral cut off below 0.98 may result in an inaccurate dose calculation"
            )

        # Integration steps
        v_x = np.concatenate(([0], np.logspace(-1, 3, 1200)))  # [mm]
        r_mid = 0.5 * (v_x[:-1] + v_x[1:])  # [mm]
        dr = np.diff(v_x)
        radial_dist_sq = r_mid**2

        # Number of depth points for which a lateral cutoff is determined
        num_depth_val = 35

        # Find the largest initial beam width for each individual energy
        largest_sigma_ini_sq: dict[float, float] = {}
        for ray_ix, ray in enumerate(beam.rays):
            ssd = beam_info["ssd"][ray_ix]
            for beamlet in ray.beamlets:
                sigma_ini = self._calc_sigma_ini(beamlet.energy, beamlet.focus_ix, ssd)
                largest_sigma_ini_sq[beamlet.energy] = max(
                    largest_sigma_ini_sq.get(beamlet.energy, 0.0), sigma_ini**2
                )

        for energy, sigma_ini_sq in largest_sigma_ini_sq.items():
            kernel = machine.get_kernel_by_energy(energy)

            idd_org = CONVERSION_FACTOR * kernel.idd
            peak_ix_org = int(np.argmax(idd_org))

            # Get depths for which a lateral cutoff should be calculated, half
            # of them up to the peak
            cum_int_energy = cumulative_trapezoid(idd_org, kernel.depths, initial=0)

            peak_tail_relation = 0.5
            num_depth_val_to_peak = int(np.ceil(num_depth_val * peak_tail_relation))
            num_depth_val_tail = int(np.ceil(num_depth_val * (1 - peak_tail_relation)))
            energy_steps_to_peak = cum_int_energy[peak_ix_org] / num_depth_val_to_peak
            energy_steps_tail = (
                cum_int_energy[-1] - cum_int_energy[peak_ix_org]
            ) / num_depth_val_tail

            steps = [[0.0], [cum_int_energy[peak_ix_org]], [cum_int_energy[-1]]]
            if energy_steps_to_peak > 0:
                steps.append(np.arange(0, cum_int_energy[peak_ix_org], energy_steps_to_peak))
            if peak_ix_org + 1 < cum_int_energy.size and energy_steps_tail > 0:
                steps.append(
                    np.arange(
                        cum_int_energy[peak_ix_org + 1], cum_int_energy[-1], energy_steps_tail
                    )
                )
            v_energy_steps = np.unique(np.concatenate(steps))

            cum_int_unique, ix = np.unique(cum_int_energy, return_index=True)

            depth_values = np.interp(v_energy_steps, cum_int_unique, kernel.depths[ix])
            idd = CONVERSION_FACTOR * np.interp(depth_values, kernel.depths, kernel.idd)

            # If there's no cut-off set, we do not need to find it
            if cut_off_level == 1:
                kernel.lateral_cut_off = LateralCutOff(
                    comp_fac=1.0,
                    depths=depth_values,
                    cut_off=np.full(depth_values.shape, np.inf),
                )
                continue

            cut_off = np.full(depth_values.shape, np.inf)
            comp_fac = 1.0

            for j, current_depth in enumerate(depth_values):
                # dummy bixel calculating the radial dose distribution at the current depth
                bixel = {
                    "kernel": kernel,
                    "quantities": ["physical_dose"],
                    "comp_fac": 1.0,
                    "radial_dist_sq": radial_dist_sq,
                    "sigma_ini_sq": sigma_ini_sq,
                    "rad_depths": np.full(radial_dist_sq.shape, current_depth + kernel.offset),
                    "rad_depth_offset": 0.0,
                }

                self._calc_particle_bixel(bixel)
                dose_r = bixel["physical_dose"]

                # the radial dose has to integrate to the tabulated depth dose
                cum_area = np.cumsum(2 * np.pi * r_mid * dose_r * dr)
                relative_tolerance = 0.5  # in [%]

                if idd[j] > 0 and abs((cum_area[-1] / idd[j]) - 1) * 100 > relative_tolerance:
                    logger.warning(
                        "Shell integration in cut-off calculation is inconsistent "
                        "(energy %g, depth %g)!",
                        energy,
                        current_depth,
                    )

                if self.cut_off_method == "integral":
                    hits = cum_area >= idd[j] * cut_off_level
                    comp_fac = cut_off_level**-1
                else:
                    hits = dose_r <= (1 - cut_off_level) * np.max(dose_r)

                if not hits.any():
                    # Nothing was cut-off
                    self._warn(
                        f"Couldn't find lateral cut off for energy {energy} "
                        f"at depth {current_depth:.2f} mm!"
                    )
                    continue

                ix = int(np.argmax(hits))
                cut_off[j] = r_mid[ix]

                if self.cut_off_method == "relative" and cum_area[ix] > 0:
                    comp_fac = cum_area[-1] / cum_area[ix]

            kernel.lateral_cut_off = LateralCutOff(
                comp_fac=comp_fac, depths=depth_values, cut_off=cut_off
            )

    def _calc_sigma_ini(
        self,
        energy: float,
        focus_ix: int,
        ssd: float,
        machine: Optional[IonAccelerator] = None,
    ) -> float:
        """
        Get the initial beam width for a specific focus.

        Parameters
        ----------
        energy : float
            The energy of the beam.
        focus_ix : int
            The focus index.
        ssd : float
            The source to surface distance.
        machine : IonAccelerator, optional
            Machine to take the foci from, defaults to the machine of the
            current calculation.

        Returns
        -------
        float
            The initial sigma for the given energy and focus index.
        """
        if machine is None:
            machine = cast(IonAccelerator, self._machine)
        energy_ix = machine.get_energy_index(energy, 4)
        if energy_ix is None:
            raise MissingDataError(f"Energy {energy} not available in machine {machine.name}")

        foci = machine.get_foci_by_index(energy_ix)
        if focus_ix >= len(foci):
            raise MissingDataError(
                f"Focus index {focus_ix} not available for energy {energy} "
                f"({len(foci)} foci in machine {machine.name})"
            )

        return float(foci[focus_ix].sigma_at(ssd))

    def _init_ray(self, beam_info: dict[str, Any], j: int) -> dict[str, Any]:
        ray = super()._init_ray(beam_info, j)

        ray["rad_depth_offset"] = float(beam_info["rad_depth_offsets"][j])

        # initial sigma for all bixels on the current ray
        ray["sigma_ini"] = np.array(
            [
                self._calc_sigma_ini(beamlet.energy, beamlet.focus_ix, ray["ssd"])
                for beamlet in ray["beamlets"]
            ]
        )

        if self._bio_dose_computed:
            ray["tissue_index"] = self._v_tissue_index[ray["valid_coords"]]

        return ray

    def _get_lateral_distance_from_dose_cutoff_on_ray(self, ray: dict) -> float:
        """Largest lateral cut-off of all energies on the ray."""
        machine = cast(IonAccelerator, self._machine)

        cut_offs = [
            machine.get_kernel_by_energy(beamlet.energy).lateral_cut_off.max_cut_off
            for beamlet in ray["beamlets"]
        ]
        if not cut_offs:
            return self._effective_lateral_cutoff

        return max(cut_offs)

    def _compute_bixel(self, curr_ray: dict, k: int) -> dict:
        """
        Compute the bixel for the given ray and index.

        Parameters
        ----------
        curr_ray : dict
            The current ray data.
        k : int
            The index of the bixel.

        Returns
        -------
        dict
            The computed bixel.
        """
        bixel = self._init_bixel(curr_ray, k)

        if bixel["ix"].size > 0:
            self._calc_particle_bixel(bixel)

        return bixel

    def _init_bixel(self, curr_ray: dict, k: int) -> dict:
        """
        Initialize general bixel geometry for particle dose calculation.

        Parameters
        ----------
        curr_ray : dict
            The current ray data.
        k : int
            The index of the bixel.

        Returns
        -------
        dict
            The initialized bixel.
        """
        machine = cast(IonAccelerator, self._machine)
        beamlet = curr_ray["beamlets"][k]

        bixel = {
            "rad_depth_offset": curr_ray["rad_depth_offset"],
            "sigma_ini_sq": curr_ray["sigma_ini"][k] ** 2,
            "quantities": self._computed_quantities,
        }

        if self._calc_dose_direct:
            bixel["column"] = 0
            bixel["weight"] = self._weights[curr_ray["first_column"] + k]
        else:
            bixel["column"] = curr_ray["first_column"] + k
            bixel["weight"] = 1.0

        energy_ix = machine.get_energy_index(beamlet.energy, 4)
        if energy_ix is None:
            raise MissingDataError(
                f"Energy {beamlet.energy} not available in machine {machine.name}"
            )
        kernel = machine.get_kernel_by_index(energy_ix)
        bixel["kernel"] = kernel
        bixel["comp_fac"] = kernel.lateral_cut_off.comp_fac

        self._get_bixel_indices_on_ray(bixel, curr_ray)

        bixel["radial_dist_sq"] = curr_ray["radial_dist_sq"][bixel["sub_ix"]]
        bixel["rad_depths"] = curr_ray["rad_depths"][bixel["sub_ix"]]
        if "tissue_index" in curr_ray:
            bixel["tissue_index"] = curr_ray["tissue_index"][bixel["sub_ix"]]

        return bixel

    def _get_bixel_indices_on_ray(self, curr_bixel: dict, curr_ray: dict):
        kernel = cast(IonPencilBeamKernel, curr_bixel["kernel"])

        # offsets modeled in the base data and the air correction
        tmp_offset = kernel.offset - curr_bixel["rad_depth_offset"]

        rad_depths = curr_ray["rad_depths"]
        radial_dist_sq = curr_ray["radial_dist_sq"]

        curr_ix = rad_depths <= kernel.depths[-1] + tmp_offset

        cutoff_info = kernel.lateral_cut_off
        if self.dosimetric_lateral_cutoff < 1 and not cutoff_info.is_unlimited:
            # coarse test against the largest radius first
            curr_ix &= radial_dist_sq <= cutoff_info.max_cut_off**2

            candidates = np.flatnonzero(curr_ix)
            with np.errstate(invalid="ignore"):
                precise = (
                    cutoff_info.cut_off_sq_at(rad_depths[candidates], tmp_offset)
                    >= radial_dist_sq[candidates]
                )
            curr_ix[candidates] = precise

        curr_bixel["sub_ix"] = curr_ix
        curr_bixel["ix"] = curr_ray["ix"][curr_ix]

    def _interpolate_kernels_in_depth(self, bixel: dict) -> dict[str, np.ndarray]:
        """
        Interpolate the kernel data at the radiological depths of a bixel.

        Two-dimensional kernel data (tissue classes x depths) is interpolated
        row by row.
        """
        kernel = cast(IonPencilBeamKernel, bixel["kernel"])
        quantities = bixel.get("quantities", self._computed_quantities)

        # Add potential offset
        depths = kernel.depths + kernel.offset - bixel["rad_depth_offset"]

        used_kernels = {
            "idd": CONVERSION_FACTOR * kernel.idd,
            "sigma": kernel.sigma,
        }

        if "let_dose" in quantities:
            used_kernels["let"] = kernel.let

        if "alpha_dose" in quantities:
            used_kernels["alpha"] = kernel.alpha
            used_kernels["beta"] = kernel.beta

        kernel_interp = {}
        for key, kernel_data in used_kernels.items():
            if kernel_data.ndim > 1:
                tmp_kernel_data = np.apply_along_axis(
                    lambda x: np.interp(bixel["rad_depths"], depths, x), axis=1, arr=kernel_data
                )
            else:
                tmp_kernel_data = np.interp(bixel["rad_depths"], depths, kernel_data)

            kernel_interp[key] = tmp_kernel_data

        return kernel_interp

    def _finalize_dose(self, dij: dict) -> Dij:
        self._v_tissue_index = None
        return super()._finalize_dose(dij)

    def _get_tissue_parameters(self, bixel: dict, kernel_interp: dict) -> Optional[tuple]:
        """Alpha and beta of every voxel of a bixel for its tissue class."""
        if "alpha" not in kernel_interp or "tissue_index" not in bixel:
            return None

        columns = np.arange(bixel["rad_depths"].size)
        alpha = kernel_interp["alpha"][bixel["tissue_index"], columns]
        beta = kernel_interp["beta"][bixel["tissue_index"], columns]
        return alpha, beta
