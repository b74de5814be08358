"""Single Gaussian particle pencil beam after Hong et al."""

from typing import Optional, Union

import numpy as np

from ...core import PyRadDoseError, ConfigurationError
from ...machines import IonAccelerator, IonPencilBeamKernel
from ._base_pencilbeam_particle import ParticlePencilBeamEngineAbstract


class ParticleHongPencilBeamEngine(ParticlePencilBeamEngineAbstract):
    """
    Particle pencil beam with a single Gaussian lateral profile.

    The lateral width combines the initial beam width at the surface with the
    tabulated scattering in the medium, the depth dependence follows the
    integrated depth dose of the kernel.
    """

    # constants
    short_name = "HongPB"
    name = "Hong Particle Pencil-Beam"
    possible_radiation_modes = ["protons", "helium", "carbon"]

    # private methods
    def _calc_particle_bixel(self, bixel: dict):
        kernels = self._interpolate_kernels_in_depth(bixel)

        # Compute lateral sigma
        sigma_sq = kernels["sigma"] ** 2 + bixel["sigma_ini_sq"]
        lateral = np.exp(-bixel["radial_dist_sq"] / (2 * sigma_sq)) / (2 * np.pi * sigma_sq)

        bixel["physical_dose"] = bixel["comp_fac"] * lateral * kernels["idd"]

        # Check if we have valid dose values
        if np.any(np.isnan(bixel["physical_dose"])) or np.any(bixel["physical_dose"] < 0):
            raise PyRadDoseError(
                f"Error in particle dose calculation (energy {bixel['kernel'].energy})."
            )

        if "let" in kernels:
            bixel["let_dose"] = bixel["physical_dose"] * kernels["let"]

        tissue_parameters = self._get_tissue_parameters(bixel, kernels)
        if tissue_parameters is not None:
            bixel_alpha, bixel_beta = tissue_parameters

            # Multiply with dose
            bixel["alpha_dose"] = bixel["physical_dose"] * bixel_alpha
            bixel["sqrt_beta_dose"] = bixel["physical_dose"] * np.sqrt(bixel_beta)

    def dose_kernel(
        self,
        depths: np.ndarray,
        lateral_sq: np.ndarray,
        ssd: float,
        focus_ix: int,
        energy_profile: Union[IonPencilBeamKernel, float],
        machine: Optional[IonAccelerator] = None,
    ) -> np.ndarray:
        """
        Physical dose of a single pencil beam.

        Parameters
        ----------
        depths : np.ndarray
            Radiological depths (mm).
        lateral_sq : np.ndarray
            Squared lateral distances to the central axis of the beam (mm^2).
        ssd : float
            Source to surface distance, determines the initial beam width.
        focus_ix : int
            Focus index of the beam.
        energy_profile : IonPencilBeamKernel or float
            The kernel, or the nominal energy of the kernel.
        machine : IonAccelerator, optional
            Machine providing the foci. Defaults to the machine of the last
            calculation, the engine state is left untouched.

        Returns
        -------
        np.ndarray
            Dose in Gy per 1e6 primaries, same length as the input.
        """
        if machine is None:
            machine = self._machine
        if not isinstance(machine, IonAccelerator):
            raise ConfigurationError("Evaluating the dose kernel requires an ion machine")

        if isinstance(energy_profile, IonPencilBeamKernel):
            kernel = energy_profile
        else:
            kernel = machine.get_kernel_by_energy(float(energy_profile))

        depths = np.asarray(depths, dtype=np.float64).ravel()
        lateral_sq = np.asarray(lateral_sq, dtype=np.float64).ravel()
        if depths.shape != lateral_sq.shape:
            raise ValueError("depths and lateral_sq need to have the same length")

        sigma_ini = self._calc_sigma_ini(kernel.energy, focus_ix, ssd, machine)

        bixel = {
            "kernel": kernel,
            "quantities": ["physical_dose"],
            "comp_fac": 1.0,
            "radial_dist_sq": lateral_sq,
            "rad_depths": depths,
            "rad_depth_offset": 0.0,
            "sigma_ini_sq": sigma_ini**2,
        }
        self._calc_particle_bixel(bixel)

        return bixel["physical_dose"]
