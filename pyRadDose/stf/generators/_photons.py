import logging
from typing import Any

import SimpleITK as sitk

from ...core import ConfigurationError
from ...machines import PhotonLINAC
from ._externalbeam import StfGeneratorExternalBeamRayBixel

logger = logging.getLogger(__name__)


class StfGeneratorPhotonIMRT(StfGeneratorExternalBeamRayBixel):
    """Class representing a Photon IMRT Geometry Stf Generator.

    Every ray carries a single bixel with the machine energy closest to the
    configured ``energy``. All rays are kept.

    Attributes
    ----------
    name : str
        The name of the generator ("Photon IMRT Geometry").
    short_name : str
        The short name of the generator ("photonIMRT").
    possible_radiation_modes : list[str]
        A list of possible radiation modes (["photons"]).
    energy : float
        Requested nominal energy (MV).
    """

    name = "Photon IMRT Geometry"
    short_name = "photonIMRT"
    possible_radiation_modes = ["photons"]

    energy: float

    def __init__(self, pln=None):
        self.radiation_mode = "photons"
        self.energy = 6.0
        super().__init__(pln)

    def _initialize(self):
        super()._initialize()

        if not isinstance(self.machine, PhotonLINAC):
            raise ConfigurationError("Machine must be an instance of PhotonLINAC.")

        energy_ix = self.machine.get_closest_energy_index(self.energy)
        machine_energy = float(self.machine.energies[energy_ix])

        if machine_energy != self.energy:
            logger.warning(
                "Selected energy not available in machine. Using closest available energy %g.",
                machine_energy,
            )
            self.energy = machine_energy

    def _initialize_patient_geometry(self):
        super()._initialize_patient_geometry()
        self._density_image = sitk.Mask(self._ct.density_image(), self._patient_mask)

    def _create_rays(self, beam: dict[str, Any], beam_ix: int) -> list[dict[str, Any]]:
        """Create the rays with their single bixel and SSD."""
        rays = super()._create_rays(beam, beam_ix)

        traced = self._trace_rays(beam, rays, [self._density_image])
        for r, (ray, (alphas, _, rho, d12)) in enumerate(zip(rays, traced)):
            ray["ssd"] = self._compute_ssd(alphas, rho[0], d12, beam_ix, r)
            ray["beamlets"] = [{"energy": self.energy}]

        self._fill_missing_ssd(rays, beam_ix)

        return rays
