"""Beamlet datamodel for particle and photon beamlets."""

from pydantic import Field

from ..core import PyRadDoseBaseModel


class Beamlet(PyRadDoseBaseModel):
    """
    A class representing a single beamlet (bixel / spot).

    Attributes
    ----------
    energy : float
        The energy value for the beamlet
    focus_ix : int
        The (0-based) focus index identifying the focus setting for the beamlet.
    num_particles_per_mu : float
        The number of particles per monitor unit
    min_mu : float
        The minimum monitor unit
    max_mu : float
        The maximum monitor unit
    weight : float
        The applied fluence weight of the beamlet
    relative_fluence : float
        The fluence of this beamlet relative to the central primary fluence.
    """

    energy: float
    focus_ix: int = Field(default=0, ge=0)
    num_particles_per_mu: float = Field(alias="numParticlesPerMU", default=1.0e6)
    min_mu: float = Field(alias="minMU", default=0.0)
    max_mu: float = Field(alias="maxMU", default=float("inf"))
    weight: float = Field(default=1.0)
    relative_fluence: float = Field(default=1.0)
