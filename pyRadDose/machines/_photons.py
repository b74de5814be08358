from typing import Annotated, ClassVar
from pydantic import Field, StringConstraints

from ._base import ExternalBeamMachine


class PhotonLINAC(ExternalBeamMachine):
    """
    Machine Model for photon LINACs.

    Only the geometry and energy meta-data needed to generate steering
    information is modeled.

    Attributes
    ----------
    scd : float
        The source-to-collimator distance of the machine
    """

    _possible_radiation_modes: ClassVar[list[str]] = ["photons"]

    radiation_mode: Annotated[str, StringConstraints(pattern="^photons$")] = Field(
        default="photons", validate_default=True
    )

    scd: float = Field(ge=0.0, default=500.0, description="Source to collimator distance", alias="SCD")
