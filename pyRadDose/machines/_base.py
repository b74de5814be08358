from typing import Optional, Annotated, ClassVar
from pydantic import (
    Field,
    StringConstraints,
    field_validator,
)
from numpydantic import NDArray, Shape
import numpy as np

from ..core import PyRadDoseBaseModel


class Machine(PyRadDoseBaseModel):
    """
    Base class for Machine objects.

    Defines minimum meta-data a machine must hold.

    Attributes
    ----------
    radiation_mode : str
        The radiation mode of the machine.
    description : str
        The description of the machine.
    name : str
        The name of the machine (alias ``machine``).
    version : str
        Version of the base data in semantic versioning format.
    """

    _possible_radiation_modes: ClassVar[list[str]] = []

    radiation_mode: str = Field()
    description: str = Field(default="")
    name: Annotated[str, StringConstraints(min_length=1)] = Field(alias="machine")
    version: Annotated[str, StringConstraints(pattern=r"^\d+\.\d+\.\d+$")] = Field(
        default="0.0.1", validate_default=True
    )


class ExternalBeamMachine(Machine):
    """
    Base class for Machine used for external irradation.

    Attributes
    ----------
    sad : float
        The source-to-axis distance of the machine
    energies : np.ndarray
        Available nominal energies
    """

    energies: NDArray[Shape["1-*"], np.float64]
    sad: float = Field(gt=0.0, description="Source-to-axis distance", alias="SAD")

    @field_validator("energies", mode="before")
    @classmethod
    def _cast_energies(cls, v):
        return np.atleast_1d(np.asarray(v, dtype=np.float64))

    def get_closest_energy_index(self, energy: float) -> int:
        """
        Given an energy value, return the closest matching index.

        Parameters
        ----------
        energy : float
            Energy value to search for

        Returns
        -------
        int
            Index of the energy level
        """
        return int(np.argmin(np.abs(self.energies - energy)))

    def get_energy_index(self, energy: float, round_decimals: int = 4) -> Optional[int]:
        """
        Given an energy value, return the index of the exact matching.

        Parameters
        ----------
        energy : float
            Energy value to search for
        round_decimals : int, optional
            Number of decimals to round the energy values to, by default 4

        Returns
        -------
        Optional[int]
            Index of the energy level, None if the energy is not available
        """
        ix = np.flatnonzero(
            np.round(self.energies, round_decimals) == np.round(energy, round_decimals)
        )
        if len(ix) == 0:
            return None
        if len(ix) > 1:
            raise ValueError("Multiple matching energies found.")
        return int(ix[0])
